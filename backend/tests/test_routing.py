from __future__ import annotations

import pytest

from app.db import (
    REGISTRY_SOURCE,
    create_agency,
    create_client,
    create_tenant,
    get_conn,
    insert_regulatory_document,
    subscribe_tenant_to_agency,
)
from app.pipeline.status import ArtifactStatus, initial_status
import app.routing as routing_module
from app.routing import route_document


def _base_output_count(document_id: str) -> int:
    with get_conn() as conn:
        return int(
            conn.execute(
                "SELECT COUNT(*) FROM base_outputs WHERE regulatory_document_id = ?", (document_id,)
            ).fetchone()[0]
        )


@pytest.fixture()
def document() -> dict[str, object]:
    agency = create_agency("Food and Drug Administration", "food-and-drug-administration")
    tenant = create_tenant("Deck Firm", "slide_deck", has_client_roster=True)
    subscribe_tenant_to_agency(str(tenant["id"]), str(agency["id"]))
    create_client(str(tenant["id"]), "Client One")
    inserted = insert_regulatory_document(
        REGISTRY_SOURCE, "2024-30000", {"agency_id": agency["id"], "title": "Drug labeling rule"}
    )
    assert inserted is not None
    return inserted


def test_routing_twice_never_duplicates_base_outputs(document: dict[str, object]) -> None:
    first = route_document(document)
    second = route_document(document)

    assert (first.base_outputs_created, first.base_outputs_existing) == (1, 0)
    assert (second.base_outputs_created, second.base_outputs_existing) == (0, 1)
    assert first.client_placeholders_created == 1
    assert second.client_placeholders_created == 0
    assert _base_output_count(str(document["id"])) == 1


def test_rerouting_adds_placeholders_for_new_clients(document: dict[str, object]) -> None:
    first = route_document(document)
    create_client(first.tenant_ids[0], "Client Two")

    second = route_document(document)

    assert second.client_placeholders_created == 1


def test_document_without_agency_is_not_routed() -> None:
    orphan = insert_regulatory_document(REGISTRY_SOURCE, "2024-40000", {"title": "Unassigned"})

    result = route_document(orphan)

    assert result.tenant_ids == []
    assert result.errors == []


def test_one_tenant_failure_does_not_stop_the_others(
    document: dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    agency_id = str(document["agency_id"])
    second_tenant = create_tenant("Memo Firm", "memo_pdf")
    subscribe_tenant_to_agency(str(second_tenant["id"]), agency_id)

    original = routing_module.insert_base_output

    def flaky_insert(document_id: str, tenant_id: str, output_type: str, status: str):
        if output_type == "slide_deck":
            raise RuntimeError("disk full")
        return original(document_id, tenant_id, output_type, status)

    monkeypatch.setattr(routing_module, "insert_base_output", flaky_insert)

    result = route_document(document)

    assert result.tenant_ids == [second_tenant["id"]]
    assert len(result.errors) == 1
    assert "disk full" in result.errors[0]


@pytest.mark.parametrize(
    ("tenant_auto", "source_auto", "expected"),
    [
        (True, True, ArtifactStatus.PENDING),
        (False, True, ArtifactStatus.AWAITING_APPROVAL),
        (True, False, ArtifactStatus.SKIPPED),
    ],
)
def test_initial_status(tenant_auto: bool, source_auto: bool, expected: ArtifactStatus) -> None:
    assert initial_status(tenant_auto_process=tenant_auto, source_auto_process=source_auto) is expected
