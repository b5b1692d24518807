from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import app.main as main_module
from app.config import settings
from app.db import (
    REGISTRY_SOURCE,
    create_agency,
    create_tenant,
    find_base_output,
    find_regulatory_document,
    subscribe_tenant_to_agency,
)
from app.main import create_app
from app.storage import get_blob

from conftest import CRON_SECRET, FakeBedrockClient, RegistryStub, registry_result


def test_poll_then_generate_for_one_tenant(
    monkeypatch: pytest.MonkeyPatch, generator, bedrock_client: FakeBedrockClient, registry_stub: RegistryStub
) -> None:
    agency = create_agency("Centers for Medicare & Medicaid Services", "cms")
    tenant_a = create_tenant("Firm A", "memo_pdf", auto_process=False)
    tenant_b = create_tenant("Firm B", "slide_deck", auto_process=False)
    for tenant in (tenant_a, tenant_b):
        subscribe_tenant_to_agency(str(tenant["id"]), str(agency["id"]))
    registry_stub.documents = [registry_result("2024-00123")]

    monkeypatch.setattr(main_module, "get_content_generator", lambda: generator)
    monkeypatch.setattr(main_module, "get_registry_client", lambda: registry_stub.client())
    monkeypatch.setattr(main_module, "get_feed_client", lambda: None)

    with TestClient(create_app()) as client:
        poll = client.post("/cron/poll", headers={"Authorization": f"Bearer {CRON_SECRET}"})
        assert poll.status_code == 200
        assert poll.json()["base_outputs_created"] == 2

        document = find_regulatory_document(REGISTRY_SOURCE, "2024-00123")
        assert find_base_output(str(document["id"]), str(tenant_a["id"]))["status"] == "awaiting_approval"

        # Manual tenants are not picked up by the scheduled batch.
        batch = client.post("/cron/process-outputs", headers={"Authorization": f"Bearer {CRON_SECRET}"})
        assert batch.json()["processed"] == 0

        response = client.post(f"/api/tenants/{tenant_a['id']}/documents/{document['id']}/generate-base")

    assert response.status_code == 200
    output_a = find_base_output(str(document["id"]), str(tenant_a["id"]))
    output_b = find_base_output(str(document["id"]), str(tenant_b["id"]))
    assert output_a["status"] == "complete"
    assert output_a["output_path"] == f"{tenant_a['id']}/2024-00123_base.pdf"
    assert get_blob(settings=settings, path=str(output_a["output_path"])).startswith(b"%PDF")
    assert output_b["status"] == "awaiting_approval"
    assert output_b["output_path"] is None
    assert len(bedrock_client.calls) == 1


def test_poll_routes_pending_rows_and_generates_only_the_requested_tenant(
    monkeypatch: pytest.MonkeyPatch, generator, bedrock_client: FakeBedrockClient, registry_stub: RegistryStub
) -> None:
    agency = create_agency("Centers for Medicare & Medicaid Services", "cms")
    tenant_a = create_tenant("Firm A", "memo_pdf")
    tenant_b = create_tenant("Firm B", "slide_deck")
    for tenant in (tenant_a, tenant_b):
        subscribe_tenant_to_agency(str(tenant["id"]), str(agency["id"]))
    registry_stub.documents = [registry_result("2024-00123")]

    monkeypatch.setattr(main_module, "get_content_generator", lambda: generator)
    monkeypatch.setattr(main_module, "get_registry_client", lambda: registry_stub.client())
    monkeypatch.setattr(main_module, "get_feed_client", lambda: None)

    with TestClient(create_app()) as client:
        poll = client.post("/cron/poll", headers={"Authorization": f"Bearer {CRON_SECRET}"})
        assert poll.json()["base_outputs_created"] == 2

        document = find_regulatory_document(REGISTRY_SOURCE, "2024-00123")
        for tenant in (tenant_a, tenant_b):
            assert find_base_output(str(document["id"]), str(tenant["id"]))["status"] == "pending"

        response = client.post(f"/tenants/{tenant_a['id']}/documents/{document['id']}/generate-base")

    assert response.status_code == 200
    output_a = find_base_output(str(document["id"]), str(tenant_a["id"]))
    output_b = find_base_output(str(document["id"]), str(tenant_b["id"]))
    assert output_a["status"] == "complete"
    assert output_a["output_path"] == f"{tenant_a['id']}/2024-00123_base.pdf"
    assert output_b["status"] == "pending"
    assert output_b["output_path"] is None
    assert len(bedrock_client.calls) == 1
