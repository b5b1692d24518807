from __future__ import annotations

import threading

import pytest

from app.config import settings
from app.db import (
    NEWSROOM_SOURCE,
    REGISTRY_SOURCE,
    create_agency,
    create_tenant,
    get_base_output,
    insert_base_output,
    insert_regulatory_document,
    subscribe_tenant_to_agency,
)
from app.generation import BedrockContentGenerator
from app.pipeline import (
    ArtifactConflictError,
    generate_base_output,
    process_pending_base_outputs,
    run_base_generation,
)
from app.pipeline.base_generation import load_source_text
from app.pipeline.context import document_blob_key
from app.extraction import ExtractionError
from app.storage import get_blob

from conftest import FakeBedrockClient, RegistryStub


def _setup(output_type: str = "memo_pdf", *, auto_process: bool = True, pdf: bool = True):
    agency = create_agency("Centers for Medicare & Medicaid Services", "cms")
    tenant = create_tenant("Firm", output_type, auto_process=auto_process, branding={"company_name": "Firm LLP"})
    subscribe_tenant_to_agency(str(tenant["id"]), str(agency["id"]))
    document = insert_regulatory_document(
        REGISTRY_SOURCE,
        "2024-00123",
        {
            "agency_id": agency["id"],
            "title": "Medicare payment rule",
            "abstract": "Updates payment rates.",
            "citation": "89 FR 12345",
            "source_pdf_url": "https://www.govinfo.gov/content/pkg/FR/pdf/2024-00123.pdf" if pdf else None,
        },
    )
    return tenant, document


def test_generate_base_output_completes_memo_and_persists_text(
    generator: BedrockContentGenerator, registry_client, bedrock_client: FakeBedrockClient
) -> None:
    tenant, document = _setup()

    outcome = generate_base_output(
        document_id=str(document["id"]),
        tenant_id=str(tenant["id"]),
        generator=generator,
        registry_client=registry_client,
    )

    output = outcome.output
    assert outcome.already_complete is False
    assert output["status"] == "complete"
    assert output["output_path"] == f"{tenant['id']}/2024-00123_base.pdf"
    assert output["source_text"].startswith("## Executive Summary")
    assert (output["tokens_input"], output["tokens_output"]) == (1200, 340)
    assert output["model_used"] == settings.bedrock_model_id
    assert output["processing_started_at"] and output["processing_completed_at"]
    assert get_blob(settings=settings, path=str(output["output_path"])).startswith(b"%PDF")
    assert "conversion factor" in bedrock_client.calls[0]["messages"][0]["content"][0]["text"]


def test_generate_base_output_renders_slide_deck(generator, registry_client) -> None:
    tenant, document = _setup("slide_deck")

    outcome = generate_base_output(
        document_id=str(document["id"]), tenant_id=str(tenant["id"]), generator=generator, registry_client=registry_client
    )

    assert outcome.output["status"] == "complete"
    assert str(outcome.output["output_path"]).endswith("_base.pptx")


def test_second_trigger_returns_existing_complete_output(generator, registry_client, bedrock_client) -> None:
    tenant, document = _setup()
    kwargs = dict(document_id=str(document["id"]), tenant_id=str(tenant["id"]), generator=generator, registry_client=registry_client)

    first = generate_base_output(**kwargs)
    second = generate_base_output(**kwargs)

    assert second.already_complete is True
    assert second.output["id"] == first.output["id"]
    assert len(bedrock_client.calls) == 1


def test_complete_output_with_missing_blob_is_regenerated(generator, registry_client, bedrock_client, tmp_path) -> None:
    tenant, document = _setup()
    kwargs = dict(document_id=str(document["id"]), tenant_id=str(tenant["id"]), generator=generator, registry_client=registry_client)
    first = generate_base_output(**kwargs)
    (tmp_path / "blobs" / str(first.output["output_path"])).unlink()

    second = generate_base_output(**kwargs)

    assert second.already_complete is False
    assert second.output["status"] == "complete"
    assert len(bedrock_client.calls) == 2


def test_generation_failure_marks_row_failed_and_retry_succeeds(registry_client) -> None:
    tenant, document = _setup()
    attempts = {"count": 0}

    def flaky(model_id: str, prompt: str) -> str:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise RuntimeError("ThrottlingException")
        return "## Executive Summary\n- Recovered"

    generator = BedrockContentGenerator(settings=settings, client=FakeBedrockClient(flaky))
    kwargs = dict(document_id=str(document["id"]), tenant_id=str(tenant["id"]), generator=generator, registry_client=registry_client)

    failed = generate_base_output(**kwargs)
    assert failed.output["status"] == "failed"
    assert "GenerationError" in failed.output["error_message"]
    assert "ThrottlingException" in failed.output["error_message"]

    retried = generate_base_output(**kwargs)
    assert retried.output["status"] == "complete"
    assert retried.output["error_message"] is None


def test_processing_output_is_a_conflict(generator, registry_client) -> None:
    tenant, document = _setup()
    base_output = insert_base_output(str(document["id"]), str(tenant["id"]), "memo_pdf", "processing")

    with pytest.raises(ArtifactConflictError):
        run_base_generation(str(base_output["id"]), generator=generator, registry_client=registry_client)
    assert get_base_output(str(base_output["id"]))["status"] == "processing"


def test_concurrent_triggers_generate_once(registry_client) -> None:
    tenant, document = _setup()
    release = threading.Event()
    entered = threading.Event()

    def slow(model_id: str, prompt: str) -> str:
        entered.set()
        release.wait(timeout=5)
        return "## Executive Summary\n- Done"

    client = FakeBedrockClient(slow)
    generator = BedrockContentGenerator(settings=settings, client=client)
    kwargs = dict(document_id=str(document["id"]), tenant_id=str(tenant["id"]), generator=generator, registry_client=registry_client)

    results: list[object] = []
    worker = threading.Thread(target=lambda: results.append(generate_base_output(**kwargs)))
    worker.start()
    assert entered.wait(timeout=5)

    with pytest.raises(ArtifactConflictError):
        generate_base_output(**kwargs)

    release.set()
    worker.join(timeout=10)
    assert len(client.calls) == 1
    assert results[0].output["status"] == "complete"


def test_load_source_text_falls_back_to_abstract(registry_client) -> None:
    _, document = _setup(pdf=False)
    assert load_source_text(document, registry_client) == "Medicare payment rule\n\nUpdates payment rates."

    with pytest.raises(ExtractionError):
        load_source_text({"title": "Nothing", "abstract": None, "source_pdf_url": None}, registry_client)


def test_unreadable_pdf_fails_the_row(generator) -> None:
    tenant, document = _setup()
    stub = RegistryStub()
    stub.pdf_text = ""

    outcome = generate_base_output(
        document_id=str(document["id"]), tenant_id=str(tenant["id"]), generator=generator, registry_client=stub.client()
    )

    assert outcome.output["status"] == "failed"
    assert "ExtractionError" in outcome.output["error_message"]


def test_process_pending_base_outputs_skips_manual_tenants(generator, registry_client) -> None:
    tenant, document = _setup()
    manual = create_tenant("Manual", "memo_pdf", auto_process=False)
    automatic = insert_base_output(str(document["id"]), str(tenant["id"]), "memo_pdf", "pending")
    insert_base_output(str(document["id"]), str(manual["id"]), "memo_pdf", "pending")

    results = process_pending_base_outputs(5, generator=generator, registry_client=registry_client)

    assert results == [{"base_output_id": automatic["id"], "status": "complete", "error_message": None}]


def test_newsroom_items_sharing_a_url_tail_get_separate_artifacts(generator, registry_client) -> None:
    tenant, first_registry_document = _setup()
    agency_id = first_registry_document["agency_id"]
    documents = [
        insert_regulatory_document(
            NEWSROOM_SOURCE,
            f"https://www.hhs.gov/news/2024/{day}/index.html",
            {"agency_id": agency_id, "title": f"Statement {day}", "abstract": f"Announcement from {day}."},
        )
        for day in ("01/02", "02/03")
    ]

    outputs = [
        generate_base_output(
            document_id=str(document["id"]), tenant_id=str(tenant["id"]), generator=generator, registry_client=registry_client
        ).output
        for document in documents
    ]

    assert outputs[0]["output_path"] != outputs[1]["output_path"]
    for output in outputs:
        assert output["status"] == "complete"
        assert get_blob(settings=settings, path=str(output["output_path"])).startswith(b"%PDF")


def test_document_blob_key() -> None:
    assert document_blob_key({"source": REGISTRY_SOURCE, "external_id": "2024-00123"}) == "2024-00123"

    newsroom = document_blob_key({"source": NEWSROOM_SOURCE, "external_id": "https://agency.gov/a/b.html"})
    assert newsroom.startswith("https_agency.gov_a_b.html-")
    assert "/" not in newsroom
    assert newsroom != document_blob_key({"source": NEWSROOM_SOURCE, "external_id": "https://agency.gov/a_b.html"})
    assert document_blob_key({"source": NEWSROOM_SOURCE, "external_id": "2024-00123"}) != "2024-00123"
