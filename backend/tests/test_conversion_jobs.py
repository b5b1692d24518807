from __future__ import annotations

import io
import json

import pytest
from pptx import Presentation

from app.config import settings
from app.db import get_conversion_job
from app.generation import BedrockContentGenerator
from app.pipeline import (
    ArtifactConflictError,
    process_conversion_job,
    process_next_conversion_job,
    submit_conversion_job,
)
from app.storage import get_blob

from conftest import SLIDE_DECK_PAYLOAD, FakeBedrockClient, make_pdf_bytes


def test_submit_stores_upload_under_owner_prefix() -> None:
    job = submit_conversion_job(owner_id="user-1", filename="My Rule (draft).pdf", content=make_pdf_bytes("Rule text"))

    assert job["status"] == "pending"
    assert job["input_filename"] == "My_Rule__draft_.pdf"
    assert str(job["input_path"]).startswith("user-1/uploads/")
    assert get_blob(settings=settings, path=str(job["input_path"])).startswith(b"%PDF")


def test_process_conversion_job_produces_presentation(
    generator: BedrockContentGenerator, bedrock_client: FakeBedrockClient
) -> None:
    job = submit_conversion_job(owner_id="user-1", filename="rule.pdf", content=make_pdf_bytes("Rule text one", "Two"))

    processed = process_conversion_job(str(job["id"]), generator=generator, instructions="Keep it short.")

    assert processed["status"] == "complete"
    assert processed["page_count"] == 2
    assert "Rule text one" in processed["extracted_text"]
    assert str(processed["output_filename"]).endswith("_rule_presentation.pptx")
    assert str(processed["output_path"]).startswith("user-1/")
    content = get_blob(settings=settings, path=str(processed["output_path"]))
    assert processed["output_size_bytes"] == len(content)
    assert len(Presentation(io.BytesIO(content)).slides) == len(SLIDE_DECK_PAYLOAD["slides"])
    assert "Keep it short." in bedrock_client.calls[0]["messages"][0]["content"][0]["text"]


def test_failed_conversion_records_error() -> None:
    generator = BedrockContentGenerator(
        settings=settings, client=FakeBedrockClient(lambda model_id, prompt: json.dumps({"slides": []}))
    )
    job = submit_conversion_job(owner_id="user-1", filename="rule.pdf", content=make_pdf_bytes("Rule text"))

    processed = process_conversion_job(str(job["id"]), generator=generator)

    assert processed["status"] == "failed"
    assert "GenerationError" in processed["error_message"]


def test_unreadable_upload_fails_without_model_call(bedrock_client: FakeBedrockClient, generator) -> None:
    job = submit_conversion_job(owner_id="user-1", filename="scan.pdf", content=make_pdf_bytes(""))

    processed = process_conversion_job(str(job["id"]), generator=generator)

    assert processed["status"] == "failed"
    assert "ExtractionError" in processed["error_message"]
    assert bedrock_client.calls == []


def test_completed_job_cannot_be_claimed_again(generator) -> None:
    job = submit_conversion_job(owner_id="user-1", filename="rule.pdf", content=make_pdf_bytes("Rule text"))
    process_conversion_job(str(job["id"]), generator=generator)

    with pytest.raises(ArtifactConflictError):
        process_conversion_job(str(job["id"]), generator=generator)


def test_process_next_conversion_job_takes_oldest_pending(generator) -> None:
    first = submit_conversion_job(owner_id="user-1", filename="first.pdf", content=make_pdf_bytes("First"))
    second = submit_conversion_job(owner_id="user-2", filename="second.pdf", content=make_pdf_bytes("Second"))

    processed = process_next_conversion_job(generator=generator)

    assert processed["id"] == first["id"]
    assert get_conversion_job(str(second["id"]))["status"] == "pending"
    assert process_next_conversion_job(generator=generator)["id"] == second["id"]
    assert process_next_conversion_job(generator=generator) is None
