from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import httpx
import pytest
from fpdf import FPDF

import app.api.routers.system as system_module
from app.config import settings
from app.db import init_db
from app.generation import BedrockContentGenerator
from app.registry import FederalRegisterClient

SLIDE_DECK_PAYLOAD = {
    "slides": [
        {"slide_type": "title", "title": "Medicare Program: CY 2025 Payment Policies", "subtitle": "Final rule"},
        {
            "slide_type": "content",
            "title": "Key Changes",
            "content": [
                {"type": "bullet", "text": "Conversion factor decreases by 2.93%", "level": 0},
                {"type": "bullet", "text": "Applies to all physician fee schedule services", "level": 1},
                {"type": "note", "text": "Stress the January 1 effective date."},
            ],
        },
        {
            "slide_type": "summary",
            "title": "Next Steps",
            "content": [{"type": "bullet", "text": "Submit comments by March 1, 2025"}],
        },
    ],
    "metadata": {
        "document_title": "Medicare Program: CY 2025 Payment Policies",
        "citation": "89 FR 12345",
        "publication_date": "2024-11-01",
        "key_topics": ["payment", "physician fee schedule"],
    },
}

MEMO_MARKDOWN = """## Executive Summary
- Payment rates change on **January 1, 2025**.

## Key Changes
**Conversion factor:** decreases by 2.93%.
The rule finalizes updates to telehealth billing.

## Recommended Actions
- Update charge masters
- Brief the revenue cycle team
"""

CRON_SECRET = "test-cron-secret"


class FakeBedrockClient:
    """Stands in for the bedrock-runtime client; answers `converse` with canned text."""

    def __init__(self, responder: Callable[[str, str], str] | None = None) -> None:
        self.calls: list[dict[str, object]] = []
        self._responder = responder or default_responder

    def converse(self, **kwargs: object) -> dict[str, object]:
        self.calls.append(kwargs)
        messages = kwargs["messages"]
        user_prompt = messages[0]["content"][0]["text"]  # type: ignore[index]
        text = self._responder(str(kwargs["modelId"]), str(user_prompt))
        return {
            "output": {"message": {"role": "assistant", "content": [{"text": text}]}},
            "usage": {"inputTokens": 1200, "outputTokens": 340},
            "stopReason": "end_turn",
        }


def default_responder(model_id: str, user_prompt: str) -> str:
    if "slides is an array" in user_prompt:
        return json.dumps(SLIDE_DECK_PAYLOAD)
    return MEMO_MARKDOWN


def make_pdf_bytes(*pages: str) -> bytes:
    pdf = FPDF()
    pdf.set_font("Helvetica", size=12)
    for text in pages:
        pdf.add_page()
        pdf.multi_cell(0, 8, text)
    return bytes(pdf.output())


def registry_payload(*documents: dict[str, object], next_page_url: str | None = None) -> dict[str, object]:
    return {"count": len(documents), "results": list(documents), "next_page_url": next_page_url}


def registry_result(document_number: str, **overrides: object) -> dict[str, object]:
    result: dict[str, object] = {
        "document_number": document_number,
        "title": f"Rule {document_number}",
        "type": "Rule",
        "abstract": f"Abstract for {document_number}.",
        "publication_date": "2024-11-01",
        "pdf_url": f"https://www.govinfo.gov/content/pkg/FR/pdf/{document_number}.pdf",
        "html_url": f"https://www.federalregister.gov/d/{document_number}",
        "citation": "89 FR 12345",
        "significant": False,
        "agencies": [{"name": "Centers for Medicare & Medicaid Services"}],
    }
    result.update(overrides)
    return result


class RegistryStub:
    """httpx MockTransport handler serving documents.json and PDF downloads."""

    def __init__(self, documents: list[dict[str, object]] | None = None) -> None:
        self.documents = list(documents or [])
        self.pdf_text = "Medicare payment rule. The conversion factor decreases by 2.93 percent."
        self.fail_documents = False
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/documents.json"):
            if self.fail_documents:
                return httpx.Response(503, text="registry unavailable")
            return httpx.Response(200, json=registry_payload(*self.documents))
        if request.url.path.endswith(".pdf"):
            return httpx.Response(200, content=make_pdf_bytes(self.pdf_text))
        return httpx.Response(404, text="not found")

    def client(self) -> FederalRegisterClient:
        return FederalRegisterClient(settings=settings, client=httpx.Client(transport=httpx.MockTransport(self)))


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path):
    original = {
        "database_url": settings.database_url,
        "storage_root": settings.storage_root,
        "storage_backend": settings.storage_backend,
        "auth_enabled": settings.auth_enabled,
        "cron_secret": settings.cron_secret,
    }
    settings.database_url = f"sqlite:///{tmp_path}/test.db"
    settings.storage_root = str(tmp_path / "blobs")
    settings.storage_backend = "local"
    settings.auth_enabled = False
    settings.cron_secret = CRON_SECRET
    system_module._ready_cache.update({"ts": 0.0, "ok": None, "payload": None})
    init_db()
    yield
    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture()
def bedrock_client() -> FakeBedrockClient:
    return FakeBedrockClient()


@pytest.fixture()
def generator(bedrock_client: FakeBedrockClient) -> BedrockContentGenerator:
    return BedrockContentGenerator(settings=settings, client=bedrock_client)


@pytest.fixture()
def registry_stub() -> RegistryStub:
    return RegistryStub()


@pytest.fixture()
def registry_client(registry_stub: RegistryStub) -> FederalRegisterClient:
    return registry_stub.client()
