from __future__ import annotations

import httpx
import pytest

from app.config import settings
from app.registry import FederalRegisterClient, RegistryDocument, RegistryError, RegistryFilters, build_query_params

from conftest import registry_payload, registry_result


def _client(handler) -> FederalRegisterClient:
    return FederalRegisterClient(settings=settings, client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_build_query_params_encodes_filters() -> None:
    params = build_query_params(
        RegistryFilters(
            agency_slugs=["centers-for-medicare-medicaid-services"],
            document_types=["RULE", "PRORULE"],
            significant_only=True,
            published_since="2024-10-01",
            per_page=5,
        )
    )

    assert ("conditions[agencies][]", "centers-for-medicare-medicaid-services") in params
    assert ("conditions[type][]", "RULE") in params
    assert ("conditions[type][]", "PRORULE") in params
    assert ("conditions[significant]", "1") in params
    assert ("conditions[publication_date][gte]", "2024-10-01") in params
    assert ("order", "newest") in params
    assert ("per_page", "5") in params
    assert ("fields[]", "document_number") in params


def test_fetch_documents_parses_results() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/documents.json"
        return httpx.Response(200, json=registry_payload(registry_result("2024-00123", significant=True)))

    page = _client(handler).fetch_documents(RegistryFilters(agency_slugs=["cms"]))

    assert page.count == 1
    document = page.results[0]
    assert document.document_number == "2024-00123"
    assert document.significant is True
    assert document.agency_names == ["Centers for Medicare & Medicaid Services"]
    fields = document.as_document_fields()
    assert fields["source_pdf_url"].endswith("2024-00123.pdf")
    assert fields["is_significant"] is True


def test_iter_documents_follows_next_page_up_to_max_pages() -> None:
    pages_requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = request.url.params["page"]
        pages_requested.append(page)
        return httpx.Response(
            200,
            json=registry_payload(registry_result(f"2024-0{page}"), next_page_url="https://example.test/next"),
        )

    documents = list(_client(handler).iter_documents(RegistryFilters(), max_pages=2))

    assert [document.document_number for document in documents] == ["2024-01", "2024-02"]
    assert pages_requested == ["1", "2"]


def test_http_errors_raise_registry_error_with_status() -> None:
    client = _client(lambda request: httpx.Response(503, text="maintenance"))

    with pytest.raises(RegistryError) as excinfo:
        client.fetch_documents(RegistryFilters())

    assert excinfo.value.status_code == 503
    assert excinfo.value.body == "maintenance"


def test_transport_errors_raise_registry_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RegistryError, match="connection refused"):
        _client(handler).download_pdf("https://www.govinfo.gov/x.pdf")


def test_download_pdf_rejects_empty_body() -> None:
    with pytest.raises(RegistryError, match="empty body"):
        _client(lambda request: httpx.Response(200, content=b"")).download_pdf("https://www.govinfo.gov/x.pdf")


def test_result_without_document_number_is_rejected() -> None:
    with pytest.raises(RegistryError):
        RegistryDocument.from_payload({"title": "No number"})
