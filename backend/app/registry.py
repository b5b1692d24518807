from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Iterator

import httpx

from app.config import Settings

logger = logging.getLogger("regbrief.registry")

DOCUMENT_FIELDS = (
    "document_number",
    "title",
    "type",
    "abstract",
    "publication_date",
    "pdf_url",
    "html_url",
    "citation",
    "significant",
    "agencies",
)
_ERROR_BODY_MAX_CHARS = 500


class RegistryError(RuntimeError):
    """Raised when a publication source cannot be fetched or returns malformed data."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class RegistryFilters:
    agency_slugs: list[str] = field(default_factory=list)
    document_types: list[str] = field(default_factory=list)
    significant_only: bool = False
    published_since: str | None = None
    published_until: str | None = None
    per_page: int = 20
    page: int = 1


@dataclass(frozen=True)
class RegistryDocument:
    document_number: str
    title: str
    document_type: str | None
    abstract: str | None
    publication_date: str | None
    pdf_url: str | None
    html_url: str | None
    citation: str | None
    significant: bool
    agency_names: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RegistryDocument":
        number = str(payload.get("document_number") or "").strip()
        if not number:
            raise RegistryError("Registry result is missing document_number.")
        agencies = payload.get("agencies") or []
        agency_names = [
            str(agency.get("name") or agency.get("raw_name") or "").strip()
            for agency in agencies
            if isinstance(agency, dict)
        ]
        return cls(
            document_number=number,
            title=str(payload.get("title") or number),
            document_type=payload.get("type"),
            abstract=payload.get("abstract"),
            publication_date=payload.get("publication_date"),
            pdf_url=payload.get("pdf_url"),
            html_url=payload.get("html_url"),
            citation=payload.get("citation"),
            significant=bool(payload.get("significant")),
            agency_names=[name for name in agency_names if name],
        )

    def as_document_fields(self) -> dict[str, object]:
        return {
            "title": self.title,
            "abstract": self.abstract,
            "publication_date": self.publication_date,
            "source_pdf_url": self.pdf_url,
            "source_html_url": self.html_url,
            "citation": self.citation,
            "document_type": self.document_type,
            "is_significant": self.significant,
        }


@dataclass(frozen=True)
class RegistryPage:
    count: int
    results: list[RegistryDocument]
    next_page_url: str | None = None


def build_query_params(filters: RegistryFilters) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    for slug in filters.agency_slugs:
        params.append(("conditions[agencies][]", slug))
    for document_type in filters.document_types:
        params.append(("conditions[type][]", document_type))
    if filters.significant_only:
        params.append(("conditions[significant]", "1"))
    if filters.published_since:
        params.append(("conditions[publication_date][gte]", filters.published_since))
    if filters.published_until:
        params.append(("conditions[publication_date][lte]", filters.published_until))
    params.append(("order", "newest"))
    params.append(("per_page", str(filters.per_page)))
    params.append(("page", str(filters.page)))
    for name in DOCUMENT_FIELDS:
        params.append(("fields[]", name))
    return params


class FederalRegisterClient:
    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.Client(
            timeout=settings.registry_timeout_seconds,
            follow_redirects=True,
            headers={"Accept": "application/json"},
        )

    def fetch_documents(self, filters: RegistryFilters) -> RegistryPage:
        url = f"{self._settings.registry_base_url.rstrip('/')}/documents.json"
        response = self._get(url, params=build_query_params(filters))
        try:
            payload = response.json()
        except ValueError as exc:
            raise RegistryError(f"Registry returned malformed JSON: {exc}", status_code=response.status_code) from exc
        if not isinstance(payload, dict):
            raise RegistryError("Registry response must be a JSON object.", status_code=response.status_code)

        raw_results = payload.get("results") or []
        if not isinstance(raw_results, list):
            raise RegistryError("Registry response 'results' must be a list.", status_code=response.status_code)

        results = [RegistryDocument.from_payload(item) for item in raw_results if isinstance(item, dict)]
        logger.info(
            "registry_documents_fetched",
            extra={
                "event": "registry_documents_fetched",
                "agency_slugs": filters.agency_slugs,
                "page": filters.page,
                "result_count": len(results),
                "total_count": payload.get("count"),
            },
        )
        return RegistryPage(
            count=int(payload.get("count") or 0),
            results=results,
            next_page_url=payload.get("next_page_url"),
        )

    def iter_documents(self, filters: RegistryFilters, *, max_pages: int = 1) -> Iterator[RegistryDocument]:
        page_number = filters.page
        for _ in range(max(max_pages, 1)):
            page = self.fetch_documents(
                RegistryFilters(
                    agency_slugs=filters.agency_slugs,
                    document_types=filters.document_types,
                    significant_only=filters.significant_only,
                    published_since=filters.published_since,
                    published_until=filters.published_until,
                    per_page=filters.per_page,
                    page=page_number,
                )
            )
            yield from page.results
            if not page.next_page_url or not page.results:
                return
            page_number += 1

    def download_pdf(self, url: str) -> bytes:
        response = self._get(url, headers={"Accept": "application/pdf"})
        content = response.content
        if not content:
            raise RegistryError(f"PDF download returned an empty body: {url}", status_code=response.status_code)
        logger.info(
            "registry_pdf_downloaded",
            extra={"event": "registry_pdf_downloaded", "url": url, "size_bytes": len(content)},
        )
        return content

    def _get(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.get(url, **kwargs)
        except httpx.HTTPError as exc:
            raise RegistryError(f"Request to '{url}' failed: {exc}") from exc
        if response.status_code >= 400:
            body = response.text[:_ERROR_BODY_MAX_CHARS]
            raise RegistryError(
                f"Request to '{url}' returned HTTP {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )
        return response
