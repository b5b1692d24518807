from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
from typing import Mapping

from app.config import settings
from app.db import (
    NEWSROOM_SOURCE,
    REGISTRY_SOURCE,
    backfill_regulatory_document,
    find_regulatory_document,
    get_monitor_settings,
    insert_regulatory_document,
    list_active_agencies,
    record_poll_result,
)
from app.feeds import NewsroomFeedClient
from app.registry import FederalRegisterClient, RegistryFilters
from app.routing import route_document

logger = logging.getLogger("regbrief.poller")


@dataclass
class PollSummary:
    status: str
    agencies_checked: int = 0
    documents_found: int = 0
    new_documents: int = 0
    skipped_documents: int = 0
    base_outputs_created: int = 0
    successful_fetches: int = 0
    new_document_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


def _ingest_candidate(
    summary: PollSummary,
    *,
    source: str,
    external_id: str,
    fields: dict[str, object],
    auto_process: bool,
) -> None:
    summary.documents_found += 1
    existing = find_regulatory_document(source, external_id)
    if existing is not None:
        backfill_regulatory_document(str(existing["id"]), fields)
        summary.skipped_documents += 1
        return

    document = insert_regulatory_document(source, external_id, fields)
    if document is None:
        # Another poll inserted it between the lookup and the insert.
        summary.skipped_documents += 1
        return

    summary.new_documents += 1
    summary.new_document_ids.append(str(document["id"]))
    routing = route_document(document, auto_process=auto_process)
    summary.base_outputs_created += routing.base_outputs_created
    summary.errors.extend(f"{source}:{external_id} {error}" for error in routing.errors)


def _poll_registry(
    summary: PollSummary,
    agency: Mapping[str, object],
    monitor: Mapping[str, object],
    registry_client: FederalRegisterClient,
) -> None:
    per_page = int(monitor["poll_document_count"] if monitor["initialized"] else monitor["initial_document_count"])
    filters = RegistryFilters(
        agency_slugs=[str(agency["registry_slug"])],
        document_types=list(agency.get("document_types") or monitor.get("document_types") or []),
        significant_only=bool(monitor.get("only_significant")),
        per_page=per_page,
    )
    try:
        candidates = list(registry_client.iter_documents(filters, max_pages=settings.monitor_max_pages))
    except Exception as exc:
        logger.warning(
            "registry_fetch_failed",
            extra={"event": "registry_fetch_failed", "agency_slug": agency["registry_slug"], "error": str(exc)},
        )
        summary.errors.append(f"{agency['registry_slug']} registry: {exc}")
        return
    summary.successful_fetches += 1

    for candidate in candidates:
        fields = {**candidate.as_document_fields(), "agency_id": agency["id"]}
        try:
            _ingest_candidate(
                summary,
                source=REGISTRY_SOURCE,
                external_id=candidate.document_number,
                fields=fields,
                auto_process=bool(monitor.get("auto_process_new")),
            )
        except Exception as exc:
            logger.exception(
                "registry_candidate_failed",
                extra={"event": "registry_candidate_failed", "external_id": candidate.document_number},
            )
            summary.errors.append(f"{REGISTRY_SOURCE}:{candidate.document_number} {exc}")


def _poll_newsroom(
    summary: PollSummary,
    agency: Mapping[str, object],
    monitor: Mapping[str, object],
    feed_client: NewsroomFeedClient,
) -> None:
    feed_url = str(agency.get("newsroom_feed_url") or "")
    try:
        items = feed_client.fetch_items(feed_url)
    except Exception as exc:
        logger.warning(
            "newsroom_fetch_failed",
            extra={"event": "newsroom_fetch_failed", "feed_url": feed_url, "error": str(exc)},
        )
        summary.errors.append(f"{agency['registry_slug']} newsroom: {exc}")
        return
    summary.successful_fetches += 1

    limit = int(monitor["poll_document_count"] if monitor["initialized"] else monitor["initial_document_count"])
    for item in items[:limit]:
        fields = {**item.as_document_fields(), "agency_id": agency["id"]}
        try:
            _ingest_candidate(
                summary,
                source=NEWSROOM_SOURCE,
                external_id=item.guid,
                fields=fields,
                auto_process=bool(monitor.get("auto_process_new")),
            )
        except Exception as exc:
            logger.exception(
                "newsroom_candidate_failed",
                extra={"event": "newsroom_candidate_failed", "external_id": item.guid},
            )
            summary.errors.append(f"{NEWSROOM_SOURCE}:{item.guid} {exc}")


def _status_for(summary: PollSummary) -> str:
    if not summary.errors:
        return "success"
    if summary.successful_fetches == 0:
        return f"error: all sources failed ({len(summary.errors)} errors)"
    return f"partial success ({len(summary.errors)} errors)"


def _record_failure(exc: Exception) -> None:
    try:
        record_poll_result(status=f"error: {exc}"[:500], documents_found=None, mark_initialized=False)
    except Exception:
        logger.exception("poll_bookkeeping_failed", extra={"event": "poll_bookkeeping_failed"})


def run_poll_cycle(
    *,
    registry_client: FederalRegisterClient,
    feed_client: NewsroomFeedClient | None = None,
) -> PollSummary:
    """Detect new documents for every active agency and route them to subscribed tenants.

    Duplicate detection relies on the (source, external_id) unique index, so overlapping or
    retried runs never create a second document row.
    """
    try:
        monitor = get_monitor_settings()
        if not monitor["is_enabled"]:
            logger.info("poll_skipped_disabled", extra={"event": "poll_skipped_disabled"})
            return PollSummary(status="disabled")

        agencies = list_active_agencies(list(monitor.get("agency_slugs") or []) or None)
        summary = PollSummary(status="running", agencies_checked=len(agencies))
        for agency in agencies:
            _poll_registry(summary, agency, monitor, registry_client)
            if feed_client is not None and agency.get("newsroom_feed_url"):
                _poll_newsroom(summary, agency, monitor, feed_client)

        summary.status = _status_for(summary)
        record_poll_result(
            status=summary.status,
            documents_found=summary.documents_found,
            mark_initialized=summary.successful_fetches > 0,
        )
    except Exception as exc:
        logger.exception("poll_failed", extra={"event": "poll_failed"})
        _record_failure(exc)
        raise

    logger.info(
        "poll_completed",
        extra={
            "event": "poll_completed",
            "status": summary.status,
            "agencies_checked": summary.agencies_checked,
            "documents_found": summary.documents_found,
            "new_documents": summary.new_documents,
            "skipped_documents": summary.skipped_documents,
            "error_count": len(summary.errors),
        },
    )
    return summary
