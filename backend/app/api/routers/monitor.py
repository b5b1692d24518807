from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
import logging

from fastapi import APIRouter, HTTPException, Query

from app.api.contracts import MonitorSettingsUpdate
from app.api.services.runtime import (
    ContentGeneratorGetter,
    FeedClientGetter,
    RegistryClientGetter,
    require_document,
    serialize_job_for_api,
)
from app.config import settings
from app.db import (
    count_regulatory_documents,
    get_monitor_settings,
    list_recent_regulatory_documents,
    update_monitor_settings,
)
from app.pipeline import process_next_conversion_job, process_pending_base_outputs
from app.poller import run_poll_cycle
from app.registry import RegistryError
from app.routing import route_document

logger = logging.getLogger("regbrief.api.monitor")


def _start_of_today_iso() -> str:
    return datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0).isoformat()


def build_cron_router(
    *,
    get_generator: ContentGeneratorGetter,
    get_registry_client: RegistryClientGetter,
    get_feed_client: FeedClientGetter,
) -> APIRouter:
    router = APIRouter(prefix="/cron", tags=["cron"])

    @router.post("/poll")
    def cron_poll() -> dict[str, object]:
        summary = run_poll_cycle(registry_client=get_registry_client(), feed_client=get_feed_client())
        return summary.as_dict()

    @router.post("/process-outputs")
    def cron_process_outputs(limit: int | None = Query(default=None, ge=1, le=50)) -> dict[str, object]:
        results = process_pending_base_outputs(
            limit or settings.process_outputs_batch_size,
            generator=get_generator(),
            registry_client=get_registry_client(),
        )
        return {
            "processed": len(results),
            "completed": sum(1 for item in results if item["status"] == "complete"),
            "failed": sum(1 for item in results if item["status"] == "failed"),
            "results": results,
        }

    @router.post("/process-jobs")
    def cron_process_jobs() -> dict[str, object]:
        job = process_next_conversion_job(generator=get_generator())
        if job is None:
            return {"processed": False, "job": None}
        return {"processed": True, "job": serialize_job_for_api(job)}

    return router


def build_admin_router(
    *,
    get_registry_client: RegistryClientGetter,
    get_feed_client: FeedClientGetter,
) -> APIRouter:
    router = APIRouter(prefix="/admin", tags=["admin"])

    @router.get("/monitor/status")
    def monitor_status() -> dict[str, object]:
        return {
            "settings": get_monitor_settings(),
            "recent_documents": list_recent_regulatory_documents(limit=10),
            "total_documents": count_regulatory_documents(),
            "documents_today": count_regulatory_documents(detected_since=_start_of_today_iso()),
        }

    @router.patch("/monitor/settings")
    def patch_monitor_settings(payload: MonitorSettingsUpdate) -> dict[str, object]:
        changes = payload.model_dump(exclude_none=True)
        if not changes:
            return get_monitor_settings()
        updated = update_monitor_settings(changes)
        logger.info(
            "monitor_settings_updated",
            extra={"event": "monitor_settings_updated", "fields": sorted(changes)},
        )
        return updated

    @router.post("/monitor/check-now")
    def monitor_check_now() -> dict[str, object]:
        try:
            summary = run_poll_cycle(registry_client=get_registry_client(), feed_client=get_feed_client())
        except RegistryError as exc:
            raise HTTPException(status_code=502, detail=f"Registry request failed: {exc}") from exc
        return summary.as_dict()

    @router.post("/documents/{document_id}/route")
    def reroute_document(document_id: str) -> dict[str, object]:
        document = require_document(document_id)
        auto_process = bool(get_monitor_settings().get("auto_process_new", True))
        return asdict(route_document(document, auto_process=auto_process))

    return router
