from __future__ import annotations

import logging
from typing import Callable, Mapping

from fastapi import HTTPException
from fastapi.responses import Response

from app.config import settings
from app.db import get_base_output, get_client_output, get_conversion_job, get_regulatory_document, get_tenant
from app.feeds import NewsroomFeedClient
from app.generation import BedrockContentGenerator
from app.pipeline.status import ArtifactConflictError, ArtifactNotFoundError, ArtifactStatus, BaseOutputNotReadyError
from app.registry import FederalRegisterClient
from app.rendering import get_renderer
from app.storage import StorageError, get_blob

logger = logging.getLogger("regbrief.api")

ContentGeneratorGetter = Callable[[], BedrockContentGenerator]
RegistryClientGetter = Callable[[], FederalRegisterClient]
FeedClientGetter = Callable[[], NewsroomFeedClient | None]

_ARTIFACT_PRIVATE_FIELDS = {"source_text"}
_JOB_PRIVATE_FIELDS = {"extracted_text", "input_path"}


def require_tenant(tenant_id: str) -> dict[str, object]:
    tenant = get_tenant(tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return tenant


def require_document(document_id: str) -> dict[str, object]:
    document = get_regulatory_document(document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


def require_base_output(base_output_id: str) -> dict[str, object]:
    base_output = get_base_output(base_output_id)
    if base_output is None:
        raise HTTPException(status_code=404, detail="Output not found")
    return base_output


def require_client_output(client_output_id: str) -> dict[str, object]:
    client_output = get_client_output(client_output_id)
    if client_output is None:
        raise HTTPException(status_code=404, detail="Client output not found")
    return client_output


def require_conversion_job(job_id: str, *, owner_id: str | None) -> dict[str, object]:
    job = get_conversion_job(job_id)
    if job is None or (owner_id is not None and job["owner_id"] != owner_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def serialize_artifact_for_api(artifact: Mapping[str, object]) -> dict[str, object]:
    payload = {key: value for key, value in artifact.items() if key not in _ARTIFACT_PRIVATE_FIELDS}
    payload["download_ready"] = artifact.get("status") == ArtifactStatus.COMPLETE.value and bool(
        artifact.get("output_path")
    )
    return payload


def serialize_job_for_api(job: Mapping[str, object]) -> dict[str, object]:
    payload = {key: value for key, value in job.items() if key not in _JOB_PRIVATE_FIELDS}
    payload["download_ready"] = job.get("status") == ArtifactStatus.COMPLETE.value and bool(job.get("output_path"))
    return payload


def pipeline_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ArtifactNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ArtifactConflictError, BaseOutputNotReadyError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def blob_download_response(
    record: Mapping[str, object],
    *,
    filename: str,
    media_type: str,
) -> Response:
    if record.get("status") != ArtifactStatus.COMPLETE.value or not record.get("output_path"):
        raise HTTPException(status_code=409, detail="Output is not available yet")
    try:
        content = get_blob(settings=settings, path=str(record["output_path"]))
    except StorageError as exc:
        logger.warning(
            "download_blob_missing",
            extra={"event": "download_blob_missing", "record_id": record.get("id"), "error": str(exc)},
        )
        raise HTTPException(status_code=409, detail="Output is not available yet") from exc
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def artifact_download_response(artifact: Mapping[str, object], *, output_type: str) -> Response:
    renderer = get_renderer(output_type)
    filename = str(artifact.get("output_path") or "").rsplit("/", 1)[-1] or f"output.{renderer.extension}"
    return blob_download_response(artifact, filename=filename, media_type=renderer.content_type)
