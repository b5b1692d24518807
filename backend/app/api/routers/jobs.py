from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import Response

from app.api.services.runtime import (
    ContentGeneratorGetter,
    blob_download_response,
    pipeline_http_error,
    require_conversion_job,
    serialize_job_for_api,
)
from app.auth import current_user_id, require_authenticated_user
from app.config import settings
from app.db import list_conversion_jobs
from app.pipeline import ArtifactConflictError, ArtifactNotFoundError, process_conversion_job, submit_conversion_job
from app.rendering.slides import SlideDeckRenderer


def _looks_like_pdf(filename: str, content_type: str | None, content: bytes) -> bool:
    named_pdf = filename.lower().endswith(".pdf") or (content_type or "").lower() == "application/pdf"
    return named_pdf and content.startswith(b"%PDF")


def build_jobs_router(*, get_generator: ContentGeneratorGetter) -> APIRouter:
    router = APIRouter(prefix="/jobs", tags=["jobs"])

    @router.post("", status_code=201)
    async def upload_job(
        file: UploadFile = File(...),
        process_now: bool = Query(default=False),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        content = await file.read(settings.max_upload_file_bytes + 1)
        if len(content) > settings.max_upload_file_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"File exceeds max upload size of {settings.max_upload_file_bytes} bytes",
            )
        filename = file.filename or "upload.pdf"
        if not content:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")
        if not _looks_like_pdf(filename, file.content_type, content):
            raise HTTPException(status_code=400, detail="Only PDF uploads are supported")

        job = submit_conversion_job(owner_id=current_user_id(claims), filename=filename, content=content)
        if process_now:
            try:
                job = process_conversion_job(str(job["id"]), generator=get_generator())
            except (ArtifactConflictError, ArtifactNotFoundError) as exc:
                raise pipeline_http_error(exc) from exc
        return serialize_job_for_api(job)

    @router.get("")
    def list_jobs(
        limit: int = Query(default=50, ge=1, le=200),
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        jobs = list_conversion_jobs(current_user_id(claims), limit=limit)
        return {"jobs": [serialize_job_for_api(job) for job in jobs]}

    @router.get("/{job_id}")
    def get_job(
        job_id: str,
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        return serialize_job_for_api(require_conversion_job(job_id, owner_id=current_user_id(claims)))

    @router.get("/{job_id}/download", response_model=None)
    def download_job(
        job_id: str,
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> Response:
        job = require_conversion_job(job_id, owner_id=current_user_id(claims))
        return blob_download_response(
            job,
            filename=str(job.get("output_filename") or "presentation.pptx"),
            media_type=SlideDeckRenderer.content_type,
        )

    return router
