from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
from uuid import uuid4

from app.config import settings
from app.db import (
    claim_conversion_job,
    complete_conversion_job,
    create_conversion_job,
    fail_conversion_job,
    get_conversion_job,
    oldest_pending_conversion_job_id,
    store_conversion_job_text,
)
from app.extraction import extract_pdf_text
from app.generation import BedrockContentGenerator
from app.observability import log_duration
from app.pipeline.status import ArtifactConflictError, ArtifactNotFoundError, truncate_error
from app.rendering import DocumentHeader, RenderContext, parse_slide_deck, render_slide_deck
from app.rendering.slides import SlideDeckRenderer
from app.storage import get_blob, put_blob, safe_filename

logger = logging.getLogger("regbrief.pipeline.conversion")


def submit_conversion_job(*, owner_id: str, filename: str, content: bytes) -> dict[str, object]:
    """Store an uploaded PDF and queue it for slide-deck conversion."""
    input_filename = safe_filename(filename, fallback="upload.pdf")
    input_path = put_blob(
        settings=settings,
        path=f"{safe_filename(owner_id, fallback='anonymous')}/uploads/{uuid4()}_{input_filename}",
        content=content,
        content_type="application/pdf",
    )
    job = create_conversion_job(owner_id, input_filename, input_path, len(content))
    logger.info(
        "conversion_job_created",
        extra={"event": "conversion_job_created", "job_id": job["id"], "size_bytes": len(content)},
    )
    return job


def process_conversion_job(
    job_id: str,
    *,
    generator: BedrockContentGenerator,
    instructions: str | None = None,
) -> dict[str, object]:
    job = get_conversion_job(job_id)
    if job is None:
        raise ArtifactNotFoundError(f"Conversion job '{job_id}' not found.")
    if not claim_conversion_job(job_id):
        raise ArtifactConflictError(f"Conversion job '{job_id}' is not pending (status={job['status']}).")

    try:
        with log_duration(logger, "conversion_job", job_id=job_id) as log_fields:
            extracted = extract_pdf_text(get_blob(settings=settings, path=str(job["input_path"])))
            store_conversion_job_text(job_id, extracted.text, extracted.page_count)

            result = generator.generate_slide_deck(extracted.text, instructions)
            deck = parse_slide_deck(result.text)
            content = render_slide_deck(
                deck,
                context=RenderContext(
                    document=DocumentHeader(
                        title=deck.metadata.document_title,
                        citation=deck.metadata.citation,
                        publication_date=deck.metadata.publication_date,
                    ),
                    footer_label=settings.registry_label,
                ),
            )

            timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            stem = safe_filename(Path(str(job["input_filename"])).stem, fallback="document")
            output_filename = f"{timestamp}_{stem}_presentation.pptx"
            output_path = put_blob(
                settings=settings,
                path=f"{safe_filename(str(job['owner_id']), fallback='anonymous')}/{output_filename}",
                content=content,
                content_type=SlideDeckRenderer.content_type,
            )
            complete_conversion_job(
                job_id,
                output_filename=output_filename,
                output_path=output_path,
                output_size_bytes=len(content),
            )
            log_fields.update({"page_count": extracted.page_count, "slide_count": len(deck.slides)})
    except Exception as exc:
        fail_conversion_job(job_id, truncate_error(f"{type(exc).__name__}: {exc}"))

    refreshed = get_conversion_job(job_id)
    assert refreshed is not None
    return refreshed


def process_next_conversion_job(*, generator: BedrockContentGenerator) -> dict[str, object] | None:
    job_id = oldest_pending_conversion_job_id()
    if job_id is None:
        return None
    try:
        return process_conversion_job(job_id, generator=generator)
    except ArtifactConflictError:
        # Claimed by a concurrent trigger between the lookup and the claim.
        return None
