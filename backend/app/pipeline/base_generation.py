from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Mapping

from app.config import settings
from app.db import (
    claim_artifact,
    complete_artifact,
    fail_artifact,
    find_base_output,
    get_base_output,
    insert_base_output,
    list_pending_base_output_ids,
    reset_artifact,
)
from app.extraction import ExtractionError, extract_pdf_text
from app.generation import BedrockContentGenerator
from app.observability import log_duration
from app.pipeline.context import (
    build_render_context,
    document_blob_key,
    load_branding,
    load_document,
    load_tenant,
)
from app.pipeline.status import (
    BASE_OUTPUTS,
    ArtifactConflictError,
    ArtifactNotFoundError,
    ArtifactStatus,
    initial_status,
    truncate_error,
)
from app.registry import FederalRegisterClient
from app.rendering import get_renderer
from app.storage import blob_exists, put_blob

logger = logging.getLogger("regbrief.pipeline.base")


@dataclass(frozen=True)
class BaseGenerationOutcome:
    output: dict[str, object]
    already_complete: bool = False


def load_source_text(document: Mapping[str, object], registry_client: FederalRegisterClient) -> str:
    pdf_url = str(document.get("source_pdf_url") or "").strip()
    if pdf_url:
        return extract_pdf_text(registry_client.download_pdf(pdf_url)).text

    # Newsroom items often link to an HTML page only; the abstract is all we have.
    abstract = str(document.get("abstract") or "").strip()
    if abstract:
        return f"{document.get('title') or ''}\n\n{abstract}".strip()
    raise ExtractionError("Document has neither a PDF link nor an abstract to generate from.")


def base_output_path(tenant_id: str, document: Mapping[str, object], extension: str) -> str:
    return f"{tenant_id}/{document_blob_key(document)}_base.{extension}"


def _find_or_create_base_output(document: Mapping[str, object], tenant: Mapping[str, object]) -> dict[str, object]:
    document_id = str(document["id"])
    tenant_id = str(tenant["id"])
    existing = find_base_output(document_id, tenant_id)
    if existing is not None:
        return existing
    status = initial_status(tenant_auto_process=bool(tenant.get("auto_process")))
    created = insert_base_output(document_id, tenant_id, str(tenant["output_type"]), status.value)
    if created is not None:
        return created
    existing = find_base_output(document_id, tenant_id)
    if existing is None:
        raise RuntimeError(f"Base output for document '{document_id}' and tenant '{tenant_id}' vanished.")
    return existing


def _prepare_for_processing(base_output: Mapping[str, object]) -> dict[str, object] | None:
    """Apply the re-trigger rules. Returns the artifact when it is already complete."""
    base_output_id = str(base_output["id"])
    status = str(base_output["status"])
    if status == ArtifactStatus.PROCESSING.value:
        raise ArtifactConflictError(f"Base output '{base_output_id}' is already processing.")
    if status == ArtifactStatus.COMPLETE.value:
        if blob_exists(settings=settings, path=base_output.get("output_path")):
            return dict(base_output)
        logger.warning(
            "base_output_blob_missing",
            extra={"event": "base_output_blob_missing", "base_output_id": base_output_id},
        )
        reset_artifact(BASE_OUTPUTS, base_output_id, from_statuses=(ArtifactStatus.COMPLETE.value,))
    elif status == ArtifactStatus.FAILED.value:
        reset_artifact(BASE_OUTPUTS, base_output_id, from_statuses=(ArtifactStatus.FAILED.value,))

    if not claim_artifact(BASE_OUTPUTS, base_output_id):
        current = get_base_output(base_output_id)
        raise ArtifactConflictError(
            f"Base output '{base_output_id}' could not be claimed (status={current['status'] if current else 'missing'})."
        )
    return None


def run_base_generation(
    base_output_id: str,
    *,
    generator: BedrockContentGenerator,
    registry_client: FederalRegisterClient,
) -> BaseGenerationOutcome:
    """Generate and store the tenant-level artifact for one base output row.

    Raises ArtifactConflictError when another worker holds the row. Every other failure is
    recorded on the row as `failed` and the outcome is returned normally.
    """
    base_output = get_base_output(base_output_id)
    if base_output is None:
        raise ArtifactNotFoundError(f"Base output '{base_output_id}' not found.")

    completed = _prepare_for_processing(base_output)
    if completed is not None:
        return BaseGenerationOutcome(output=completed, already_complete=True)

    try:
        with log_duration(logger, "base_generation", base_output_id=base_output_id) as log_fields:
            document = load_document(str(base_output["regulatory_document_id"]))
            tenant = load_tenant(str(base_output["tenant_id"]))
            renderer = get_renderer(str(base_output["output_type"]))

            source_text = load_source_text(document, registry_client)
            result = generator.generate_base(document, tenant, source_text)
            content = renderer.render(
                result.text,
                context=build_render_context(document, load_branding(tenant)),
            )
            output_path = put_blob(
                settings=settings,
                path=base_output_path(str(tenant["id"]), document, renderer.extension),
                content=content,
                content_type=renderer.content_type,
            )
            complete_artifact(
                BASE_OUTPUTS,
                base_output_id,
                output_path=output_path,
                source_text=result.text,
                model_used=result.model_used,
                tokens_input=result.tokens_in,
                tokens_output=result.tokens_out,
            )
            log_fields.update({"output_path": output_path, "tokens_in": result.tokens_in, "tokens_out": result.tokens_out})
    except Exception as exc:
        fail_artifact(BASE_OUTPUTS, base_output_id, truncate_error(f"{type(exc).__name__}: {exc}"))

    refreshed = get_base_output(base_output_id)
    assert refreshed is not None
    return BaseGenerationOutcome(output=refreshed)


def generate_base_output(
    *,
    document_id: str,
    tenant_id: str,
    generator: BedrockContentGenerator,
    registry_client: FederalRegisterClient,
) -> BaseGenerationOutcome:
    document = load_document(document_id)
    tenant = load_tenant(tenant_id)
    base_output = _find_or_create_base_output(document, tenant)
    return run_base_generation(str(base_output["id"]), generator=generator, registry_client=registry_client)


def process_pending_base_outputs(
    limit: int,
    *,
    generator: BedrockContentGenerator,
    registry_client: FederalRegisterClient,
) -> list[dict[str, object]]:
    processed: list[dict[str, object]] = []
    for base_output_id in list_pending_base_output_ids(limit):
        try:
            outcome = run_base_generation(base_output_id, generator=generator, registry_client=registry_client)
        except ArtifactConflictError:
            logger.info(
                "pending_base_output_claimed_elsewhere",
                extra={"event": "pending_base_output_claimed_elsewhere", "base_output_id": base_output_id},
            )
            continue
        processed.append(
            {
                "base_output_id": base_output_id,
                "status": outcome.output["status"],
                "error_message": outcome.output.get("error_message"),
            }
        )
    return processed
