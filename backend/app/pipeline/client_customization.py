from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
import logging
from typing import Literal, Mapping

from app.config import settings
from app.db import (
    claim_artifact,
    complete_artifact,
    fail_artifact,
    get_base_output,
    get_client_output,
    list_active_clients,
    reset_artifact,
    select_client_output,
)
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
    CLIENT_OUTPUTS,
    ArtifactNotFoundError,
    ArtifactStatus,
    BaseOutputNotReadyError,
    truncate_error,
)
from app.rendering import ArtifactRenderer, Branding, get_renderer
from app.storage import blob_exists, put_blob

logger = logging.getLogger("regbrief.pipeline.clients")


@dataclass(frozen=True)
class ClientGenerationResult:
    client_id: str
    client_name: str
    status: Literal["success", "error"]
    client_output_id: str | None = None
    output_path: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class _CustomizationJob:
    base_output: Mapping[str, object]
    document: Mapping[str, object]
    tenant: Mapping[str, object]
    branding: Branding
    renderer: ArtifactRenderer


def client_output_path(tenant_id: str, document: Mapping[str, object], client_id: str, extension: str) -> str:
    return f"{tenant_id}/{document_blob_key(document)}_client_{client_id}.{extension}"


def _customize_one(
    job: _CustomizationJob,
    client: Mapping[str, object],
    client_output_id: str,
    generator: BedrockContentGenerator,
) -> ClientGenerationResult:
    client_id = str(client["id"])
    client_name = str(client["name"])

    def error(message: str) -> ClientGenerationResult:
        return ClientGenerationResult(
            client_id=client_id,
            client_name=client_name,
            status="error",
            client_output_id=client_output_id,
            error=message,
        )

    row = get_client_output(client_output_id)
    if row is None:
        return error("Client output row disappeared.")
    status = str(row["status"])
    if status == ArtifactStatus.PROCESSING.value:
        return error("Customization is already in progress for this client.")
    if status == ArtifactStatus.COMPLETE.value:
        if blob_exists(settings=settings, path=row.get("output_path")):
            return ClientGenerationResult(
                client_id=client_id,
                client_name=client_name,
                status="success",
                client_output_id=client_output_id,
                output_path=str(row["output_path"]),
            )
        reset_artifact(CLIENT_OUTPUTS, client_output_id, from_statuses=(ArtifactStatus.COMPLETE.value,))
    elif status == ArtifactStatus.FAILED.value:
        reset_artifact(CLIENT_OUTPUTS, client_output_id, from_statuses=(ArtifactStatus.FAILED.value,))

    if not claim_artifact(CLIENT_OUTPUTS, client_output_id):
        return error("Client output could not be claimed for processing.")

    try:
        with log_duration(
            logger,
            "client_customization",
            client_output_id=client_output_id,
            client_id=client_id,
        ) as log_fields:
            result = generator.generate_client_customization(
                str(job.base_output["source_text"]),
                client,
                job.document,
                job.tenant,
            )
            content = job.renderer.render(
                result.text,
                context=build_render_context(job.document, job.branding, client_name=client_name),
            )
            output_path = put_blob(
                settings=settings,
                path=client_output_path(
                    str(job.tenant["id"]),
                    job.document,
                    client_id,
                    job.renderer.extension,
                ),
                content=content,
                content_type=job.renderer.content_type,
            )
            complete_artifact(
                CLIENT_OUTPUTS,
                client_output_id,
                output_path=output_path,
                source_text=result.text,
                model_used=result.model_used,
                tokens_input=result.tokens_in,
                tokens_output=result.tokens_out,
            )
            log_fields["output_path"] = output_path
    except Exception as exc:
        message = truncate_error(f"{type(exc).__name__}: {exc}")
        fail_artifact(CLIENT_OUTPUTS, client_output_id, message)
        return error(message)

    return ClientGenerationResult(
        client_id=client_id,
        client_name=client_name,
        status="success",
        client_output_id=client_output_id,
        output_path=output_path,
    )


def generate_client_outputs(
    *,
    base_output_id: str,
    client_ids: list[str],
    generator: BedrockContentGenerator,
    selected_by: str | None = None,
    max_workers: int | None = None,
) -> list[ClientGenerationResult]:
    """Customize a complete base output for each selected client.

    Clients run concurrently and independently: one failure is recorded on that client's row
    only. Results come back in request order. Unknown, inactive or foreign clients are ignored.
    """
    base_output = get_base_output(base_output_id)
    if base_output is None:
        raise ArtifactNotFoundError(f"Base output '{base_output_id}' not found.")
    if base_output["status"] != ArtifactStatus.COMPLETE.value or not base_output.get("source_text"):
        raise BaseOutputNotReadyError(
            f"Base output '{base_output_id}' must be complete before client customization "
            f"(status={base_output['status']})."
        )

    tenant = load_tenant(str(base_output["tenant_id"]))
    requested = list(dict.fromkeys(client_ids))
    clients_by_id = {str(client["id"]): client for client in list_active_clients(str(tenant["id"]), requested)}
    clients = [clients_by_id[client_id] for client_id in requested if client_id in clients_by_id]
    if not clients:
        raise ArtifactNotFoundError("No valid active clients were selected for this tenant.")

    document = load_document(str(base_output["regulatory_document_id"]))
    job = _CustomizationJob(
        base_output=base_output,
        document=document,
        tenant=tenant,
        branding=load_branding(tenant),
        renderer=get_renderer(str(base_output["output_type"])),
    )
    selections = [
        (client, str(select_client_output(base_output_id, str(client["id"]), selected_by)["id"]))
        for client in clients
    ]

    workers = max(1, min(max_workers or settings.customization_max_workers, len(selections)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="client-customization") as pool:
        futures = [
            pool.submit(_customize_one, job, client, client_output_id, generator)
            for client, client_output_id in selections
        ]
        results: list[ClientGenerationResult] = []
        for (client, client_output_id), future in zip(selections, futures):
            try:
                results.append(future.result())
            except Exception as exc:
                logger.exception(
                    "client_customization_crashed",
                    extra={"event": "client_customization_crashed", "client_output_id": client_output_id},
                )
                results.append(
                    ClientGenerationResult(
                        client_id=str(client["id"]),
                        client_name=str(client["name"]),
                        status="error",
                        client_output_id=client_output_id,
                        error=truncate_error(str(exc)),
                    )
                )

    logger.info(
        "client_outputs_generated",
        extra={
            "event": "client_outputs_generated",
            "base_output_id": base_output_id,
            "requested": len(client_ids),
            "succeeded": sum(1 for result in results if result.status == "success"),
            "failed": sum(1 for result in results if result.status == "error"),
        },
    )
    return results
