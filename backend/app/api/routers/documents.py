from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from app.api.contracts import CostEstimate, GenerateClientsRequest
from app.api.services.runtime import (
    ContentGeneratorGetter,
    RegistryClientGetter,
    artifact_download_response,
    pipeline_http_error,
    require_base_output,
    require_client_output,
    require_document,
    require_tenant,
    serialize_artifact_for_api,
)
from app.auth import current_user_id, require_authenticated_user
from app.config import settings
from app.db import (
    RESETTABLE_STATUSES,
    find_base_output,
    list_client_outputs,
    list_tenant_documents,
    reset_artifact,
    tenant_is_subscribed,
)
from app.generation import estimate_generation_cost
from app.pipeline import (
    ArtifactConflictError,
    ArtifactNotFoundError,
    ArtifactStatus,
    BaseOutputNotReadyError,
    generate_base_output,
    generate_client_outputs,
)
from app.pipeline.status import BASE_OUTPUTS, CLIENT_OUTPUTS


def _require_tenant_document(tenant_id: str, document_id: str) -> None:
    require_tenant(tenant_id)
    document = require_document(document_id)
    if not document.get("agency_id") or not tenant_is_subscribed(tenant_id, str(document["agency_id"])):
        raise HTTPException(status_code=404, detail="Document not found")


def build_documents_router(
    *,
    get_generator: ContentGeneratorGetter,
    get_registry_client: RegistryClientGetter,
) -> APIRouter:
    router = APIRouter()

    @router.get("/tenants/{tenant_id}/documents")
    def list_documents_for_tenant(
        tenant_id: str,
        limit: int = Query(default=50, ge=1, le=200),
        offset: int = Query(default=0, ge=0),
        status: ArtifactStatus | None = Query(default=None),
    ) -> dict[str, object]:
        require_tenant(tenant_id)
        documents = list_tenant_documents(
            tenant_id,
            limit=limit,
            offset=offset,
            status=status.value if status is not None else None,
        )
        return {"tenant_id": tenant_id, "documents": documents, "limit": limit, "offset": offset}

    @router.get("/documents/{document_id}")
    def get_document(document_id: str) -> dict[str, object]:
        return require_document(document_id)

    @router.post("/tenants/{tenant_id}/documents/{document_id}/generate-base")
    def generate_base(tenant_id: str, document_id: str) -> dict[str, object]:
        _require_tenant_document(tenant_id, document_id)
        try:
            outcome = generate_base_output(
                document_id=document_id,
                tenant_id=tenant_id,
                generator=get_generator(),
                registry_client=get_registry_client(),
            )
        except (ArtifactConflictError, ArtifactNotFoundError) as exc:
            raise pipeline_http_error(exc) from exc

        output = serialize_artifact_for_api(outcome.output)
        return {
            "output": output,
            "already_complete": outcome.already_complete,
            "message": "Already generated" if outcome.already_complete else f"Base output {output['status']}",
        }

    @router.post("/tenants/{tenant_id}/documents/{document_id}/generate-clients")
    def generate_clients(
        tenant_id: str,
        document_id: str,
        payload: GenerateClientsRequest,
        claims: dict[str, Any] | None = Depends(require_authenticated_user),
    ) -> dict[str, object]:
        _require_tenant_document(tenant_id, document_id)
        base_output = find_base_output(document_id, tenant_id)
        if base_output is None:
            raise HTTPException(status_code=409, detail="Base output must be generated before client outputs")
        try:
            results = generate_client_outputs(
                base_output_id=str(base_output["id"]),
                client_ids=payload.client_ids,
                generator=get_generator(),
                selected_by=current_user_id(claims),
            )
        except (ArtifactNotFoundError, BaseOutputNotReadyError) as exc:
            raise pipeline_http_error(exc) from exc

        return {
            "base_output_id": base_output["id"],
            "results": [result.as_dict() for result in results],
            "succeeded": sum(1 for result in results if result.status == "success"),
            "failed": sum(1 for result in results if result.status == "error"),
        }

    @router.get("/outputs/{output_id}")
    def get_output(output_id: str) -> dict[str, object]:
        base_output = require_base_output(output_id)
        return {
            **serialize_artifact_for_api(base_output),
            "client_outputs": [serialize_artifact_for_api(item) for item in list_client_outputs(output_id)],
        }

    @router.get("/outputs/{output_id}/download", response_model=None)
    def download_output(output_id: str) -> Response:
        base_output = require_base_output(output_id)
        return artifact_download_response(base_output, output_type=str(base_output["output_type"]))

    @router.post("/outputs/{output_id}/reset")
    def reset_output(output_id: str) -> dict[str, object]:
        require_base_output(output_id)
        if not reset_artifact(BASE_OUTPUTS, output_id, from_statuses=RESETTABLE_STATUSES):
            raise HTTPException(status_code=409, detail="Output cannot be reset in its current state")
        return serialize_artifact_for_api(require_base_output(output_id))

    @router.get("/client-outputs/{client_output_id}")
    def get_client_output_status(client_output_id: str) -> dict[str, object]:
        return serialize_artifact_for_api(require_client_output(client_output_id))

    @router.get("/client-outputs/{client_output_id}/download", response_model=None)
    def download_client_output(client_output_id: str) -> Response:
        client_output = require_client_output(client_output_id)
        base_output = require_base_output(str(client_output["base_output_id"]))
        return artifact_download_response(client_output, output_type=str(base_output["output_type"]))

    @router.post("/client-outputs/{client_output_id}/reset")
    def reset_client_output(client_output_id: str) -> dict[str, object]:
        require_client_output(client_output_id)
        if not reset_artifact(CLIENT_OUTPUTS, client_output_id, from_statuses=RESETTABLE_STATUSES):
            raise HTTPException(status_code=409, detail="Client output cannot be reset in its current state")
        return serialize_artifact_for_api(require_client_output(client_output_id))

    @router.get("/cost-estimate", response_model=CostEstimate)
    def cost_estimate(client_count: int = Query(default=0, ge=0, le=500)) -> CostEstimate:
        return CostEstimate(client_count=client_count, **estimate_generation_cost(client_count, settings=settings))

    return router
