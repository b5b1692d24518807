from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Mapping

from app.db import (
    find_base_output,
    insert_base_output,
    insert_client_output_placeholders,
    list_active_clients,
    list_subscribed_tenants,
)
from app.pipeline.status import initial_status

logger = logging.getLogger("regbrief.routing")


@dataclass
class RoutingResult:
    document_id: str
    tenant_ids: list[str] = field(default_factory=list)
    base_outputs_created: int = 0
    base_outputs_existing: int = 0
    client_placeholders_created: int = 0
    errors: list[str] = field(default_factory=list)


def _route_to_tenant(
    document: Mapping[str, object],
    tenant: Mapping[str, object],
    result: RoutingResult,
    *,
    auto_process: bool,
) -> None:
    document_id = str(document["id"])
    tenant_id = str(tenant["id"])

    base_output = find_base_output(document_id, tenant_id)
    if base_output is None:
        status = initial_status(tenant_auto_process=bool(tenant.get("auto_process")), source_auto_process=auto_process)
        base_output = insert_base_output(document_id, tenant_id, str(tenant["output_type"]), status.value)
        if base_output is None:
            # Lost a race with another router; the row it created is the one we use.
            base_output = find_base_output(document_id, tenant_id)
            result.base_outputs_existing += 1
        else:
            result.base_outputs_created += 1
    else:
        result.base_outputs_existing += 1

    if base_output is None:
        raise RuntimeError(f"Base output for document '{document_id}' and tenant '{tenant_id}' could not be read back.")

    if tenant.get("has_client_roster"):
        client_ids = [str(client["id"]) for client in list_active_clients(tenant_id)]
        result.client_placeholders_created += insert_client_output_placeholders(str(base_output["id"]), client_ids)
    result.tenant_ids.append(tenant_id)


def route_document(document: Mapping[str, object], *, auto_process: bool = True) -> RoutingResult:
    """Fan a newly detected document out to every subscribed tenant.

    Idempotent: re-routing finds the existing (document, tenant) rows and only adds missing
    client placeholders. One tenant failing does not stop the others.
    """
    result = RoutingResult(document_id=str(document["id"]))
    agency_id = document.get("agency_id")
    if not agency_id:
        logger.info(
            "document_routing_skipped",
            extra={"event": "document_routing_skipped", "document_id": result.document_id, "reason": "no_agency"},
        )
        return result

    for tenant in list_subscribed_tenants(str(agency_id), str(document["source"])):
        try:
            _route_to_tenant(document, tenant, result, auto_process=auto_process)
        except Exception as exc:
            logger.exception(
                "document_routing_failed",
                extra={
                    "event": "document_routing_failed",
                    "document_id": result.document_id,
                    "tenant_id": tenant.get("id"),
                },
            )
            result.errors.append(f"tenant {tenant.get('id')}: {exc}")

    logger.info(
        "document_routed",
        extra={
            "event": "document_routed",
            "document_id": result.document_id,
            "tenant_count": len(result.tenant_ids),
            "base_outputs_created": result.base_outputs_created,
            "client_placeholders_created": result.client_placeholders_created,
            "error_count": len(result.errors),
        },
    )
    return result
