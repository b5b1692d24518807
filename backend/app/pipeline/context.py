from __future__ import annotations

import hashlib
import logging
import re
from typing import Mapping

from app.config import settings
from app.db import REGISTRY_SOURCE, get_agency, get_regulatory_document, get_tenant
from app.pipeline.status import ArtifactNotFoundError
from app.rendering import Branding, DocumentHeader, RenderContext
from app.storage import StorageError, get_blob

logger = logging.getLogger("regbrief.pipeline")

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")
_MAX_KEY_CHARS = 80


def load_document(document_id: str) -> dict[str, object]:
    """Document row plus the agency name the prompts mention."""
    document = get_regulatory_document(document_id)
    if document is None:
        raise ArtifactNotFoundError(f"Regulatory document '{document_id}' not found.")
    agency = get_agency(str(document["agency_id"])) if document.get("agency_id") else None
    document["agency_name"] = agency["name"] if agency else None
    return document


def document_blob_key(document: Mapping[str, object]) -> str:
    """Filename-safe key for a document's artifacts, unique per (source, external_id).

    Registry document numbers are already safe and are used as-is. Anything else (newsroom GUIDs
    and URLs) is flattened and suffixed with a digest of the full identity.
    """
    source = str(document.get("source") or "")
    external_id = str(document.get("external_id") or "")
    flattened = _UNSAFE_KEY_CHARS.sub("_", external_id).strip("._")[:_MAX_KEY_CHARS]
    if source == REGISTRY_SOURCE and flattened == external_id:
        return flattened
    digest = hashlib.sha256(f"{source}\n{external_id}".encode("utf-8")).hexdigest()[:12]
    return f"{flattened or 'document'}-{digest}"


def load_tenant(tenant_id: str) -> dict[str, object]:
    tenant = get_tenant(tenant_id)
    if tenant is None:
        raise ArtifactNotFoundError(f"Tenant '{tenant_id}' not found.")
    return tenant


def load_branding(tenant: Mapping[str, object]) -> Branding:
    branding = tenant.get("branding") if isinstance(tenant.get("branding"), Mapping) else {}
    logo: bytes | None = None
    logo_path = str(branding.get("logo_path") or "").strip()
    if logo_path:
        try:
            logo = get_blob(settings=settings, path=logo_path)
        except StorageError as exc:
            logger.warning(
                "tenant_logo_unavailable",
                extra={"event": "tenant_logo_unavailable", "tenant_id": tenant.get("id"), "error": str(exc)},
            )
    return Branding.from_mapping(branding, logo=logo)


def build_render_context(
    document: Mapping[str, object],
    branding: Branding,
    *,
    client_name: str | None = None,
) -> RenderContext:
    return RenderContext(
        document=DocumentHeader.from_document(document),
        branding=branding,
        client_name=client_name,
        footer_label=settings.registry_label,
    )
