from __future__ import annotations

from enum import Enum

from app.config import settings

BASE_OUTPUTS = "base_outputs"
CLIENT_OUTPUTS = "client_outputs"


class ArtifactStatus(str, Enum):
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


class ArtifactNotFoundError(LookupError):
    """Raised when a document, tenant, artifact or client referenced by a request does not exist."""


class ArtifactConflictError(RuntimeError):
    """Raised when an artifact is already being processed by another worker."""


class BaseOutputNotReadyError(RuntimeError):
    """Raised when client customization is requested before the base output is complete."""


def initial_status(*, tenant_auto_process: bool, source_auto_process: bool = True) -> ArtifactStatus:
    if not source_auto_process:
        return ArtifactStatus.SKIPPED
    if not tenant_auto_process:
        return ArtifactStatus.AWAITING_APPROVAL
    return ArtifactStatus.PENDING


def truncate_error(message: str, max_chars: int | None = None) -> str:
    limit = max_chars if max_chars is not None else settings.error_message_max_chars
    text = str(message or "").strip() or "Unknown error"
    return text[:limit]
