from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
import json
import logging
import re
import time
from typing import Any, Iterator, Mapping
from uuid import uuid4


REQUEST_ID_CONTEXT: ContextVar[str] = ContextVar("request_id", default="-")
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_LOGGING_CONFIGURED = False

# Substring match on normalized keys, e.g. cron_secret, x_api_key, aws_session_token.
SENSITIVE_KEY_FRAGMENTS = ("authorization", "cookie", "password", "secret", "token", "api_key", "access_key")
# Counters that happen to contain a sensitive fragment but carry no secret.
NON_SENSITIVE_KEYS = {"tokens_input", "tokens_output", "tokens_in", "tokens_out"}

_REDACTIONS = (
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*"), "Bearer [REDACTED]"),
    (re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"), "[REDACTED_AWS_ACCESS_KEY]"),
    (
        re.compile(r"(?i)\b(aws_secret_access_key|secret_access_key)(\s*[:=]\s*)([A-Za-z0-9/+=]{16,})"),
        r"\1\2[REDACTED]",
    ),
    # Presigned S3 links and keyed registry URLs show up in storage and fetch errors.
    (
        re.compile(r"(?i)\b(X-Amz-(?:Signature|Credential|Security-Token)|api_key)=[^&\s'\"]+"),
        r"\1=[REDACTED]",
    ),
)


def normalize_request_id(candidate: str | None) -> str:
    if candidate:
        trimmed = candidate.strip()
        if REQUEST_ID_PATTERN.fullmatch(trimmed):
            return trimmed
    return str(uuid4())


def set_request_id(request_id: str) -> Token[str]:
    return REQUEST_ID_CONTEXT.set(request_id)


def reset_request_id(token: Token[str]) -> None:
    REQUEST_ID_CONTEXT.reset(token)


def get_request_id() -> str:
    return REQUEST_ID_CONTEXT.get()


def _looks_sensitive_key(key: str) -> bool:
    normalized = key.strip().lower().replace("-", "_")
    if normalized in NON_SENSITIVE_KEYS:
        return False
    return any(fragment in normalized for fragment in SENSITIVE_KEY_FRAGMENTS)


def _redact_string(value: str, *, max_length: int) -> str:
    redacted = value
    for pattern, replacement in _REDACTIONS:
        redacted = pattern.sub(replacement, redacted)
    if len(redacted) > max_length:
        return f"{redacted[:max_length]}...[truncated]"
    return redacted


def sanitize_for_logging(value: Any, *, max_string_length: int = 240) -> Any:
    if value is None:
        return None

    if isinstance(value, Mapping):
        sanitized: dict[str, Any] = {}
        for key, item in value.items():
            key_text = str(key)
            if _looks_sensitive_key(key_text):
                sanitized[key_text] = "[REDACTED]"
                continue
            sanitized[key_text] = sanitize_for_logging(item, max_string_length=max_string_length)
        return sanitized

    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_logging(item, max_string_length=max_string_length) for item in value]

    if isinstance(value, bytes):
        return f"[{len(value)} bytes]"

    if isinstance(value, str):
        return _redact_string(value, max_length=max_string_length)

    return value


@contextmanager
def log_duration(logger: logging.Logger, event: str, **fields: Any) -> Iterator[dict[str, Any]]:
    """Log `<event>_completed` or `<event>_failed` with duration_ms around a block.

    The yielded dict can be filled with extra fields that end up on the completion record.
    """
    started = time.perf_counter()
    extra_fields: dict[str, Any] = {}
    try:
        yield extra_fields
    except Exception as exc:
        logger.warning(
            f"{event}_failed",
            extra={
                "event": f"{event}_failed",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "error": str(exc),
                **fields,
            },
        )
        raise
    logger.info(
        f"{event}_completed",
        extra={
            "event": f"{event}_completed",
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            **fields,
            **extra_fields,
        },
    )


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    _STANDARD_ATTRS = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
        "asctime",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", get_request_id()),
        }

        for key, value in record.__dict__.items():
            if key in self._STANDARD_ATTRS:
                continue
            payload[key] = sanitize_for_logging(value)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level_name: str) -> None:
    global _LOGGING_CONFIGURED
    level = getattr(logging, level_name.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    if _LOGGING_CONFIGURED:
        return

    if any(getattr(handler, "_regbrief_handler", False) for handler in root.handlers):
        _LOGGING_CONFIGURED = True
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    setattr(handler, "_regbrief_handler", True)
    root.addHandler(handler)
    # botocore and httpx are chatty at INFO; keep their wire-level noise out of the JSON stream.
    for noisy in ("botocore", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
    _LOGGING_CONFIGURED = True
