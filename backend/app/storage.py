from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
import re
from typing import Any

from app.config import Settings

logger = logging.getLogger("regbrief.storage")

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class StorageError(RuntimeError):
    """Raised when blob storage read/write fails."""


def _normalize_backend(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {"local", "filesystem", "fs"}:
        return "local"
    if normalized in {"s3"}:
        return "s3"
    raise StorageError(f"Unsupported STORAGE_BACKEND '{value}'. Use 'local' or 's3'.")


def safe_filename(value: str, *, fallback: str = "file") -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", Path(str(value or "")).name).strip("._")
    return cleaned or fallback


def _normalize_blob_path(path: str) -> str:
    raw = str(path or "").strip().replace("\\", "/").strip("/")
    if not raw:
        raise StorageError("Missing blob path.")
    parts = PurePosixPath(raw).parts
    if any(part in {"..", "."} for part in parts):
        raise StorageError(f"Blob path '{path}' must not contain relative segments.")
    return "/".join(parts)


def _s3_location(settings: Settings, blob_path: str) -> tuple[str, str]:
    bucket = str(settings.s3_bucket or "").strip()
    if not bucket:
        raise StorageError("S3 storage backend selected but S3_BUCKET is not configured.")
    prefix = str(settings.s3_prefix or "").strip().strip("/")
    key = f"{prefix}/{blob_path}" if prefix else blob_path
    return bucket, key


def _s3_client(settings: Settings) -> Any:
    try:
        import boto3  # type: ignore
    except ImportError as exc:
        raise StorageError("boto3 is required for S3 storage backend.") from exc
    return boto3.client("s3", region_name=settings.aws_region)


def put_blob(*, settings: Settings, path: str, content: bytes, content_type: str) -> str:
    """Write bytes under a logical path and return that path (what the database stores)."""
    blob_path = _normalize_blob_path(path)
    backend = _normalize_backend(settings.storage_backend)

    if backend == "local":
        destination = Path(settings.storage_root) / blob_path
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(content)
    else:
        bucket, key = _s3_location(settings, blob_path)
        client = _s3_client(settings)
        try:
            client.put_object(
                Bucket=bucket,
                Key=key,
                Body=content,
                ContentType=content_type or "application/octet-stream",
            )
        except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
            raise StorageError(f"Failed to write blob to S3 (bucket={bucket}, key={key}): {exc}") from exc

    logger.info(
        "blob_written",
        extra={"event": "blob_written", "backend": backend, "path": blob_path, "size_bytes": len(content)},
    )
    return blob_path


def get_blob(*, settings: Settings, path: str) -> bytes:
    blob_path = _normalize_blob_path(path)
    backend = _normalize_backend(settings.storage_backend)

    if backend == "local":
        source = Path(settings.storage_root) / blob_path
        if not source.exists():
            raise StorageError(f"Stored blob not found at '{blob_path}'.")
        return source.read_bytes()

    bucket, key = _s3_location(settings, blob_path)
    client = _s3_client(settings)
    try:
        response = client.get_object(Bucket=bucket, Key=key)
        body = response.get("Body")
        if body is None:
            raise StorageError(f"S3 get_object returned no body (bucket={bucket}, key={key}).")
        return body.read()
    except StorageError:
        raise
    except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
        raise StorageError(f"Failed to read blob from S3 (bucket={bucket}, key={key}): {exc}") from exc


def blob_exists(*, settings: Settings, path: str | None) -> bool:
    if not path:
        return False
    blob_path = _normalize_blob_path(path)
    backend = _normalize_backend(settings.storage_backend)

    if backend == "local":
        return (Path(settings.storage_root) / blob_path).is_file()

    bucket, key = _s3_location(settings, blob_path)
    client = _s3_client(settings)
    try:
        client.head_object(Bucket=bucket, Key=key)
    except Exception:  # pragma: no cover - depends on AWS runtime integration
        return False
    return True
