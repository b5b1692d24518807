from __future__ import annotations

import time
from uuid import uuid4

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config import settings
from app.db import get_conn
from app.storage import StorageError, get_blob, put_blob
from app.version import APP_VERSION


router = APIRouter()

_READY_CACHE_TTL_SECONDS = 30.0
_ready_cache: dict[str, object] = {"ts": 0.0, "ok": None, "payload": None}


def _cache_set(ok: bool, payload: dict[str, object]) -> None:
    _ready_cache["ts"] = time.time()
    _ready_cache["ok"] = ok
    _ready_cache["payload"] = payload


def _cache_get() -> dict[str, object] | None:
    if time.time() - float(_ready_cache.get("ts") or 0.0) > _READY_CACHE_TTL_SECONDS:
        return None
    payload = _ready_cache.get("payload")
    return payload if isinstance(payload, dict) else None


def _check_database() -> dict[str, object]:
    with get_conn() as conn:
        conn.execute("SELECT 1").fetchone()
        agencies = conn.execute("SELECT COUNT(*) FROM agencies").fetchone()[0]
    return {"ok": True, "backend": "sqlite", "agencies": int(agencies)}


def _check_storage() -> dict[str, object]:
    token = f"{time.time()}-{uuid4()}"
    path = f"readyz/{settings.app_env}/backend.txt"
    put_blob(settings=settings, path=path, content=token.encode("utf-8"), content_type="text/plain")
    if get_blob(settings=settings, path=path).decode("utf-8", errors="replace") != token:
        raise StorageError("storage readiness probe mismatch")
    return {"ok": True, "backend": settings.storage_backend}


@router.get("/")
def root() -> dict[str, str]:
    return {"service": "regbrief-backend", "status": "running", "version": APP_VERSION}


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "environment": settings.app_env}


@router.get("/ready", response_model=None)
def ready() -> JSONResponse:
    cached = _cache_get()
    if cached is not None:
        return JSONResponse(status_code=200 if _ready_cache.get("ok") else 503, content=cached)

    checks: dict[str, object] = {}
    payload: dict[str, object] = {"status": "ready", "environment": settings.app_env, "checks": checks}
    for name, probe in (("db", _check_database), ("storage", _check_storage)):
        try:
            checks[name] = probe()
        except Exception as exc:
            payload["status"] = "not_ready"
            checks[name] = {"ok": False, "error": str(exc)}
            _cache_set(False, payload)
            return JSONResponse(status_code=503, content=payload)

    _cache_set(True, payload)
    return JSONResponse(status_code=200, content=payload)
