from contextlib import asynccontextmanager
from functools import lru_cache
import logging
from pathlib import Path
import time

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.api.routers.documents import build_documents_router
from app.api.routers.jobs import build_jobs_router
from app.api.routers.monitor import build_admin_router, build_cron_router
from app.api.routers.system import router as system_router
from app.auth import require_admin_user, require_authenticated_user, require_cron_secret
from app.config import settings
from app.db import init_db
from app.feeds import NewsroomFeedClient
from app.generation import BedrockContentGenerator
from app.observability import (
    configure_logging,
    normalize_request_id,
    reset_request_id,
    sanitize_for_logging,
    set_request_id,
)
from app.registry import FederalRegisterClient
from app.version import APP_VERSION

logger = logging.getLogger("regbrief.api")


@lru_cache(maxsize=1)
def _cached_content_generator() -> BedrockContentGenerator:
    return BedrockContentGenerator(settings=settings)


def get_content_generator() -> BedrockContentGenerator:
    return _cached_content_generator()


@lru_cache(maxsize=1)
def _cached_registry_client() -> FederalRegisterClient:
    return FederalRegisterClient(settings=settings)


def get_registry_client() -> FederalRegisterClient:
    return _cached_registry_client()


@lru_cache(maxsize=1)
def _cached_feed_client() -> NewsroomFeedClient:
    return NewsroomFeedClient(settings=settings)


def get_feed_client() -> NewsroomFeedClient | None:
    return _cached_feed_client()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    logger.info("application_startup", extra={"event": "application_startup", "environment": settings.app_env})
    init_db()
    Path(settings.storage_root).mkdir(parents=True, exist_ok=True)
    yield
    logger.info("application_shutdown", extra={"event": "application_shutdown"})


def create_app() -> FastAPI:
    cors_origins = settings.cors_origins_list
    if settings.cors_allow_credentials and any(origin == "*" for origin in cors_origins):
        raise RuntimeError("Invalid CORS_ORIGINS: wildcard '*' is not allowed when credentials are enabled.")

    app = FastAPI(title=settings.app_name, version=APP_VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Authorization", "Content-Type", settings.request_id_header],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = normalize_request_id(request.headers.get(settings.request_id_header))
        request.state.request_id = request_id
        token = set_request_id(request_id)
        started = time.perf_counter()

        logger.info(
            "request_started",
            extra={
                "event": "request_started",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": sanitize_for_logging(dict(request.query_params)),
                "client_ip": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
            response.headers[settings.request_id_header] = request_id
            logger.info(
                "request_completed",
                extra={
                    "event": "request_completed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return response
        except Exception:
            logger.exception(
                "request_failed",
                extra={
                    "event": "request_failed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            raise
        finally:
            reset_request_id(token)

    # Late-bound: the module-level getters are looked up on every request.
    documents_router = build_documents_router(
        get_generator=lambda: get_content_generator(),
        get_registry_client=lambda: get_registry_client(),
    )
    jobs_router = build_jobs_router(get_generator=lambda: get_content_generator())
    admin_router = build_admin_router(
        get_registry_client=lambda: get_registry_client(),
        get_feed_client=lambda: get_feed_client(),
    )
    cron_router = build_cron_router(
        get_generator=lambda: get_content_generator(),
        get_registry_client=lambda: get_registry_client(),
        get_feed_client=lambda: get_feed_client(),
    )

    app.include_router(system_router)
    for prefix in ("", "/api"):
        app.include_router(documents_router, prefix=prefix, dependencies=[Depends(require_authenticated_user)])
        app.include_router(jobs_router, prefix=prefix, dependencies=[Depends(require_authenticated_user)])
        app.include_router(admin_router, prefix=prefix, dependencies=[Depends(require_admin_user)])
    app.include_router(cron_router, dependencies=[Depends(require_cron_secret)])
    return app


app = create_app()
