from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

import psycopg
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse, Response

from story_heat.api.routes_clusters import router as clusters_router
from story_heat.api.routes_entities import router as entities_router
from story_heat.api.routes_quality import router as quality_router
from story_heat.db import DB
from story_heat.errors import SchemaEvolutionFailure, StorageUnavailable, StoryHeatError
from story_heat.logging_config import setup_logging
from story_heat.metrics import MetricsMiddleware, generate_metrics
from story_heat.migrations import default_migrations_dir, migrate, pending_migrations
from story_heat.settings import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app_instance: FastAPI) -> AsyncIterator[None]:
    runtime_settings = get_settings()
    setup_logging(log_format=runtime_settings.log_format, log_level=runtime_settings.log_level)
    db = DB.from_settings(runtime_settings)
    db.open_pool()
    if runtime_settings.auto_migrate:
        try:
            with db.connection() as conn:
                applied = migrate(conn)
            if applied:
                logger.info("Applied migrations: %s", ", ".join(applied))
        except SchemaEvolutionFailure as exc:
            # Keep serving; /readyz reports not ready while migrations are pending.
            logger.error(
                "Migration %s failed",
                exc.migration_name,
                exc_info=exc,
                extra={"operation": "migrate", "error_kind": exc.kind.value},
            )
        except StorageUnavailable as exc:
            logger.error("Store unavailable at startup: %s", exc)
    app_instance.state.db = db
    try:
        yield
    finally:
        db.close_pool()


app = FastAPI(title="Story Heat API", version="0.1", lifespan=lifespan)

app.add_middleware(MetricsMiddleware)


def _request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return str(uuid4())


@app.middleware("http")
async def add_request_id(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers.setdefault("X-Request-ID", request_id)
    return response


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    request_id = _request_id(request)
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    logger.warning(
        "HTTP exception %s %s status=%s request_id=%s",
        request.method,
        request.url.path,
        exc.status_code,
        request_id,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": {"code": "http_error", "message": message, "request_id": request_id},
        },
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_exception(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = _request_id(request)
    logger.warning(
        "Validation error %s %s request_id=%s",
        request.method,
        request.url.path,
        request_id,
    )
    return JSONResponse(
        status_code=422,
        content={
            "detail": exc.errors(),
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "request_id": request_id,
            },
        },
    )


@app.exception_handler(StoryHeatError)
async def handle_store_exception(request: Request, exc: StoryHeatError) -> JSONResponse:
    request_id = _request_id(request)
    logger.error(
        "Store error %s %s kind=%s request_id=%s",
        request.method,
        request.url.path,
        exc.kind.value,
        request_id,
    )
    return JSONResponse(
        status_code=503,
        content={
            "detail": "Store unavailable",
            "error": {"code": exc.kind.value, "message": str(exc), "request_id": request_id},
        },
    )


@app.exception_handler(Exception)
async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    logger.exception(
        "Unhandled exception %s %s request_id=%s",
        request.method,
        request.url.path,
        request_id,
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": {
                "code": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            },
        },
    )


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz(request: Request) -> dict[str, str]:
    runtime_db = getattr(request.app.state, "db", None)
    if not isinstance(runtime_db, DB) or not runtime_db.is_ready():
        raise HTTPException(status_code=503, detail="Not ready")
    try:
        with runtime_db.connection() as conn:
            pending = pending_migrations(conn, default_migrations_dir())
    except (psycopg.Error, StoryHeatError):
        raise HTTPException(status_code=503, detail="Not ready") from None
    if pending:
        raise HTTPException(status_code=503, detail="Migrations pending")
    return {"status": "ready"}


@app.get("/metrics", response_class=PlainTextResponse)
def metrics() -> str:
    return generate_metrics()


app.include_router(clusters_router, prefix="/v1")
app.include_router(entities_router, prefix="/v1")
app.include_router(quality_router, prefix="/v1")
