"""
FastAPI Application — Entry Point

Documind indexing & knowledge-graph API

Architecture:
  - All routes are versioned under /api/v1/
  - Organization scoping comes from the {org_id} path parameter;
    authentication is handled in front of this service
  - The lifespan opens one Database, builds the shared Services and
    opens the JobQueue; everything is stored on app.state
  - DocumindError subclasses map to structured JSON errors
    (404 / 412 / 422 / 502), anything else to a 500 without internals

Middleware:
  1. GZip — compress responses > 1 KB
  2. Request ID + logging — X-Request-ID on every response, one log line
     per request with latency
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from documind.api.v1.documents import router as documents_router
from documind.api.v1.queues import router as queues_router
from documind.api.v1.search import router as search_router
from documind.core.config import get_settings
from documind.core.exceptions import DocumindError
from documind.core.logging import configure_logging
from documind.db.session import Database
from documind.schemas.documents import ErrorDetail, ErrorResponse
from documind.services.container import build_services
from documind.workers.celery_app import celery_app
from documind.workers.queue import JobQueue

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: open the database, build services, open the job queue.
    Run on shutdown: drain enqueues, then release every connection.
    """
    settings = get_settings()
    configure_logging(settings)
    logger.info("Starting Documind API | env=%s storage=%s", settings.app_env, settings.storage_backend)

    database = Database(settings)
    database.open()

    db_health = await database.check_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        await database.close()
        raise RuntimeError(f"DB unavailable: {db_health}")

    services  = build_services(settings, database)
    job_queue = JobQueue.from_settings(settings, celery_app)
    await job_queue.open()

    app.state.services  = services
    app.state.job_queue = job_queue

    yield

    logger.info("Shutting down Documind API")
    await job_queue.close()
    await services.aclose()
    await database.close()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Documind",
        description="Document ingestion, semantic search and knowledge-graph API.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(DocumindError)
    async def documind_exception_handler(request: Request, exc: DocumindError):
        if exc.status_code >= 500:
            logger.error(
                "Request failed | path=%s error=%s cause=%s",
                request.url.path, exc.message, exc.original_error,
            )
        body = ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(search_router,    prefix="/api/v1")
    app.include_router(queues_router,    prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "documind-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness(request: Request) -> JSONResponse:
        services = request.app.state.services
        db_status = await services.database.check_health()
        queue_configured = request.app.state.job_queue.is_configured
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "status":               "ready",
                "database":             db_status,
                "queue_configured":     queue_configured,
                "embedding_configured": services.embeddings.is_configured,
            },
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "documind.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
