"""
FastAPI Application — Entry Point

Vendor Catalog Extraction Pipeline API

Architecture:
  - All routes are versioned under /api/v1/
  - The pipeline facade is injected per request (catalog_pipeline.dependencies)
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. Request ID injection — X-Request-ID header on every response
  2. CORS — restrict to configured origins
  3. Gzip — compress responses > 1 KB

Domain error → HTTP status:
  ValidationError            400
  NotFoundError              404
  PreconditionFailedError    409   (InvalidStateError included)
  NoProductsError            422
  QuotaExceededError         429
  ExternalServiceError       502
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from catalog_pipeline.api.v1.attempts import router as attempts_router
from catalog_pipeline.api.v1.usage import router as usage_router
from catalog_pipeline.core.config import get_settings
from catalog_pipeline.core.errors import (
    ExternalServiceError,
    NoProductsError,
    NotFoundError,
    PipelineError,
    PreconditionFailedError,
    QuotaExceededError,
    ValidationError,
)
from catalog_pipeline.db.session import Database
from catalog_pipeline.dependencies import get_container, get_database
from catalog_pipeline.schemas.attempts import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_ERROR_STATUS: tuple[tuple[type[PipelineError], int], ...] = (
    (ValidationError,         status.HTTP_400_BAD_REQUEST),
    (NotFoundError,           status.HTTP_404_NOT_FOUND),
    (PreconditionFailedError, status.HTTP_409_CONFLICT),
    (NoProductsError,         status.HTTP_422_UNPROCESSABLE_ENTITY),
    (QuotaExceededError,      status.HTTP_429_TOO_MANY_REQUESTS),
    (ExternalServiceError,    status.HTTP_502_BAD_GATEWAY),
)


def _status_for(exc: PipelineError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: validate DB connectivity, log config summary.
    Run on shutdown: clean up connection pools (database, quota Redis).
    """
    logger.info("Starting Catalog Pipeline | env=%s llm=%s", settings.app_env, settings.llm_provider)

    database = get_container().database
    db_health = await database.check_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    logger.info("Database: connected")
    logger.info("S3 bucket: %s", settings.s3_bucket)

    yield

    logger.info("Shutting down Catalog Pipeline")
    await database.dispose()
    await get_container().quota.close()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Vendor Catalog Extraction Pipeline",
        description=(
            "Uploads vendor catalogs, extracts products through OCR and LLM column mapping, "
            "and promotes reviewed attempts into the production catalog."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        status_code = _status_for(exc)
        details = []
        if isinstance(exc, ValidationError) and exc.field:
            details.append(ErrorDetail(field=exc.field, message=exc.message, code=exc.error_code))

        log = logger.warning if status_code < 500 else logger.error
        log("Request failed | path=%s code=%s error=%s", request.url.path, exc.error_code, exc.message)

        body = ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

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

    app.include_router(attempts_router, prefix="/api/v1")
    app.include_router(usage_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness check",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "catalog-pipeline-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness check",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness(database: Database = Depends(get_database)) -> JSONResponse:
        db_status = await database.check_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
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

    uvicorn.run(
        "catalog_pipeline.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
