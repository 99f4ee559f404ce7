"""
FastAPI Application — Entry Point

Policy Knowledge Engine API

Architecture:
  - All routes are versioned under /api/v1/
  - Authentication is JWT-based (any OIDC issuer) enforced per-route
  - The organization is selected by X-Organization-ID and verified against
    the memberships table; every store call carries that organization_id
  - Document processing runs in Celery workers, never in the request
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID injection — X-Request-ID header on every response
  3. Request logging — one log line per request with latency

Error mapping (PolicyRagError → HTTP):
  NotFound 404 · InvalidTransition 409 · ValidationFailed 400/413 ·
  OrganizationRequired 403 · ExtractionFailure 422 · RetrievalError 503 ·
  StorageError 502 · IsolationViolation 500 (re-raised outside production)
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from policy_rag.api.v1.documents import router as documents_router
from policy_rag.api.v1.search import router as search_router
from policy_rag.core.config import settings
from policy_rag.core.errors import (
    ExtractionFailure,
    InvalidTransition,
    IsolationViolation,
    NotFound,
    OrganizationRequired,
    PolicyRagError,
    RetrievalError,
    StorageError,
    ValidationFailed,
)
from policy_rag.db.session import check_db_health, dispose_engine
from policy_rag.schemas.documents import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_STATUS_BY_ERROR: list[tuple[type[PolicyRagError], int]] = [
    (NotFound,             status.HTTP_404_NOT_FOUND),
    (InvalidTransition,    status.HTTP_409_CONFLICT),
    (ValidationFailed,     status.HTTP_400_BAD_REQUEST),
    (OrganizationRequired, status.HTTP_403_FORBIDDEN),
    (ExtractionFailure,    status.HTTP_422_UNPROCESSABLE_ENTITY),
    (RetrievalError,       status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageError,         status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: PolicyRagError) -> int:
    if isinstance(exc, ValidationFailed) and exc.error_code == "FILE_TOO_LARGE":
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: log a config summary.
    Run on shutdown: clean up the connection pool.
    """
    logger.info(
        "Starting Policy Knowledge Engine | env=%s embedding_model=%s dims=%d",
        settings.app_env, settings.embedding_model, settings.embedding_dimensions,
    )
    logger.info("Auth issuer: %s", settings.auth_issuer or "-")
    logger.info("S3 bucket: %s", settings.s3_bucket)

    yield

    logger.info("Shutting down Policy Knowledge Engine")
    await dispose_engine()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Policy Knowledge Engine",
        description=(
            "Organization-scoped policy document ingestion and retrieval API. "
            "Documents are processed asynchronously and searched by semantic similarity."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (last added = outermost)
    # ----------------------------------------------------------------

    allowed_origins = ["*"] if settings.app_env == "development" else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PATCH"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Organization-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    # ----------------------------------------------------------------
    # Request ID + logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | org=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.headers.get("X-Organization-ID", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

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
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Auth dependencies raise with an ErrorResponse dict as detail; pass it through."""
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            content = {**exc.detail, "request_id": _request_id(request)}
        else:
            content = ErrorResponse(
                error_code="HTTP_ERROR",
                message=str(exc.detail),
                request_id=_request_id(request),
            ).model_dump(mode="json")
        return JSONResponse(
            status_code=exc.status_code,
            content=content,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(PolicyRagError)
    async def policy_rag_exception_handler(request: Request, exc: PolicyRagError):
        request_id = _request_id(request)

        if isinstance(exc, IsolationViolation):
            logger.critical(
                "Isolation violation | path=%s request_id=%s detail=%s",
                request.url.path, request_id, exc.message,
            )
            if not settings.is_production:
                raise exc
            body = ErrorResponse(
                error_code="INTERNAL_ERROR",
                message="An unexpected error occurred. Our team has been notified.",
                request_id=request_id,
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=body.model_dump(mode="json"),
            )

        code = status_for(exc)
        details = []
        field = getattr(exc, "field", None)
        if field:
            details.append(ErrorDetail(field=field, message=exc.message, code=exc.error_code))

        log = logger.warning if code < 500 else logger.error
        log("Request failed | path=%s status=%d code=%s message=%s", request.url.path, code, exc.error_code, exc.message)

        body = ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=details,
            request_id=request_id,
        )
        return JSONResponse(status_code=code, content=body.model_dump(mode="json"))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = _request_id(request)
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
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

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth, used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "policy-rag-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
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
        "policy_rag.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
