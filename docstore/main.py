"""FastAPI application entrypoint and middleware configuration.

Middleware Execution Order
--------------------------
FastAPI middleware executes in REVERSE order of addition:
- Last added middleware = FIRST to process requests
- First added middleware = LAST to process requests

Current middleware stack (request flow):
0. OpenTelemetry server span (when OTEL_SDK_DISABLED is not true)
1. LoggingMiddleware - assigns the request id before anything else
2. PrometheusMiddleware - request count and latency per route template
3. SlowAPIMiddleware (rate limiting, when enabled)
4. RequestSizeValidationMiddleware - rejects oversized uploads early
5. CORSMiddleware - added first, executes last before endpoint

Error Responses
---------------
Every handled error is rendered as:
    {"status_code": int, "error_code": str, "message": str, "request_id": str | None}
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from docstore.api.routes import router as api_router
from docstore.core.config import ConfigurationError, settings
from docstore.core.logging import LoggingMiddleware, configure_logging, get_logging_context, get_request_id
from docstore.core.metrics import PrometheusMiddleware, document_upload_rollbacks_total, metrics_app
from docstore.core.middleware import RequestSizeValidationMiddleware
from docstore.core.storage import ObjectNotFoundError, StorageError, create_object_store
from docstore.core.tracing import configure_tracing, instrument_app, instrument_engine
from docstore.db.session import PoolConfig, create_db_engine, create_session_maker
from docstore.services.errors import DocumentErrorKind, DocumentServiceError, RollbackFailedError

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

# kind -> (status, error_code, client-safe message)
DOCUMENT_ERROR_RESPONSES: dict[DocumentErrorKind, tuple[int, str, str]] = {
    DocumentErrorKind.ID_REQUIRED: (status.HTTP_400_BAD_REQUEST, "ID_REQUIRED", "document id is required"),
    DocumentErrorKind.READER_REQUIRED: (status.HTTP_400_BAD_REQUEST, "FILE_REQUIRED", "file is required"),
    DocumentErrorKind.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "NOT_FOUND", "document not found"),
    DocumentErrorKind.UPLOAD_FAILED: (
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "UPLOAD_FAILED",
        "object storage is unavailable",
    ),
    DocumentErrorKind.METADATA_PERSIST_FAILED: (
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "METADATA_PERSIST_FAILED",
        "document metadata could not be saved",
    ),
    DocumentErrorKind.ROLLBACK_FAILED: (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "ROLLBACK_FAILED",
        "an internal server error occurred",
    ),
    DocumentErrorKind.STORAGE_DELETE_FAILED: (
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "STORAGE_DELETE_FAILED",
        "object storage is unavailable",
    ),
}

HTTP_ERROR_CODES: dict[int, str] = {
    status.HTTP_400_BAD_REQUEST: "BAD_REQUEST",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: "PAYLOAD_TOO_LARGE",
    status.HTTP_503_SERVICE_UNAVAILABLE: "SERVICE_UNAVAILABLE",
}


def error_response(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Render the standard error envelope."""
    content: dict[str, Any] = {
        "status_code": status_code,
        "error_code": error_code,
        "message": message,
        "request_id": getattr(request.state, "request_id", None) or get_request_id(),
    }
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - initialize and cleanup resources.

    Validates configuration, creates the database engine and session maker,
    checks database connectivity, and starts the object store (which ensures
    the bucket exists). Everything is stored on app.state so tests can inject
    their own engine and store instead.

    Yields:
        None after startup completes, resumes for shutdown on context exit.
    """
    try:
        config_warnings = settings.validate_config()
        for warning in config_warnings:
            logger.warning("config_warning", extra={"warning": warning})
    except ConfigurationError:
        logger.exception("config_validation_failed")
        raise

    shutdown_tracing = configure_tracing(settings)

    pool_config = PoolConfig(
        size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        timeout=settings.db_pool_timeout,
        recycle=settings.db_pool_recycle,
        pre_ping=settings.db_pool_pre_ping,
    )
    app.state.engine = create_db_engine(
        settings.database_url,
        echo=settings.sqlalchemy_echo,
        pool=pool_config,
    )
    instrument_engine(app.state.engine, settings)
    app.state.async_session_maker = create_session_maker(app.state.engine)

    try:
        async with app.state.engine.begin() as connection:
            await connection.execute(text("SELECT 1"))
        # Strip credentials before logging
        safe_url = str(settings.database_url).split("@")[-1]
        logger.info("database_connected", extra={"database": safe_url})

        object_store = create_object_store(settings)
        await object_store.start()
        logger.info("object_store_started", extra={"provider": str(settings.storage_provider)})
    except Exception as exc:
        await app.state.engine.dispose()
        shutdown_tracing()
        error_msg = f"Startup failed: {exc}"
        raise RuntimeError(error_msg) from exc

    app.state.object_store = object_store
    try:
        yield
    finally:
        logger.info("shutdown_started")
        await object_store.close()
        await app.state.engine.dispose()
        shutdown_tracing()
        logger.info("shutdown_complete")


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.include_router(api_router)

if settings.enable_metrics:
    app.mount("/metrics", metrics_app)

# Middleware is processed in REVERSE order (last added = first executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", settings.request_id_header],
    expose_headers=[settings.request_id_header],
)
app.add_middleware(RequestSizeValidationMiddleware, max_size_bytes=settings.max_file_size_bytes)

# Rate limiting per client IP
#   RATE_LIMIT_ENABLED=true (default)
#   RATE_LIMIT_PER_MINUTE=100, RATE_LIMIT_PER_HOUR=2000
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute", f"{settings.rate_limit_per_hour}/hour"],
    enabled=settings.rate_limit_enabled,
)
app.state.limiter = limiter
if settings.rate_limit_enabled:
    app.add_middleware(SlowAPIMiddleware)

if settings.enable_metrics:
    app.add_middleware(PrometheusMiddleware)
app.add_middleware(LoggingMiddleware)

# Outermost, so request logs and handlers run inside the server span
instrument_app(app, settings)


@app.exception_handler(DocumentServiceError)
async def document_service_exception_handler(request: Request, exc: DocumentServiceError) -> JSONResponse:
    """Map document lifecycle errors to responses by kind.

    A failed rollback leaves an orphaned object behind and is logged at
    ERROR with the key and both underlying errors for operator cleanup.
    """
    status_code, error_code, message = DOCUMENT_ERROR_RESPONSES[exc.kind]
    context = get_logging_context()

    if isinstance(exc, RollbackFailedError):
        document_upload_rollbacks_total.labels(outcome="failed").inc()
        logger.error(
            "document_rollback_failed",
            extra={
                **context,
                "storage_key": exc.storage_key,
                "persist_error": repr(exc.persist_error),
                "rollback_error": repr(exc.rollback_error),
            },
        )
    elif exc.kind == DocumentErrorKind.METADATA_PERSIST_FAILED:
        document_upload_rollbacks_total.labels(outcome="compensated").inc()
        logger.warning("document_upload_compensated", extra={**context, "error": str(exc)}, exc_info=exc)
    elif status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.warning("document_operation_failed", extra={**context, "kind": str(exc.kind)}, exc_info=exc)

    return error_response(request, status_code, error_code, message)


@app.exception_handler(ObjectNotFoundError)
async def object_not_found_exception_handler(request: Request, exc: ObjectNotFoundError) -> JSONResponse:
    logger.error("document_content_missing", extra={**get_logging_context(), "storage_key": exc.key})
    return error_response(request, status.HTTP_404_NOT_FOUND, "NOT_FOUND", "document content not found")


@app.exception_handler(StorageError)
async def storage_exception_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.warning("storage_error", extra=get_logging_context(), exc_info=exc)
    return error_response(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "STORAGE_UNAVAILABLE",
        "object storage is unavailable",
    )


@app.exception_handler(TimeoutError)
async def timeout_exception_handler(request: Request, exc: TimeoutError) -> JSONResponse:
    """Operation deadline (DOCUMENT_OPERATION_TIMEOUT_SECONDS) expired."""
    logger.warning("operation_timeout", extra=get_logging_context(), exc_info=exc)
    return error_response(request, status.HTTP_504_GATEWAY_TIMEOUT, "TIMEOUT", "operation timed out")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return error_response(
        request,
        status.HTTP_429_TOO_MANY_REQUESTS,
        "RATE_LIMITED",
        f"Rate limit exceeded: {exc.detail}",
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTPException in the standard envelope.

    Endpoints pass ``detail={"error_code": ..., "message": ...}`` for specific
    codes; plain string details get a code derived from the status.
    """
    if isinstance(exc.detail, dict):
        error_code = exc.detail.get("error_code", "HTTP_ERROR")
        message = exc.detail.get("message", "")
    else:
        error_code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
        message = str(exc.detail)
    return error_response(request, exc.status_code, error_code, message, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Request validation failed",
        details=jsonable_encoder(exc.errors()),
    )


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Handle ValueError as 400 Bad Request."""
    error_message = str(exc) if str(exc) else "Invalid value provided"
    logger.warning("value_error", extra={**get_logging_context(), "error": error_message})
    return error_response(request, status.HTTP_400_BAD_REQUEST, "INVALID_VALUE", error_message)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions as 500 Internal Server Error.

    Logs full exception details but returns a sanitized message to clients.
    """
    logger.exception("unhandled_exception", extra=get_logging_context(), exc_info=exc)
    return error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR",
        "An internal server error occurred",
    )
