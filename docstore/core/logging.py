"""Structured logging with request correlation.

Logs are emitted as ECS (Elastic Common Schema) JSON through ecs-logging's
StdlibFormatter. A ContextVar carries the request id across async operations
so any module can attach it to its log entries.

Usage:

    # In main.py
    from docstore.core.logging import LoggingMiddleware, configure_logging
    configure_logging(settings.log_level)
    app.add_middleware(LoggingMiddleware)

    # Anywhere in the request path
    import logging
    from docstore.core.logging import get_logging_context

    logger = logging.getLogger(__name__)
    logger.info("document_uploaded", extra={**get_logging_context(), "document_id": str(doc.id)})
"""

from __future__ import annotations

import logging
import logging.config
import time
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar

from ecs_logging import StdlibFormatter
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from docstore.core.config import settings
from docstore.core.tracing import trace_context

LOGGER = logging.getLogger(__name__)

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


def configure_logging(level: str) -> None:
    """Route the root and uvicorn loggers through a single ECS JSON handler."""
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "ecs": {
                "()": StdlibFormatter,
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "ecs",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {
            "handlers": ["default"],
            "level": level.upper(),
        },
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": level.upper(), "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": level.upper(), "propagate": False},
            "uvicorn.access": {"handlers": ["default"], "level": level.upper(), "propagate": False},
        },
    }
    logging.config.dictConfig(logging_config)


def set_request_id(request_id: str) -> None:
    """Set request ID in context for current async task."""
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def get_logging_context() -> dict[str, str | None]:
    """Get logging context as dict for structured logging.

    Inside a traced request the current trace_id and span_id are included,
    so log entries can be joined with their spans.

    Example:
        logger.info("operation_completed", extra=get_logging_context())
    """
    return {"request_id": get_request_id(), **trace_context()}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Request-scoped structured logging.

    This middleware:
    1. Extracts the request ID from the configured header or generates one
    2. Stores it in a ContextVar and on request.state for async-safe access
    3. Logs request start and completion with timing
    4. Echoes the request ID on the response for client correlation
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = request.headers.get(settings.request_id_header) or str(uuid.uuid4())
        set_request_id(request_id)
        request.state.request_id = request_id

        if settings.include_request_context_in_logs:
            LOGGER.info(
                "request_started",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "client_host": request.client.host if request.client else None,
                },
            )

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        if settings.include_request_context_in_logs:
            LOGGER.info(
                "request_completed",
                extra={
                    "request_id": request_id,
                    "status_code": response.status_code,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round(duration_ms, 2),
                },
            )

        response.headers[settings.request_id_header] = request_id
        return response
