"""Middleware for request validation."""

from __future__ import annotations

import logging

from fastapi import HTTPException, status
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from docstore.core.logging import get_request_id

LOGGER = logging.getLogger(__name__)


def _limit_message(max_size_bytes: int) -> str:
    return f"Request payload exceeds maximum allowed size ({max_size_bytes / (1024 * 1024):.1f} MB)"


class PayloadTooLargeError(HTTPException):
    """Raised while reading a body that grew past the limit without declaring its length."""

    def __init__(self, max_size_bytes: int) -> None:
        super().__init__(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={"error_code": "PAYLOAD_TOO_LARGE", "message": _limit_message(max_size_bytes)},
        )


class RequestSizeValidationMiddleware:
    """Reject request bodies larger than the configured limit.

    A declared Content-Length over the limit is answered with 413 Payload Too
    Large before any of the body is read. Bodies without a usable length
    (chunked transfer encoding) are counted as they are received, and reading
    past the limit raises PayloadTooLargeError, rendered as the same 413.

    Configuration:
        MAX_FILE_SIZE_BYTES: Maximum allowed request size (default: 50MB)

    Examples:
        app.add_middleware(RequestSizeValidationMiddleware, max_size_bytes=100 * 1024 * 1024)
    """

    def __init__(self, app: ASGIApp, max_size_bytes: int = 50 * 1024 * 1024) -> None:
        self.app = app
        self.max_size_bytes = max_size_bytes

    def _log_rejected(self, scope: Scope, size_bytes: int, *, declared: bool) -> None:
        LOGGER.warning(
            "request_size_exceeded",
            extra={
                "request_id": get_request_id(),
                "size_bytes": size_bytes,
                "max_bytes": self.max_size_bytes,
                "declared": declared,
                "path": scope.get("path"),
                "method": scope.get("method"),
            },
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length = Headers(scope=scope).get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_size_bytes:
            self._log_rejected(scope, int(content_length), declared=True)
            response = JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content={
                    "status_code": status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    "error_code": "PAYLOAD_TOO_LARGE",
                    "message": _limit_message(self.max_size_bytes),
                    "request_id": get_request_id(),
                },
            )
            await response(scope, receive, send)
            return

        received = 0

        async def receive_within_limit() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_size_bytes:
                    self._log_rejected(scope, received, declared=False)
                    raise PayloadTooLargeError(self.max_size_bytes)
            return message

        await self.app(scope, receive_within_limit, send)
