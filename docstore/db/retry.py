"""Retry for document metadata reads that hit a transient database failure.

Usage:
    from docstore.db.retry import read_retry

    class SqlDocumentRepository:
        @read_retry("find_by_id")
        async def find_by_id(self, document_id: UUID) -> Document:
            ...

A failure is transient when the connection was lost or the server asked the
client to try again: a dropped or invalidated connection, a serialization
failure, a deadlock victim or an administrator shutdown. Constraint violations
and programming errors are never retried.

Writes are not wrapped. A retried INSERT after an ambiguous commit could hit
the unique storage_path, and the service already compensates a failed create
by deleting the uploaded object.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docstore.core.config import settings
from docstore.core.logging import get_logging_context

LOGGER = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# SQLSTATEs a server sends when the same statement may succeed on a new attempt
TRANSIENT_SQLSTATES = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "57P01",  # admin_shutdown
        "57P03",  # cannot_connect_now
        "08000",  # connection_exception
        "08003",  # connection_does_not_exist
        "08006",  # connection_failure
    }
)

BACKOFF_MULTIPLIER = 0.2


def _sqlstate(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_transient_db_error(exc: BaseException) -> bool:
    """Return True when a failed read may succeed if issued again."""
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True
    sqlstate = _sqlstate(exc)
    if sqlstate is not None:
        return sqlstate in TRANSIENT_SQLSTATES
    # Drivers without SQLSTATEs (SQLite) only report lost connections this way
    return isinstance(exc, (OperationalError, InterfaceError))


def _log_read_retry(operation: str) -> Callable[[RetryCallState], None]:
    def _log(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        LOGGER.warning(
            "document_read_retry",
            extra={
                **get_logging_context(),
                "operation": operation,
                "attempt": retry_state.attempt_number,
                "wait_seconds": getattr(retry_state.next_action, "sleep", 0),
                "exception_type": type(exc).__name__,
                "sqlstate": _sqlstate(exc) if exc is not None else None,
            },
        )

    return _log


def create_read_retry(
    operation: str,
    *,
    max_attempts: int | None = None,
    max_wait: float | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Build a retry decorator for one repository read.

    Args:
        operation: Name logged with every retry (e.g. "find_by_id")
        max_attempts: Total attempts; defaults to DB_RETRY_MAX_ATTEMPTS
        max_wait: Backoff ceiling in seconds; defaults to DB_RETRY_MAX_WAIT_SECONDS

    Returns:
        Decorator that re-runs the coroutine on transient errors and re-raises
        the last error once attempts run out
    """
    attempts = settings.db_retry_max_attempts if max_attempts is None else max_attempts
    ceiling = settings.db_retry_max_wait_seconds if max_wait is None else max_wait
    return retry(
        retry=retry_if_exception(is_transient_db_error),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=BACKOFF_MULTIPLIER, max=ceiling),
        before_sleep=_log_read_retry(operation),
        reraise=True,
    )


def read_retry(operation: str) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry decorator for a repository read, configured from settings."""
    return create_read_retry(operation)
