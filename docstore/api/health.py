"""Health endpoints: readiness with a short DB check, and plain liveness."""

import asyncio
import logging
import time

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from docstore.core.logging import get_logging_context
from docstore.db.session import SessionDep

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])
HEALTH_DB_TIMEOUT_SECONDS = 2.0


def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error_code": "SERVICE_UNAVAILABLE", "message": "dependency unavailable"},
    )


@router.get("/health")
async def health(session: SessionDep) -> dict[str, str]:
    """Readiness check with database connectivity verification.

    Raises:
        HTTPException: 503 if the database is unreachable or times out
    """
    context = get_logging_context()
    start_time = time.perf_counter()

    try:
        async with asyncio.timeout(HEALTH_DB_TIMEOUT_SECONDS):
            await session.execute(text("SELECT 1"))
    except TimeoutError as exc:
        logger.warning(
            "health_check_timeout",
            extra={**context, "timeout_seconds": HEALTH_DB_TIMEOUT_SECONDS},
        )
        raise _unavailable() from exc
    except (SQLAlchemyError, OSError) as exc:
        logger.exception("health_check_database_error", extra=context)
        raise _unavailable() from exc

    duration_ms = (time.perf_counter() - start_time) * 1000
    logger.debug(
        "health_check_success",
        extra={**context, "db_response_time_ms": round(duration_ms, 2)},
    )
    return {"status": "healthy"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    """Liveness check; does not touch dependencies."""
    return {"status": "ok"}
