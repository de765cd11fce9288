"""Async SQLAlchemy engine and session dependency for the API."""

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from docstore.core.logging import get_logging_context

LOGGER = logging.getLogger(__name__)


class PoolConfig(BaseModel, frozen=True):
    """Database connection pool configuration.

    Attributes:
        size: Number of connections to keep in pool
        max_overflow: Max connections beyond pool_size
        timeout: Seconds to wait for available connection
        recycle: Seconds before recycling connection (-1 to disable)
        pre_ping: Test connection validity before use

    Example:
        config = PoolConfig(size=20, max_overflow=40, timeout=10.0)
    """

    size: int = Field(default=5, ge=1, le=100, description="Pool size")
    max_overflow: int = Field(default=10, ge=0, le=100, description="Max overflow")
    timeout: float = Field(default=30.0, ge=1.0, description="Connection timeout")
    recycle: int = Field(default=1800, ge=-1, description="Connection recycle time")
    pre_ping: bool = Field(default=True, description="Enable pre-ping health check")


DEFAULT_POOL_CONFIG = PoolConfig()


def create_db_engine(
    database_url: str,
    *,
    echo: bool = False,
    pool: PoolConfig | None = None,
) -> AsyncEngine:
    """Factory function to create database engine.

    Use this function in application lifespan to create the engine
    and store it in app.state.

    Args:
        database_url: Database connection URL
        echo: Echo SQL statements to logs
        pool: Connection pool configuration (uses defaults if not specified)

    Returns:
        Configured async SQLAlchemy engine
    """
    pool_config = pool or DEFAULT_POOL_CONFIG
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=pool_config.size,
        max_overflow=pool_config.max_overflow,
        pool_timeout=pool_config.timeout,
        pool_recycle=pool_config.recycle,
        pool_pre_ping=pool_config.pre_ping,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Factory function to create session maker bound to engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for request scope.

    Session lifecycle:
    1. Session created from the pool held in app.state.async_session_maker
    2. Yielded to request handler
    3. Rolled back on exception
    4. Session closed and returned to pool

    Callers are responsible for explicit commits.

    Yields:
        AsyncSession for database operations
    """
    context = get_logging_context()
    session_maker: async_sessionmaker[AsyncSession] = request.app.state.async_session_maker

    async with session_maker() as session:
        try:
            yield session
        except Exception:
            LOGGER.warning("session_rollback", extra=context, exc_info=True)
            await session.rollback()
            raise


SessionDep = Annotated[AsyncSession, Depends(get_session)]


async def init_db(db_engine: AsyncEngine) -> None:
    """Test-only helper; production schemas are managed by Alembic."""
    async with db_engine.begin() as connection:
        await connection.run_sync(SQLModel.metadata.create_all)
