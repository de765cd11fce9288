"""Shared pytest fixtures.

The environment is pinned before any docstore module is imported so the
module-level settings singleton sees test values: in-memory SQLite, local
object storage, no retry backoff, span export and rate limiting off.

Database-backed fixtures use an in-memory SQLite database (aiosqlite) with
a StaticPool, so every session in a test shares one connection and the
schema created by init_db().
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORAGE_PROVIDER", "local")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "warning")
os.environ.setdefault("DB_RETRY_MAX_WAIT_SECONDS", "0")
os.environ.setdefault("OTEL_SDK_DISABLED", "true")

from collections.abc import AsyncGenerator  # noqa: E402
from pathlib import Path  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from docstore.core.storage_providers import LocalObjectStore  # noqa: E402
from docstore.db.session import create_session_maker, init_db  # noqa: E402
from docstore.main import app  # noqa: E402
from docstore.tests.fixtures.settings import (  # noqa: E402, F401
    test_settings,
    test_settings_factory,
    test_settings_with_s3,
)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_maker(db_engine)


@pytest.fixture
async def db_session(session_maker: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
async def local_store(tmp_path: Path) -> LocalObjectStore:
    store = LocalObjectStore(str(tmp_path / "objects"))
    await store.start()
    return store


@pytest.fixture
async def client(
    session_maker: async_sessionmaker[AsyncSession],
    local_store: LocalObjectStore,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with test database and object store injected.

    ASGITransport does not run the lifespan, so app.state is populated here
    the same way the lifespan would.
    """
    app.state.async_session_maker = session_maker
    app.state.object_store = local_store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()
