from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskledger.config.settings import Settings, get_settings
from taskledger.infra.database import Database, get_session
from taskledger.main import create_app

# Import models to ensure they're registered
from taskledger.v1.infra.cache import models as cache_models  # noqa: F401
from taskledger.v1.infra.jobs import models as job_models  # noqa: F401
from taskledger.v1.infra.ledger import models as ledger_models  # noqa: F401


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file.

    A file (rather than in-memory) database gives every session its own
    connection, so concurrency tests race real independent writers.
    """
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'taskledger.db'}",
        environment="development",
        job_backoff_base_ms=0,
        job_poll_interval_ms=10,
        job_max_poll_interval_ms=50,
    )


@pytest.fixture
async def database(test_settings) -> AsyncGenerator[Database, None]:
    """Create a test database with all tables."""
    database = Database(test_settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def session_factory(database) -> async_sessionmaker[AsyncSession]:
    return database.SessionLocal


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def now() -> datetime:
    """A fixed, whole-second instant so stored timestamps compare exactly."""
    return datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def app(test_settings, session_factory):
    """Create a test FastAPI application with the test database."""
    app = create_app()

    async def get_test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    # Override the database and settings dependencies
    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_settings] = lambda: test_settings

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
