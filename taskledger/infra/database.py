from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends
from sqlalchemy import TIMESTAMP, TypeDecorator
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from taskledger.config.settings import Settings, get_settings
from taskledger.v1.core.exceptions import STORE_ERRORS, StoreUnavailableError


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp stored and compared in UTC.

    SQLite keeps only the wall-clock part of a datetime, so values with
    another offset would be written and compared as the wrong instant.
    Naive values are taken to be UTC already.
    """

    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        return to_utc(value)

    def process_result_value(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        return to_utc(value)


def to_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to UTC, reading naive ones as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings):
        self.settings = settings
        engine_options: dict[str, Any] = {"echo": settings.db_echo}
        if settings.is_sqlite:
            # Concurrent writers wait on the file lock instead of failing fast
            engine_options["connect_args"] = {"timeout": settings.db_pool_timeout}
        else:
            engine_options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
                pool_pre_ping=True,
            )
        self.engine = create_async_engine(settings.database_url, **engine_options)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        """Create tables directly from metadata (local development and tests)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


# Global database instance
_database: Database | None = None


def get_database(settings: Settings = Depends(get_settings)) -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database(settings)
    return _database


async def get_session(
    database: Database = Depends(get_database),
) -> AsyncGenerator[AsyncSession, None]:
    """Dependency injection for database sessions."""
    async with database.SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Session for code running outside a request (workers, sweeps, CLI).

    Connectivity failures surface as StoreUnavailableError so callers can
    back off without depending on driver exception types.
    """
    async with session_factory() as session:
        try:
            yield session
        except STORE_ERRORS as e:
            await _safe_rollback(session)
            raise StoreUnavailableError(
                details={"reason": e.__class__.__name__}
            ) from e
        except Exception:
            await _safe_rollback(session)
            raise


async def _safe_rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except STORE_ERRORS:
        # The connection is already gone; nothing left to roll back
        pass


def dialect_insert(session: AsyncSession, model: Any):
    """Return an INSERT supporting ON CONFLICT for the session's backend."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


# Convenience type alias for dependency injection
SessionDep = Depends(get_session)
