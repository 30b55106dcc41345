"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection pooling,
AsyncSession for per-request database access, dependency injection via FastAPI.

The identity store is reached only through sessions created here. Store
outages are retried once (after a rollback) and then surfaced as
StoreUnavailable; constraint violations are never retried.
"""

import functools

import structlog
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from warden.config import settings
from warden.errors import StoreUnavailable

logger = structlog.get_logger()


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine for ``url``.

    SQLite (tests, local tooling) gets a single shared connection and
    foreign-key enforcement so ON DELETE CASCADE behaves as on Postgres.
    """
    if url.startswith("sqlite"):
        new_engine = create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        sync_engine: Engine = new_engine.sync_engine
        event.listen(sync_engine, "connect", _enable_sqlite_foreign_keys)
        return new_engine

    # Connection pool: min 5, max 20 connections.
    return create_async_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=15,
        pool_pre_ping=True,
    )


engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory — each request gets its own session.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncSession:
    """FastAPI dependency — yields a session per request, auto-closes."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def store_guard(method):
    """Retry a service method once on a store outage, then give up.

    The wrapped method must belong to an object exposing ``self.db``.
    Only connectivity failures are retried; integrity errors propagate
    to the method's own handling untouched.
    """

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        for attempt in (1, 2):
            try:
                return await method(self, *args, **kwargs)
            except (OperationalError, InterfaceError) as e:
                await self.db.rollback()
                logger.warning(
                    "store.unavailable",
                    operation=method.__qualname__,
                    attempt=attempt,
                    error=type(e).__name__,
                )
        raise StoreUnavailable()

    return wrapper
