"""Async SQLAlchemy engine, declarative base and session factories.

Provides:
- Base: Declarative base shared by every table (tenant isolation is row-level,
  every tenant-owned table carries a tenant_id column)
- get_engine(): Lazily created engine singleton
- get_session_factory(): async_sessionmaker used by the accessor and services
- get_session(): FastAPI dependency yielding one AsyncSession per request
- bound_session_factory(): factory that reuses one open session, so several
  accessor calls share a transaction
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from src.threadbase.config import get_settings

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all Threadbase models."""


# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine for the given URL.

    SQLite (tests, local tooling) runs on a single shared in-memory connection.
    PostgreSQL gets a connection pool and the pgvector codec registered on
    every new asyncpg connection.
    """
    if is_sqlite(url):
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )

    engine = create_async_engine(
        url,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
        echo=False,
    )

    if url.startswith("postgresql+asyncpg"):
        from pgvector.asyncpg import register_vector

        @event.listens_for(engine.sync_engine, "connect")
        def _register_vector(dbapi_connection: Any, connection_record: Any) -> None:
            try:
                dbapi_connection.run_async(register_vector)
            except ValueError as exc:
                # vector extension not created yet; init_db disposes the pool afterwards
                logger.warning("database.vector_codec_unavailable", error=str(exc))

    return engine


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().DATABASE_URL)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory bound to the engine singleton."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


# ── Session helpers ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession for the duration of one request."""
    async with get_session_factory()() as session:
        yield session


def bound_session_factory(session: AsyncSession) -> SessionFactory:
    """Wrap an already open session so it can be passed where a factory is expected.

    The wrapped session is never closed by the consumer; the caller owns its
    lifecycle and commit. Commits issued by the accessor are flushed instead.
    """

    @asynccontextmanager
    async def _factory() -> AsyncIterator[AsyncSession]:
        yield _NoCommitSession(session)

    return _factory


class _NoCommitSession:
    """Proxy that turns commit() into flush() on a caller-owned session."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        await self._session.flush()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._session, name)


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the pgvector extension (PostgreSQL only) and all tables."""
    # Importing the models registers their tables on Base.metadata
    import src.threadbase.models  # noqa: F401

    engine = engine or get_engine()
    if engine.dialect.name == "postgresql":
        async with engine.begin() as conn:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        # Reconnect so every pooled connection registers the vector codec
        await engine.dispose()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
