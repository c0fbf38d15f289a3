"""
Read-only SQLAlchemy access to the collector's session store.

The API opens the same SQLite file the collector writes, through the
aiosqlite driver. Each new connection gets ``PRAGMA query_only`` so no
statement issued by the API can modify the store, and a ``busy_timeout`` so
reads wait out a writer's lock instead of failing immediately. Connections
are not pooled; WAL readers are cheap to open.

CHANGELOG:
- 2026-10-04: Initial creation (STORY-017)
"""

import os
from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

READER_BUSY_TIMEOUT_MS = 5000

# Set by init_engine(), cleared by dispose_engine().
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _get_db_path() -> str:
    """Read SESSIONS_DB_PATH from environment.

    Returns:
        str: Filesystem path of the session store.

    Raises:
        RuntimeError: If SESSIONS_DB_PATH is not set.
    """
    path = os.environ.get("SESSIONS_DB_PATH")
    if not path:
        raise RuntimeError("SESSIONS_DB_PATH environment variable is required")
    return path


def _set_read_only_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    """Make a fresh SQLite connection read-only."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA query_only=ON")
    cursor.execute(f"PRAGMA busy_timeout={READER_BUSY_TIMEOUT_MS}")
    cursor.close()


def create_engine(path: str | None = None) -> AsyncEngine:
    """Create a read-only async SQLAlchemy engine for the session store.

    Args:
        path: Optional SQLite file path. Defaults to SESSIONS_DB_PATH.

    Returns:
        AsyncEngine: Configured async engine for SQLite via aiosqlite.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{path or _get_db_path()}",
        echo=False,
        poolclass=NullPool,
    )
    event.listen(engine.sync_engine, "connect", _set_read_only_pragmas)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Bind a session factory to a read-only engine.

    Rows are never expired on commit; the API only reads them.
    """
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def init_engine() -> None:
    """Open the read-only engine for SESSIONS_DB_PATH if not already open."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        return
    _engine = create_engine()
    _session_factory = create_session_factory(_engine)


async def dispose_engine() -> None:
    """Close the read-only engine, if open, so a later init starts fresh."""
    global _engine, _session_factory  # noqa: PLW0603
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()


async def get_async_session() -> AsyncIterator[AsyncSession]:
    """Yield one read-only session per request, closed when it ends."""
    init_engine()
    if _session_factory is None:
        raise RuntimeError("read-only engine is not initialised")
    async with _session_factory() as db:
        yield db
