"""
Request-scoped dependencies for the session API.

Routes receive a ``SessionReader`` bound to a fresh read-only database
session, and the current time through ``get_now`` so tests can pin it.

CHANGELOG:
- 2026-10-04: Add SessionReader and clock providers (STORY-017)
- 2026-10-02: Initial creation (STORY-001)
"""

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from server.src.db.session import get_async_session
from server.src.services.sessions import SessionReader


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield the read-only database session for one request."""
    async for db in get_async_session():
        yield db


DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_reader(db: DbSession) -> SessionReader:
    """Build a SessionReader over the request's database session."""
    return SessionReader(db)


def get_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(tz=UTC)


Reader = Annotated[SessionReader, Depends(get_reader)]
Now = Annotated[datetime, Depends(get_now)]
