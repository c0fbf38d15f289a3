"""
Read-only session queries for the API.

``SessionReader`` wraps an AsyncSession opened through the read-only engine.
It never retries: SQLite's ``busy_timeout`` covers a writer holding the lock,
and anything else surfaces as a SQLAlchemy error that the API maps to 500.

Ordering is newest first by ``plugged_at``, with ``created_at`` and ``id`` as
tie-breakers so that paging is stable.

CHANGELOG:
- 2026-10-16: Cap offset at the SQLite integer range (STORY-022)
- 2026-10-08: Add log event queries and diagnostics (STORY-015)
- 2026-10-04: Initial creation (STORY-017)

TODO:
- None
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from server.src.db.models import ChargingSession, ChargingSessionLogEvent, LogEvent

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MIN_LIMIT = 1
MAX_LIMIT = 500
MAX_OFFSET = 2**63 - 1
"""Largest offset SQLite can bind (signed 64-bit INTEGER)."""

RECENT_WINDOW = timedelta(minutes=5)
"""A session counts as recent while ``now - unplugged_at`` is within this window."""

SESSIONS_SCHEMA_VERSION = 1
LOG_EVENTS_SCHEMA_VERSION = 2

_NEWEST_FIRST = (
    ChargingSession.plugged_at.desc(),
    ChargingSession.created_at.desc(),
    ChargingSession.id.desc(),
)


def clamp_limit(limit: int | None) -> int:
    """Clamp a requested page size to ``[MIN_LIMIT, MAX_LIMIT]``.

    Args:
        limit: Requested page size, or None for the default.

    Returns:
        int: The page size to use. ``0`` and negative values become 1.
    """
    if limit is None:
        return DEFAULT_LIMIT
    return max(MIN_LIMIT, min(MAX_LIMIT, limit))


def clamp_offset(offset: int | None) -> int:
    """Clamp a requested offset to ``[0, MAX_OFFSET]``."""
    if offset is None:
        return 0
    return max(0, min(MAX_OFFSET, offset))


def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO-8601 ``Z`` timestamp into an aware datetime."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class SessionReader:
    """Query helper over the read-only session store.

    Args:
        db: Async database session bound to the read-only engine.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def latest(self) -> ChargingSession | None:
        """Return the newest session, or None when the store is empty."""
        stmt = select(ChargingSession).order_by(*_NEWEST_FIRST).limit(1)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_sessions(
        self,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[ChargingSession]:
        """Return a page of sessions, newest first.

        Args:
            limit: Page size, clamped to ``[1, 500]`` (default 50).
            offset: Rows to skip, clamped to ``[0, 2**63 - 1]``.

        Returns:
            list[ChargingSession]: At most ``limit`` sessions.
        """
        stmt = (
            select(ChargingSession)
            .order_by(*_NEWEST_FIRST)
            .limit(clamp_limit(limit))
            .offset(clamp_offset(offset))
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def recent(self, now: datetime) -> ChargingSession | None:
        """Return the newest session if it ended within the recent window.

        Args:
            now: Current time (timezone-aware).

        Returns:
            ChargingSession | None: The session, or None when the newest one
            ended more than five minutes before ``now`` or none exists.
        """
        session = await self.latest()
        if session is None:
            return None
        if now - parse_timestamp(session.unplugged_at) > RECENT_WINDOW:
            return None
        return session

    async def count(self) -> int:
        """Return the number of stored sessions."""
        result = await self._db.execute(select(func.count()).select_from(ChargingSession))
        return int(result.scalar_one())

    async def count_log_events(self) -> int:
        """Return the number of stored log events."""
        result = await self._db.execute(select(func.count()).select_from(LogEvent))
        return int(result.scalar_one())

    async def schema_version(self) -> int:
        """Return the store's ``PRAGMA user_version``."""
        result = await self._db.execute(text("PRAGMA user_version"))
        return int(result.scalar_one())

    async def recent_log_events(
        self,
        limit: int | None = None,
    ) -> list[tuple[LogEvent, str | None]]:
        """Return recent log events with the session each one belongs to.

        Args:
            limit: Number of events, clamped to ``[1, 500]`` (default 50).

        Returns:
            list[tuple[LogEvent, str | None]]: ``(event, session_id)`` pairs,
            newest first. ``session_id`` is None for unlinked events.
        """
        stmt = (
            select(LogEvent, ChargingSessionLogEvent.session_id)
            .outerjoin(
                ChargingSessionLogEvent,
                ChargingSessionLogEvent.log_event_id == LogEvent.id,
            )
            .order_by(LogEvent.created_at.desc(), LogEvent.id.desc())
            .limit(clamp_limit(limit))
        )
        result = await self._db.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def diagnostics(self) -> dict:
        """Summarise the store for the diagnostics endpoint.

        Tables that the store's schema version does not include yet are
        reported as empty instead of failing.

        Returns:
            dict: ``schema_version``, ``sessions_count``,
            ``log_events_count`` and ``latest_session``.
        """
        version = await self.schema_version()
        sessions_count = 0
        log_events_count = 0
        latest = None
        if version >= SESSIONS_SCHEMA_VERSION:
            sessions_count = await self.count()
            latest = await self.latest()
        if version >= LOG_EVENTS_SCHEMA_VERSION:
            log_events_count = await self.count_log_events()
        return {
            "schema_version": version,
            "sessions_count": sessions_count,
            "log_events_count": log_events_count,
            "latest_session": latest,
        }
