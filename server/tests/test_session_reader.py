"""
Unit tests for SessionReader and the read-only engine.

Tests verify:
- The engine refuses writes.
- Paging is stable when sessions share plugged_at.
- recent() honours the five minute window.
- diagnostics() tolerates a store at an older schema version.

CHANGELOG:
- 2026-10-08: Cover diagnostics on older schema versions (STORY-015)
- 2026-10-04: Initial creation (STORY-017)

TODO:
- None
"""

from collections.abc import AsyncGenerator
from datetime import timedelta
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from collector.src.repository import MIGRATIONS
from server.src.db.session import create_engine, create_session_factory
from server.src.services.sessions import SessionReader, parse_timestamp
from server.tests.conftest import BASE_TIME, make_session, write_sessions


@pytest_asyncio.fixture
async def engine(db_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Read-only engine over this test's store."""
    engine = create_engine(str(db_path))
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Read-only session over this test's store."""
    async with create_session_factory(engine)() as session:
        yield session


class TestReadOnlyEngine:
    """The API's engine cannot modify the store."""

    @pytest.mark.asyncio
    async def test_insert_rejected(self, db_path: Path, db: AsyncSession) -> None:
        """Writes fail with a read-only error."""
        await write_sessions(db_path, [])

        with pytest.raises(OperationalError, match="readonly"):
            await db.execute(
                text("INSERT INTO log_events (created_at, level, code, message, source) "
                     "VALUES ('x', 'INFO', 'c', 'm', 's')")
            )


class TestSessionReader:
    """Query behaviour of SessionReader."""

    @pytest.mark.asyncio
    async def test_ties_on_plugged_at_are_stable(self, db_path: Path, db: AsyncSession) -> None:
        """Two pages over equal plugged_at values never repeat a row."""
        await write_sessions(
            db_path,
            [
                make_session(station_id="garage"),
                make_session(station_id="carport"),
                make_session(station_id="driveway"),
            ],
        )
        reader = SessionReader(db)

        first = await reader.list_sessions(limit=2, offset=0)
        second = await reader.list_sessions(limit=2, offset=2)

        ids = [row.id for row in first + second]
        assert len(ids) == 3
        assert len(set(ids)) == 3

    @pytest.mark.asyncio
    async def test_recent_window(self, db_path: Path, db: AsyncSession) -> None:
        """recent() returns the newest session up to five minutes after it ended."""
        await write_sessions(db_path, [make_session()])
        reader = SessionReader(db)
        unplugged_at = BASE_TIME + timedelta(hours=1)

        assert await reader.recent(unplugged_at + timedelta(minutes=5)) is not None
        assert await reader.recent(unplugged_at + timedelta(minutes=5, milliseconds=1)) is None

    @pytest.mark.asyncio
    async def test_count(self, db_path: Path, db: AsyncSession) -> None:
        """count() returns the number of stored sessions."""
        await write_sessions(
            db_path, [make_session(), make_session(plugged_at=BASE_TIME + timedelta(hours=2))]
        )

        assert await SessionReader(db).count() == 2

    @pytest.mark.asyncio
    async def test_diagnostics_on_older_schema(self, db_path: Path, db: AsyncSession) -> None:
        """A store without log event tables reports zero events."""
        async with aiosqlite.connect(db_path) as conn:
            version, statements = MIGRATIONS[0]
            for statement in statements:
                await conn.execute(statement)
            await conn.execute(f"PRAGMA user_version = {version}")
            await conn.commit()

        summary = await SessionReader(db).diagnostics()

        assert summary == {
            "schema_version": 1,
            "sessions_count": 0,
            "log_events_count": 0,
            "latest_session": None,
        }


def test_parse_timestamp() -> None:
    """Stored Z timestamps parse into aware UTC datetimes."""
    assert parse_timestamp("2026-10-01T18:00:00.000Z") == BASE_TIME
