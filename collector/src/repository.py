"""
Session writer: durable storage of completed charging sessions in SQLite.

The collector owns the only writer handle. Sessions are written exactly once,
together with the anomaly log events recorded while they were active, in a
single ``BEGIN IMMEDIATE`` transaction. The query API opens the same file
through its own read-only handle (see ``server.src.services.sessions``).

Concurrency:
- WAL journal mode so readers never block the writer.
- ``busy_timeout`` lets SQLite wait for a competing writer first; if the
  database is still locked the whole transaction is retried with bounded
  exponential backoff, then :class:`PersistError` is raised.
- Each session carries a unique ``episode_key``; persisting the same episode
  twice returns the id of the existing row, so a retry that follows a commit
  the caller never saw acknowledged does not create a duplicate.
- An in-process ``asyncio.Lock`` serializes pipelines sharing one writer.

Schema:
- Forward-only migrations tracked in ``PRAGMA user_version``. They are
  applied inside ``BEGIN IMMEDIATE`` after re-reading the version, so two
  writers starting at once do not apply a migration twice. A store written
  by newer code raises :class:`SchemaMismatchError`.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-08: Link anomaly log events to sessions, schema v2 (STORY-015)
- 2026-10-06: Retry on lock contention, dedupe on episode key (STORY-014)
- 2026-10-04: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import aiosqlite

from collector.src.clock import Clock, SystemClock
from collector.src.models import CompletedSession, format_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MAX_ATTEMPTS: int = 5
DEFAULT_BASE_BACKOFF_S: float = 0.05
MAX_BACKOFF_S: float = 2.0
"""Upper bound for a single backoff sleep."""

DEFAULT_BUSY_TIMEOUT_MS: int = 5000
"""How long SQLite itself waits on a locked database before reporting busy."""

LOG_EVENT_SOURCE: str = "collector"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

MIGRATIONS: list[tuple[int, tuple[str, ...]]] = [
    (
        1,
        (
            """\
CREATE TABLE IF NOT EXISTS charging_sessions (
    id TEXT PRIMARY KEY,
    station_id TEXT NOT NULL,
    plugged_at TEXT NOT NULL,
    unplugged_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL CHECK (duration_ms > 0),
    kwh REAL NOT NULL CHECK (kwh >= 0),
    energy_source TEXT NOT NULL,
    energy_warnings TEXT NOT NULL DEFAULT '[]',
    error_count_during_session INTEGER NOT NULL DEFAULT 0
        CHECK (error_count_during_session >= 0),
    debounce_samples INTEGER NOT NULL,
    poll_interval_ms INTEGER NOT NULL,
    episode_key TEXT NOT NULL UNIQUE,
    raw_start TEXT,
    raw_end TEXT,
    created_at TEXT NOT NULL
);
""",
            """\
CREATE INDEX IF NOT EXISTS idx_charging_sessions_order
    ON charging_sessions (plugged_at DESC, created_at DESC, id DESC);
""",
        ),
    ),
    (
        2,
        (
            """\
CREATE TABLE IF NOT EXISTS log_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    level TEXT NOT NULL,
    code TEXT NOT NULL,
    message TEXT NOT NULL,
    source TEXT NOT NULL,
    station_id TEXT,
    details_json TEXT
);
""",
            """\
CREATE INDEX IF NOT EXISTS idx_log_events_created_at
    ON log_events (created_at DESC, id DESC);
""",
            """\
CREATE TABLE IF NOT EXISTS charging_session_log_events (
    session_id TEXT NOT NULL REFERENCES charging_sessions (id) ON DELETE CASCADE,
    log_event_id INTEGER NOT NULL REFERENCES log_events (id) ON DELETE CASCADE,
    PRIMARY KEY (session_id, log_event_id)
);
""",
        ),
    ),
]

LATEST_SCHEMA_VERSION: int = MIGRATIONS[-1][0]

_SELECT_BY_EPISODE_SQL = "SELECT id FROM charging_sessions WHERE episode_key = ?;"

_INSERT_SESSION_SQL = """\
INSERT INTO charging_sessions (
    id, station_id, plugged_at, unplugged_at, duration_ms, kwh, energy_source,
    energy_warnings, error_count_during_session, debounce_samples,
    poll_interval_ms, episode_key, raw_start, raw_end, created_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_INSERT_LOG_EVENT_SQL = """\
INSERT INTO log_events (created_at, level, code, message, source, station_id, details_json)
VALUES (?, ?, ?, ?, ?, ?, ?);
"""

_LINK_LOG_EVENT_SQL = """\
INSERT INTO charging_session_log_events (session_id, log_event_id) VALUES (?, ?);
"""

_COUNT_SQL = "SELECT COUNT(*) FROM charging_sessions;"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PersistError(Exception):
    """A session could not be written (retries exhausted or store error)."""


class SchemaMismatchError(Exception):
    """The store was migrated by newer code than this process knows."""

    def __init__(self, found: int, supported: int) -> None:
        super().__init__(
            f"store schema version {found} is newer than supported version {supported}"
        )
        self.found = found
        self.supported = supported


def _is_contention(exc: aiosqlite.OperationalError) -> bool:
    """Return True for SQLite's transient lock errors."""
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _dump_json(value: object) -> str | None:
    return None if value is None else json.dumps(value, sort_keys=True, default=str)


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class SessionWriter:
    """Exclusive writer handle for the session store.

    Args:
        path: Filesystem path of the SQLite database file.
        max_attempts: Attempts per write before giving up (>= 1).
        base_backoff_s: First backoff sleep; doubles per retry up to
            :data:`MAX_BACKOFF_S`.
        busy_timeout_ms: SQLite ``busy_timeout`` for the connection.
        clock: Source of ``created_at`` timestamps.

    Usage::

        async with SessionWriter("/var/lib/wallbox/sessions.db") as writer:
            await writer.migrate()
            session_id = await writer.persist(session)
    """

    def __init__(
        self,
        path: str | Path,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_backoff_s: float = DEFAULT_BASE_BACKOFF_S,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        clock: Clock | None = None,
    ) -> None:
        self._path = Path(path)
        self._max_attempts = max(1, max_attempts)
        self._base_backoff_s = max(0.0, base_backoff_s)
        self._busy_timeout_ms = busy_timeout_ms
        self._clock = clock or SystemClock()
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        """Open the SQLite connection and configure it for a single writer.

        The connection runs in autocommit mode; every write opens its own
        explicit ``BEGIN IMMEDIATE`` transaction.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path), isolation_level=None)
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute("PRAGMA synchronous=NORMAL;")
        await self._db.execute("PRAGMA foreign_keys=ON;")
        await self._db.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)};")

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SessionWriter:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _require_db(self) -> aiosqlite.Connection:
        assert self._db is not None, "SessionWriter not opened. Call open() or use async with."
        return self._db

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def schema_version(self) -> int:
        """Return the store's ``PRAGMA user_version``."""
        cursor = await self._require_db().execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def migrate(self) -> int:
        """Bring the schema up to :data:`LATEST_SCHEMA_VERSION`.

        Idempotent. Safe to call from several processes at once.

        Returns:
            The schema version after migration.

        Raises:
            SchemaMismatchError: The store is newer than this code.
            PersistError: The migration could not be applied.
        """
        async with self._lock:
            current = await self.schema_version()
            if current > LATEST_SCHEMA_VERSION:
                raise SchemaMismatchError(current, LATEST_SCHEMA_VERSION)
            if current == LATEST_SCHEMA_VERSION:
                return current
            return await self._with_retry("migrate", self._migrate_once)

    async def persist(self, session: CompletedSession) -> str:
        """Write a completed session and its log events.

        Args:
            session: The session to store.

        Returns:
            The id of the stored row. When a row for the same episode already
            exists, its id is returned and nothing is written.

        Raises:
            PersistError: The write failed after all retries, or the store
                rejected it.
        """
        async with self._lock:
            session_id = await self._with_retry(
                f"persist session {session.episode_key}",
                lambda: self._persist_once(session),
            )
        logger.info(
            "Persisted session %s for station %s (%.4f kWh, %s)",
            session_id,
            session.station_id,
            session.kwh,
            session.energy_source.value,
        )
        return session_id

    async def count(self) -> int:
        """Return the number of stored sessions."""
        cursor = await self._require_db().execute(_COUNT_SQL)
        row = await cursor.fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _with_retry(self, what: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation*, retrying on lock contention with backoff."""
        delay = self._base_backoff_s
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await operation()
            except aiosqlite.OperationalError as exc:
                if not _is_contention(exc):
                    raise PersistError(f"{what} failed: {exc}") from exc
                if attempt == self._max_attempts:
                    raise PersistError(
                        f"{what} failed after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "%s: store busy (attempt %d/%d), retrying in %.2fs",
                    what,
                    attempt,
                    self._max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF_S)
            except aiosqlite.Error as exc:
                raise PersistError(f"{what} failed: {exc}") from exc
        raise PersistError(f"{what} failed")  # pragma: no cover

    async def _rollback(self, db: aiosqlite.Connection) -> None:
        if db.in_transaction:
            await db.execute("ROLLBACK;")

    async def _migrate_once(self) -> int:
        db = self._require_db()
        await db.execute("BEGIN IMMEDIATE;")
        try:
            cursor = await db.execute("PRAGMA user_version;")
            row = await cursor.fetchone()
            current = int(row[0]) if row else 0
            if current > LATEST_SCHEMA_VERSION:
                raise SchemaMismatchError(current, LATEST_SCHEMA_VERSION)
            for version, statements in MIGRATIONS:
                if version <= current:
                    continue
                for statement in statements:
                    await db.execute(statement)
                await db.execute(f"PRAGMA user_version={version};")
                logger.info("Applied schema migration v%d to %s", version, self._path)
                current = version
            await db.execute("COMMIT;")
        except BaseException:
            await self._rollback(db)
            raise
        return current

    async def _persist_once(self, session: CompletedSession) -> str:
        db = self._require_db()
        await db.execute("BEGIN IMMEDIATE;")
        try:
            cursor = await db.execute(_SELECT_BY_EPISODE_SQL, (session.episode_key,))
            existing = await cursor.fetchone()
            if existing is not None:
                await db.execute("ROLLBACK;")
                logger.info(
                    "Session %s already stored as %s, skipping",
                    session.episode_key,
                    existing[0],
                )
                return str(existing[0])

            session_id = str(uuid.uuid4())
            await db.execute(
                _INSERT_SESSION_SQL,
                (
                    session_id,
                    session.station_id,
                    format_timestamp(session.plugged_at),
                    format_timestamp(session.unplugged_at),
                    session.duration_ms,
                    session.kwh,
                    session.energy_source.value,
                    json.dumps(list(session.energy_warnings)),
                    session.error_count_during_session,
                    session.debounce_samples,
                    session.poll_interval_ms,
                    session.episode_key,
                    _dump_json(session.raw_start),
                    _dump_json(session.raw_end),
                    format_timestamp(self._clock.now()),
                ),
            )
            for event in session.events:
                cursor = await db.execute(
                    _INSERT_LOG_EVENT_SQL,
                    (
                        format_timestamp(event.created_at),
                        event.level,
                        event.code,
                        event.message,
                        LOG_EVENT_SOURCE,
                        session.station_id,
                        _dump_json(event.details),
                    ),
                )
                await db.execute(_LINK_LOG_EVENT_SQL, (session_id, cursor.lastrowid))
            await db.execute("COMMIT;")
        except BaseException:
            await self._rollback(db)
            raise
        return session_id
