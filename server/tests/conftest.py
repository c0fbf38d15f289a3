"""
Shared test fixtures for API tests.

Every test gets its own SQLite session store under tmp_path, pointed to by
SESSIONS_DB_PATH. Stores are migrated and seeded through the collector's
SessionWriter so the API is tested against the exact schema it reads in
production.

CHANGELOG:
- 2026-10-04: Seed a real session store instead of mocking the DB (STORY-017)
- 2026-10-02: Initial creation (STORY-001)
"""

import asyncio
from collections.abc import Callable, Generator, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from collector.src.models import CompletedSession, EnergySource, SessionEvent
from collector.src.repository import SessionWriter

BASE_TIME = datetime(2026, 10, 1, 18, 0, 0, tzinfo=UTC)


def make_session(
    plugged_at: datetime = BASE_TIME,
    duration: timedelta = timedelta(hours=1),
    station_id: str = "garage",
    kwh: float = 4.121,
    energy_source: EnergySource = EnergySource.PRESENT_SESSION,
    error_count: int = 0,
    events: tuple[SessionEvent, ...] = (),
) -> CompletedSession:
    """Build a CompletedSession with sensible defaults."""
    return CompletedSession(
        station_id=station_id,
        plugged_at=plugged_at,
        unplugged_at=plugged_at + duration,
        kwh=kwh,
        energy_source=energy_source,
        error_count_during_session=error_count,
        events=events,
    )


async def write_sessions(db_path: Path, sessions: Iterable[CompletedSession]) -> list[str]:
    """Migrate the store at *db_path* and persist *sessions* in order."""
    async with SessionWriter(db_path) as writer:
        await writer.migrate()
        return [await writer.persist(session) for session in sessions]


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    """Filesystem path of this test's session store."""
    return tmp_path / "sessions.db"


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch, db_path: Path) -> None:
    """Point the API at this test's session store."""
    monkeypatch.setenv("SESSIONS_DB_PATH", str(db_path))


@pytest.fixture()
def seed(db_path: Path) -> Callable[..., list[str]]:
    """Return a function that migrates the store and persists sessions.

    Calling it with no sessions leaves a migrated, empty store.
    """

    def _seed(*sessions: CompletedSession) -> list[str]:
        return asyncio.run(write_sessions(db_path, sessions))

    return _seed


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient for integration testing.

    Uses a context manager so the application lifespan (engine creation
    and disposal) runs for every test.

    Yields:
        TestClient: Configured test client for the FastAPI app.
    """
    from server.src.api.main import app

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def freeze_now() -> Generator[Callable[[datetime], None], None, None]:
    """Return a function that pins the API's notion of now."""
    from server.src.api.deps import get_now
    from server.src.api.main import app

    def _freeze(now: datetime) -> None:
        app.dependency_overrides[get_now] = lambda: now

    yield _freeze
    app.dependency_overrides.pop(get_now, None)
