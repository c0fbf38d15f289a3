"""
Tests for the diagnostics endpoints.

CHANGELOG:
- 2026-10-08: Cover /diagnostics/log-events (STORY-015)
- 2026-10-05: Initial creation (STORY-018)

TODO:
- None
"""

from collections.abc import Callable
from datetime import timedelta

from fastapi.testclient import TestClient

from collector.src.models import SessionEvent
from server.tests.conftest import BASE_TIME, make_session


def _timeout_event(minutes: int) -> SessionEvent:
    return SessionEvent(
        created_at=BASE_TIME + timedelta(minutes=minutes),
        level="WARNING",
        code="poll_timeout",
        message="poll failed: timeout",
        details={"kind": "timeout"},
    )


class TestDbDiagnostics:
    """GET /diagnostics/db."""

    def test_unmigrated_store(self, client: TestClient) -> None:
        """A store the collector never touched reports version 0 and no rows."""
        response = client.get("/diagnostics/db")

        assert response.status_code == 200
        assert response.json() == {
            "schemaVersion": 0,
            "sessionsCount": 0,
            "logEventsCount": 0,
            "latestSession": None,
        }

    def test_migrated_empty_store(self, seed: Callable, client: TestClient) -> None:
        """A migrated store reports the latest schema version."""
        seed()

        body = client.get("/diagnostics/db").json()

        assert body["schemaVersion"] == 2
        assert body["sessionsCount"] == 0
        assert body["latestSession"] is None

    def test_counts_and_latest(self, seed: Callable, client: TestClient) -> None:
        """Counts cover sessions and their log events."""
        ids = seed(
            make_session(events=(_timeout_event(5), _timeout_event(6))),
            make_session(plugged_at=BASE_TIME + timedelta(hours=2)),
        )

        body = client.get("/diagnostics/db").json()

        assert body["sessionsCount"] == 2
        assert body["logEventsCount"] == 2
        assert body["latestSession"]["id"] == ids[1]


class TestLogEvents:
    """GET /diagnostics/log-events."""

    def test_events_linked_to_session(self, seed: Callable, client: TestClient) -> None:
        """Each event carries the id of its session, newest first."""
        ids = seed(make_session(events=(_timeout_event(5), _timeout_event(6))))

        body = client.get("/diagnostics/log-events").json()

        assert [event["createdAt"] for event in body] == [
            "2026-10-01T18:06:00.000Z",
            "2026-10-01T18:05:00.000Z",
        ]
        first = body[0]
        assert first["sessionId"] == ids[0]
        assert first["code"] == "poll_timeout"
        assert first["level"] == "WARNING"
        assert first["source"] == "collector"
        assert first["stationId"] == "garage"
        assert first["details"] == {"kind": "timeout"}

    def test_limit(self, seed: Callable, client: TestClient) -> None:
        """limit caps the number of events returned."""
        seed(make_session(events=(_timeout_event(5), _timeout_event(6))))

        body = client.get("/diagnostics/log-events", params={"limit": 1}).json()

        assert len(body) == 1

    def test_no_events(self, seed: Callable, client: TestClient) -> None:
        """A store without events yields an empty list."""
        seed(make_session())

        assert client.get("/diagnostics/log-events").json() == []
