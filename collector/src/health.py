"""
Health file writer for the collector.

Writes a JSON health file at a configurable path with four fields:
- last_poll_ts: ISO timestamp of the most recent poll tick.
- last_session_ts: ISO timestamp of the most recently persisted session.
- active_sessions: Number of stations with an open session.
- consecutive_poll_failures: Longest current run of failed polls of any
  single station. Each station keeps its own run, so one healthy station
  does not hide another that keeps failing.

The file is rewritten on every state change, providing a simple liveness
signal that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-16: Count consecutive poll failures per station (STORY-025)
- 2026-10-05: Track active sessions and poll failures (STORY-016)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


class HealthWriter:
    """Writes collector health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.
    Failing to write the file is logged and otherwise ignored: health
    reporting must never stop the poll loop.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_poll_ts: str | None = None
        self._last_session_ts: str | None = None
        self._active: set[str] = set()
        self._consecutive_failures: dict[str, int] = {}

    def record_poll(self, station_id: str, *, ok: bool, active: bool) -> None:
        """Record a poll tick for one station and write health file.

        Args:
            station_id: Station the tick belongs to.
            ok: Whether the poll produced a reading.
            active: Whether the station has an open session after the tick.
        """
        self._last_poll_ts = datetime.now(tz=UTC).isoformat()
        if ok:
            self._consecutive_failures[station_id] = 0
        else:
            self._consecutive_failures[station_id] = (
                self._consecutive_failures.get(station_id, 0) + 1
            )
        if active:
            self._active.add(station_id)
        else:
            self._active.discard(station_id)
        self._write()

    def record_session(self) -> None:
        """Record a persisted session and write health file."""
        self._last_session_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def snapshot(self) -> dict[str, object]:
        return {
            "last_poll_ts": self._last_poll_ts,
            "last_session_ts": self._last_session_ts,
            "active_sessions": len(self._active),
            "consecutive_poll_failures": max(self._consecutive_failures.values(), default=0),
        }

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        try:
            self.path.write_text(json.dumps(self.snapshot()))
        except OSError as exc:
            logger.warning("Could not write health file %s: %s", self.path, exc)
