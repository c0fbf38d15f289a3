"""
Clock abstraction for the collector.

The host clock is authoritative for session timestamps. Components take a
``Clock`` so tests can drive time deterministically.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Supplies the current instant as an aware UTC datetime."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the host's wall clock."""

    def now(self) -> datetime:
        return datetime.now(tz=UTC)
