"""
Domain models for device readings and completed charging sessions.

Defines the values that flow through the collector pipeline:

- ``DeviceReading``: one normalized sample produced per poll tick.
- ``PollFailure``: the typed outcome of a poll that produced no reading.
- ``EnergySnapshot``: the pair of raw energy counters captured at a point
  in a session, together with the unit they are expressed in.
- ``CompletedSession``: the immutable record handed to the session writer.

The source layer returns ``DeviceReading | PollFailure`` rather than raising,
so the state machine's transition table stays total.

CHANGELOG:
- 2026-10-16: Compute epoch milliseconds with integer arithmetic (STORY-025)
- 2026-10-05: Add anomaly events to CompletedSession (STORY-011)
- 2026-10-02: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, computed_field, model_validator


class PlugState(enum.Enum):
    """Confirmed cable state of a charging station."""

    UNPLUGGED = "unplugged"
    PLUGGED = "plugged"


class EnergyUnit(str, enum.Enum):
    """Unit of a raw energy counter as reported by the device."""

    TENTHS_WH = "tenths_wh"
    WH = "wh"
    KWH = "kwh"


class EnergySource(str, enum.Enum):
    """Which strategy produced a session's kWh figure.

    Every fallback path has its own tag so that persisted sessions can be
    audited after the fact.
    """

    PRESENT_SESSION = "present-session"
    TOTAL_DIFF = "total-diff"
    PRESENT_SESSION_END = "present-session-end"
    UNAVAILABLE = "unavailable"


class FailureKind(str, enum.Enum):
    """Reason a poll tick produced no reading."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    MALFORMED_RESPONSE = "malformed_response"


@dataclass(frozen=True)
class PollFailure:
    """A poll tick that did not yield a usable reading.

    Attributes:
        kind: Failure category.
        detail: Human-readable detail for logs.
    """

    kind: FailureKind
    detail: str = ""


@dataclass(frozen=True)
class EnergySnapshot:
    """Raw energy counters at one instant, in the reading's unit."""

    present_session_raw: float | None = None
    total_raw: float | None = None
    unit: EnergyUnit = EnergyUnit.TENTHS_WH


class DeviceReading(BaseModel):
    """A single normalized sample from a charging station.

    Attributes:
        plugged: Cable state, or ``None`` when the device did not report it.
        energy_present_session_raw: Energy counter of the current plug-in
            episode, in ``energy_unit``.
        energy_total_raw: Lifetime energy counter, in ``energy_unit``. May
            reset when the device reboots.
        energy_unit: Unit of both energy counters.
        faulted: True when the device reports an error state.
        device_seconds: Device-internal seconds counter. Only used to detect
            device reboots, never as a timestamp.
        raw: Raw payloads the reading was built from, kept for diagnostics.
    """

    plugged: bool | None = None
    energy_present_session_raw: float | None = None
    energy_total_raw: float | None = None
    energy_unit: EnergyUnit = EnergyUnit.TENTHS_WH
    faulted: bool = False
    device_seconds: int | None = None
    raw: dict[str, Any] | None = None

    @property
    def plug_state(self) -> PlugState | None:
        """Return the reading's plug state, or None if unknown."""
        if self.plugged is None:
            return None
        return PlugState.PLUGGED if self.plugged else PlugState.UNPLUGGED

    def energy_snapshot(self) -> EnergySnapshot:
        """Return the reading's energy counters as a snapshot."""
        return EnergySnapshot(
            present_session_raw=self.energy_present_session_raw,
            total_raw=self.energy_total_raw,
            unit=self.energy_unit,
        )


PollOutcome = DeviceReading | PollFailure
"""Result of one poll tick."""


class SessionEvent(BaseModel):
    """An anomaly observed while a session was active.

    Persisted as a log event and linked to the session it belongs to.
    """

    created_at: datetime
    level: str
    code: str
    message: str
    details: dict[str, Any] | None = None


EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision and ``Z``."""
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def to_epoch_ms(value: datetime) -> int:
    """Return a datetime as integer milliseconds since the epoch."""
    return (value.astimezone(UTC) - EPOCH) // timedelta(milliseconds=1)


class CompletedSession(BaseModel):
    """A finished plug-in to plug-out charging episode.

    Built exactly once by the state machine when an unplug is confirmed and
    never mutated afterwards. ``id`` is assigned by the session writer.

    Attributes:
        station_id: Identifier of the station the session belongs to.
        plugged_at: Host-clock instant the plug-in was first observed (UTC).
        unplugged_at: Host-clock instant the unplug was first observed (UTC).
        kwh: Energy delivered, never negative.
        energy_source: Strategy tag that produced ``kwh``.
        energy_warnings: Anomalies the energy strategy corrected for.
        error_count_during_session: Poll failures and faulted readings seen
            while the session was active.
        debounce_samples: Debounce window the session was detected with.
        poll_interval_ms: Poll interval the session was detected with.
        raw_start: Raw payload of the reading that confirmed the plug-in.
        raw_end: Raw payload of the reading that confirmed the unplug.
        events: Anomalies recorded while the session was active.
    """

    model_config = {"frozen": True}

    station_id: str
    plugged_at: datetime
    unplugged_at: datetime
    kwh: float = Field(ge=0.0)
    energy_source: EnergySource
    energy_warnings: tuple[str, ...] = ()
    error_count_during_session: int = Field(default=0, ge=0)
    debounce_samples: int = Field(default=2, ge=1)
    poll_interval_ms: int = Field(default=1000, ge=0)
    raw_start: dict[str, Any] | None = None
    raw_end: dict[str, Any] | None = None
    events: tuple[SessionEvent, ...] = ()

    @model_validator(mode="after")
    def _unplugged_after_plugged(self) -> CompletedSession:
        """Reject sessions whose end is not strictly after their start."""
        if self.unplugged_at <= self.plugged_at:
            raise ValueError("unplugged_at must be strictly after plugged_at")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_ms(self) -> int:
        """Session duration in milliseconds."""
        return to_epoch_ms(self.unplugged_at) - to_epoch_ms(self.plugged_at)

    @property
    def episode_key(self) -> str:
        """Natural key of the episode, unique per station and time span."""
        return (
            f"{self.station_id}|{to_epoch_ms(self.plugged_at)}"
            f"|{to_epoch_ms(self.unplugged_at)}"
        )
