"""
Session state machine for one charging station.

Owns the lifecycle of "no active session" (idle) versus "active session"
and builds a :class:`~collector.src.models.CompletedSession` when a debounced
unplug closes an open session.

Transition table (every combination is handled):

=====================  ======================  =================================
State                  Input                   Effect
=====================  ======================  =================================
idle                   confirmed plug-in       open session, capture start energy
active                 confirmed unplug        resolve energy, emit session
active                 poll failure / fault    error_count += 1
idle                   poll failure / fault    ignored
idle                   confirmed unplug        plug-in predated start-up, logged
active                 confirmed plug-in       unreachable, logged
=====================  ======================  =================================

The first plug state read after start-up is a baseline, not a transition.
When it is plugged, that charge is skipped: its start was never observed.

A transient fault never ends a session. A device reboot detected mid-session
(a counter moving backwards) is logged as an anomaly and recorded on the
session; the session still closes on the next confirmed unplug. A session
still open at shutdown is dropped rather than force-closed.

CHANGELOG:
- 2026-10-16: Skip a charge already in progress at start-up (STORY-021)
- 2026-10-05: Record anomaly events on the active session (STORY-011)
- 2026-10-04: Fall back to last seen energy counters at unplug (STORY-007)
- 2026-10-03: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from collector.src.debounce import ConfirmedTransition, PlugStateTracker
from collector.src.energy import resolve
from collector.src.models import (
    CompletedSession,
    DeviceReading,
    EnergySnapshot,
    PlugState,
    PollFailure,
    PollOutcome,
    SessionEvent,
    format_timestamp,
)

if TYPE_CHECKING:
    from collector.src.clock import Clock

logger = logging.getLogger(__name__)


@dataclass
class ActiveSessionContext:
    """State held while a session is open.

    Attributes:
        started_at: Host-clock instant of the confirmed plug-in.
        start_energy: Energy counters from the reading that confirmed the
            plug-in.
        start_raw: Raw payload of that reading.
        error_count: Poll failures and faulted readings seen while active.
        last_energy: Latest non-null energy counters seen while active.
        last_device_seconds: Latest device seconds counter seen while active.
        events: Anomalies recorded while active.
    """

    started_at: datetime
    start_energy: EnergySnapshot
    start_raw: dict[str, Any] | None = None
    error_count: int = 0
    last_energy: EnergySnapshot = field(default_factory=EnergySnapshot)
    last_device_seconds: int | None = None
    events: list[SessionEvent] = field(default_factory=list)


class SessionStateMachine:
    """Turns poll outcomes for one station into completed sessions.

    Readings must be processed strictly in poll order; the machine is not
    safe for concurrent use.

    Args:
        station_id: Identifier written onto every session.
        clock: Supplies the sample instant for each processed outcome.
        debounce_samples: Debounce window for the plug-state tracker.
        poll_interval_ms: Poll interval, recorded on each session.
    """

    def __init__(
        self,
        *,
        station_id: str,
        clock: Clock,
        debounce_samples: int = 2,
        poll_interval_ms: int = 1000,
    ) -> None:
        self._station_id = station_id
        self._clock = clock
        self._tracker = PlugStateTracker(debounce_samples)
        self._poll_interval_ms = poll_interval_ms
        self._active: ActiveSessionContext | None = None

    @property
    def station_id(self) -> str:
        return self._station_id

    @property
    def active(self) -> ActiveSessionContext | None:
        """The open session's context, or None when idle."""
        return self._active

    @property
    def is_active(self) -> bool:
        return self._active is not None

    def process(self, outcome: PollOutcome) -> CompletedSession | None:
        """Process one poll outcome.

        Args:
            outcome: The reading or failure produced by this poll tick.

        Returns:
            The :class:`CompletedSession` when this outcome confirmed an
            unplug that closed an open session, otherwise ``None``.
        """
        now = self._clock.now()

        if isinstance(outcome, PollFailure):
            self._record_error(
                now,
                code=f"poll_{outcome.kind.value}",
                message=f"Poll failed: {outcome.detail or outcome.kind.value}",
            )
            return None

        if self._active is not None:
            self._check_reboot(outcome, now)
            self._remember_energy(outcome)

        if outcome.faulted:
            self._record_error(now, code="device_fault", message="Device reported a fault")
            return None

        plug_state = outcome.plug_state
        if plug_state is None:
            self._record_error(
                now, code="plug_state_unknown", message="Reading had no plug state"
            )
            return None

        had_baseline = self._tracker.confirmed_state is not None
        transition = self._tracker.observe(plug_state, now)
        if transition is None:
            if not had_baseline and self._tracker.confirmed_state is not None:
                self._log_baseline(self._tracker.confirmed_state)
            return None

        return self._apply(transition, outcome)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _apply(
        self,
        transition: ConfirmedTransition,
        reading: DeviceReading,
    ) -> CompletedSession | None:
        """Apply a confirmed transition to the session state."""
        if transition.to_state is PlugState.PLUGGED:
            if self._active is not None:
                logger.error(
                    "Station %s: plug-in confirmed while a session is already "
                    "open (started %s); ignoring",
                    self._station_id,
                    format_timestamp(self._active.started_at),
                )
                return None
            self._open(transition, reading)
            return None

        if self._active is None:
            logger.info(
                "Station %s: unplug confirmed for a plug-in that predates start-up; "
                "no session recorded",
                self._station_id,
            )
            return None
        return self._close(transition, reading)

    def _log_baseline(self, state: PlugState) -> None:
        if state is PlugState.PLUGGED:
            logger.info(
                "Station %s: already plugged in at start-up; the ongoing charge "
                "is not recorded, tracking resumes after the next unplug",
                self._station_id,
            )
        else:
            logger.info("Station %s: initial plug state is unplugged", self._station_id)

    def _open(self, transition: ConfirmedTransition, reading: DeviceReading) -> None:
        snapshot = reading.energy_snapshot()
        self._active = ActiveSessionContext(
            started_at=transition.at,
            start_energy=snapshot,
            start_raw=reading.raw,
            last_energy=snapshot,
            last_device_seconds=reading.device_seconds,
        )
        logger.info(
            "Station %s: charging session started at %s",
            self._station_id,
            format_timestamp(transition.at),
        )

    def _close(
        self,
        transition: ConfirmedTransition,
        reading: DeviceReading,
    ) -> CompletedSession:
        context = self._active
        assert context is not None
        self._active = None

        end_snapshot = _merge_snapshot(reading.energy_snapshot(), context.last_energy)
        energy = resolve(context.start_energy, end_snapshot)

        plugged_at = context.started_at
        unplugged_at = transition.at
        if unplugged_at <= plugged_at:
            logger.warning(
                "Station %s: unplug instant %s not after plug-in %s; "
                "adjusting to plug-in + 1 ms",
                self._station_id,
                format_timestamp(unplugged_at),
                format_timestamp(plugged_at),
            )
            unplugged_at = plugged_at + timedelta(milliseconds=1)

        if energy.warnings:
            logger.warning(
                "Station %s: energy resolved via %s with warnings %s",
                self._station_id,
                energy.source.value,
                ",".join(energy.warnings),
            )
            context.events.append(
                SessionEvent(
                    created_at=unplugged_at,
                    level="WARN",
                    code="energy_fallback",
                    message=f"Energy resolved via {energy.source.value}",
                    details={"warnings": list(energy.warnings)},
                )
            )

        session = CompletedSession(
            station_id=self._station_id,
            plugged_at=plugged_at,
            unplugged_at=unplugged_at,
            kwh=energy.kwh,
            energy_source=energy.source,
            energy_warnings=energy.warnings,
            error_count_during_session=context.error_count,
            debounce_samples=self._tracker.debounce_samples,
            poll_interval_ms=self._poll_interval_ms,
            raw_start=context.start_raw,
            raw_end=reading.raw,
            events=tuple(context.events),
        )
        logger.info(
            "Station %s: charging session finished, %.4f kWh (%s), %d errors",
            self._station_id,
            session.kwh,
            session.energy_source.value,
            session.error_count_during_session,
        )
        return session

    # ------------------------------------------------------------------
    # Bookkeeping while active
    # ------------------------------------------------------------------

    def _record_error(self, now: datetime, *, code: str, message: str) -> None:
        """Count a failed or faulted tick against the open session, if any."""
        if self._active is None:
            logger.debug("Station %s: %s while idle, ignored", self._station_id, code)
            return
        self._active.error_count += 1
        self._active.events.append(
            SessionEvent(created_at=now, level="WARN", code=code, message=message)
        )
        logger.warning(
            "Station %s: %s during active session (error count %d)",
            self._station_id,
            message,
            self._active.error_count,
        )

    def _check_reboot(self, reading: DeviceReading, now: datetime) -> None:
        """Log an anomaly when a device counter moves backwards."""
        context = self._active
        assert context is not None

        details: dict[str, Any] = {}
        if (
            reading.device_seconds is not None
            and context.last_device_seconds is not None
            and reading.device_seconds < context.last_device_seconds
        ):
            details["previous_seconds"] = context.last_device_seconds
            details["current_seconds"] = reading.device_seconds
        if (
            reading.energy_total_raw is not None
            and context.last_energy.total_raw is not None
            and reading.energy_total_raw < context.last_energy.total_raw
        ):
            details["previous_total_raw"] = context.last_energy.total_raw
            details["current_total_raw"] = reading.energy_total_raw

        if reading.device_seconds is not None:
            context.last_device_seconds = reading.device_seconds

        if not details:
            return
        logger.warning(
            "Station %s: device counters moved backwards, probable reboot: %s",
            self._station_id,
            details,
        )
        context.events.append(
            SessionEvent(
                created_at=now,
                level="WARN",
                code="device_reboot_suspected",
                message="Device counters moved backwards during session",
                details=details,
            )
        )

    def _remember_energy(self, reading: DeviceReading) -> None:
        context = self._active
        assert context is not None
        context.last_energy = _merge_snapshot(reading.energy_snapshot(), context.last_energy)


def _merge_snapshot(primary: EnergySnapshot, fallback: EnergySnapshot) -> EnergySnapshot:
    """Fill the missing counters of *primary* from *fallback*.

    The unit stays with each value: a field is only taken from *fallback*
    when both snapshots use the same unit.
    """
    if primary.unit is not fallback.unit:
        return primary
    return EnergySnapshot(
        present_session_raw=(
            primary.present_session_raw
            if primary.present_session_raw is not None
            else fallback.present_session_raw
        ),
        total_raw=primary.total_raw if primary.total_raw is not None else fallback.total_raw,
        unit=primary.unit,
    )
