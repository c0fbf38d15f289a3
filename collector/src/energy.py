"""
Energy accounting strategy for completed charging sessions.

Chooses the kWh figure for a session from the start and end energy snapshots.
Sources are tried in priority order:

1. **present-session**: the device's per-episode counter, when both ends are
   available and the end value belongs to the same episode (end >= start, or
   the start was effectively zero).
2. **total-diff**: ``max(0, total_end - total_start)`` of the lifetime counter.
3. **present-session-end**: the end value of the per-episode counter with an
   implicit start of zero.
4. **unavailable**: ``0.0``, flagged explicitly.

Raw counters are converted with the unit carried by the snapshot, which is
pinned per deployment (``ENERGY_UNIT``) and never guessed from magnitude.

This is a pure function: no I/O, no clock, never raises.

CHANGELOG:
- 2026-10-04: Distinguish present-session-end and unavailable fallbacks (STORY-006)
- 2026-10-03: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass, field

from collector.src.models import EnergySnapshot, EnergySource, EnergyUnit

ZERO_EPSILON_KWH: float = 1e-6
"""Start values at or below this many kWh count as a fresh episode."""

_KWH_DIVISOR: dict[EnergyUnit, float] = {
    EnergyUnit.TENTHS_WH: 10_000.0,
    EnergyUnit.WH: 1_000.0,
    EnergyUnit.KWH: 1.0,
}

# Warning codes attached to EnergyResult.warnings
WARN_PRESENT_SESSION_RESET = "present_session_counter_reset"
WARN_NEGATIVE_TOTAL_DIFF = "negative_total_diff_clamped"
WARN_NEGATIVE_PRESENT_VALUE = "negative_present_session_value_clamped"
WARN_NO_ENERGY_DATA = "no_energy_data"


@dataclass(frozen=True)
class EnergyResult:
    """Outcome of the energy strategy.

    Attributes:
        kwh: Energy delivered in kWh, never negative.
        source: Which strategy produced ``kwh``.
        warnings: Codes for anomalies the strategy corrected for.
    """

    kwh: float
    source: EnergySource
    warnings: tuple[str, ...] = field(default_factory=tuple)


def to_kwh(raw: float, unit: EnergyUnit) -> float:
    """Convert a raw energy counter value to kWh.

    Args:
        raw: Counter value as reported by the device.
        unit: Unit the device reports the counter in.

    Returns:
        The value in kWh.
    """
    return raw / _KWH_DIVISOR[unit]


def resolve(start: EnergySnapshot | None, end: EnergySnapshot) -> EnergyResult:
    """Compute the energy delivered during a session.

    Args:
        start: Snapshot captured when the plug-in was confirmed, or ``None``
            if no baseline could be captured.
        end: Snapshot captured when the unplug was confirmed.

    Returns:
        An :class:`EnergyResult` with a non-negative ``kwh``.
    """
    warnings: list[str] = []

    start_present = _kwh_or_none(start.present_session_raw, start.unit) if start else None
    start_total = _kwh_or_none(start.total_raw, start.unit) if start else None
    end_present = _kwh_or_none(end.present_session_raw, end.unit)
    end_total = _kwh_or_none(end.total_raw, end.unit)

    # 1. Present-session counter covering the current episode.
    if start_present is not None and end_present is not None:
        fresh_start = start_present <= ZERO_EPSILON_KWH
        if end_present >= start_present:
            return EnergyResult(
                kwh=end_present - start_present,
                source=EnergySource.PRESENT_SESSION,
            )
        if fresh_start:
            return EnergyResult(
                kwh=max(0.0, end_present),
                source=EnergySource.PRESENT_SESSION,
                warnings=(WARN_NEGATIVE_PRESENT_VALUE,) if end_present < 0 else (),
            )
        # The counter went backwards: it no longer describes this episode.
        warnings.append(WARN_PRESENT_SESSION_RESET)

    # 2. Lifetime counter difference.
    if start_total is not None and end_total is not None:
        diff = end_total - start_total
        if diff < 0:
            warnings.append(WARN_NEGATIVE_TOTAL_DIFF)
        return EnergyResult(
            kwh=max(0.0, diff),
            source=EnergySource.TOTAL_DIFF,
            warnings=tuple(warnings),
        )

    # 3. End value of the present-session counter, implicit start of zero.
    if end_present is not None:
        if end_present < 0:
            warnings.append(WARN_NEGATIVE_PRESENT_VALUE)
        return EnergyResult(
            kwh=max(0.0, end_present),
            source=EnergySource.PRESENT_SESSION_END,
            warnings=tuple(warnings),
        )

    # 4. Nothing usable.
    warnings.append(WARN_NO_ENERGY_DATA)
    return EnergyResult(
        kwh=0.0,
        source=EnergySource.UNAVAILABLE,
        warnings=tuple(warnings),
    )


def _kwh_or_none(raw: float | None, unit: EnergyUnit) -> float | None:
    """Convert an optional raw counter value to kWh."""
    if raw is None:
        return None
    return to_kwh(raw, unit)
