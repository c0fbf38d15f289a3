"""
Pure normalizer that converts raw station report payloads into a DeviceReading.

The UDP source delivers two JSON objects per poll: ``report 2`` (plug and
charging state, device seconds counter) and ``report 3`` (energy counters).
Firmware variants disagree on key spelling and number formatting, so keys are
matched through alias lists (exact first, then case/punctuation-insensitive)
and numbers may arrive as JSON numbers or as strings such as ``"10,83 kWh"``.

Energy units are never inferred from magnitude. Keys that carry an explicit
unit in their name (``"Energy (present session)"``) are reported in kWh; the
compact keys (``"E pres"``, ``"Total energy"``) use the configured unit hint.

This is a pure function: no side effects, no I/O, no clock. Payloads missing
the plug state are reported as a ``malformed_response`` poll failure.

CHANGELOG:
- 2026-10-06: Honour explicit kWh keys regardless of the configured unit (STORY-012)
- 2026-10-03: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from collector.src.energy import to_kwh
from collector.src.models import DeviceReading, EnergyUnit, FailureKind, PollFailure

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key aliases
# ---------------------------------------------------------------------------

PLUG_KEYS: tuple[str, ...] = ("Plug", "plug", "plugged")
STATE_KEYS: tuple[str, ...] = ("State", "state", "Charging state", "charging_state")
SECONDS_KEYS: tuple[str, ...] = ("Seconds", "seconds", "Sec", "sec", "plugged seconds")

# (key, unit) pairs; None means "use the configured unit hint".
PRESENT_ENERGY_KEYS: tuple[tuple[str, EnergyUnit | None], ...] = (
    ("E pres", None),
    ("Energy (present session)", EnergyUnit.KWH),
    ("energy_present_session", EnergyUnit.KWH),
    ("EnergyPresentSession", EnergyUnit.KWH),
)
TOTAL_ENERGY_KEYS: tuple[tuple[str, EnergyUnit | None], ...] = (
    ("Total energy", None),
    ("E total", None),
    ("Energy (total)", EnergyUnit.KWH),
    ("energy_total", EnergyUnit.KWH),
    ("EnergyTotal", EnergyUnit.KWH),
)

ERROR_STATE: int = 4
"""Charging state value the station reports while in an error condition."""

_NUMBER_TOKEN = re.compile(r"[-\d.,]+")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _normalize_key(key: str) -> str:
    """Lower-case a key and drop everything except letters and digits."""
    return "".join(ch for ch in key.lower() if ch.isalnum())


def _find_value(payload: Mapping[str, Any], aliases: tuple[str, ...]) -> Any | None:
    """Return the value for the first matching alias, or None."""
    for alias in aliases:
        if alias in payload:
            return payload[alias]

    wanted = {_normalize_key(alias) for alias in aliases}
    for key, value in payload.items():
        if _normalize_key(key) in wanted:
            return value
    return None


def _normalize_number_token(token: str) -> str:
    """Turn a locale-formatted numeric token into a float literal."""
    commas = token.count(",")
    dots = token.count(".")
    if commas and dots:
        # The right-most separator is the decimal separator.
        if token.rfind(",") > token.rfind("."):
            return token.replace(".", "").replace(",", ".")
        return token.replace(",", "")
    if commas:
        return token.replace(",", ".")
    if dots > 1:
        return token.replace(".", "")
    return token


def parse_number(value: Any) -> float | None:
    """Parse a JSON number or a number embedded in a string.

    Args:
        value: A JSON value.

    Returns:
        The first number found, or None.
    """
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    for token in _NUMBER_TOKEN.findall(value):
        try:
            return float(_normalize_number_token(token))
        except ValueError:
            continue
    return None


def _find_number(payload: Mapping[str, Any], aliases: tuple[str, ...]) -> float | None:
    value = _find_value(payload, aliases)
    return None if value is None else parse_number(value)


def _find_energy(
    payload: Mapping[str, Any],
    aliases: tuple[tuple[str, EnergyUnit | None], ...],
    unit_hint: EnergyUnit,
) -> tuple[float, EnergyUnit] | None:
    """Return ``(raw_value, unit)`` for the first energy alias present."""
    for key, unit in aliases:
        value = _find_value(payload, (key,))
        if value is None:
            continue
        number = parse_number(value)
        if number is None:
            continue
        return number, unit or unit_hint
    return None


def _rescale(value: float, unit: EnergyUnit, target: EnergyUnit) -> float:
    """Rescale *value* from *unit* to *target* so both counters share a unit."""
    if unit is target:
        return value
    return to_kwh(value, unit) / to_kwh(1.0, target)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize(
    report2: Any,
    report3: Any,
    *,
    energy_unit: EnergyUnit = EnergyUnit.TENTHS_WH,
) -> DeviceReading | PollFailure:
    """Convert raw report payloads into a DeviceReading.

    Args:
        report2: Decoded ``report 2`` payload (plug/charging state).
        report3: Decoded ``report 3`` payload (energy counters), or None if
            it was not fetched.
        energy_unit: Unit hint for energy keys that do not name their unit.

    Returns:
        A :class:`DeviceReading`, or a ``malformed_response``
        :class:`PollFailure` when ``report 2`` is not an object or carries
        neither a plug nor a state field.
    """
    if not isinstance(report2, Mapping):
        return PollFailure(FailureKind.MALFORMED_RESPONSE, "report 2 is not a JSON object")
    if report3 is not None and not isinstance(report3, Mapping):
        return PollFailure(FailureKind.MALFORMED_RESPONSE, "report 3 is not a JSON object")

    plug = _find_number(report2, PLUG_KEYS)
    state = _find_number(report2, STATE_KEYS)
    if plug is None and state is None:
        return PollFailure(FailureKind.MALFORMED_RESPONSE, "missing field Plug|State")
    plugged = (plug if plug is not None else state) > 0  # type: ignore[operator]

    seconds_value = _find_number(report2, SECONDS_KEYS)
    device_seconds = (
        int(seconds_value) if seconds_value is not None and seconds_value >= 0 else None
    )

    present = total = None
    unit = energy_unit
    if report3 is not None:
        present = _find_energy(report3, PRESENT_ENERGY_KEYS, energy_unit)
        total = _find_energy(report3, TOTAL_ENERGY_KEYS, energy_unit)
        if present is None and total is None:
            logger.warning("report 3 carried no recognised energy field: %s", list(report3))

    # Both counters in a reading share one unit; prefer the present-session one.
    if present is not None:
        unit = present[1]
    elif total is not None:
        unit = total[1]

    return DeviceReading(
        plugged=plugged,
        energy_present_session_raw=present[0] if present else None,
        energy_total_raw=_rescale(total[0], total[1], unit) if total else None,
        energy_unit=unit,
        faulted=state is not None and int(state) == ERROR_STATE,
        device_seconds=device_seconds,
        raw={"report2": dict(report2), "report3": dict(report3) if report3 else None},
    )
