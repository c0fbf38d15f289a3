"""
Shared test fixtures for collector tests.

Provides a deterministic clock, reading factories and environment variable
fixtures for CollectorSettings tests. All collector env vars are cleaned
before each test to ensure isolation.

CHANGELOG:
- 2026-10-16: Clean REPLAY_FILE_PATH between tests (STORY-023)
- 2026-10-04: Add StepClock and reading factories (STORY-007)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from collector.src.models import DeviceReading, EnergyUnit

# All CollectorSettings environment variable names, used for cleanup.
_ALL_COLLECTOR_ENV_VARS = (
    "STATION_HOST",
    "STATION_PORT",
    "STATION_ID",
    "STATION_SOURCE",
    "REPLAY_FILE_PATH",
    "MODBUS_PORT",
    "MODBUS_UNIT_ID",
    "ADDITIONAL_STATIONS",
    "ENERGY_UNIT",
    "POLL_INTERVAL_S",
    "REQUEST_TIMEOUT_S",
    "DEBOUNCE_SAMPLES",
    "DB_PATH",
    "PERSIST_MAX_ATTEMPTS",
    "PERSIST_BASE_BACKOFF_S",
    "HEALTH_PATH",
)

T0 = datetime(2026, 10, 1, 18, 0, 0, tzinfo=UTC)


class StepClock:
    """Clock that advances by a fixed step every time it is read.

    The first call returns ``start``, the next ``start + step`` and so on,
    which matches one clock read per processed poll outcome.
    """

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)) -> None:
        self._next = start
        self._step = step

    def now(self) -> datetime:
        current = self._next
        self._next = current + self._step
        return current

    def at(self, index: int) -> datetime:
        """Return the instant handed out by the ``index``-th read (t0 = 0)."""
        return T0 + self._step * index


def reading(
    plugged: bool | None,
    *,
    present: float | None = None,
    total: float | None = None,
    unit: EnergyUnit = EnergyUnit.TENTHS_WH,
    faulted: bool = False,
    seconds: int | None = None,
) -> DeviceReading:
    """Build a DeviceReading with only the fields a test cares about."""
    return DeviceReading(
        plugged=plugged,
        energy_present_session_raw=present,
        energy_total_raw=total,
        energy_unit=unit,
        faulted=faulted,
        device_seconds=seconds,
    )


@pytest.fixture(autouse=True)
def _clean_collector_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all collector env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_COLLECTOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def clock() -> StepClock:
    """A StepClock starting at T0 with one-second ticks."""
    return StepClock()


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set every CollectorSettings environment variable.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "STATION_HOST": "192.168.1.60",
        "STATION_PORT": "7091",
        "STATION_ID": "garage",
        "STATION_SOURCE": "modbus",
        "MODBUS_PORT": "1502",
        "MODBUS_UNIT_ID": "1",
        "ADDITIONAL_STATIONS": "carport@192.168.1.61:7090",
        "ENERGY_UNIT": "wh",
        "POLL_INTERVAL_S": "2.5",
        "REQUEST_TIMEOUT_S": "1.5",
        "DEBOUNCE_SAMPLES": "3",
        "DB_PATH": "/tmp/test-sessions.db",
        "PERSIST_MAX_ATTEMPTS": "7",
        "PERSIST_BASE_BACKOFF_S": "0.1",
        "HEALTH_PATH": "/tmp/test-health.json",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables.

    Optional variables should fall back to their defaults.
    """
    env = {"STATION_HOST": "10.0.0.50"}
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
