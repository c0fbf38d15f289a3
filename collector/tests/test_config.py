"""
Unit tests for collector configuration (CollectorSettings).

Tests verify:
- Config loads from environment variables with correct defaults.
- STATION_HOST is required.
- STATION_ID defaults to STATION_HOST when not set.
- Numeric constraints are enforced (ports, unit id, intervals, counts).
- ENERGY_UNIT and STATION_SOURCE only accept known values.
- The debug_file source requires REPLAY_FILE_PATH.
- ADDITIONAL_STATIONS is parsed into station configs.

CHANGELOG:
- 2026-10-16: Cover the debug_file source (STORY-023)
- 2026-10-07: Cover Modbus settings and additional stations (STORY-013)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

import pytest
from pydantic import ValidationError

from collector.src.config import CollectorSettings, StationConfig, parse_additional_stations
from collector.src.models import EnergyUnit


class TestCollectorSettingsLoadsFromEnv:
    """Config loads all values from environment variables."""

    def test_loads_all_env_vars(self, env_vars_full: dict[str, str]) -> None:
        """All env vars are read and assigned correctly."""
        settings = CollectorSettings()

        assert settings.station_host == env_vars_full["STATION_HOST"]
        assert settings.station_port == 7091
        assert settings.station_id == "garage"
        assert settings.station_source == "modbus"
        assert settings.modbus_port == 1502
        assert settings.modbus_unit_id == 1
        assert settings.energy_unit is EnergyUnit.WH
        assert settings.poll_interval_s == 2.5
        assert settings.request_timeout_s == 1.5
        assert settings.debounce_samples == 3
        assert settings.db_path == env_vars_full["DB_PATH"]
        assert settings.persist_max_attempts == 7
        assert settings.persist_base_backoff_s == 0.1
        assert settings.health_path == env_vars_full["HEALTH_PATH"]

    def test_defaults_applied_when_optional_vars_missing(
        self, env_vars_required_only: dict[str, str]
    ) -> None:
        """Optional variables use default values when not set."""
        settings = CollectorSettings()

        assert settings.station_host == "10.0.0.50"
        assert settings.station_port == 7090
        assert settings.station_source == "udp"
        assert settings.modbus_port == 502
        assert settings.modbus_unit_id == 255
        assert settings.additional_stations == ""
        assert settings.energy_unit is EnergyUnit.TENTHS_WH
        assert settings.poll_interval_s == 1.0
        assert settings.request_timeout_s == 2.0
        assert settings.debounce_samples == 2
        assert settings.db_path == "/var/lib/wallbox/sessions.db"
        assert settings.persist_max_attempts == 5
        assert settings.persist_base_backoff_s == 0.05
        assert settings.health_path == "/data/health.json"

    def test_station_id_defaults_to_host(self, env_vars_required_only: dict[str, str]) -> None:
        """STATION_ID falls back to STATION_HOST."""
        assert CollectorSettings().station_id == "10.0.0.50"

    def test_poll_interval_ms(self, env_vars_full: dict[str, str]) -> None:
        """The poll interval is also exposed in milliseconds."""
        assert CollectorSettings().poll_interval_ms == 2500

    def test_missing_station_host_raises(self) -> None:
        """STATION_HOST is required."""
        with pytest.raises(ValidationError) as exc_info:
            CollectorSettings()
        assert "station_host" in str(exc_info.value).lower()


class TestCollectorSettingsValidation:
    """Numeric and enum constraints."""

    @pytest.mark.parametrize(
        ("var", "value"),
        [
            ("STATION_PORT", "0"),
            ("STATION_PORT", "65536"),
            ("MODBUS_PORT", "0"),
            ("MODBUS_UNIT_ID", "256"),
            ("MODBUS_UNIT_ID", "-1"),
            ("POLL_INTERVAL_S", "0"),
            ("REQUEST_TIMEOUT_S", "-1"),
            ("DEBOUNCE_SAMPLES", "0"),
            ("PERSIST_MAX_ATTEMPTS", "0"),
            ("PERSIST_BASE_BACKOFF_S", "-0.1"),
            ("ENERGY_UNIT", "mwh"),
            ("STATION_SOURCE", "http"),
            ("ADDITIONAL_STATIONS", "no-at-sign"),
        ],
    )
    def test_invalid_values_rejected(
        self,
        env_vars_required_only: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
        var: str,
        value: str,
    ) -> None:
        """Out-of-range or unknown values fail validation."""
        monkeypatch.setenv(var, value)

        with pytest.raises(ValidationError):
            CollectorSettings()

    def test_station_source_case_insensitive(
        self, env_vars_required_only: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """STATION_SOURCE is normalised to lower case."""
        monkeypatch.setenv("STATION_SOURCE", "Modbus")

        assert CollectorSettings().station_source == "modbus"

    def test_debug_file_source_accepted(
        self, env_vars_required_only: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """STATION_SOURCE=debug_file is accepted with a replay file path."""
        monkeypatch.setenv("STATION_SOURCE", "debug_file")
        monkeypatch.setenv("REPLAY_FILE_PATH", "/tmp/replay.json")

        settings = CollectorSettings()

        assert settings.station_source == "debug_file"
        assert settings.replay_file_path == "/tmp/replay.json"

    @pytest.mark.parametrize("path", [None, "", "   "])
    def test_debug_file_source_requires_path(
        self,
        env_vars_required_only: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
        path: str | None,
    ) -> None:
        """debug_file without REPLAY_FILE_PATH fails validation."""
        monkeypatch.setenv("STATION_SOURCE", "debug_file")
        if path is not None:
            monkeypatch.setenv("REPLAY_FILE_PATH", path)

        with pytest.raises(ValidationError, match="REPLAY_FILE_PATH"):
            CollectorSettings()


class TestStations:
    """Primary and additional stations."""

    def test_primary_station_first(self, env_vars_full: dict[str, str]) -> None:
        """stations() lists the primary station, then additional ones."""
        stations = CollectorSettings().stations()

        assert stations == [
            StationConfig(station_id="garage", host="192.168.1.60", port=7091),
            StationConfig(station_id="carport", host="192.168.1.61", port=7090),
        ]

    def test_parse_multiple_entries(self) -> None:
        """Entries are separated by semicolons; the port is optional."""
        stations = parse_additional_stations(" a@10.0.0.1 ; b@10.0.0.2:7091 ;")

        assert stations == [
            StationConfig(station_id="a", host="10.0.0.1", port=7090),
            StationConfig(station_id="b", host="10.0.0.2", port=7091),
        ]

    def test_parse_empty(self) -> None:
        """An empty value means no additional stations."""
        assert parse_additional_stations("") == []

    @pytest.mark.parametrize("value", ["@10.0.0.1", "a@", "a@10.0.0.1:port", "a@10.0.0.1:70000"])
    def test_parse_rejects_bad_entries(self, value: str) -> None:
        """Malformed entries raise ValueError."""
        with pytest.raises(ValueError):
            parse_additional_stations(value)
