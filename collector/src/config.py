"""
Collector configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded station addresses.

The energy unit is a per-deployment setting: firmware variants report the
compact energy counters in tenths of Wh, Wh or kWh, and the unit is never
guessed from the magnitude of a value.

CHANGELOG:
- 2026-10-16: Add the debug_file replay source (STORY-023)
- 2026-10-07: Add Modbus source and additional stations (STORY-013)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from collector.src.models import EnergyUnit

DEFAULT_UDP_PORT = 7090


@dataclass(frozen=True)
class StationConfig:
    """One station polled by the collector.

    Attributes:
        station_id: Identifier written onto the station's sessions.
        host: IP address or hostname.
        port: UDP report port.
    """

    station_id: str
    host: str
    port: int = DEFAULT_UDP_PORT


def parse_additional_stations(value: str) -> list[StationConfig]:
    """Parse ``id@host[:port];id@host[:port]`` into station configs.

    Args:
        value: Semicolon-separated station list. Blank entries are skipped.

    Returns:
        Parsed stations in declaration order.

    Raises:
        ValueError: An entry is missing its id or host, or has a bad port.
    """
    stations: list[StationConfig] = []
    for entry in value.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        station_id, sep, address = entry.partition("@")
        if not sep or not station_id.strip() or not address.strip():
            raise ValueError(f"ADDITIONAL_STATIONS entry must be 'id@host[:port]' (got '{entry}')")
        host, _, port_text = address.strip().partition(":")
        port = DEFAULT_UDP_PORT
        if port_text:
            if not port_text.isdigit() or not 1 <= int(port_text) <= 65535:
                raise ValueError(f"ADDITIONAL_STATIONS entry '{entry}' has an invalid port")
            port = int(port_text)
        stations.append(StationConfig(station_id=station_id.strip(), host=host, port=port))
    return stations


class CollectorSettings(BaseSettings):
    """Collector configuration for the wallbox session pipeline.

    All values are loaded from environment variables. ``STATION_HOST`` is
    required; everything else has a default.

    Attributes:
        station_host: Station IP address / hostname on the local LAN.
        station_port: UDP report port (default 7090).
        station_id: Identifier written on sessions. Defaults to
            station_host if not set.
        station_source: ``udp``, ``modbus`` or ``debug_file``.
        replay_file_path: Replay script played by the ``debug_file``
            source. Required when that source is selected.
        modbus_port: Modbus TCP port (default 502).
        modbus_unit_id: Modbus unit ID (default 255).
        additional_stations: Extra UDP stations, ``id@host[:port];...``.
        energy_unit: Unit of the compact energy counters.
        poll_interval_s: Seconds between polls.
        request_timeout_s: Timeout per device request.
        debounce_samples: Consecutive samples needed to confirm a plug change.
        db_path: SQLite session store path.
        persist_max_attempts: Write attempts before a session is dropped.
        persist_base_backoff_s: First retry backoff, doubled per attempt.
        health_path: Health JSON file path.
    """

    station_host: str
    station_port: int = DEFAULT_UDP_PORT
    station_id: str = ""
    station_source: str = "udp"
    replay_file_path: str = ""
    modbus_port: int = 502
    modbus_unit_id: int = 255
    additional_stations: str = ""
    energy_unit: EnergyUnit = EnergyUnit.TENTHS_WH
    poll_interval_s: float = 1.0
    request_timeout_s: float = 2.0
    debounce_samples: int = 2
    db_path: str = "/var/lib/wallbox/sessions.db"
    persist_max_attempts: int = 5
    persist_base_backoff_s: float = 0.05
    health_path: str = "/data/health.json"

    @model_validator(mode="after")
    def _default_station_id(self) -> CollectorSettings:
        """Default station_id to station_host when not explicitly set."""
        if not self.station_id:
            self.station_id = self.station_host
        return self

    @model_validator(mode="after")
    def _replay_file_required(self) -> CollectorSettings:
        """Require REPLAY_FILE_PATH when the debug_file source is selected."""
        if self.station_source == "debug_file" and not self.replay_file_path.strip():
            raise ValueError("REPLAY_FILE_PATH is required when STATION_SOURCE=debug_file")
        return self

    @field_validator("station_source")
    @classmethod
    def station_source_must_be_known(cls, v: str) -> str:
        """Validate the source transport name."""
        v = v.strip().lower()
        if v not in ("udp", "modbus", "debug_file"):
            raise ValueError("STATION_SOURCE must be one of: udp, modbus, debug_file")
        return v

    @field_validator("station_port", "modbus_port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        """Validate ports are in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("modbus_unit_id")
    @classmethod
    def modbus_unit_id_must_be_valid(cls, v: int) -> int:
        """Validate Modbus unit ID is in valid range (0-255)."""
        if v < 0 or v > 255:
            raise ValueError("MODBUS_UNIT_ID must be between 0 and 255")
        return v

    @field_validator("additional_stations")
    @classmethod
    def additional_stations_must_parse(cls, v: str) -> str:
        parse_additional_stations(v)
        return v

    @field_validator("poll_interval_s", "request_timeout_s")
    @classmethod
    def interval_must_be_positive(cls, v: float) -> float:
        """Validate intervals and timeouts are positive."""
        if v <= 0:
            raise ValueError("POLL_INTERVAL_S and REQUEST_TIMEOUT_S must be > 0")
        return v

    @field_validator("debounce_samples", "persist_max_attempts")
    @classmethod
    def count_must_be_positive(cls, v: int) -> int:
        """Validate sample and attempt counts are at least 1."""
        if v < 1:
            raise ValueError("DEBOUNCE_SAMPLES and PERSIST_MAX_ATTEMPTS must be >= 1")
        return v

    @field_validator("persist_base_backoff_s")
    @classmethod
    def backoff_must_be_non_negative(cls, v: float) -> float:
        """Validate the retry backoff is non-negative."""
        if v < 0:
            raise ValueError("PERSIST_BASE_BACKOFF_S must be >= 0")
        return v

    @property
    def poll_interval_ms(self) -> int:
        return int(round(self.poll_interval_s * 1000))

    def stations(self) -> list[StationConfig]:
        """Return the primary station followed by any additional ones."""
        primary = StationConfig(
            station_id=self.station_id,
            host=self.station_host,
            port=self.station_port,
        )
        return [primary, *parse_additional_stations(self.additional_stations)]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
