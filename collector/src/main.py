"""
Collector main loop for the wallbox charging-session pipeline.

Runs one asyncio poll loop per configured station. Each tick:

1. reads the station through its source (``DeviceReading | PollFailure``),
2. feeds the outcome to the station's session state machine,
3. persists a completed session through the shared session writer.

Loops are resilient: a failed poll or a failed write is logged and the loop
keeps going. Ticks of one station run strictly in order; stations run
concurrently via ``asyncio.gather``. Graceful shutdown on SIGTERM/SIGINT sets
a shared asyncio.Event and every loop finishes its current tick. Sessions
still open at shutdown are dropped, not force-closed.

A schema newer than this code (:class:`SchemaMismatchError`) is fatal and
stops the process at start-up.

Structured JSON logging is used for all events. A HealthWriter instance
tracks last_poll_ts, last_session_ts, active_sessions and
consecutive_poll_failures.

CHANGELOG:
- 2026-10-16: Build the replay file source for STATION_SOURCE=debug_file (STORY-023)
- 2026-10-07: Run one pipeline per station (STORY-013)
- 2026-10-05: Add HealthWriter (STORY-016)
- 2026-10-04: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from collector.src.clock import SystemClock
from collector.src.models import DeviceReading, FailureKind, PollFailure, PollOutcome
from collector.src.repository import PersistError, SchemaMismatchError, SessionWriter
from collector.src.session_machine import SessionStateMachine
from collector.src.sources import (
    ModbusStationSource,
    ReplayFileSource,
    ReplayScriptError,
    UdpStationSource,
)

if TYPE_CHECKING:
    from collector.src.config import CollectorSettings
    from collector.src.health import HealthWriter
    from collector.src.sources import DeviceSource

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging for the collector.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def log_config_summary(settings: CollectorSettings) -> None:
    """Log a config summary at startup.

    Args:
        settings: The loaded collector settings.
    """
    logger.info(
        "Collector starting with config: "
        "stations=%s, station_source=%s, replay_file_path=%s, modbus_port=%s, modbus_unit_id=%s, "
        "energy_unit=%s, poll_interval_s=%s, request_timeout_s=%s, "
        "debounce_samples=%s, db_path=%s, persist_max_attempts=%s, "
        "persist_base_backoff_s=%s, health_path=%s",
        [f"{s.station_id}@{s.host}:{s.port}" for s in settings.stations()],
        settings.station_source,
        settings.replay_file_path or None,
        settings.modbus_port,
        settings.modbus_unit_id,
        settings.energy_unit.value,
        settings.poll_interval_s,
        settings.request_timeout_s,
        settings.debounce_samples,
        settings.db_path,
        settings.persist_max_attempts,
        settings.persist_base_backoff_s,
        settings.health_path,
    )


# ---------------------------------------------------------------------------
# Pipeline construction
# ---------------------------------------------------------------------------


def build_pipelines(
    settings: CollectorSettings,
) -> list[tuple[DeviceSource, SessionStateMachine]]:
    """Create one ``(source, state machine)`` pair per configured station.

    The primary station uses ``STATION_SOURCE``; additional stations are
    always polled over UDP.

    Raises:
        ReplayScriptError: The ``debug_file`` source cannot load its script.
    """
    clock = SystemClock()
    pipelines: list[tuple[DeviceSource, SessionStateMachine]] = []
    for index, station in enumerate(settings.stations()):
        source: DeviceSource
        if index == 0 and settings.station_source == "modbus":
            source = ModbusStationSource(
                host=station.host,
                port=settings.modbus_port,
                unit_id=settings.modbus_unit_id,
                timeout_s=settings.request_timeout_s,
                energy_unit=settings.energy_unit,
            )
        elif index == 0 and settings.station_source == "debug_file":
            source = ReplayFileSource.from_file(
                settings.replay_file_path, energy_unit=settings.energy_unit
            )
        else:
            source = UdpStationSource(
                host=station.host,
                port=station.port,
                timeout_s=settings.request_timeout_s,
                energy_unit=settings.energy_unit,
            )
        machine = SessionStateMachine(
            station_id=station.station_id,
            clock=clock,
            debounce_samples=settings.debounce_samples,
            poll_interval_ms=settings.poll_interval_ms,
        )
        pipelines.append((source, machine))
    return pipelines


# ---------------------------------------------------------------------------
# Single-iteration function (easily testable)
# ---------------------------------------------------------------------------


async def _poll_once(
    *,
    source: DeviceSource,
    machine: SessionStateMachine,
    writer: SessionWriter,
    health: HealthWriter | None,
) -> str | None:
    """Execute a single poll, transition and persist cycle.

    A source that raises instead of returning a PollFailure is treated as
    unreachable. A session that cannot be persisted is logged at ERROR
    with its full JSON so it can be recovered by hand; the loop continues.

    Args:
        source: The station source.
        machine: The station's session state machine.
        writer: The shared session writer.
        health: HealthWriter instance, or None to skip health writes.

    Returns:
        The id of the session persisted on this tick, if any.
    """
    outcome: PollOutcome
    try:
        outcome = await source.read()
    except Exception as exc:
        logger.error("Station %s: source raised", machine.station_id, exc_info=True)
        outcome = PollFailure(FailureKind.UNREACHABLE, str(exc))

    session = machine.process(outcome)

    session_id: str | None = None
    if session is not None:
        try:
            session_id = await writer.persist(session)
        except PersistError:
            logger.error(
                "Station %s: failed to persist session, dropping it: %s",
                machine.station_id,
                session.model_dump_json(),
                exc_info=True,
            )
        else:
            if health is not None:
                health.record_session()

    if health is not None:
        health.record_poll(
            machine.station_id,
            ok=isinstance(outcome, DeviceReading),
            active=machine.is_active,
        )
    return session_id


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _station_loop(
    *,
    source: DeviceSource,
    machine: SessionStateMachine,
    writer: SessionWriter,
    poll_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
) -> None:
    """Run one station's poll loop until shutdown_event is set."""
    logger.info(
        "Poll loop started for station %s (interval=%ss)",
        machine.station_id,
        poll_interval_s,
    )
    while not shutdown_event.is_set():
        await _poll_once(source=source, machine=machine, writer=writer, health=health)
        # Use wait with timeout so we can check shutdown between sleeps
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval_s)

    if machine.active is not None:
        logger.warning(
            "Station %s: session open since %s dropped at shutdown",
            machine.station_id,
            machine.active.started_at.isoformat(),
        )
    logger.info("Poll loop stopped for station %s", machine.station_id)


async def run_pipelines(
    *,
    pipelines: list[tuple[DeviceSource, SessionStateMachine]],
    writer: SessionWriter,
    poll_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Run every station loop concurrently until shutdown.

    Args:
        pipelines: ``(source, state machine)`` pairs, one per station.
        writer: The session writer shared by all stations.
        poll_interval_s: Seconds between polls.
        shutdown_event: Event to signal graceful shutdown.
        health: HealthWriter instance, or None to skip health writes.
    """
    logger.info("Starting %d station loop(s)", len(pipelines))
    await asyncio.gather(
        *(
            _station_loop(
                source=source,
                machine=machine,
                writer=writer,
                poll_interval_s=poll_interval_s,
                shutdown_event=shutdown_event,
                health=health,
            )
            for source, machine in pipelines
        )
    )
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, open the store, run station loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.

    Raises:
        SchemaMismatchError: The store was written by newer code.
    """
    configure_logging()

    from collector.src.config import CollectorSettings
    from collector.src.health import HealthWriter

    settings = CollectorSettings()
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    health = HealthWriter(settings.health_path)

    async with SessionWriter(
        settings.db_path,
        max_attempts=settings.persist_max_attempts,
        base_backoff_s=settings.persist_base_backoff_s,
    ) as writer:
        version = await writer.migrate()
        logger.info("Session store %s at schema version %d", settings.db_path, version)
        await run_pipelines(
            pipelines=build_pipelines(settings),
            writer=writer,
            poll_interval_s=settings.poll_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the collector."""
    try:
        asyncio.run(async_main())
    except SchemaMismatchError as exc:
        logger.critical("Refusing to start: %s", exc)
        sys.exit(2)
    except ReplayScriptError as exc:
        logger.critical("Refusing to start: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
