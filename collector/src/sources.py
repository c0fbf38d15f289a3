"""
Device sources that poll a charging station and return one outcome per tick.

Three sources are supported:

- **UDP** (default): sends the ``report 2`` and ``report 3`` text commands
  and decodes the JSON replies.
- **Modbus TCP**: reads the charging-state and energy input registers with
  ``pymodbus`` and maps them onto the same payload keys.
- **Replay file**: plays back scripted ``report 2`` / ``report 3`` replies
  and injected failures from a JSON file, for running the pipeline without
  a station on the network.

All return ``DeviceReading | PollFailure`` from :meth:`read` and never raise
for device-level problems: timeouts, unreachable hosts and undecodable replies
become typed :class:`~collector.src.models.PollFailure` values. Every request
is bounded by a per-request timeout.

The UDP source makes two round-trips per tick. ``report 2`` alone carries the
plug state, but ``report 3`` is needed every tick as well: the state machine
keeps the last energy counters seen while a session is active as the
fallback end energy when the unplug reading lacks them, and detects device
reboots from the counters moving backwards between consecutive ticks. Polling
``report 3`` only on a plug change would leave both without data.

CHANGELOG:
- 2026-10-16: Add replay file source; document the per-tick report 3 (STORY-023)
- 2026-10-07: Add Modbus TCP source (STORY-013)
- 2026-10-03: Initial creation with UDP source (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from collector.src.models import EnergyUnit, FailureKind, PollFailure, PollOutcome
from collector.src.normalizer import normalize

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_UDP_PORT: int = 7090
"""UDP port the station listens on for report commands."""

DEFAULT_REQUEST_TIMEOUT_S: float = 2.0
"""Timeout per request/response exchange in seconds."""

REG_CHARGING_STATE: int = 1000
"""Input register (U32): charging state, 4 = error."""

REG_TOTAL_ENERGY: int = 1036
"""Input register (U32): lifetime energy counter."""

REG_PRESENT_ENERGY: int = 1502
"""Input register (U32): energy of the present plug-in episode."""

PLUGGED_MIN_STATE: int = 2
"""Charging states at or above this value mean a vehicle is connected."""


class DeviceSource(Protocol):
    """Anything that yields one poll outcome per call."""

    async def read(self) -> PollOutcome: ...


class SourceError(Exception):
    """A single request failed; carries the failure category."""

    def __init__(self, kind: FailureKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail


# ---------------------------------------------------------------------------
# UDP
# ---------------------------------------------------------------------------


class _ReplyProtocol(asyncio.DatagramProtocol):
    """Datagram protocol resolving a future with the first reply received."""

    def __init__(self, reply: asyncio.Future[bytes]) -> None:
        self._reply = reply

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if not self._reply.done():
            self._reply.set_result(data)

    def error_received(self, exc: Exception) -> None:
        if not self._reply.done():
            self._reply.set_exception(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None and not self._reply.done():
            self._reply.set_exception(exc)


class UdpStationSource:
    """Polls a station over its UDP report protocol.

    Each command uses a fresh socket: the station answers one datagram per
    request and keeps no session state.

    Args:
        host: Station IP address or hostname.
        port: Station UDP port (default 7090).
        timeout_s: Timeout per request in seconds.
        energy_unit: Unit hint for energy keys that do not name their unit.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = DEFAULT_UDP_PORT,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        energy_unit: EnergyUnit = EnergyUnit.TENTHS_WH,
    ) -> None:
        self._host = host
        self._port = port
        self._timeout_s = timeout_s
        self._energy_unit = energy_unit

    async def read(self) -> PollOutcome:
        """Fetch ``report 2`` and ``report 3`` and normalize them."""
        try:
            report2 = await self._request("report 2")
            report3 = await self._request("report 3")
        except SourceError as exc:
            logger.warning(
                "UDP poll to %s:%d failed (%s): %s",
                self._host,
                self._port,
                exc.kind.value,
                exc.detail,
            )
            return PollFailure(exc.kind, exc.detail)
        return normalize(report2, report3, energy_unit=self._energy_unit)

    async def _request(self, command: str) -> Any:
        """Send one command and return the decoded JSON reply."""
        loop = asyncio.get_running_loop()
        reply: asyncio.Future[bytes] = loop.create_future()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _ReplyProtocol(reply),
                remote_addr=(self._host, self._port),
            )
        except OSError as exc:
            raise SourceError(FailureKind.UNREACHABLE, f"{command}: {exc}") from exc

        try:
            transport.sendto(command.encode("ascii"))
            data = await asyncio.wait_for(reply, timeout=self._timeout_s)
        except TimeoutError as exc:
            raise SourceError(
                FailureKind.TIMEOUT, f"{command}: no reply within {self._timeout_s}s"
            ) from exc
        except OSError as exc:
            raise SourceError(FailureKind.UNREACHABLE, f"{command}: {exc}") from exc
        finally:
            transport.close()

        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SourceError(
                FailureKind.MALFORMED_RESPONSE, f"{command}: reply is not JSON ({exc})"
            ) from exc


# ---------------------------------------------------------------------------
# Modbus TCP
# ---------------------------------------------------------------------------


def _convert_u32(hi: int, lo: int) -> int:
    """Assemble two U16 registers (high word first) into unsigned 32-bit."""
    return ((hi & 0xFFFF) << 16) | (lo & 0xFFFF)


class ModbusStationSource:
    """Polls a station's Modbus TCP input registers.

    Creates a new client per poll, reads the charging state and both energy
    counters, and maps them onto the ``report 2`` / ``report 3`` keys so the
    same normalizer applies.

    Args:
        host: Station IP address or hostname.
        port: Modbus TCP port (default 502).
        unit_id: Modbus unit ID (default 255).
        timeout_s: Timeout for the whole poll in seconds.
        energy_unit: Unit of the energy registers.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 502,
        unit_id: int = 255,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        energy_unit: EnergyUnit = EnergyUnit.TENTHS_WH,
    ) -> None:
        self._host = host
        self._port = port
        self._unit_id = unit_id
        self._timeout_s = timeout_s
        self._energy_unit = energy_unit

    async def read(self) -> PollOutcome:
        """Read the registers and normalize them."""
        client = AsyncModbusTcpClient(self._host, port=self._port, timeout=self._timeout_s)
        try:
            values = await asyncio.wait_for(self._read_registers(client), self._timeout_s * 2)
        except SourceError as exc:
            failure = PollFailure(exc.kind, exc.detail)
        except TimeoutError:
            failure = PollFailure(FailureKind.TIMEOUT, "modbus poll timed out")
        except (ModbusException, OSError) as exc:
            failure = PollFailure(FailureKind.UNREACHABLE, str(exc))
        else:
            state, present, total = values
            report2 = {"Plug": 1 if state >= PLUGGED_MIN_STATE else 0, "State": state}
            report3 = {"E pres": present, "Total energy": total}
            return normalize(report2, report3, energy_unit=self._energy_unit)
        finally:
            client.close()

        logger.warning(
            "Modbus poll to %s:%d failed (%s): %s",
            self._host,
            self._port,
            failure.kind.value,
            failure.detail,
        )
        return failure

    async def _read_registers(self, client: AsyncModbusTcpClient) -> tuple[int, int, int]:
        ok = await client.connect()
        if not ok:
            raise SourceError(FailureKind.UNREACHABLE, "connect returned False")

        state = await self._read_u32(client, REG_CHARGING_STATE)
        present = await self._read_u32(client, REG_PRESENT_ENERGY)
        total = await self._read_u32(client, REG_TOTAL_ENERGY)
        return state, present, total

    async def _read_u32(self, client: AsyncModbusTcpClient, address: int) -> int:
        response = await client.read_input_registers(
            address, count=2, device_id=self._unit_id
        )
        if response.isError() or len(response.registers) < 2:
            raise SourceError(
                FailureKind.MALFORMED_RESPONSE,
                f"error reading input register {address}",
            )
        return _convert_u32(response.registers[0], response.registers[1])


# ---------------------------------------------------------------------------
# Replay file
# ---------------------------------------------------------------------------

SCRIPTED_ERRORS: dict[str, FailureKind] = {
    "timeout": FailureKind.TIMEOUT,
    "network_unreachable": FailureKind.UNREACHABLE,
    "internet_down": FailureKind.UNREACHABLE,
    "host_unreachable": FailureKind.UNREACHABLE,
    "wallbox_unreachable": FailureKind.UNREACHABLE,
    "connection_refused": FailureKind.UNREACHABLE,
    "broken_pipe": FailureKind.UNREACHABLE,
    "invalid_json": FailureKind.MALFORMED_RESPONSE,
}
"""Error kinds a replay script may inject, and the failure each becomes."""


class ReplayScriptError(Exception):
    """The replay file is unreadable or does not describe a valid script."""


class ScriptStep(BaseModel):
    """One scripted reply: either an ``ok`` payload or an ``error`` kind."""

    ok: dict[str, Any] | None = None
    error: str | None = None

    @field_validator("error")
    @classmethod
    def error_must_be_known(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in SCRIPTED_ERRORS:
            raise ValueError(f"unknown scripted error kind '{v}'")
        return v

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> ScriptStep:
        if (self.ok is None) == (self.error is None):
            raise ValueError("a script step must contain exactly one of 'ok' or 'error'")
        return self


class ReplayScript(BaseModel):
    """Two independent reply sequences, one per report command."""

    loop_forever: bool = True
    report2: list[ScriptStep] = Field(min_length=1)
    report3: list[ScriptStep] = Field(min_length=1)


class ReplayFileSource:
    """Replays a scripted station from a JSON file.

    The file holds a ``report2`` and a ``report3`` sequence. Each read takes
    the next ``report2`` step and, when it succeeds, the next ``report3``
    step, mirroring the two requests of the UDP source. A step is either
    ``{"ok": {...payload...}}`` or ``{"error": "<kind>"}`` with a kind from
    :data:`SCRIPTED_ERRORS`. With ``loop_forever`` (the default) each
    sequence restarts from its first step once exhausted; otherwise every
    later read is an ``unreachable`` failure.

    Args:
        script: The parsed replay script.
        energy_unit: Unit hint for energy keys that do not name their unit.
        name: Label used in log messages.
    """

    def __init__(
        self,
        script: ReplayScript,
        *,
        energy_unit: EnergyUnit = EnergyUnit.TENTHS_WH,
        name: str = "replay",
    ) -> None:
        self._script = script
        self._energy_unit = energy_unit
        self._name = name
        self._positions = {"report2": 0, "report3": 0}

    @classmethod
    def from_file(
        cls, path: str | Path, *, energy_unit: EnergyUnit = EnergyUnit.TENTHS_WH
    ) -> ReplayFileSource:
        """Load and validate a replay script.

        Raises:
            ReplayScriptError: The file cannot be read, is not JSON, or is
                missing a sequence.
        """
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ReplayScriptError(f"cannot read replay file {path}: {exc}") from exc
        try:
            script = ReplayScript.model_validate_json(content)
        except ValidationError as exc:
            raise ReplayScriptError(f"invalid replay file {path}: {exc}") from exc
        logger.info(
            "Loaded replay file %s (%d report2 steps, %d report3 steps, loop_forever=%s)",
            path,
            len(script.report2),
            len(script.report3),
            script.loop_forever,
        )
        return cls(script, energy_unit=energy_unit, name=str(path))

    async def read(self) -> PollOutcome:
        """Play the next ``report 2`` and ``report 3`` steps."""
        try:
            report2 = self._next("report2")
            report3 = self._next("report3")
        except SourceError as exc:
            logger.warning(
                "Replay %s failed (%s): %s", self._name, exc.kind.value, exc.detail
            )
            return PollFailure(exc.kind, exc.detail)
        return normalize(report2, report3, energy_unit=self._energy_unit)

    def _next(self, sequence: str) -> dict[str, Any]:
        steps: list[ScriptStep] = getattr(self._script, sequence)
        index = self._positions[sequence]
        if index >= len(steps):
            if not self._script.loop_forever:
                raise SourceError(FailureKind.UNREACHABLE, f"{sequence}: replay finished")
            index = 0
        self._positions[sequence] = index + 1

        step = steps[index]
        if step.error is not None:
            raise SourceError(SCRIPTED_ERRORS[step.error], f"{sequence}: scripted {step.error}")
        return step.ok or {}
