"""Deterministic ELM327 simulator backing mock mode."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from leafctl.core.can_frames import segment
from leafctl.core.errors import MockPresetError
from leafctl.core.model import CommandCatalog, CommandSpec, Values
from leafctl.transports.base import NotificationHandler

# Diagnostic request header -> header the ECU answers from.
RESPONSE_HEADERS = {
    "79B": 0x7BB,
    "797": 0x79A,
    "743": 0x763,
    "7DF": 0x7E8,
}
NOTIFY_CHUNK = 20
ELM_VERSION = "ELM327 v1.5"

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MockBatteryState:
    name: str
    state_of_charge: float
    battery_health: float
    estimated_range: float
    battery_voltage: float
    battery_capacity: float

    def values_for(self, command_name: str) -> Values:
        if command_name == "lbc":
            return {
                "state_of_charge": self.state_of_charge,
                "hv_battery_health": self.battery_health,
                "hv_battery_Ah": self.battery_capacity,
                "hv_battery_current_1": 0,
                "hv_battery_current_2": 0,
                "hv_battery_voltage": self.battery_voltage,
            }
        if command_name == "range_remaining":
            return {"range_remaining": self.estimated_range}
        return {}


MOCK_PRESETS: dict[str, MockBatteryState] = {
    state.name: state
    for state in (
        MockBatteryState("High Battery (86%)", 86.0, 95.0, 150.0, 364.5, 56.0),
        MockBatteryState("Medium Battery (64%)", 64.0, 92.0, 120.0, 355.0, 50.0),
        MockBatteryState("Low Battery (30%)", 30.0, 90.0, 81.0, 340.0, 45.0),
        MockBatteryState("Critical Battery (10%)", 10.0, 88.0, 36.0, 320.0, 40.0),
    )
}
DEFAULT_PRESET = "Medium Battery (64%)"


def preset_named(name: str) -> MockBatteryState:
    preset = MOCK_PRESETS.get(name)
    if preset is None:
        available = ", ".join(MOCK_PRESETS)
        raise MockPresetError(f"Unknown mock preset '{name}'. Available: {available}")
    return preset


class SimulatedResponder:
    """Answers adapter text commands the way a connected car would.

    AT commands are acknowledged, the probe gets a positive response, the
    battery and range commands are encoded from the preset through the
    catalog, and everything else is ``NO DATA``.
    """

    def __init__(self, catalog: CommandCatalog, preset: MockBatteryState) -> None:
        self.catalog = catalog
        self.preset = preset
        self.header = catalog.default_header
        self.echo = True
        self.received: list[str] = []
        self._by_request = {_compact(command.request): command for command in catalog}

    def respond(self, text: str) -> str:
        command = text.strip()
        self.received.append(command)
        lines = [command] if self.echo else []
        lines.extend(self._answer(command))
        return "\r".join(lines) + "\r\r" + ">"

    def _answer(self, command: str) -> list[str]:
        upper = _compact(command)
        if upper.startswith("AT"):
            return self._at_command(upper[2:])
        spec = self._by_request.get(upper)
        if spec is None:
            return ["NO DATA"]
        if spec.name != self.catalog.probe_name and not self.preset.values_for(spec.name):
            return ["NO DATA"]
        return self._frames(spec)

    def _at_command(self, body: str) -> list[str]:
        if body == "Z":
            self.echo = True
            self.header = self.catalog.default_header
            return [ELM_VERSION]
        if body == "E0":
            self.echo = False
        elif body == "E1":
            self.echo = True
        elif body.startswith("SH"):
            self.header = body[2:]
        return ["OK"]

    def _frames(self, spec: CommandSpec) -> list[str]:
        payload = spec.encode_response(self.preset.values_for(spec.name))
        can_id = RESPONSE_HEADERS.get(self.header, int(self.header, 16) + 8)
        return [frame.to_line() for frame in segment(payload, can_id=can_id)]


class SimulatedLink:
    """Write/notify link that answers from a :class:`SimulatedResponder`.

    Replies are delivered on the event loop in BLE-sized chunks, like
    notifications from a real adapter.
    """

    def __init__(self, responder: SimulatedResponder, *, chunk_size: int = NOTIFY_CHUNK) -> None:
        self.responder = responder
        self._chunk_size = chunk_size
        self._handler: NotificationHandler | None = None

    def subscribe(self, handler: NotificationHandler) -> None:
        self._handler = handler

    async def write(self, data: bytes) -> None:
        if self._handler is None:
            raise RuntimeError("SimulatedLink.write() called before subscribe()")
        reply = self.responder.respond(data.decode("ascii")).encode("ascii")
        loop = asyncio.get_running_loop()
        for start in range(0, len(reply), self._chunk_size):
            loop.call_soon(self._handler, reply[start : start + self._chunk_size])


def _compact(text: str) -> str:
    return text.replace(" ", "").strip().upper()
