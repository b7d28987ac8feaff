"""Service layer used by the CLI and the public API."""

from __future__ import annotations

import logging
import time
from typing import Any

from leafctl.core.errors import AdapterError, ConnectionStateError, FrameParseError, LeafctlError
from leafctl.core.manager import ConnectionManager
from leafctl.core.model import CommandCatalog, CommandSpec, Values

BATTERY_COMMAND = "lbc"
RANGE_COMMAND = "range_remaining"

LOGGER = logging.getLogger(__name__)


class LeafService:
    def __init__(self, manager: ConnectionManager, catalog: CommandCatalog | None = None) -> None:
        self.manager = manager
        self.catalog = catalog or manager.catalog

    def list_commands(self) -> list[CommandSpec]:
        return self.catalog.readable()

    async def run_command(self, name: str) -> Values:
        return await self.manager.run(self.catalog.get(name))

    async def run_commands(self, names: list[str]) -> dict[str, Values | dict[str, str]]:
        """Run each named command in order; failures are reported per command."""
        specs = [self.catalog.get(name) for name in names]
        results: dict[str, Values | dict[str, str]] = {}
        for spec in specs:
            try:
                results[spec.name] = await self.manager.run(spec)
            except (AdapterError, FrameParseError) as exc:
                LOGGER.warning("Command %s failed: %s", spec.name, exc)
                results[spec.name] = {"error": str(exc)}
        return results

    async def run_all_commands(self) -> dict[str, Values | dict[str, str]]:
        return await self.run_commands([spec.name for spec in self.catalog.readable()])

    async def collect_car_data(self, *, disconnect_after: bool = True) -> dict[str, Any]:
        """Battery and range readings merged into one record with a millisecond timestamp.

        Connects first when needed. A failed range reading is logged and left
        out; a failed battery reading is raised.
        """
        manager = self.manager
        if not manager.is_connected and not manager.is_in_mock_mode:
            if not await manager.auto_connect():
                raise ConnectionStateError(
                    f"Could not connect to an OBD adapter: {manager.last_error or 'unknown error'}"
                )

        try:
            data: dict[str, Any] = dict(await manager.run(BATTERY_COMMAND))
            try:
                data.update(await manager.run(RANGE_COMMAND))
            except (AdapterError, FrameParseError) as exc:
                LOGGER.warning("Range reading failed: %s", exc)
        finally:
            if disconnect_after and manager.is_connected:
                await _disconnect_quietly(manager)

        data["timestamp"] = int(time.time() * 1000)
        return data


async def _disconnect_quietly(manager: ConnectionManager) -> None:
    try:
        await manager.disconnect()
    except LeafctlError as exc:
        LOGGER.warning("Disconnect after collection failed: %s", exc)
