"""Stable public API for building tooling on top of leafctl.

This module is the supported integration surface for third-party callers
(dashboards, background services, home-automation bridges). Avoid importing
from internal modules unless intentionally depending on non-stable internals.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from leafctl.core.catalog_loader import load_catalog
from leafctl.core.clock import AsyncioClock, Clock, VirtualClock
from leafctl.core.errors import (
    AdapterError,
    AdapterInitFailure,
    AdapterResponseError,
    CatalogLoadError,
    CatalogValidationError,
    CommandResolutionError,
    CommandTimeout,
    ConnectError,
    ConnectionStateError,
    ConnectTimeout,
    FrameParseError,
    LeafctlError,
    MockPresetError,
    ProbeFailure,
    RadioOffFailure,
    ScanFailure,
    ServiceNotFound,
    SettingsError,
    TransportError,
)
from leafctl.core.manager import ConnectionManager
from leafctl.core.model import (
    CommandCatalog,
    CommandSpec,
    ConnectionStatus,
    DeviceErrorStats,
    DeviceRecord,
    FieldSpec,
    RetryState,
    StatusEvent,
    Values,
)
from leafctl.core.service import LeafService
from leafctl.core.settings import Settings, load_settings
from leafctl.core.simulator import MOCK_PRESETS, MockBatteryState
from leafctl.transports.base import Transport
from leafctl.transports.ble_gatt import BleakTransport

__all__ = [
    "LeafctlError",
    "AdapterError",
    "AdapterInitFailure",
    "AdapterResponseError",
    "CatalogLoadError",
    "CatalogValidationError",
    "CommandResolutionError",
    "CommandTimeout",
    "ConnectError",
    "ConnectionStateError",
    "ConnectTimeout",
    "FrameParseError",
    "MockPresetError",
    "ProbeFailure",
    "RadioOffFailure",
    "ScanFailure",
    "ServiceNotFound",
    "SettingsError",
    "TransportError",
    "CommandCatalog",
    "CommandSpec",
    "ConnectionStatus",
    "DeviceErrorStats",
    "DeviceRecord",
    "FieldSpec",
    "RetryState",
    "StatusEvent",
    "Settings",
    "MockBatteryState",
    "MOCK_PRESETS",
    "AsyncioClock",
    "VirtualClock",
    "BleakTransport",
    "ConnectionManager",
    "Client",
]


class Client:
    """Public client for reading a Nissan Leaf through an ELM327 BLE adapter.

    A `Client` wraps catalog loading, the connection manager and the service
    layer. It owns one :class:`ConnectionManager`; pass it to anything else
    that needs the connection instead of building a second one.
    """

    def __init__(
        self,
        *,
        transport: Transport | None = None,
        settings: Settings | None = None,
        settings_path: Path | None = None,
        clock: Clock | None = None,
    ) -> None:
        loaded = load_catalog()
        self.load_warnings = loaded.warnings
        self.settings = settings or load_settings(settings_path)
        self.manager = ConnectionManager(
            transport or BleakTransport(),
            loaded.catalog,
            settings=self.settings,
            clock=clock or AsyncioClock(),
        )
        self._service = LeafService(self.manager, loaded.catalog)

    @property
    def catalog(self) -> CommandCatalog:
        return self._service.catalog

    @property
    def status(self) -> ConnectionStatus:
        return self.manager.status

    def list_commands(self) -> list[CommandSpec]:
        return self._service.list_commands()

    def subscribe(self, callback: Callable[[StatusEvent], None]) -> Callable[[], None]:
        return self.manager.subscribe(callback)

    async def scan(self) -> list[DeviceRecord]:
        return await self.manager.scan_for_devices()

    async def connect(self) -> bool:
        return await self.manager.auto_connect()

    async def disconnect(self) -> None:
        await self.manager.disconnect()

    async def read(self, name: str) -> Values:
        return await self._service.run_command(name)

    async def read_many(self, names: list[str]) -> dict[str, Any]:
        return await self._service.run_commands(names)

    async def read_all(self) -> dict[str, Any]:
        return await self._service.run_all_commands()

    async def collect_car_data(self, *, disconnect_after: bool = True) -> dict[str, Any]:
        return await self._service.collect_car_data(disconnect_after=disconnect_after)

    def enable_mock_mode(self, preset: str | None = None) -> None:
        self.manager.enable_mock_mode(preset)

    def disable_mock_mode(self) -> None:
        self.manager.disable_mock_mode()

    async def close(self) -> None:
        await self.manager.stop()
