"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from leafctl.core.errors import ConnectError, ScanFailure, ServiceNotFound, TransportError
from leafctl.core.model import CharacteristicDescriptor, DeviceRecord, ServiceDescriptor
from leafctl.transports import bluez
from leafctl.transports.base import DisconnectHandler, NotificationHandler

LOGGER = logging.getLogger(__name__)


def _bleak() -> Any:
    try:
        import bleak  # type: ignore
    except ImportError as exc:  # pragma: no cover - import failure path
        raise TransportError("BLE transport requires 'bleak'. Install dependency and retry.") from exc
    return bleak


class BleakTransport:
    """Transport backed by bleak, keeping one client per connected address."""

    def __init__(self, *, write_with_response: bool = False) -> None:
        self._write_with_response = write_with_response
        self._clients: dict[str, Any] = {}

    async def is_radio_on(self) -> bool:
        powered = await asyncio.to_thread(bluez.radio_powered)
        if powered is None:
            LOGGER.warning("Bluetooth radio state unknown, assuming it is on")
            return True
        return powered

    async def turn_on_radio(self) -> None:
        await asyncio.to_thread(bluez.power_on)

    async def scan(self, timeout: float, name_filters: Sequence[str]) -> list[DeviceRecord]:
        bleak = _bleak()
        try:
            found = await bleak.BleakScanner.discover(timeout=timeout, return_adv=True)
        except (bleak.exc.BleakError, OSError) as exc:
            raise ScanFailure(f"BLE scan failed: {exc}") from exc

        records: list[DeviceRecord] = []
        for device, adv in found.values():
            records.append(
                DeviceRecord(
                    address=device.address,
                    name=adv.local_name or device.name or "",
                    rssi=adv.rssi,
                    service_uuids=tuple(uuid.lower() for uuid in adv.service_uuids),
                    manufacturer_data=dict(adv.manufacturer_data),
                )
            )
        LOGGER.debug("BLE scan returned %d device(s) (filters: %s)", len(records), ", ".join(name_filters))
        return records

    async def connect(
        self,
        device: DeviceRecord,
        *,
        on_disconnect: DisconnectHandler | None = None,
    ) -> bool:
        bleak = _bleak()

        def _disconnected(dropped: Any) -> None:
            LOGGER.info("BLE link to %s dropped", device.label)
            if self._clients.get(device.address) is dropped:
                del self._clients[device.address]
            if on_disconnect is not None:
                on_disconnect()

        client = bleak.BleakClient(device.address, disconnected_callback=_disconnected)
        self._clients[device.address] = client
        try:
            await client.connect()
        except (bleak.exc.BleakError, OSError, asyncio.TimeoutError) as exc:
            raise ConnectError(f"BLE connect failed for {device.label}: {exc}") from exc
        return bool(client.is_connected)

    async def discover_services(self, device: DeviceRecord) -> list[ServiceDescriptor]:
        bleak = _bleak()
        client = self._client(device)
        try:
            services = list(client.services)
        except (bleak.exc.BleakError, OSError) as exc:
            raise ServiceNotFound(f"Service discovery on {device.label} failed: {exc}") from exc
        return [
            ServiceDescriptor(
                uuid=service.uuid.lower(),
                characteristics=tuple(
                    CharacteristicDescriptor(uuid=char.uuid.lower(), properties=tuple(char.properties))
                    for char in service.characteristics
                ),
            )
            for service in services
        ]

    async def write(self, device: DeviceRecord, characteristic_uuid: str, data: bytes) -> None:
        bleak = _bleak()
        client = self._client(device)
        try:
            await client.write_gatt_char(characteristic_uuid, data, response=self._write_with_response)
        except (bleak.exc.BleakError, OSError) as exc:
            raise TransportError(f"BLE write to {characteristic_uuid} failed: {exc}") from exc

    async def subscribe(
        self,
        device: DeviceRecord,
        characteristic_uuid: str,
        handler: NotificationHandler,
    ) -> None:
        bleak = _bleak()
        client = self._client(device)

        def _notify_handler(_: Any, data: bytearray) -> None:
            handler(bytes(data))

        try:
            await client.start_notify(characteristic_uuid, _notify_handler)
        except (bleak.exc.BleakError, OSError) as exc:
            raise ServiceNotFound(f"Cannot subscribe to {characteristic_uuid}: {exc}") from exc

    async def disconnect(self, device: DeviceRecord) -> None:
        client = self._clients.pop(device.address, None)
        if client is None:
            return
        bleak = _bleak()
        try:
            await client.disconnect()
        except (bleak.exc.BleakError, OSError) as exc:
            raise TransportError(f"BLE disconnect from {device.label} failed: {exc}") from exc

    def _client(self, device: DeviceRecord) -> Any:
        client = self._clients.get(device.address)
        if client is None:
            raise ConnectError(f"Not connected to {device.label}")
        return client
