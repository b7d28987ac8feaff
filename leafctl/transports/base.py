"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Protocol

from leafctl.core.model import DeviceRecord, ServiceDescriptor

NotificationHandler = Callable[[bytes], None]
DisconnectHandler = Callable[[], None]


class Transport(Protocol):
    async def is_radio_on(self) -> bool:
        """Whether the local Bluetooth radio is powered."""

    async def turn_on_radio(self) -> None:
        """Power the radio on, raising RadioOffFailure when that is not possible."""

    async def scan(self, timeout: float, name_filters: Sequence[str]) -> list[DeviceRecord]:
        """Scan for ``timeout`` seconds, raising ScanFailure on stack errors."""

    async def connect(
        self,
        device: DeviceRecord,
        *,
        on_disconnect: DisconnectHandler | None = None,
    ) -> bool:
        """Open a link; ``on_disconnect`` is called if the link later drops."""

    async def discover_services(self, device: DeviceRecord) -> list[ServiceDescriptor]:
        """GATT services and characteristics of a connected device."""

    async def write(self, device: DeviceRecord, characteristic_uuid: str, data: bytes) -> None:
        """Write bytes to a characteristic."""

    async def subscribe(
        self,
        device: DeviceRecord,
        characteristic_uuid: str,
        handler: NotificationHandler,
    ) -> None:
        """Deliver every notification on ``characteristic_uuid`` to ``handler``."""

    async def disconnect(self, device: DeviceRecord) -> None:
        """Close the link; a no-op when it is already closed."""
