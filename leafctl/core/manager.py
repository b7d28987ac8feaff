"""Connection lifecycle: scan, connect, probe, periodic reconnection, and mock mode.

One :class:`ConnectionManager` owns the transport and the adapter built on
top of it. At most one scan/connect sequence runs at a time; triggers that
arrive while one is in flight join it (explicit calls) or are dropped
(periodic ticks). An explicit scan counts as in flight too; ticks skip it and
``auto_connect`` waits for it to finish before starting its own attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from leafctl.core.adapter import RESET_DELAY, ElmAdapter, WriteFunc
from leafctl.core.clock import AsyncioClock, Clock, Timer, wait_for
from leafctl.core.device_match import best_candidate, matches
from leafctl.core.errors import (
    AdapterError,
    ConnectError,
    ConnectionStateError,
    ConnectTimeout,
    FrameParseError,
    LeafctlError,
    ProbeFailure,
    RadioOffFailure,
    ScanFailure,
    ServiceNotFound,
    TransportError,
)
from leafctl.core.model import (
    CommandCatalog,
    CommandSpec,
    ConnectionStatus,
    DeviceErrorStats,
    DeviceRecord,
    RetryState,
    ServiceDescriptor,
    StatusEvent,
    Values,
)
from leafctl.core.settings import Settings
from leafctl.core.simulator import SimulatedLink, SimulatedResponder, preset_named
from leafctl.core.status import StatusBroadcaster, StatusCallback
from leafctl.transports.base import Transport

# Extra time a transport gets past its own scan window before the scan is abandoned.
SCAN_GRACE = 5.0
NO_CANDIDATE = "No matching OBD adapter found"

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionManager:
    def __init__(
        self,
        transport: Transport,
        catalog: CommandCatalog,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
        broadcaster: StatusBroadcaster | None = None,
    ) -> None:
        self._transport = transport
        self._catalog = catalog
        self._settings = settings or Settings()
        self._clock = clock or AsyncioClock()
        self._broadcaster = broadcaster or StatusBroadcaster()
        self._retry = RetryState()
        self._in_flight: asyncio.Task[Any] | None = None
        self._joinable = False
        self._interval = self._settings.reconnect_interval
        self._periodic: Timer | None = None
        self._device: DeviceRecord | None = None
        self._stale: DeviceRecord | None = None
        self._saved_address = self._settings.preferred_address
        self._device_stats: dict[str, DeviceErrorStats] = {}
        self._adapter: ElmAdapter | None = None
        self._mock_adapter: ElmAdapter | None = None
        self._mock_preset: str | None = None
        self._closing = False

    @property
    def catalog(self) -> CommandCatalog:
        return self._catalog

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def broadcaster(self) -> StatusBroadcaster:
        return self._broadcaster

    @property
    def status_event(self) -> StatusEvent:
        return self._broadcaster.current

    @property
    def status(self) -> ConnectionStatus:
        return self._broadcaster.current.status

    @property
    def retry_state(self) -> RetryState:
        return self._retry

    @property
    def saved_address(self) -> str | None:
        """Address of the last adapter that passed the probe; preferred on the next scan."""
        return self._saved_address

    def error_stats(self, address: str) -> DeviceErrorStats | None:
        return self._device_stats.get(address.upper())

    @property
    def consecutive_failures(self) -> int:
        return self._retry.consecutive_failures

    @property
    def last_error(self) -> str | None:
        return self._retry.last_error

    @property
    def device(self) -> DeviceRecord | None:
        return self._device

    @property
    def adapter(self) -> ElmAdapter | None:
        return self._adapter

    @property
    def mock_adapter(self) -> ElmAdapter | None:
        return self._mock_adapter

    @property
    def is_connected(self) -> bool:
        """True only for a real, probed link; mock mode never counts."""
        return self._adapter is not None

    @property
    def is_in_mock_mode(self) -> bool:
        return self._mock_adapter is not None

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def periodic_reconnect_enabled(self) -> bool:
        return self._periodic is not None

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        return self._broadcaster.subscribe(callback)

    async def scan_for_devices(self) -> list[DeviceRecord]:
        """Scan once and return the devices that pass the name/service filters."""
        self._ensure_idle("scan")
        self._ensure_not_connected("scan")
        return await self._track(self._scan_only(), joinable=False)

    async def connect_to_device(self, device: DeviceRecord) -> None:
        """Connect, verify services, initialize the adapter and probe.

        Raises the error that ended the sequence; it is also recorded in
        :attr:`last_error` and published as an error status.
        """
        self._ensure_idle("connect")
        self._ensure_not_connected("connect")
        await self._track(self._connect_and_probe(device))

    async def auto_connect(self) -> bool:
        """Scan and connect to the best candidate. Joins an attempt already in flight.

        Returns False when the attempt fails; the error is in :attr:`last_error`.
        """
        if self.is_connected:
            return True
        task = self._in_flight
        if task is not None and not task.done():
            if not self._joinable:
                await self.wait_idle()
                return await self.auto_connect()
            LOGGER.debug("Joining connection attempt already in flight")
            try:
                return await asyncio.shield(task)
            except LeafctlError:
                return False
        self._ensure_not_mock("connect")
        return await self._track(self._attempt())

    async def disconnect(self) -> None:
        self._ensure_idle("disconnect")
        await self._close_link()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def wait_idle(self) -> None:
        task = self._in_flight
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def stop(self) -> None:
        """Stop periodic reconnection, let any running attempt finish, then disconnect."""
        self.stop_periodic_reconnect()
        await self.wait_idle()
        if self.is_in_mock_mode:
            self._mock_adapter = None
            self._mock_preset = None
        await self._close_link()
        self._set_status(ConnectionStatus.DISCONNECTED, "Stopped")

    def start_periodic_reconnect(self, interval: float | None = None) -> None:
        """Attempt a connection now, then every ``interval`` seconds while disconnected.

        Must be called with an event loop running.
        """
        interval = interval if interval is not None else self._settings.reconnect_interval
        self.stop_periodic_reconnect()
        self._interval = interval
        LOGGER.info("Periodic reconnection every %gs", interval)
        self._periodic = self._clock.create_periodic(interval, self._tick)
        self._tick()

    def stop_periodic_reconnect(self) -> None:
        if self._periodic is not None:
            self._periodic.cancel()
            self._periodic = None
            LOGGER.info("Periodic reconnection stopped")

    def _tick(self) -> None:
        if self.is_connected or self.is_in_mock_mode:
            return
        if self.busy:
            LOGGER.debug("Reconnect tick dropped: attempt already in flight")
            return
        self._start(self._attempt())

    def enable_mock_mode(self, preset: str | None = None) -> None:
        """Answer commands from the simulator instead of the transport."""
        if self.is_connected:
            raise ConnectionStateError("Cannot enable mock mode while connected to a real adapter")
        self._ensure_idle("enable mock mode")
        name = preset or self._settings.mock_preset
        responder = SimulatedResponder(self._catalog, preset_named(name))
        link = SimulatedLink(responder)
        # The simulator needs no settling time after ATZ.
        adapter = self._new_adapter(link.write, reset_delay=0.0)
        link.subscribe(adapter.feed)
        self._mock_adapter = adapter
        self._mock_preset = name
        self._set_status(ConnectionStatus.CONNECTED, self._mock_reason())

    def disable_mock_mode(self) -> None:
        if not self.is_in_mock_mode:
            return
        self._mock_adapter = None
        self._mock_preset = None
        self._set_status(ConnectionStatus.DISCONNECTED, "Mock mode disabled")

    async def run(self, command: CommandSpec | str) -> Values:
        """Run one catalog command on the active adapter.

        Failures are raised immediately, never retried, and reported as an
        error status; the next successful command restores ``connected``.
        """
        spec = self._catalog.get(command) if isinstance(command, str) else command
        adapter = self._active_adapter()
        try:
            if not adapter.initialized:
                await adapter.initialize()
            values = await adapter.run(spec, self._catalog.header_for(spec))
        except (AdapterError, FrameParseError) as exc:
            message = f"{spec.name}: {exc}"
            self._retry.last_error = message
            self._set_status(ConnectionStatus.ERROR, message)
            raise
        if self.status is not ConnectionStatus.CONNECTED:
            self._set_status(ConnectionStatus.CONNECTED, self._connected_reason())
        return values

    async def send_raw(self, text: str) -> list[str]:
        return await self._active_adapter().send_raw(text)

    def _start(self, coro: Coroutine[Any, Any, T], *, joinable: bool = True) -> asyncio.Task[T]:
        task = asyncio.get_running_loop().create_task(coro)
        self._in_flight = task
        self._joinable = joinable
        task.add_done_callback(self._clear_in_flight)
        return task

    async def _track(self, coro: Coroutine[Any, Any, T], *, joinable: bool = True) -> T:
        return await self._start(coro, joinable=joinable)

    def _clear_in_flight(self, task: asyncio.Task[Any]) -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def _scan_only(self) -> list[DeviceRecord]:
        try:
            devices = await self._scan()
        except TransportError as exc:
            self._fail(exc)
            raise
        self._set_status(ConnectionStatus.DISCONNECTED, None if devices else NO_CANDIDATE)
        return devices

    async def _attempt(self) -> bool:
        connected = await self._scan_and_connect()
        if not connected and self._periodic is not None:
            self._retry.backoff = self._interval
        return connected

    async def _scan_and_connect(self) -> bool:
        try:
            devices = await self._scan()
        except TransportError as exc:
            self._fail(exc)
            return False

        candidate = best_candidate(
            devices,
            self._settings.name_filters,
            self._settings.service_uuid,
            self._saved_address,
        )
        if candidate is None:
            self._retry.record_failure(NO_CANDIDATE)
            self._set_status(ConnectionStatus.DISCONNECTED, NO_CANDIDATE)
            return False

        try:
            await self._connect_and_probe(candidate)
        except LeafctlError:
            # Already recorded and published; the next tick tries again.
            return False
        return True

    async def _scan(self) -> list[DeviceRecord]:
        self._set_status(ConnectionStatus.SCANNING)
        await self._ensure_radio()
        timeout = self._settings.scan_timeout
        devices = await wait_for(
            self._clock,
            self._transport.scan(timeout, self._settings.name_filters),
            timeout + SCAN_GRACE,
            lambda: ScanFailure(f"Scan did not finish within {timeout + SCAN_GRACE:g}s"),
        )
        found = [d for d in devices if matches(d, self._settings.name_filters, self._settings.service_uuid)]
        LOGGER.info("Scan found %d device(s), %d matching", len(devices), len(found))
        return found

    async def _ensure_radio(self) -> None:
        if await self._transport.is_radio_on():
            return
        LOGGER.info("Bluetooth radio is off, turning it on")
        await self._transport.turn_on_radio()
        if not await self._transport.is_radio_on():
            raise RadioOffFailure("Bluetooth radio is off and could not be turned on")

    async def _connect_and_probe(self, device: DeviceRecord) -> bool:
        await self._release_stale()
        self._device = device
        self._set_status(ConnectionStatus.CONNECTING, device.label)
        await self._connect_with_retries(device)

        try:
            services = await self._transport.discover_services(device)
            _require_characteristic(
                services,
                self._settings.service_uuid,
                self._settings.characteristic_uuid,
                device,
            )
        except TransportError as exc:
            await self._abandon(device)
            self._fail(exc, device)
            raise

        self._set_status(ConnectionStatus.PROBING, device.label)
        try:
            adapter = await self._open_adapter(device)
            await adapter.initialize()
            await self._probe(adapter)
        except LeafctlError as exc:
            await self._abandon(device)
            self._fail(exc, device)
            raise

        self._adapter = adapter
        self._retry.reset()
        self._stats_for(device).record_success()
        self._saved_address = device.address
        self._set_status(ConnectionStatus.CONNECTED, device.label)
        return True

    async def _connect_with_retries(self, device: DeviceRecord) -> None:
        attempts = self._settings.connect_attempts
        timeout = self._settings.connect_timeout
        last_error: TransportError | None = None

        for attempt in range(1, attempts + 1):
            try:
                connected = await wait_for(
                    self._clock,
                    self._transport.connect(device, on_disconnect=self._on_link_lost),
                    timeout,
                    lambda: ConnectTimeout(f"Connection to {device.label} timed out after {timeout:g}s"),
                )
                if not connected:
                    raise ConnectError(f"Connection to {device.label} was refused")
                LOGGER.info("Connected to %s on attempt %d/%d", device.label, attempt, attempts)
                return
            except TransportError as exc:
                last_error = exc
                LOGGER.warning("Connect attempt %d/%d to %s failed: %s", attempt, attempts, device.label, exc)
                await self._abandon(device)
                if attempt < attempts:
                    self._retry.backoff = self._settings.connect_retry_delay
                    await self._clock.sleep(self._settings.connect_retry_delay)

        assert last_error is not None
        self._fail(last_error, device)
        raise last_error

    async def _open_adapter(self, device: DeviceRecord) -> ElmAdapter:
        characteristic = self._settings.characteristic_uuid

        async def write(data: bytes) -> None:
            await self._transport.write(device, characteristic, data)

        adapter = self._new_adapter(write)
        await self._transport.subscribe(device, characteristic, adapter.feed)
        return adapter

    def _new_adapter(self, write: WriteFunc, *, reset_delay: float = RESET_DELAY) -> ElmAdapter:
        return ElmAdapter(
            write,
            self._clock,
            reset_delay=reset_delay,
            default_header=self._catalog.default_header,
            command_timeout=self._settings.command_timeout,
            init_retries=self._settings.init_retries,
            strict_single_frame=self._settings.strict_single_frame,
        )

    async def _probe(self, adapter: ElmAdapter) -> None:
        if not self._catalog.probe_name:
            return
        probe = self._catalog.probe
        try:
            await adapter.run(probe, self._catalog.header_for(probe))
        except (AdapterError, FrameParseError) as exc:
            raise ProbeFailure(f"Probe '{probe.name}' failed: {exc}") from exc

    async def _abandon(self, device: DeviceRecord) -> None:
        self._closing = True
        try:
            await self._transport.disconnect(device)
        except TransportError as exc:
            LOGGER.warning("Disconnect from %s failed: %s", device.label, exc)
        finally:
            self._closing = False

    async def _release_stale(self) -> None:
        stale, self._stale = self._stale, None
        if stale is not None:
            LOGGER.debug("Releasing lost link to %s", stale.label)
            await self._abandon(stale)

    async def _close_link(self) -> None:
        device = self._device
        self._stale = None
        self._adapter = None
        self._device = None
        if device is not None:
            await self._abandon(device)

    def _on_link_lost(self) -> None:
        if self._closing or self._adapter is None:
            return
        device = self._device
        LOGGER.warning("Link to %s lost", device.label if device else "adapter")
        self._adapter = None
        self._stale = device
        self._set_status(ConnectionStatus.DISCONNECTED, "Link lost")
        if self._periodic is not None:
            self._tick()

    def _active_adapter(self) -> ElmAdapter:
        if self._mock_adapter is not None:
            return self._mock_adapter
        if self._adapter is None:
            raise ConnectionStateError("Not connected to an OBD adapter")
        return self._adapter

    def _connected_reason(self) -> str | None:
        if self.is_in_mock_mode:
            return self._mock_reason()
        return self._device.label if self._device else None

    def _mock_reason(self) -> str:
        return f"Mock mode: {self._mock_preset}"

    def _stats_for(self, device: DeviceRecord) -> DeviceErrorStats:
        return self._device_stats.setdefault(device.address.upper(), DeviceErrorStats())

    def _fail(self, exc: Exception, device: DeviceRecord | None = None) -> None:
        message = str(exc)
        self._retry.record_failure(message)
        if device is not None:
            self._stats_for(device).record_error(type(exc).__name__)
        self._set_status(ConnectionStatus.ERROR, message)

    def _set_status(self, status: ConnectionStatus, reason: str | None = None) -> None:
        event = StatusEvent(status, reason)
        LOGGER.info("Status: %s", event)
        self._broadcaster.publish(event)

    def _ensure_idle(self, action: str) -> None:
        if self.busy:
            raise ConnectionStateError(f"Cannot {action} while a connection attempt is in flight")

    def _ensure_not_connected(self, action: str) -> None:
        if self.is_connected:
            label = self._device.label if self._device else "an adapter"
            raise ConnectionStateError(f"Cannot {action} while connected to {label}")
        self._ensure_not_mock(action)

    def _ensure_not_mock(self, action: str) -> None:
        if self.is_in_mock_mode:
            raise ConnectionStateError(f"Cannot {action} while mock mode is enabled")


def _require_characteristic(
    services: list[ServiceDescriptor],
    service_uuid: str,
    characteristic_uuid: str,
    device: DeviceRecord,
) -> None:
    for service in services:
        if service.uuid.lower() != service_uuid.lower():
            continue
        for characteristic in service.characteristics:
            if characteristic.uuid.lower() == characteristic_uuid.lower():
                return
        raise ServiceNotFound(f"Characteristic {characteristic_uuid} not found on {device.label}")
    raise ServiceNotFound(f"Service {service_uuid} not found on {device.label}")
