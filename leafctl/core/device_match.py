"""Scan-result filtering and adapter candidate selection."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from leafctl.core.model import DeviceRecord

NO_SIGNAL = -1000


def _name_contains_match(device_name: str, name_filters: Sequence[str]) -> bool:
    lower_name = device_name.lower()
    return any(token.lower() in lower_name for token in name_filters if token)


def _service_match(device: DeviceRecord, service_uuid: str | None) -> bool:
    if not service_uuid:
        return False
    wanted = service_uuid.lower()
    return any(uuid.lower() == wanted for uuid in device.service_uuids)


def matches(device: DeviceRecord, name_filters: Sequence[str], service_uuid: str | None = None) -> bool:
    return _name_contains_match(device.name, name_filters) or _service_match(device, service_uuid)


def best_candidate(
    devices: Iterable[DeviceRecord],
    name_filters: Sequence[str],
    service_uuid: str | None = None,
    preferred_address: str | None = None,
) -> DeviceRecord | None:
    """Strongest matching device; the earliest scanned wins on equal signal.

    A matching device at ``preferred_address`` wins regardless of signal.
    """
    preferred = preferred_address.upper() if preferred_address else None
    best: DeviceRecord | None = None
    best_rssi = NO_SIGNAL - 1
    for device in devices:
        if not matches(device, name_filters, service_uuid):
            continue
        if preferred is not None and device.address.upper() == preferred:
            return device
        rssi = device.rssi if device.rssi is not None else NO_SIGNAL
        if rssi > best_rssi:
            best = device
            best_rssi = rssi
    return best
