"""Bluetooth radio power state via BlueZ's ``bluetoothctl``."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence

from leafctl.core.errors import RadioOffFailure

_POWERED_RE = re.compile(r"^\s*Powered:\s*(yes|no)\s*$", re.IGNORECASE | re.MULTILINE)
LOGGER = logging.getLogger(__name__)


def radio_powered() -> bool | None:
    """Power state of the default controller, or None when it cannot be determined."""
    result = _run_bluetoothctl(["bluetoothctl", "show"])
    if result is None:
        return None
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        LOGGER.warning("bluetoothctl show failed: %s", stderr or f"exit code {result.returncode}")
        return None

    match = _POWERED_RE.search(result.stdout)
    if not match:
        return None
    return match.group(1).lower() == "yes"


def power_on() -> None:
    result = _run_bluetoothctl(["bluetoothctl", "power", "on"])
    if result is None:
        raise RadioOffFailure("Cannot turn the Bluetooth radio on: bluetoothctl is not installed")
    if result.returncode != 0 or "succeeded" not in result.stdout.lower():
        details = (result.stderr or result.stdout or "").strip()
        raise RadioOffFailure(f"Turning the Bluetooth radio on failed: {details or 'no output'}")


def _run_bluetoothctl(cmd: Sequence[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        LOGGER.warning("bluetoothctl not found; radio power state is unknown")
        return None
