from __future__ import annotations

import subprocess

import pytest

from leafctl.core.errors import RadioOffFailure
from leafctl.transports import bluez


def _cp(cmd: list[str], rc: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(cmd, rc, stdout=stdout, stderr=stderr)


SHOW_OUTPUT = """Controller 00:1A:7D:DA:71:13 (public)
\tName: laptop
\tPowered: {state}
\tDiscoverable: no
"""


def test_radio_powered_parses_show_output(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text):
        assert cmd == ["bluetoothctl", "show"]
        return _cp(cmd, 0, stdout=SHOW_OUTPUT.format(state="no"))

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert bluez.radio_powered() is False


def test_radio_state_unknown_when_bluetoothctl_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text):
        return _cp(cmd, 1, stderr="No default controller available")

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert bluez.radio_powered() is None


def test_radio_state_unknown_without_bluetoothctl(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert bluez.radio_powered() is None
    with pytest.raises(RadioOffFailure, match="not installed"):
        bluez.power_on()


def test_power_on(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd, check, capture_output, text):
        calls.append(cmd)
        return _cp(cmd, 0, stdout="Changing power on succeeded\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    bluez.power_on()
    assert calls == [["bluetoothctl", "power", "on"]]


def test_power_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text):
        return _cp(cmd, 1, stderr="org.bluez.Error.Blocked")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(RadioOffFailure, match="Blocked"):
        bluez.power_on()
