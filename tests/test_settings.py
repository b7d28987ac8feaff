from __future__ import annotations

from pathlib import Path

import pytest

from leafctl.core.errors import SettingsError
from leafctl.core.settings import Settings, load_settings


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_defaults_without_settings_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))

    settings = load_settings()
    assert settings == Settings()
    assert settings.connect_attempts == 3
    assert settings.service_uuid == "0000ffe0-0000-1000-8000-00805f9b34fb"


def test_xdg_settings_file_is_read(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    _write(
        tmp_path / "cfg" / "leafctl" / "config.yaml",
        """
name_filters: [OBDBLE, Vgate]
service_uuid: FFF0
characteristic_uuid: "0000fff1"
connect_attempts: 5
reconnect_interval: 300
strict_single_frame: false
mock_preset: Low Battery (30%)
""",
    )

    settings = load_settings()
    assert settings.name_filters == ("OBDBLE", "Vgate")
    assert settings.service_uuid == "0000fff0-0000-1000-8000-00805f9b34fb"
    assert settings.characteristic_uuid == "0000fff1-0000-1000-8000-00805f9b34fb"
    assert settings.connect_attempts == 5
    assert settings.reconnect_interval == 300
    assert settings.strict_single_frame is False
    assert settings.mock_preset == "Low Battery (30%)"
    assert settings.command_timeout == 5.0
    assert settings.preferred_address is None


def test_unknown_key_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path / "config.yaml", "scan_timeot: 3\n")

    with pytest.raises(SettingsError, match="Schema validation failed"):
        load_settings(path)


def test_out_of_range_value_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path / "config.yaml", "command_timeout: 0\n")

    with pytest.raises(SettingsError):
        load_settings(path)


def test_bad_uuid_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path / "config.yaml", "service_uuid: not-a-uuid\n")

    with pytest.raises(SettingsError, match="service_uuid"):
        load_settings(path)


def test_explicit_missing_path_rejected(tmp_path: Path) -> None:
    with pytest.raises(SettingsError, match="not found"):
        load_settings(tmp_path / "missing.yaml")


def test_duplicate_keys_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path / "config.yaml", "scan_timeout: 2\nscan_timeout: 4\n")

    with pytest.raises(SettingsError, match="Duplicate key"):
        load_settings(path)


def test_preferred_address_is_read(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    _write(path, 'preferred_address: "AA:BB:CC:DD:EE:01"\n')

    assert load_settings(path).preferred_address == "AA:BB:CC:DD:EE:01"
