"""Settings file loading for adapter, scan, and retry parameters."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from leafctl.core.documents import load_validator, normalize_bool, normalize_uuid, read_yaml, validate
from leafctl.core.errors import SettingsError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    name_filters: tuple[str, ...] = ("OBD", "ELM")
    service_uuid: str = "0000ffe0-0000-1000-8000-00805f9b34fb"
    characteristic_uuid: str = "0000ffe1-0000-1000-8000-00805f9b34fb"
    scan_timeout: float = 2.0
    connect_timeout: float = 5.0
    connect_attempts: int = 3
    connect_retry_delay: float = 0.5
    command_timeout: float = 5.0
    init_retries: int = 3
    reconnect_interval: float = 60.0
    strict_single_frame: bool = True
    mock_preset: str = "Medium Battery (64%)"
    preferred_address: str | None = None


def default_settings_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "leafctl/config.yaml"


def load_settings(path: Path | None = None) -> Settings:
    """Read settings from ``path`` or the XDG config file.

    A missing default file yields the built-in defaults; a missing explicit
    path is an error.
    """
    explicit = path is not None
    source = path if path is not None else default_settings_path()
    if not source.exists():
        if explicit:
            raise SettingsError(f"Settings file not found: {source}")
        LOGGER.debug("No settings file at %s, using defaults", source)
        return Settings()

    doc = read_yaml(source, load_error=SettingsError, validation_error=SettingsError)
    return settings_from_dict(doc, source=str(source))


def settings_from_dict(doc: dict[str, Any], *, source: str = "<settings>") -> Settings:
    validate(load_validator("settings.schema.json"), doc, source, error=SettingsError)

    values: dict[str, Any] = dict(doc)
    if "name_filters" in values:
        values["name_filters"] = tuple(values["name_filters"])
    for key in ("service_uuid", "characteristic_uuid"):
        if key in values:
            values[key] = normalize_uuid(values[key], context=f"{source}: {key}", error=SettingsError)
    if "strict_single_frame" in values:
        values["strict_single_frame"] = normalize_bool(
            values["strict_single_frame"],
            context=f"{source}: strict_single_frame",
            error=SettingsError,
        )

    known = {f.name for f in fields(Settings)}
    return replace(Settings(), **{k: v for k, v in values.items() if k in known})
