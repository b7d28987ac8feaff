"""Command catalog loading and validation for YAML-based PID definitions."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

from leafctl.core.decoding import make_decoder, make_encoder
from leafctl.core.documents import load_validator, normalize_bool, read_yaml, validate
from leafctl.core.errors import CatalogLoadError, CatalogValidationError
from leafctl.core.model import CommandCatalog, CommandSpec, FieldSpec

DEFAULT_HEADER = "7DF"
LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadedCatalog:
    catalog: CommandCatalog
    warnings: tuple[str, ...]


def _catalog_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "leafctl/commands", xdg_data / "leafctl/commands"


def _read_catalog(path: Path | Traversable) -> dict[str, Any]:
    return read_yaml(path, load_error=CatalogLoadError, validation_error=CatalogValidationError)


def _build_field(name: str, doc: dict[str, Any], *, context: str) -> FieldSpec:
    start, end = doc["bytes"]
    if end <= start:
        raise CatalogValidationError(f"{context}.bytes must be a non-empty [start, end) range")
    if end - start > 4:
        raise CatalogValidationError(f"{context}.bytes spans more than 4 bytes")

    labels: dict[int, str] = {}
    for code, text in doc.get("labels", {}).items():
        labels[int(code)] = text

    return FieldSpec(
        name=name,
        start=start,
        end=end,
        signed=normalize_bool(doc.get("signed", False), context=f"{context}.signed", error=CatalogValidationError),
        scale=doc.get("scale", 1),
        divisor=doc.get("divisor", 1),
        offset=doc.get("offset", 0),
        truncate=normalize_bool(
            doc.get("truncate", False), context=f"{context}.truncate", error=CatalogValidationError
        ),
        mask=doc.get("mask"),
        one_of=tuple(doc.get("one_of", ())),
        labels=labels,
    )


def _build_fields(fields_doc: dict[str, Any], *, context: str) -> tuple[FieldSpec, ...]:
    return tuple(
        _build_field(name, field_doc, context=f"{context}.{name}")
        for name, field_doc in fields_doc.items()
    )


def _build_command(name: str, doc: dict[str, Any], *, catalog_id: str, default_header: str | None) -> CommandSpec:
    context = f"{catalog_id}.{name}"
    if "variants" in doc:
        variants = [
            (variant["min_length"], _build_fields(variant["fields"], context=f"{context}.variants"))
            for variant in doc["variants"]
        ]
    else:
        variants = [(0, _build_fields(doc["fields"], context=f"{context}.fields"))]

    # The shortest layout is the one the simulator encodes.
    base_fields = min(variants, key=lambda item: item[0])[1]
    body_length = max((spec.end for spec in base_fields), default=0)
    pid = bytes.fromhex(doc["pid"])
    echo_length = 1 + len(pid)
    expected_length = doc.get("expected_length", echo_length + body_length)

    return CommandSpec(
        name=name,
        description=doc["description"],
        mode=int(doc["mode"], 16),
        pid=pid,
        decode=make_decoder(variants),
        header=doc["header"].upper() if "header" in doc else default_header,
        expected_length=expected_length,
        response_frames=doc.get("response_frames"),
        fields=base_fields,
        encode=make_encoder(base_fields, max(body_length, expected_length - echo_length)),
    )


def build_catalog(doc: dict[str, Any], source: Path | Traversable | str) -> CommandCatalog:
    validate(load_validator("catalog.schema.json"), doc, source, error=CatalogValidationError)

    # Commands without a header take the document default_header, if it sets one.
    doc_header = doc["default_header"].upper() if "default_header" in doc else None
    commands = {
        name: _build_command(name, command_doc, catalog_id=doc["id"], default_header=doc_header)
        for name, command_doc in doc["commands"].items()
    }
    probe_name = doc.get("probe", "")
    if probe_name and probe_name not in commands:
        raise CatalogValidationError(f"Probe command '{probe_name}' is not defined in {source}")

    return CommandCatalog(
        id=doc["id"],
        name=doc["name"],
        default_header=doc.get("default_header", DEFAULT_HEADER).upper(),
        probe_name=probe_name,
        commands=commands,
    )


def _iter_packaged_catalog_paths() -> list[Traversable]:
    catalog_root = resources.files("leafctl.catalog")
    return [item for item in catalog_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_catalog_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _catalog_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_catalog() -> LoadedCatalog:
    """Load the packaged catalog, then merge user command files over it by name."""
    packaged = sorted(_iter_packaged_catalog_paths(), key=lambda p: p.name)
    if not packaged:
        raise CatalogLoadError("No packaged command catalog found")

    base: CommandCatalog | None = None
    for path in packaged:
        catalog = build_catalog(_read_catalog(path), path)
        base = catalog if base is None else _merge(base, catalog, path, warnings=[])
    assert base is not None

    warnings: list[str] = []
    for path in _iter_user_catalog_paths():
        base = _merge(base, build_catalog(_read_catalog(path), path), path, warnings=warnings)

    return LoadedCatalog(catalog=base, warnings=tuple(warnings))


def _merge(
    base: CommandCatalog,
    extra: CommandCatalog,
    source: Path | Traversable,
    *,
    warnings: list[str],
) -> CommandCatalog:
    commands = dict(base.commands)
    for name, command in extra.commands.items():
        if name in commands:
            warning = f"Command '{name}' from {source} overrides the packaged definition"
            LOGGER.warning(warning)
            warnings.append(warning)
        commands[name] = command
    return CommandCatalog(
        id=base.id,
        name=base.name,
        default_header=base.default_header,
        probe_name=extra.probe_name or base.probe_name,
        commands=commands,
    )
