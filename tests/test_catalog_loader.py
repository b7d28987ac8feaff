from __future__ import annotations

from pathlib import Path

import pytest

from leafctl.core.catalog_loader import build_catalog, load_catalog
from leafctl.core.errors import (
    AdapterResponseError,
    CatalogValidationError,
    CommandResolutionError,
    FrameParseError,
)
from leafctl.core.model import CommandCatalog


def _isolate(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))


def _catalog(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> CommandCatalog:
    _isolate(monkeypatch, tmp_path)
    loaded = load_catalog()
    assert loaded.warnings == ()
    return loaded.catalog


def _write_commands(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _lbc_body(length: int = 35, *, soc_at: int = 29, soh_at: int = 26, ah_at: int = 32) -> bytearray:
    body = bytearray(length)
    body[18:20] = bytes.fromhex("8E30")
    body[soh_at : soh_at + 2] = bytes.fromhex("251C")
    body[soc_at : soc_at + 3] = bytes.fromhex("0CF850")
    body[ah_at : ah_at + 3] = bytes.fromhex("088B80")
    return body


def test_load_packaged_catalog(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    catalog = _catalog(monkeypatch, tmp_path)

    assert catalog.id == "nissan_leaf"
    assert catalog.default_header == "79B"
    assert catalog.probe.name == "probe"
    assert "probe" not in [spec.name for spec in catalog.readable()]
    assert {"lbc", "range_remaining", "odometer", "gear_position", "power_switch"} <= set(catalog.commands)


def test_request_strings_are_built_from_mode_and_pid(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    catalog = _catalog(monkeypatch, tmp_path)

    assert catalog.get("range_remaining").request == "03220E24"
    assert catalog.get("lbc").request == "022101"
    assert catalog.probe.request == "0210C0 1"
    assert catalog.header_for(catalog.get("lbc")) == "79B"
    assert catalog.header_for(catalog.get("range_remaining")) == "743"


def test_range_remaining_regression_fixture(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    spec = _catalog(monkeypatch, tmp_path).get("range_remaining")

    values = spec.decode_response(bytes.fromhex("620E24001842088002"))
    assert values == {"range_remaining": pytest.approx(2.4)}


def test_lbc_short_layout(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    spec = _catalog(monkeypatch, tmp_path).get("lbc")

    values = spec.decode_response(bytes.fromhex("6101") + bytes(_lbc_body()))
    assert values == {
        "state_of_charge": 85,
        "hv_battery_health": 92,
        "hv_battery_Ah": 56,
        "hv_battery_current_1": 0,
        "hv_battery_current_2": 0,
        "hv_battery_voltage": 364,
    }


def test_lbc_long_layout_shifts_capacity_block(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    spec = _catalog(monkeypatch, tmp_path).get("lbc")
    body = _lbc_body(41, soc_at=31, soh_at=28, ah_at=35)

    values = spec.decode_response(bytes.fromhex("6101") + bytes(body))
    assert values["state_of_charge"] == 85
    assert values["hv_battery_health"] == 92
    assert values["hv_battery_Ah"] == 56


def test_lbc_currents_are_signed(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    spec = _catalog(monkeypatch, tmp_path).get("lbc")
    body = _lbc_body()
    body[0:4] = bytes.fromhex("FFFFF800")
    body[6:10] = bytes.fromhex("00000C00")

    values = spec.decode_response(bytes.fromhex("6101") + bytes(body))
    assert values["hv_battery_current_1"] == -2
    assert values["hv_battery_current_2"] == 3


def test_scaled_and_labelled_metrics(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    catalog = _catalog(monkeypatch, tmp_path)

    assert catalog.get("odometer").decode_response(bytes.fromhex("620E0101E240")) == {"odometer": 123456}
    voltage = catalog.get("bat_12v_voltage").decode_response(bytes.fromhex("62110396"))
    assert voltage["bat_12v_voltage"] == pytest.approx(12.0)
    ambient = catalog.get("ambient_temp").decode_response(bytes.fromhex("62115D64"))
    assert ambient["ambient_temp"] == pytest.approx(10.0)

    gear = catalog.get("gear_position")
    values = gear.decode_response(bytes.fromhex("62115604"))
    assert values == {"gear_position": 4}
    field = gear.field_named("gear_position")
    assert field is not None
    assert field.label_for(values["gear_position"]) == "Drive"


def test_flag_metrics_use_mask(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    spec = _catalog(monkeypatch, tmp_path).get("power_switch")

    assert spec.decode_response(bytes.fromhex("62130481")) == {"power_switch": True}
    assert spec.decode_response(bytes.fromhex("62130401")) == {"power_switch": False}


def test_negative_response_reports_nrc(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    spec = _catalog(monkeypatch, tmp_path).get("range_remaining")

    with pytest.raises(AdapterResponseError, match="NRC 0x31"):
        spec.decode_response(bytes.fromhex("7F2231"))


def test_echo_mismatch_and_short_payload(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    spec = _catalog(monkeypatch, tmp_path).get("range_remaining")

    with pytest.raises(AdapterResponseError, match="expected echo 620E24"):
        spec.decode_response(bytes.fromhex("6212340018"))
    with pytest.raises(FrameParseError, match="expected at least 5"):
        spec.decode_response(bytes.fromhex("620E2400"))


def test_unknown_command_lists_available(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    catalog = _catalog(monkeypatch, tmp_path)

    with pytest.raises(CommandResolutionError, match="Unknown command 'soc'"):
        catalog.get("soc")


def test_user_command_overrides_packaged_definition(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    _write_commands(
        tmp_path / "cfg" / "leafctl" / "commands" / "range.yaml",
        """
id: my_leaf
name: My Leaf
commands:
  range_remaining:
    description: Remaining range (miles)
    mode: "22"
    pid: "0E24"
    header: "743"
    fields:
      range_remaining: {bytes: [0, 2], divisor: 16.09}
  cabin_temp:
    description: Cabin temperature
    mode: "22"
    pid: "1234"
    fields:
      cabin_temp: {bytes: [0, 1], offset: -40}
""",
    )

    loaded = load_catalog()
    assert len(loaded.warnings) == 1
    assert "range_remaining" in loaded.warnings[0]

    catalog = loaded.catalog
    assert catalog.get("range_remaining").description == "Remaining range (miles)"
    assert catalog.get("cabin_temp").expected_length == 4
    assert catalog.header_for(catalog.get("cabin_temp")) == "79B"
    assert catalog.get("lbc").request == "022101"


def test_duplicate_keys_in_user_catalog_rejected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    _write_commands(
        tmp_path / "data" / "leafctl" / "commands" / "dupe.yaml",
        """
id: dupe
name: Dupe
commands:
  speed:
    description: Speed
    mode: "22"
    pid: "121A"
    fields:
      speed: {bytes: [0, 2]}
  speed:
    description: Speed again
    mode: "22"
    pid: "121A"
    fields:
      speed: {bytes: [0, 2]}
""",
    )

    with pytest.raises(CatalogValidationError, match="Duplicate key 'speed'"):
        load_catalog()


def test_schema_violations_rejected() -> None:
    doc = {
        "id": "bad",
        "name": "Bad",
        "commands": {
            "speed": {"description": "Speed", "mode": "XYZ", "pid": "121A", "fields": {}},
        },
    }
    with pytest.raises(CatalogValidationError, match="Schema validation failed"):
        build_catalog(doc, "inline")


def test_empty_or_wide_byte_ranges_rejected() -> None:
    def doc(byte_range: list[int]) -> dict:
        return {
            "id": "bad",
            "name": "Bad",
            "commands": {
                "speed": {
                    "description": "Speed",
                    "mode": "22",
                    "pid": "121A",
                    "fields": {"speed": {"bytes": byte_range}},
                },
            },
        }

    with pytest.raises(CatalogValidationError, match="non-empty"):
        build_catalog(doc([2, 2]), "inline")
    with pytest.raises(CatalogValidationError, match="more than 4 bytes"):
        build_catalog(doc([0, 5]), "inline")


def test_missing_probe_command_rejected() -> None:
    doc = {
        "id": "bad",
        "name": "Bad",
        "probe": "ping",
        "commands": {
            "speed": {"description": "Speed", "mode": "22", "pid": "121A", "fields": {}},
        },
    }
    with pytest.raises(CatalogValidationError, match="Probe command 'ping'"):
        build_catalog(doc, "inline")
