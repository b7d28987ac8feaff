"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import typer

from leafctl.core.can_frames import parse_lines, reassemble
from leafctl.core.catalog_loader import load_catalog
from leafctl.core.errors import ConnectionStateError, LeafctlError
from leafctl.core.manager import ConnectionManager
from leafctl.core.model import CommandSpec, StatusEvent, Values
from leafctl.core.service import LeafService
from leafctl.core.settings import Settings, load_settings
from leafctl.core.simulator import MOCK_PRESETS
from leafctl.transports.ble_gatt import BleakTransport

app = typer.Typer(help="Nissan Leaf OBD-II reader for ELM327 Bluetooth LE adapters")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log adapter traffic and state changes"),
    config: Path | None = typer.Option(None, "--config", help="Settings YAML file"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config": config}


def _load_settings(ctx: typer.Context) -> Settings:
    config = (ctx.obj or {}).get("config")
    return load_settings(config)


def _build_service(ctx: typer.Context) -> LeafService:
    loaded = load_catalog()
    for warning in loaded.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    manager = ConnectionManager(BleakTransport(), loaded.catalog, settings=_load_settings(ctx))
    return LeafService(manager, loaded.catalog)


def _format_value(spec: CommandSpec, name: str, value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    field = spec.field_named(name)
    label = field.label_for(value) if field else None
    text = f"{value:g}" if isinstance(value, float) else str(value)
    return f"{text} ({label})" if label else text


def _echo_values(spec: CommandSpec, values: Values | dict[str, str]) -> None:
    if "error" in values:
        typer.echo(f"{spec.name}: error: {values['error']}")
        return
    if not values:
        typer.echo(f"{spec.name}: ok")
        return
    for name, value in values.items():
        typer.echo(f"{spec.name}.{name} = {_format_value(spec, name, value)}")


@app.command("commands")
def list_commands() -> None:
    """List the commands in the loaded catalog."""
    try:
        loaded = load_catalog()
        for warning in loaded.warnings:
            typer.echo(f"Warning: {warning}", err=True)
        catalog = loaded.catalog
        typer.echo(f"{catalog.id}: {catalog.name}")
        for spec in catalog.readable():
            header = catalog.header_for(spec)
            typer.echo(f"  {spec.name}: {spec.description} [{spec.request} @ {header}]")
    except LeafctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("decode")
def decode(
    ctx: typer.Context,
    name: str,
    lines: list[str] = typer.Argument(..., help="Adapter response lines, one frame per argument"),
) -> None:
    """Decode captured adapter response frames offline."""
    try:
        settings = _load_settings(ctx)
        spec = load_catalog().catalog.get(name)
        payload = reassemble(
            parse_lines("\n".join(lines)),
            strict_single_frame=settings.strict_single_frame,
        )
        typer.echo(f"payload: {payload.hex(' ').upper()}")
        _echo_values(spec, spec.decode_response(payload))
    except LeafctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("scan")
def scan(ctx: typer.Context) -> None:
    """Scan for matching OBD adapters."""
    try:
        service = _build_service(ctx)
        devices = asyncio.run(service.manager.scan_for_devices())
        if not devices:
            typer.echo("No matching OBD adapters found")
            return
        for device in devices:
            rssi = f"{device.rssi} dBm" if device.rssi is not None else "n/a"
            typer.echo(f"{device.address} {device.name or '<unknown-device>'} rssi={rssi}")
    except LeafctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("read")
def read(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(None, help="Command names (default: lbc, range_remaining)"),
    read_all: bool = typer.Option(False, "--all", help="Run every command in the catalog"),
    mock: str | None = typer.Option(None, "--mock", help="Use the simulator with this preset"),
) -> None:
    """Connect and run commands, printing decoded values."""
    try:
        service = _build_service(ctx)
        if read_all:
            selected = [spec.name for spec in service.list_commands()]
        else:
            selected = list(names or ["lbc", "range_remaining"])
        specs = [service.catalog.get(name) for name in selected]
        results = asyncio.run(_read(service, selected, mock))
        for spec in specs:
            _echo_values(spec, results[spec.name])
    except LeafctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


async def _read(service: LeafService, names: list[str], mock: str | None) -> dict[str, Any]:
    manager = service.manager
    try:
        if mock is not None:
            manager.enable_mock_mode(mock)
        elif not await manager.auto_connect():
            raise ConnectionStateError(f"Could not connect: {manager.last_error or 'unknown error'}")
        return await service.run_commands(names)
    finally:
        await manager.stop()


@app.command("monitor")
def monitor(
    ctx: typer.Context,
    interval: float = typer.Option(60.0, "--interval", help="Seconds between readings"),
    count: int | None = typer.Option(None, "--count", help="Stop after this many readings"),
    mock: str | None = typer.Option(None, "--mock", help="Use the simulator with this preset"),
) -> None:
    """Keep a connection alive and print battery readings as JSON lines."""
    try:
        service = _build_service(ctx)
        asyncio.run(_monitor(service, interval, count, mock))
    except LeafctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None


async def _monitor(service: LeafService, interval: float, count: int | None, mock: str | None) -> None:
    manager = service.manager

    def on_status(event: StatusEvent) -> None:
        typer.echo(f"status: {event}", err=True)

    unsubscribe = manager.subscribe(on_status)
    collected = 0
    try:
        if mock is not None:
            manager.enable_mock_mode(mock)
        else:
            manager.start_periodic_reconnect(interval)
        while count is None or collected < count:
            await manager.wait_idle()
            if manager.is_connected or manager.is_in_mock_mode:
                try:
                    data = await service.collect_car_data(disconnect_after=False)
                except LeafctlError as exc:
                    typer.echo(f"Warning: reading failed: {exc}", err=True)
                else:
                    typer.echo(json.dumps(data, sort_keys=True))
                    collected += 1
                    if count is not None and collected >= count:
                        break
            await asyncio.sleep(interval)
    finally:
        unsubscribe()
        await manager.stop()


@app.command("presets")
def list_presets() -> None:
    """List mock battery presets."""
    for preset in MOCK_PRESETS.values():
        typer.echo(
            f"{preset.name}: soc={preset.state_of_charge:g}% health={preset.battery_health:g}% "
            f"range={preset.estimated_range:g}km voltage={preset.battery_voltage:g}V "
            f"capacity={preset.battery_capacity:g}Ah"
        )


def run() -> None:
    app()


if __name__ == "__main__":
    run()
