"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer

from trainerlink.api import TrainerLink, ble_transport
from trainerlink.core.config import LoadedSettings, Settings, load_settings
from trainerlink.core.device_match import select_target
from trainerlink.core.errors import TrainerLinkError

app = typer.Typer(help="Stream power and cadence from a BLE smart trainer")


class ConsoleSink:
    """Telemetry sink that writes every update to the terminal."""

    def __init__(self) -> None:
        self.connected = False

    def log(self, message: str) -> None:
        typer.echo(message)

    def set_status(self, message: str) -> None:
        typer.echo(f"Status: {message}")

    def set_stats(self, power_text: str, cadence_text: str) -> None:
        typer.echo(f"Power: {power_text} | Cadence: {cadence_text}")

    def set_button_connected(self, connected: bool) -> None:
        self.connected = connected


def _load(ctx: typer.Context, config: Path | None) -> LoadedSettings:
    loaded = load_settings(config)
    verbose = bool(ctx.obj and ctx.obj.get("verbose"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, loaded.settings.log_level),
        format="%(levelname)s %(name)s: %(message)s",
    )
    for warning in loaded.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return loaded


async def _stream(settings: Settings, *, simulate: bool, seconds: float | None) -> None:
    sink = ConsoleSink()
    transport = None if simulate else ble_transport(settings)
    link = TrainerLink(sink, transport=transport, settings=settings)
    link.connect()
    try:
        if seconds is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(seconds)
    finally:
        link.disconnect()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    ctx.obj = {"verbose": verbose}


@app.command("scan")
def scan(
    ctx: typer.Context,
    seconds: float = typer.Option(5.0, "--seconds", help="Scan duration"),
    config: Path | None = typer.Option(None, "--config", help="Configuration file"),
) -> None:
    """List nearby BLE devices and mark the one the filter would pick."""
    try:
        settings = _load(ctx, config).settings
        devices = asyncio.run(ble_transport(settings).discover(seconds))
        if not devices:
            typer.echo("No Bluetooth devices found")
            return

        target = select_target(devices, settings.target_name_substring)
        for device in devices:
            marker = "*" if device == target else " "
            typer.echo(f"{marker} {device.address} {device.name or '<unknown-device>'}")
    except TrainerLinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("connect")
def connect(
    ctx: typer.Context,
    simulate: bool = typer.Option(False, "--simulate", help="Use synthetic telemetry"),
    seconds: float | None = typer.Option(None, "--seconds", help="Disconnect after N seconds"),
    config: Path | None = typer.Option(None, "--config", help="Configuration file"),
) -> None:
    """Connect to the trainer and stream telemetry until interrupted."""
    try:
        settings = _load(ctx, config).settings
        asyncio.run(_stream(settings, simulate=simulate or settings.simulate, seconds=seconds))
    except KeyboardInterrupt:
        typer.echo("Interrupted")
    except TrainerLinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("config")
def show_config(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="Configuration file"),
) -> None:
    """Print the effective configuration."""
    try:
        loaded = _load(ctx, config)
        settings = loaded.settings
        typer.echo(f"Sources: {', '.join(loaded.sources)}")
        typer.echo(f"target_name_substring: {settings.target_name_substring}")
        typer.echo(f"simulate: {str(settings.simulate).lower()}")
        typer.echo(f"log_level: {settings.log_level}")
        typer.echo(f"transport.service_uri: {settings.transport.service_uri}")
        typer.echo(f"transport.scan_interval_s: {settings.transport.scan_interval_s}")
        typer.echo(f"transport.notify_characteristics: {', '.join(settings.transport.notify_characteristics)}")
        typer.echo(f"simulator.period_s: {settings.simulator.period_s}")
        low, high = settings.simulator.power_range
        typer.echo(f"simulator.power_range: {low:g}-{high:g}")
        low, high = settings.simulator.cadence_range
        typer.echo(f"simulator.cadence_range: {low:g}-{high:g}")
    except TrainerLinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
