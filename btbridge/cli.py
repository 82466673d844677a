"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from pathlib import Path

import typer

from btbridge.app import build_context, serve
from btbridge.core.codec import describe, encode
from btbridge.core.config import LOG_LEVELS, BridgeConfig, load_config
from btbridge.core.errors import BridgeError, ConfigValidationError
from btbridge.core.service import BridgeService

app = typer.Typer(help="Bridge classic and BLE Bluetooth devices to WebSocket clients")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _load(config_path: Path | None, log_level: str | None) -> BridgeConfig:
    config = load_config(config_path)
    level = (log_level or config.log_level).upper()
    if level not in LOG_LEVELS:
        raise ConfigValidationError(f"Unknown log level '{level}'; expected one of {', '.join(LOG_LEVELS)}")
    logging.basicConfig(level=level, format=LOG_FORMAT)
    return config


@app.command("serve")
def serve_command(
    config_path: Path | None = typer.Option(None, "--config", help="Path to config.yaml"),
    host: str | None = typer.Option(None, "--host", help="Override gateway host"),
    port: int | None = typer.Option(None, "--port", help="Override gateway base port"),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING, ..."),
) -> None:
    """Run the WebSocket gateway until interrupted."""
    try:
        config = _load(config_path, log_level)
        gateway = config.gateway
        config = replace(
            config,
            gateway=replace(
                gateway,
                host=host if host is not None else gateway.host,
                port=port if port is not None else gateway.port,
            ),
        )
        asyncio.run(serve(build_context(config)))
    except KeyboardInterrupt:
        typer.echo("Stopped")
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("devices")
def list_devices(
    config_path: Path | None = typer.Option(None, "--config", help="Path to config.yaml"),
    ignore_unknown: bool = typer.Option(False, "--ignore-unknown", help="Hide unnamed devices"),
) -> None:
    """Run one discovery pass and list classic and BLE devices."""
    try:
        config = _load(config_path, None)
        service = BridgeService(config=config)
        result = asyncio.run(service.discover_devices({"ignoreUnknown": ignore_unknown}))
        devices = result["devices"]
        if not devices:
            typer.echo("No Bluetooth devices found")
            return

        for device in devices:
            state = "connected" if device["connected"] else "-"
            typer.echo(f"{device['id']} {device['name']} [{device['type']}] {state}")
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("encode")
def encode_command(payload_hex: str) -> None:
    """Show how a hex payload splits into data and delay chunks."""
    try:
        payload = bytes.fromhex(payload_hex.replace(" ", ""))
    except ValueError:
        typer.echo(f"Error: '{payload_hex}' is not valid hex", err=True)
        raise typer.Exit(code=1) from None

    chunks = encode(payload)
    if not chunks:
        typer.echo("(empty payload)")
        return
    for line in describe(chunks):
        typer.echo(line)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
