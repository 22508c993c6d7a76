# puffco_ble_control/puffcoctl.py
"""Puffco BLE control CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import typer
from bleak import BleakScanner
from rich import print
from rich.table import Table
from typer import Context
from typing_extensions import Annotated

from .device import get_device_from_address, is_puffco_advertisement
from .diagnostics import build_diagnostics
from .models import DeviceCommand, StateDelta

app = typer.Typer(help="Puffco BLE control")


# ────────────────────────────────────────────────────────────────
# Global options
# ────────────────────────────────────────────────────────────────
@app.callback(invoke_without_command=True)
def _global_options(
    ctx: Context,
    debug: Annotated[
        bool,
        typer.Option("--debug/--no-debug", help="Enable verbose debug logging"),
    ] = False,
):
    ctx.obj = ctx.obj or {}
    ctx.obj["debug"] = bool(debug)

    if debug:
        from rich.logging import RichHandler

        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(rich_tracebacks=True, show_time=False, show_level=True)],
        )
        logging.getLogger("bleak").setLevel(logging.DEBUG)
        logging.getLogger("puffco_ble_control").setLevel(logging.DEBUG)


# ────────────────────────────────────────────────────────────────
# Shared runner for device-bound methods
# ────────────────────────────────────────────────────────────────
def _run_device_func(
    device_address: str, method_name: str, *, polling: bool = False, **kwargs: Any
):
    """
    Connect, invoke a coroutine method on the device, disconnect.
    Returns the awaited result so getters can surface values.
    """

    async def _async_func():
        dev = await get_device_from_address(device_address)
        if not hasattr(dev, method_name):
            print(f"[red]{dev.__class__.__name__} doesn't support {method_name}[/red]")
            raise typer.Abort()
        try:
            await dev.connect()
            if polling:
                await dev.start_polling()
            return await getattr(dev, method_name)(**kwargs)
        finally:
            await dev.disconnect()

    return asyncio.run(_async_func())


def _parse_command(value: str) -> DeviceCommand:
    try:
        return DeviceCommand[value.strip().upper().replace("-", "_")]
    except KeyError as e:
        names = ", ".join(m.name.lower().replace("_", "-") for m in DeviceCommand)
        raise typer.BadParameter(f"Unknown command {value!r}; pick one of: {names}") from e


def _format_delta(delta: StateDelta) -> str:
    parts = []
    for key, value in delta.items():
        if key == "raw":
            value = {path: data.hex() for path, data in value.items()}
        elif hasattr(value, "to_dict"):
            value = value.to_dict()
        elif hasattr(value, "name"):
            value = value.name
        parts.append(f"{key}={value}")
    return ", ".join(parts)


# ────────────────────────────────────────────────────────────────
# Commands
# ────────────────────────────────────────────────────────────────
@app.command(name="list-devices")
def list_devices(
    timeout: Annotated[int, typer.Option()] = 5,
    show_all: Annotated[bool, typer.Option("--all/--puffco-only")] = False,
) -> None:
    """List Puffco devices in range."""
    print("Scanning for Bluetooth devices…")
    discovered = asyncio.run(BleakScanner.discover(timeout=timeout, return_adv=True))
    table = Table("Name", "Address", "RSSI", "Puffco")
    for device, adv in discovered.values():
        puffco = is_puffco_advertisement(device.name, adv.service_uuids)
        if not (puffco or show_all):
            continue
        table.add_row(device.name or "(unknown)", device.address, str(adv.rssi), "yes" if puffco else "")
    print("Discovered devices:")
    print(table)


@app.command()
def info(
    device_address: str,
    json_out: Annotated[bool, typer.Option("--json/--no-json", help="Emit JSON")] = False,
) -> None:
    """Connect and print identity, limits and profiles."""

    async def run() -> dict[str, Any]:
        dev = await get_device_from_address(device_address)
        try:
            await dev.connect()
            return build_diagnostics(dev)
        finally:
            await dev.disconnect()

    report = asyncio.run(run())
    if json_out:
        typer.echo(json.dumps(report, ensure_ascii=False))
        return

    table = Table("Field", "Value")
    table.add_row("Name", str(report["name"]))
    table.add_row("Address", str(report["address"]))
    table.add_row("Mode", str(report["mode"]))
    for key, value in report["identity"].items():
        table.add_row(key, str(value))
    if report["limits"]:
        for key, value in report["limits"].items():
            table.add_row(key, str(value))
    print(table)

    profiles = Table("#", "Name", "Temp", "Time", "Color")
    for idx, profile in report["profiles"].items():
        profiles.add_row(
            str(int(idx) + 1),
            profile["name"],
            str(profile["temperature"]),
            profile["time"],
            profile["color"],
        )
    print(profiles)


@app.command()
def watch(
    device_address: str,
    seconds: Annotated[float, typer.Option(min=1)] = 30.0,
) -> None:
    """Stream state deltas for a while."""

    async def run() -> None:
        dev = await get_device_from_address(device_address)
        dev.add_data_callback(lambda delta: print(_format_delta(delta)))
        try:
            await dev.connect()
            snapshot = await dev.start_polling()
            print(f"[bold]Initial:[/bold] {snapshot.to_dict()}")
            await asyncio.sleep(seconds)
        finally:
            await dev.disconnect()

    asyncio.run(run())


@app.command(name="send-command")
def send_command(device_address: str, command: str) -> None:
    """Send an operating command (e.g. heat-cycle-begin, idle)."""
    cmd = _parse_command(command)
    print(f"Connect to device {device_address} and send {cmd.name}")
    ok = _run_device_func(device_address, "send_command", target=cmd)
    if not ok:
        print("[red]Device rejected the command[/red]")
        raise typer.Exit(code=1)


@app.command(name="switch-profile")
def switch_profile(
    device_address: str,
    profile: Annotated[int, typer.Argument(min=1, max=4, help="Profile number 1..4")],
) -> None:
    """Make a heat profile current."""
    result = _run_device_func(device_address, "switch_profile", index=profile - 1)
    print(f"Profile #{profile}: {result.to_dict()}")


@app.command(name="set-brightness")
def set_brightness(
    device_address: str,
    brightness: Annotated[int, typer.Argument(min=0, max=100)],
) -> None:
    """Set LED brightness in percent."""
    print("Connect to device …")
    _run_device_func(device_address, "set_brightness", brightness=brightness)


@app.command(name="set-name")
def set_name(device_address: str, name: str) -> None:
    """Rename the device."""
    _run_device_func(device_address, "update_device_name", name=name)


@app.command(name="read")
def read_value(device_address: str, key: str) -> None:
    """Read a raw value by characteristic UUID or Lorax path."""
    data: Optional[bytes] = _run_device_func(device_address, "get_value", key=key)
    if data is None:
        print(f"[yellow]{key}: no value[/yellow]")
        return
    typer.echo(data.hex(" ").upper())


if __name__ == "__main__":
    try:
        app()
    except asyncio.CancelledError:
        pass
