# puffco_ble_control/device/__init__.py
"""Device session and discovery helpers.

- Keeps the scanner import lazy so the session can be used with a BLEDevice
  handed over by another stack.
- ``get_device_from_address`` is meant for CLI/testing contexts.
"""
from __future__ import annotations

from typing import Any, Iterable

from ..const import LORAX_SERVICE, SERVICE
from .base_device import PuffcoDevice

_NAME_PREFIXES = ("puffco", "peak", "proxy")


def is_puffco_advertisement(name: str | None, service_uuids: Iterable[str] = ()) -> bool:
    """Return True when an advertisement looks like a Puffco device."""
    uuids = {str(u).lower() for u in service_uuids or ()}
    if SERVICE in uuids or LORAX_SERVICE in uuids:
        return True
    return bool(name) and str(name).lower().startswith(_NAME_PREFIXES)


async def get_device_from_address(device_address: str, **kwargs: Any) -> PuffcoDevice:
    """Resolve ``device_address`` with a scan and wrap it in a PuffcoDevice."""
    from bleak import BleakScanner  # lazy import

    ble_dev = await BleakScanner.find_device_by_address(device_address)
    if ble_dev is not None:
        return PuffcoDevice(ble_dev, **kwargs)

    from ..exception import DeviceNotFound  # lightweight local import

    raise DeviceNotFound(device_address)


__all__ = [
    "PuffcoDevice",
    "get_device_from_address",
    "is_puffco_advertisement",
]
