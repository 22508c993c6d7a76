# puffco_ble_control/__init__.py
"""BLE session engine for Puffco devices (Lorax and legacy firmware)."""

from __future__ import annotations

from .device import PuffcoDevice, get_device_from_address, is_puffco_advertisement
from .exception import (
    CharacteristicBlockedError,
    CharacteristicMissingError,
    ConnectFailedError,
    DeviceDisconnectedError,
    DeviceNotFound,
    HandshakeFailedError,
    ProtocolError,
    PuffcoError,
    TransportBusyError,
)
from .models import (
    Capabilities,
    DeviceCommand,
    DeviceStateSnapshot,
    LightMode,
    OperatingState,
    Profile,
    SessionMode,
)

__all__ = [
    "Capabilities",
    "CharacteristicBlockedError",
    "CharacteristicMissingError",
    "ConnectFailedError",
    "DeviceCommand",
    "DeviceDisconnectedError",
    "DeviceNotFound",
    "DeviceStateSnapshot",
    "HandshakeFailedError",
    "LightMode",
    "OperatingState",
    "Profile",
    "ProtocolError",
    "PuffcoDevice",
    "PuffcoError",
    "SessionMode",
    "TransportBusyError",
    "get_device_from_address",
    "is_puffco_advertisement",
]
