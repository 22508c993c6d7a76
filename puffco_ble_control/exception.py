# puffco_ble_control/exception.py
"""Exceptions raised by the Puffco BLE stack."""

from __future__ import annotations


class PuffcoError(Exception):
    """Base class for every error raised by this package."""


class DeviceNotFound(PuffcoError):
    """The scanner could not resolve the requested address."""


class ConnectFailedError(PuffcoError):
    """No compatible service on the peripheral, or the link was refused."""


class HandshakeFailedError(PuffcoError):
    """The device rejected the access key; the session is unusable."""


class CharacteristicMissingError(PuffcoError):
    """A characteristic the session depends on is not exposed."""


class TransportBusyError(PuffcoError):
    """The BLE stack kept rejecting overlapping writes past the retry cap."""


class ProtocolError(PuffcoError):
    """A Lorax reply carried the error flag."""

    def __init__(self, message: str, *, opcode: int | None = None, path: str | None = None):
        super().__init__(message)
        self.opcode = opcode
        self.path = path


class CharacteristicBlockedError(ProtocolError):
    """The characteristic must not be read on this firmware."""


class DeviceDisconnectedError(PuffcoError):
    """The session was torn down while the operation was outstanding."""


__all__ = [
    "CharacteristicBlockedError",
    "CharacteristicMissingError",
    "ConnectFailedError",
    "DeviceDisconnectedError",
    "DeviceNotFound",
    "HandshakeFailedError",
    "ProtocolError",
    "PuffcoError",
    "TransportBusyError",
]
