# puffco_ble_control/protocol.py
"""
Puffco Lorax: low-level wire helpers.

Pure functions only: nothing here touches bleak or the event loop, so the
session, the CLI and the tests can all share them.

Wire formats (all integers little-endian):

• Request (written to LORAX_COMMAND_CHAR):
    [seq:u16][opcode:u8] + payload

• Payloads:
    READ_SHORT   [reserved:u16][maxPayload:u16][path]
    WRITE_SHORT  [reserved:u16][reserved:u8][path][0x00 if padded][value]
    OPEN         [path]
    WATCH        [handle:u16][reserved:u16][intervalMs:u16][reserved:u16][length:u16]
    UNWATCH      WATCH with every field zeroed
    CLOSE        [handle:u16]

• Reply (notified on LORAX_REPLY_CHAR):
    [seq:u16][error:u8][data...]

• Event (notified on LORAX_EVENT_CHAR):
    [seq:u16][error:u8][watchId:u16][reserved:u8][data...]   data starts at 6

• GET_LIMITS reply data:
    [maxPayload:u8][maxFiles:u16][maxCommands:u16]

• Access key:
    sha256(key16 + seed16)[:16]
"""

from __future__ import annotations

import hashlib
import struct
import zlib
from typing import Tuple

from .const import SEQUENCE_MODULO
from .models import LoraxEvent, LoraxLimits, LoraxReply

__all__ = [
    "close_cmd",
    "crc32",
    "decode_command",
    "derive_access_key",
    "encode_command",
    "encode_event",
    "encode_reply",
    "format_mac",
    "millis_to_minutes_seconds",
    "next_sequence",
    "numbers_to_letters",
    "open_cmd",
    "pack_float",
    "parse_event",
    "parse_limits",
    "parse_reply",
    "read_short_cmd",
    "unpack_float",
    "unwatch_cmd",
    "watch_cmd",
    "write_short_cmd",
]

_HEADER = struct.Struct("<HB")
_WATCH = struct.Struct("<HHHHH")
EVENT_DATA_OFFSET = 6


# ────────────────────────────────────────────────────────────────
# Sequencing / framing
# ────────────────────────────────────────────────────────────────
def next_sequence(last: int) -> int:
    """Return the sequence after ``last``; wraps 65534 → 0, never 65535."""
    return (int(last) + 1) % SEQUENCE_MODULO


def encode_command(opcode: int, sequence: int, payload: bytes | bytearray | None = None) -> bytes:
    if not 0 <= sequence < SEQUENCE_MODULO:
        raise ValueError(f"Sequence out of range 0..{SEQUENCE_MODULO - 1}: {sequence}")
    if not 0 <= opcode <= 0xFF:
        raise ValueError(f"Opcode out of range 0..255: {opcode}")
    return _HEADER.pack(sequence, opcode) + bytes(payload or b"")


def decode_command(frame: bytes | bytearray) -> Tuple[int, int, bytes]:
    """Return ``(opcode, sequence, payload)`` from a request frame."""
    if len(frame) < _HEADER.size:
        raise ValueError("Frame too short")
    sequence, opcode = _HEADER.unpack_from(frame, 0)
    return opcode, sequence, bytes(frame[_HEADER.size:])


def encode_reply(sequence: int, error: bool, data: bytes = b"") -> bytes:
    return _HEADER.pack(sequence, 1 if error else 0) + bytes(data)


def parse_reply(frame: bytes | bytearray) -> LoraxReply:
    if len(frame) < _HEADER.size:
        raise ValueError("Reply too short")
    sequence, error = _HEADER.unpack_from(frame, 0)
    return LoraxReply(sequence=sequence, error=bool(error), data=bytes(frame[_HEADER.size:]))


def encode_event(sequence: int, error: bool, watch_id: int, data: bytes = b"") -> bytes:
    return _HEADER.pack(sequence, 1 if error else 0) + struct.pack("<HB", watch_id, 0) + bytes(data)


def parse_event(frame: bytes | bytearray) -> LoraxEvent:
    if len(frame) < EVENT_DATA_OFFSET:
        raise ValueError("Event too short")
    sequence, error = _HEADER.unpack_from(frame, 0)
    (watch_id,) = struct.unpack_from("<H", frame, 3)
    return LoraxEvent(
        sequence=sequence,
        error=bool(error),
        watch_id=watch_id,
        data=bytes(frame[EVENT_DATA_OFFSET:]),
    )


# ────────────────────────────────────────────────────────────────
# Payload builders
# ────────────────────────────────────────────────────────────────
def read_short_cmd(limits: LoraxLimits, path: str) -> bytes:
    return struct.pack("<HH", 0, limits.max_payload & 0xFFFF) + path.encode()


def write_short_cmd(path: str, data: bytes | bytearray, padding: bool = True) -> bytes:
    """Path is NUL-terminated when ``padding`` so the value can follow it."""
    return b"\x00\x00\x00" + path.encode() + (b"\x00" if padding else b"") + bytes(data)


def open_cmd(path: str) -> bytes:
    return path.encode()


def watch_cmd(handle: int, interval_ms: int, length: int) -> bytes:
    return _WATCH.pack(handle & 0xFFFF, 0, int(interval_ms) & 0xFFFF, 0, int(length) & 0xFFFF)


def unwatch_cmd() -> bytes:
    return watch_cmd(0, 0, 0)


def close_cmd(handle: int) -> bytes:
    return struct.pack("<H", handle & 0xFFFF)


def parse_limits(data: bytes | bytearray) -> LoraxLimits:
    if len(data) >= 5:
        max_payload, max_files, max_commands = struct.unpack_from("<BHH", data, 0)
    elif len(data) >= 4:
        # Older firmware packs the two u16 fields overlapping.
        max_payload = data[0]
        (max_files,) = struct.unpack_from("<H", data, 1)
        (max_commands,) = struct.unpack_from("<H", data, 2)
    else:
        raise ValueError(f"Limits reply too short: {len(data)} bytes")
    return LoraxLimits(max_payload=max_payload, max_files=max_files, max_commands=max_commands)


# ────────────────────────────────────────────────────────────────
# Handshake
# ────────────────────────────────────────────────────────────────
def derive_access_key(handshake_key: bytes, seed: bytes | bytearray) -> bytes:
    if len(handshake_key) < 16:
        raise ValueError("Handshake key must be 16 bytes")
    if len(seed) < 16:
        raise ValueError(f"Access seed must be 16 bytes (got {len(seed)})")
    buf = bytes(handshake_key[:16]) + bytes(seed[:16])
    return hashlib.sha256(buf).digest()[:16]


# ────────────────────────────────────────────────────────────────
# Auxiliary conversions
# ────────────────────────────────────────────────────────────────
def format_mac(data: bytes | bytearray) -> str:
    if len(data) < 6:
        raise ValueError("MAC needs 6 bytes")
    return ":".join(f"{b:02X}" for b in bytes(data[:6]))


def numbers_to_letters(num: int) -> str:
    """0 → A, 25 → Z, 26 → AA (firmware version letters)."""
    if num < 0:
        raise ValueError("Version number must be >= 0")
    letters = ""
    while num >= 0:
        letters = chr(ord("A") + num % 26) + letters
        num = num // 26 - 1
    return letters


def crc32(data: bytes | bytearray) -> int:
    return zlib.crc32(bytes(data)) & 0xFFFFFFFF


def pack_float(value: float) -> bytes:
    return struct.pack("<f", float(value))


def unpack_float(data: bytes | bytearray, offset: int = 0) -> float:
    return struct.unpack_from("<f", data, offset)[0]


def millis_to_minutes_seconds(millis: float) -> str:
    minutes = int(millis // 60000)
    seconds = round((millis % 60000) / 1000)
    if seconds == 60:
        return f"{minutes + 1}:00"
    return f"{minutes}:{seconds:02d}"
