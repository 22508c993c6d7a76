# puffco_ble_control/models.py
"""Data model shared by the codec, the session and its consumers."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum, IntEnum
from typing import Any, Optional, Tuple, TypedDict

RGB = Tuple[int, int, int]


class SessionMode(str, Enum):
    LORAX = "lorax"
    LEGACY = "legacy"


class OperatingState(IntEnum):
    """Normalized operating state; Lorax sends a byte, legacy a float32."""

    INIT_MEMORY = 0
    INIT_VERSION_DISPLAY = 1
    INIT_BATTERY_DISPLAY = 2
    MASTER_OFF = 3
    SLEEP = 4
    IDLE = 5
    TEMP_SELECT = 6
    HEAT_CYCLE_PREHEAT = 7
    HEAT_CYCLE_ACTIVE = 8
    HEAT_CYCLE_FADE = 9
    VERSION_DISPLAY = 10
    BATTERY_DISPLAY = 11
    FACTORY_TEST = 12
    BONDING = 13

    @property
    def is_heating(self) -> bool:
        return self in HEATING_STATES


HEATING_STATES = frozenset(
    {
        OperatingState.HEAT_CYCLE_PREHEAT,
        OperatingState.HEAT_CYCLE_ACTIVE,
        OperatingState.HEAT_CYCLE_FADE,
    }
)


class ChamberType(IntEnum):
    NONE = 0
    NORMAL = 1
    XL_3D = 3


class DeviceCommand(Enum):
    """Operating commands as (Lorax byte, legacy float32 LE bytes)."""

    OFF = (b"\x00", bytes([0, 0, 0, 0]))
    IDLE = (b"\x01", bytes([0, 0, 0, 64]))
    TEMP_SELECT_STOP = (b"\x02", bytes([0, 0, 40, 64]))
    TEMP_SELECT_BEGIN = (b"\x03", bytes([0, 0, 64, 64]))
    SWITCH_PROFILE = (b"\x04", bytes([0, 0, 0, 64]))
    BATTERY_CHECK = (b"\x05", bytes([0, 0, 0, 64]))
    VERSION_CHECK = (b"\x06", bytes([0, 0, 192, 64]))
    HEAT_CYCLE_BEGIN = (b"\x07", bytes([0, 0, 224, 64]))
    HEAT_CYCLE_STOP = (b"\x08", bytes([0, 0, 0, 65]))
    HEAT_CYCLE_BOOST = (b"\x09", bytes([0, 0, 16, 65]))
    FACTORY_TEST = (b"\x0a", bytes([0, 0, 224, 64]))
    BONDING = (b"\x0b", bytes([0, 0, 48, 65]))

    @property
    def lorax(self) -> bytes:
        return self.value[0]

    @property
    def legacy(self) -> bytes:
        return self.value[1]


class ColorMode(IntEnum):
    PRESERVE = 0
    STATIC = 1
    BREATHING = 5
    RISING = 6
    CIRCLING = 7
    BRIGHT_BASE_TWINKLE = 8
    LOGO = 18
    LOGO_BASE_CIRCLE_FAST = 19
    LOGO_BASE_CIRCLE_SLOW = 20
    FULL_CIRCLING_SLOW = 21


class LightCommand(Enum):
    """Lantern payloads; identical on both firmware families except on/off."""

    LANTERN_ON = (b"\x01", bytes([1, 0, 0, 0]))
    LANTERN_OFF = (b"\x00", bytes([0, 0, 0, 0]))
    LIGHT_DEFAULT = (
        bytes([255, 255, 255, 0, ColorMode.STATIC]),
        bytes([255, 255, 255, 0, ColorMode.STATIC]),
    )
    LIGHT_NEUTRAL = (
        bytes([255, 50, 0, ColorMode.STATIC]),
        bytes([255, 50, 0, ColorMode.STATIC]),
    )
    LIGHT_QUERY_READY = (
        bytes([0, 255, 50, 0, ColorMode.LOGO_BASE_CIRCLE_FAST]),
        bytes([0, 255, 50, 0, ColorMode.LOGO_BASE_CIRCLE_FAST]),
    )
    LIGHT_MARKED_READY = (
        bytes([255, 50, ColorMode.LOGO, 1]),
        bytes([255, 50, ColorMode.LOGO, 1]),
    )

    @property
    def lorax(self) -> bytes:
        return self.value[0]

    @property
    def legacy(self) -> bytes:
        return self.value[1]


class LightMode(Enum):
    QUERY_READY = "query_ready"
    MARKED_READY = "marked_ready"
    DEFAULT = "default"


# ────────────────────────────────────────────────────────────────
# Lorax bookkeeping
# ────────────────────────────────────────────────────────────────
@dataclass
class LoraxLimits:
    max_payload: int = 0
    max_files: int = 0
    max_commands: int = 0


@dataclass(frozen=True)
class LoraxReply:
    sequence: int
    error: bool
    data: bytes


@dataclass(frozen=True)
class LoraxEvent:
    sequence: int
    error: bool
    watch_id: int
    data: bytes


@dataclass
class PendingMessage:
    """A request written to the command characteristic, keyed by sequence."""

    sequence: int
    opcode: int
    request: bytes
    path: Optional[str] = None
    response: Optional[LoraxReply] = None

    @property
    def key(self) -> tuple[int, int, Optional[str]]:
        return (self.opcode, self.sequence, self.path)


# ────────────────────────────────────────────────────────────────
# Device state
# ────────────────────────────────────────────────────────────────
@dataclass
class Profile:
    name: str
    temperature: int
    color: RGB
    time: int  # seconds
    intensity: Optional[float] = None

    @property
    def color_hex(self) -> str:
        return "#{:02x}{:02x}{:02x}".format(*self.color)

    @property
    def time_display(self) -> str:
        from .protocol import millis_to_minutes_seconds

        return millis_to_minutes_seconds(self.time * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "temperature": self.temperature,
            "color": self.color_hex,
            "time": self.time_display,
            "intensity": self.intensity,
        }


class StateDelta(TypedDict, total=False):
    state: OperatingState
    temperature: int
    battery: int
    charge_source: int
    active_color: RGB
    brightness: int
    total_dabs: float
    dabs_per_day: float
    chamber_type: int
    state_time: float
    profile: Profile
    device_name: str
    device_mac: str
    device_model: str
    # watched paths without a decoder, path -> raw value bytes
    raw: dict[str, bytes]


@dataclass
class DeviceStateSnapshot:
    """What consumers see; only the state machine writes to it."""

    state: Optional[OperatingState] = None
    temperature: Optional[int] = None
    battery: Optional[int] = None
    charge_source: Optional[int] = None
    active_color: Optional[RGB] = None
    brightness: Optional[int] = None
    total_dabs: Optional[float] = None
    dabs_per_day: Optional[float] = None
    chamber_type: Optional[int] = None
    state_time: Optional[float] = None
    profile: Optional[Profile] = None
    device_name: Optional[str] = None
    device_mac: Optional[str] = None
    device_model: Optional[str] = None
    raw: dict[str, bytes] = field(default_factory=dict)

    def apply(self, delta: StateDelta) -> None:
        for key, value in delta.items():
            if key == "raw":
                self.raw.update(value)  # type: ignore[arg-type]
                continue
            setattr(self, key, value)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Profile):
                value = value.to_dict()
            elif isinstance(value, OperatingState):
                value = value.name
            elif f.name == "raw":
                value = {path: data.hex() for path, data in value.items()}
            out[f.name] = value
        return out


@dataclass
class Capabilities:
    """Result of a successful connect()."""

    mode: SessionMode
    pup: bool = False
    limits: LoraxLimits = field(default_factory=LoraxLimits)
    model: Optional[str] = None
    hardware_version: Optional[int] = None
    firmware: Optional[str] = None
    git_hash: Optional[str] = None
    mac: Optional[str] = None
    serial: Optional[str] = None
    profiles: dict[int, Profile] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_lorax(self) -> bool:
        return self.mode is SessionMode.LORAX


__all__ = [
    "Capabilities",
    "ChamberType",
    "ColorMode",
    "DeviceCommand",
    "DeviceStateSnapshot",
    "LightCommand",
    "LightMode",
    "LoraxEvent",
    "LoraxLimits",
    "LoraxReply",
    "OperatingState",
    "PendingMessage",
    "Profile",
    "SessionMode",
    "StateDelta",
]
