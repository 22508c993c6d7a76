# puffco_ble_control/const.py
"""Puffco BLE constants.

Single source of truth for service/characteristic UUIDs, the Lorax opcode
table, the legacy-characteristic → Lorax path map and the timing defaults
used by the session. Nothing in here imports bleak.
"""

from __future__ import annotations

import base64
from enum import Enum

# ────────────────────────────────────────────────────────────────────────────────
# Services
# ────────────────────────────────────────────────────────────────────────────────
SERVICE = "06caf9c0-74d3-454f-9be9-e30cd999c17a"
LORAX_SERVICE = "e276967f-ea8a-478a-a92e-d78f5dd15dd5"
MODEL_SERVICE = "0000180a-0000-1000-8000-00805f9b34fb"

SILLABS_OTA_SERVICE = "1d14d6ee-fd63-4fa1-bfa4-8f47b42119f0"
SILLABS_VERSION = "0d77cc11-4ac1-49f2-bfa9-cd96ac7a92f8"

PUP_SERVICE = "420b9b40-457d-4abe-a3bf-71609d79581b"
PUP_APP_VERSION = "58b0a7aa-d89f-4bf2-961d-0d892d7439d8"

# ────────────────────────────────────────────────────────────────────────────────
# Handshake keys (16 bytes each)
# ────────────────────────────────────────────────────────────────────────────────
HANDSHAKE_KEY: bytes = base64.b64decode("FUrZc0WilhUBteT2JlCc+A==")
LORAX_HANDSHAKE_KEY: bytes = base64.b64decode("ZMZFYlbyb1scoSc3pd1x+w==")

# ────────────────────────────────────────────────────────────────────────────────
# Lorax transport
# ────────────────────────────────────────────────────────────────────────────────
LORAX_VERSION_CHAR = "05434bca-cc7f-4ef6-bbb3-b1c520b9800c"
LORAX_COMMAND_CHAR = "60133d5c-5727-4f2c-9697-d842c5292a3c"  # write
LORAX_REPLY_CHAR = "8dc5ec05-8f7d-45ad-99db-3fbde65dbd9c"  # notify
LORAX_EVENT_CHAR = "43312cd1-7d34-46ce-a7d3-0a98fd9b4cb8"  # notify


class LoraxCommand:
    GET_ACCESS_SEED = 0
    UNLOCK_ACCESS = 1
    GET_LIMITS = 2
    ACK_EVENTS = 3
    READ_SHORT = 16
    WRITE_SHORT = 17
    STAT_SHORT = 18
    UNLINK = 19
    OPEN = 32
    READ = 33
    WRITE = 34
    WATCH = 35
    UNWATCH = 36
    STAT = 37
    CLOSE = 38


SEQUENCE_MODULO = 0xFFFF  # 65535 is never emitted

# ────────────────────────────────────────────────────────────────────────────────
# Legacy characteristics
# ────────────────────────────────────────────────────────────────────────────────
BASE_CHARACTERISTIC = "f9a98c15-c651-4f34-b656-d100bf5800"


class Characteristic:
    ACCESS_KEY = f"{BASE_CHARACTERISTIC}e0"
    BT_MAC = f"{BASE_CHARACTERISTIC}01"
    GIT_HASH = f"{BASE_CHARACTERISTIC}02"
    COMMAND = f"{BASE_CHARACTERISTIC}40"
    BATTERY_SOC = f"{BASE_CHARACTERISTIC}20"
    BATTERY_VOLTAGE = f"{BASE_CHARACTERISTIC}21"
    OPERATING_STATE = f"{BASE_CHARACTERISTIC}22"
    STATE_ELAPSED_TIME = f"{BASE_CHARACTERISTIC}23"
    STATE_TOTAL_TIME = f"{BASE_CHARACTERISTIC}24"
    HEATER_TEMP = f"{BASE_CHARACTERISTIC}25"
    HEATER_TEMP_COMMAND = f"{BASE_CHARACTERISTIC}26"
    ACTIVE_LED_COLOR = f"{BASE_CHARACTERISTIC}27"
    TOTAL_HEAT_CYCLES = f"{BASE_CHARACTERISTIC}2f"
    TOTAL_HEAT_CYCLE_TIME = f"{BASE_CHARACTERISTIC}30"
    BATTERY_CHARGE_STATE = f"{BASE_CHARACTERISTIC}31"
    UPTIME = f"{BASE_CHARACTERISTIC}35"
    BATTERY_CAPACITY = f"{BASE_CHARACTERISTIC}38"
    DABS_PER_DAY = f"{BASE_CHARACTERISTIC}3b"
    BATTERY_CHARGE_SOURCE = f"{BASE_CHARACTERISTIC}3e"
    CHAMBER_TYPE = f"{BASE_CHARACTERISTIC}3f"
    PROFILE_CURRENT = f"{BASE_CHARACTERISTIC}41"
    STEALTH_MODE = f"{BASE_CHARACTERISTIC}42"
    UTC_TIME = f"{BASE_CHARACTERISTIC}44"
    TEMPERATURE_OVERRIDE = f"{BASE_CHARACTERISTIC}45"
    TIME_OVERRIDE = f"{BASE_CHARACTERISTIC}46"
    LANTERN_COLOR = f"{BASE_CHARACTERISTIC}48"
    LANTERN_START = f"{BASE_CHARACTERISTIC}4a"
    LED_BRIGHTNESS = f"{BASE_CHARACTERISTIC}4b"
    DEVICE_NAME = f"{BASE_CHARACTERISTIC}4d"
    DEVICE_BIRTHDAY = f"{BASE_CHARACTERISTIC}4e"
    HEAT_CYCLE_COUNT = f"{BASE_CHARACTERISTIC}60"
    PROFILE = f"{BASE_CHARACTERISTIC}61"
    PROFILE_NAME = f"{BASE_CHARACTERISTIC}62"
    PROFILE_PREHEAT_TEMP = f"{BASE_CHARACTERISTIC}63"
    PROFILE_PREHEAT_TIME = f"{BASE_CHARACTERISTIC}64"
    PROFILE_COLOR = f"{BASE_CHARACTERISTIC}65"

    # Device information service (legacy firmware reads these directly)
    HARDWARE_MODEL = "00002a24-0000-1000-8000-00805f9b34fb"
    SERIAL_NUMBER = "00002a25-0000-1000-8000-00805f9b34fb"
    HARDWARE_VERSION = "00002a27-0000-1000-8000-00805f9b34fb"
    FIRMWARE_VERSION = "00002a28-0000-1000-8000-00805f9b34fb"


# Legacy firmware refuses (and some stacks disconnect on) serial reads.
BLOCKED_LEGACY_CHARACTERISTICS = frozenset({Characteristic.SERIAL_NUMBER})

# ────────────────────────────────────────────────────────────────────────────────
# Legacy characteristic → Lorax path
# ────────────────────────────────────────────────────────────────────────────────
LORAX_PATHS: dict[str, str] = {
    Characteristic.BT_MAC: "/p/sys/bt/mac",
    Characteristic.GIT_HASH: "/p/sys/fw/gith",
    Characteristic.BATTERY_SOC: "/p/bat/soc",
    Characteristic.BATTERY_VOLTAGE: "/p/bat/volt",
    Characteristic.OPERATING_STATE: "/p/app/stat/id",
    Characteristic.STATE_ELAPSED_TIME: "/p/app/stat/elap",
    Characteristic.STATE_TOTAL_TIME: "/p/app/stat/tott",
    Characteristic.HEATER_TEMP: "/p/app/htr/temp",
    Characteristic.HEATER_TEMP_COMMAND: "/p/app/htr/tcmd",
    Characteristic.ACTIVE_LED_COLOR: "/p/app/led/aclr",
    Characteristic.TOTAL_HEAT_CYCLES: "/p/app/odom/0/nc",
    Characteristic.TOTAL_HEAT_CYCLE_TIME: "/p/app/odom/0/tm",
    Characteristic.BATTERY_CHARGE_STATE: "/p/bat/chg/stat",
    Characteristic.UPTIME: "/p/sys/uptm",
    Characteristic.BATTERY_CAPACITY: "/p/bat/cap",
    Characteristic.DABS_PER_DAY: "/p/app/info/dpd",
    Characteristic.BATTERY_CHARGE_SOURCE: "/p/bat/chg/src",
    Characteristic.CHAMBER_TYPE: "/p/htr/chmt",
    Characteristic.COMMAND: "/p/app/mc",
    Characteristic.STEALTH_MODE: "/u/app/ui/stlm",
    Characteristic.UTC_TIME: "/p/sys/time",
    Characteristic.TEMPERATURE_OVERRIDE: "/p/app/tmpo",
    Characteristic.TIME_OVERRIDE: "/p/app/timo",
    Characteristic.LANTERN_COLOR: "/p/app/ltrn/colr",
    Characteristic.LANTERN_START: "/p/app/ltrn/cmd",
    Characteristic.PROFILE_CURRENT: "/p/app/hcs",
    Characteristic.LED_BRIGHTNESS: "/u/app/ui/lbrt",
    Characteristic.DEVICE_NAME: "/u/sys/name",
    Characteristic.DEVICE_BIRTHDAY: "/u/sys/bday",
    Characteristic.HEAT_CYCLE_COUNT: "/p/app/nhc",
    Characteristic.HARDWARE_MODEL: "/p/sys/hw/mdcd",
    Characteristic.SERIAL_NUMBER: "/p/sys/hw/ser",
    Characteristic.HARDWARE_VERSION: "/p/sys/hw/ver",
    Characteristic.FIRMWARE_VERSION: "/p/sys/fw/ver",
}

OPERATING_STATE_PATH = LORAX_PATHS[Characteristic.OPERATING_STATE]
STATE_ELAPSED_TIME_PATH = LORAX_PATHS[Characteristic.STATE_ELAPSED_TIME]
CHAMBER_TYPE_PATH = LORAX_PATHS[Characteristic.CHAMBER_TYPE]
HEATER_TEMP_PATH = LORAX_PATHS[Characteristic.HEATER_TEMP]
UTC_TIME_PATH = LORAX_PATHS[Characteristic.UTC_TIME]

# Watched during a heat cycle, closed again after the idle debounce.
HIGH_FREQUENCY_PATHS: tuple[str, ...] = (
    STATE_ELAPSED_TIME_PATH,
    CHAMBER_TYPE_PATH,
    HEATER_TEMP_PATH,
)

WATCH_INTERVALS_MS: dict[str, int] = {
    OPERATING_STATE_PATH: 400,
    CHAMBER_TYPE_PATH: 600,
    HEATER_TEMP_PATH: 500,
    STATE_ELAPSED_TIME_PATH: 1000,
    UTC_TIME_PATH: 1000,
}
DEFAULT_WATCH_INTERVAL_MS = 1000

# Paths whose watched value is a single byte; everything else is 4 bytes.
SINGLE_BYTE_PATHS = frozenset(
    {
        "/p/app/stat/id",
        "/p/app/hcs",
        "/p/bat/chg/stat",
        "/p/bat/chg/src",
        "/p/htr/chmt",
        "/p/app/mc",
        "/u/app/ui/stlm",
        "/p/app/bt/delb",
        "/p/app/ltrn/cmd",
        "/p/app/facr",
        "/p/app/bt/tba",
    }
)

# ────────────────────────────────────────────────────────────────────────────────
# Per-profile paths
# ────────────────────────────────────────────────────────────────────────────────
PROFILE_COUNT = 4


class PathKind(str, Enum):
    """Per-profile value kinds; the value is the path leaf."""

    NAME = "name"
    COLOR = "colr"
    PREHEAT_TEMP = "temp"
    PREHEAT_TIME = "time"
    ACTIVE_COLOR = "accl"
    PREHEAT_COLOR = "phcl"
    BOOST_TEMP = "btmp"
    BOOST_TIME = "btim"
    THRESHOLD_TEMP = "thrt"
    INTENSITY = "intn"
    SCRATCH_PAD = "scpd"


def profile_path(kind: PathKind, index: int) -> str:
    """Return the Lorax path of ``kind`` for the zero-based profile ``index``."""
    if not 0 <= int(index) < PROFILE_COUNT:
        raise ValueError(f"Profile index out of range 0..{PROFILE_COUNT - 1}: {index}")
    return f"/u/app/hc/{int(index)}/{PathKind(kind).value}"


# ────────────────────────────────────────────────────────────────────────────────
# Timing defaults
# ────────────────────────────────────────────────────────────────────────────────
DEBOUNCE_SECONDS = 15.0
REPAIR_DELAY_SECONDS = 0.5
LANTERN_PREVIEW_SECONDS = 1.0

LED_POLL_MS = 1500
CHAMBER_POLL_MS = 5000
BATTERY_POLL_MS = 8000
DAB_COUNT_POLL_MS = 10000
LEGACY_STATE_POLL_MS = 1200
DEFAULT_POLL_MS = 10000
POLL_JITTER_MS = (125, 825)

MAX_BUSY_RETRIES = 50
COMMAND_ATTEMPTS = 5
RECONNECT_ATTEMPTS = 3
RECONNECT_TIMEOUT_SECONDS = 5.0

__all__ = [
    "BASE_CHARACTERISTIC",
    "Characteristic",
    "HANDSHAKE_KEY",
    "HIGH_FREQUENCY_PATHS",
    "LORAX_HANDSHAKE_KEY",
    "LORAX_PATHS",
    "LORAX_SERVICE",
    "LoraxCommand",
    "MODEL_SERVICE",
    "PUP_SERVICE",
    "PathKind",
    "SERVICE",
    "profile_path",
]
