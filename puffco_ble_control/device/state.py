# puffco_ble_control/device/state.py
"""Value decoders and the operating-state side-effect machine.

Raw bytes arrive from two places, Lorax watch events and poll reads, and
both go through ``DeviceStateMachine.ingest``. Decoders are keyed by the
legacy characteristic UUID; Lorax paths are mapped back to it first.
Values with no decoder are passed through as raw bytes keyed by the path
they arrived on.

Heat-cycle side effects:
  * entering a heating state suspends the ambient temperature poll and
    opens the high-frequency watches (elapsed time, chamber, heater temp),
  * leaving it arms a debounce timer; if the device is still not heating
    when it fires the watches are closed and the poll resumes,
  * heating again while the timer is pending just cancels the timer.
"""

from __future__ import annotations

import asyncio
import logging
import math
import struct
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from ..const import DEBOUNCE_SECONDS, LORAX_PATHS, Characteristic
from ..models import (
    DeviceStateSnapshot,
    OperatingState,
    Profile,
    StateDelta,
)
from ..protocol import format_mac, unpack_float

_LOGGER = logging.getLogger(__name__)

CHARACTERISTIC_BY_PATH: dict[str, str] = {path: char for char, path in LORAX_PATHS.items()}

TransitionHook = Callable[[Optional[OperatingState], OperatingState], Any]


# ────────────────────────────────────────────────────────────────
# Decoders (bytes → python values; None means "ignore")
# ────────────────────────────────────────────────────────────────
def decode_small_int(data: bytes) -> Optional[int]:
    """Lorax sends enum-like values as one byte, legacy firmware as float32."""
    if len(data) == 1:
        return data[0]
    if len(data) >= 4:
        value = unpack_float(data)
        if math.isnan(value):
            return None
        return int(round(value))
    return None


def decode_operating_state(data: bytes) -> Optional[OperatingState]:
    value = decode_small_int(data)
    if value is None:
        return None
    try:
        return OperatingState(value)
    except ValueError:
        _LOGGER.debug("Unknown operating state %s", value)
        return None


def decode_float(data: bytes) -> Optional[float]:
    if len(data) < 4:
        return None
    value = unpack_float(data)
    return None if math.isnan(value) else value


def decode_rounded(data: bytes) -> Optional[int]:
    value = decode_float(data)
    return None if value is None else int(round(value))


def decode_active_color(data: bytes) -> Optional[tuple[int, int, int]]:
    if len(data) != 8:
        return None
    return (data[0], data[1], data[2])


def decode_brightness(data: bytes) -> Optional[int]:
    """LED brightness is stored 0..255 (all four bytes equal); report percent."""
    if not data:
        return None
    return int(round(data[0] / 255 * 100))


def decode_text(data: bytes) -> str:
    return bytes(data).split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def decode_u32(data: bytes) -> Optional[int]:
    if len(data) < 4:
        return None
    return struct.unpack_from("<I", data, 0)[0]


def decode_dabs_per_day(data: bytes) -> Optional[float]:
    if len(data) < 4:
        return None
    value = unpack_float(data)
    return 0.0 if math.isnan(value) else round(value, 2)


def decode_mac(data: bytes) -> Optional[str]:
    return format_mac(data) if len(data) >= 6 else None


def decode_color(data: bytes) -> tuple[int, int, int]:
    if len(data) < 3:
        return (0, 0, 0)
    return (data[0], data[1], data[2])


def decode_profile(
    name: Optional[bytes],
    color: Optional[bytes],
    temperature: Optional[bytes],
    time: Optional[bytes],
    intensity: Optional[bytes] = None,
) -> Profile:
    return Profile(
        name=decode_text(name or b""),
        temperature=decode_rounded(temperature or b"") or 0,
        color=decode_color(color or b""),
        time=decode_rounded(time or b"") or 0,
        intensity=decode_float(intensity) if intensity else None,
    )


DECODERS: dict[str, tuple[str, Callable[[bytes], Any]]] = {
    Characteristic.HEATER_TEMP: ("temperature", decode_float),
    Characteristic.BATTERY_SOC: ("battery", decode_rounded),
    Characteristic.BATTERY_CHARGE_SOURCE: ("charge_source", decode_small_int),
    Characteristic.ACTIVE_LED_COLOR: ("active_color", decode_active_color),
    Characteristic.LED_BRIGHTNESS: ("brightness", decode_brightness),
    Characteristic.TOTAL_HEAT_CYCLES: ("total_dabs", decode_float),
    Characteristic.DABS_PER_DAY: ("dabs_per_day", decode_dabs_per_day),
    Characteristic.CHAMBER_TYPE: ("chamber_type", decode_small_int),
    Characteristic.STATE_ELAPSED_TIME: ("state_time", decode_float),
    Characteristic.DEVICE_NAME: ("device_name", decode_text),
    Characteristic.BT_MAC: ("device_mac", decode_mac),
}


def decode_value(characteristic: str, data: bytes) -> StateDelta:
    """Decode one characteristic (or Lorax path) into a delta; {} if unknown."""
    characteristic = CHARACTERISTIC_BY_PATH.get(characteristic, characteristic)
    entry = DECODERS.get(characteristic)
    if entry is None:
        return {}
    key, decoder = entry
    try:
        value = decoder(bytes(data))
    except (ValueError, struct.error):
        _LOGGER.debug("Undecodable value for %s: %s", characteristic, bytes(data).hex())
        return {}
    if value is None:
        return {}
    return {key: value}  # type: ignore[return-value]


# ────────────────────────────────────────────────────────────────
# Side effects the machine drives (implemented by the session)
# ────────────────────────────────────────────────────────────────
class TransitionEffects(Protocol):
    async def open_high_frequency_watches(self) -> None: ...

    async def close_high_frequency_watches(self) -> None: ...

    def suspend_ambient_poll(self) -> None: ...

    def resume_ambient_poll(self) -> None: ...


class DeviceStateMachine:
    def __init__(
        self,
        effects: TransitionEffects,
        emit: Callable[[StateDelta], None],
        *,
        debounce_s: float = DEBOUNCE_SECONDS,
        hooks: Iterable[TransitionHook] = (),
        name: str = "puffco",
        logger: logging.Logger | None = None,
    ) -> None:
        self._effects = effects
        self._emit = emit
        self._debounce_s = debounce_s
        self._hooks = list(hooks)
        self._name = name
        self._logger = logger or _LOGGER
        self.snapshot = DeviceStateSnapshot()
        self.profiles: dict[int, Profile] = {}
        self._state: Optional[OperatingState] = None
        self._debounce: asyncio.TimerHandle | None = None
        self._high_frequency_open = False
        self._tasks: set[asyncio.Task] = set()
        self._alive = True

    # ---- properties ----
    @property
    def state(self) -> Optional[OperatingState]:
        return self._state

    @property
    def high_frequency_open(self) -> bool:
        return self._high_frequency_open

    @property
    def debounce_pending(self) -> bool:
        return self._debounce is not None

    def add_hook(self, hook: TransitionHook) -> None:
        if hook not in self._hooks:
            self._hooks.append(hook)

    # ---- ingest ----
    def ingest(self, characteristic: str, data: bytes) -> StateDelta:
        source = characteristic
        characteristic = CHARACTERISTIC_BY_PATH.get(characteristic, characteristic)
        if characteristic == Characteristic.OPERATING_STATE:
            state = decode_operating_state(bytes(data))
            if state is None:
                return {}
            return self.set_operating_state(state)
        if characteristic == Characteristic.PROFILE_CURRENT:
            index = decode_small_int(bytes(data))
            profile = self.profiles.get(index) if index is not None else None
            if profile is None:
                return {}
            return self.apply({"profile": profile})
        if characteristic not in DECODERS:
            return self.apply({"raw": {source: bytes(data)}})
        return self.apply(decode_value(characteristic, data))

    def apply(self, delta: StateDelta) -> StateDelta:
        """Filter ``delta``, merge what changed into the snapshot and emit it."""
        accepted: StateDelta = {}
        for key, value in delta.items():
            if value is None:
                continue
            if key == "temperature":
                if not 1 < value < 1000:
                    self._logger.debug("%s: Dropping heater temperature %s", self._name, value)
                    continue
                value = int(round(value))
            if key == "raw":
                value = {p: v for p, v in value.items() if self.snapshot.raw.get(p) != v}
                if not value:
                    continue
            elif getattr(self.snapshot, key, None) == value:
                continue
            accepted[key] = value  # type: ignore[literal-required]
        if accepted:
            self.snapshot.apply(accepted)
            self._emit(accepted)
        return accepted

    # ---- operating state ----
    def set_operating_state(self, state: OperatingState) -> StateDelta:
        previous = self._state
        if state == previous:
            return {}
        self._state = state
        self._logger.debug(
            "%s: Operating state %s -> %s",
            self._name,
            previous.name if previous is not None else None,
            state.name,
        )
        delta = self.apply({"state": state})
        for hook in tuple(self._hooks):
            try:
                hook(previous, state)
            except Exception:
                self._logger.debug("%s: transition hook raised", self._name, exc_info=True)

        if state.is_heating:
            self._enter_heat_cycle()
        elif previous is not None and previous.is_heating:
            self._schedule_close()
        return delta

    def _enter_heat_cycle(self) -> None:
        if self._debounce is not None:
            self._logger.debug("%s: Heating again before debounce fired", self._name)
            self._debounce.cancel()
            self._debounce = None
        if self._high_frequency_open:
            return
        self._high_frequency_open = True
        self._effects.suspend_ambient_poll()
        self._spawn(self._effects.open_high_frequency_watches())

    def _schedule_close(self) -> None:
        if not self._high_frequency_open:
            return
        if self._debounce is not None:
            self._debounce.cancel()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self._debounce_s, self._debounce_fired)

    def _debounce_fired(self) -> None:
        self._debounce = None
        if not self._alive:
            return
        if self._state is not None and self._state.is_heating:
            return
        self._high_frequency_open = False
        self._spawn(self._close_high_frequency())

    async def _close_high_frequency(self) -> None:
        await self._effects.close_high_frequency_watches()
        # a heat cycle that started meanwhile keeps the poll suspended
        if not self._high_frequency_open:
            self._effects.resume_ambient_poll()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("%s: State side effect failed: %s", self._name, exc)

    async def wait_idle(self) -> None:
        """Wait until spawned side effects have finished."""
        while self._tasks:
            await asyncio.gather(*tuple(self._tasks), return_exceptions=True)

    # ---- lifecycle ----
    def shutdown(self) -> None:
        self._alive = False
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        for task in tuple(self._tasks):
            task.cancel()
        self._tasks.clear()
        self.snapshot = DeviceStateSnapshot()
        self.profiles = {}

    def restart(self) -> None:
        self.shutdown()
        self._alive = True
        self._state = None
        self._high_frequency_open = False


__all__ = [
    "CHARACTERISTIC_BY_PATH",
    "DECODERS",
    "DeviceStateMachine",
    "TransitionEffects",
    "decode_active_color",
    "decode_brightness",
    "decode_operating_state",
    "decode_profile",
    "decode_small_int",
    "decode_text",
    "decode_u32",
    "decode_value",
]
