# puffco_ble_control/device/base_device.py
"""Session with one Puffco device.

Notes:
- Uses bleak-retry-connector for the connection (retries, service cache).
- Negotiates Lorax (path protocol over command/reply/event characteristics)
  or legacy firmware (one GATT characteristic per value) on connect.
- Consumers get typed deltas through ``add_data_callback``; the snapshot is
  only ever written by the state machine.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Union

from bleak.exc import BleakError
from bleak_retry_connector import (
    BLEAK_RETRY_EXCEPTIONS as BLEAK_EXCEPTIONS,
    BleakClientWithServiceCache,
    BleakNotFoundError,
    establish_connection,
)

# Editor-only types
if TYPE_CHECKING:  # pragma: no cover
    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData
    from bleak.backends.service import BleakGATTServiceCollection
else:
    BLEDevice = Any
    AdvertisementData = Any
    BleakGATTServiceCollection = Any

from ..const import (
    BATTERY_POLL_MS,
    BLOCKED_LEGACY_CHARACTERISTICS,
    CHAMBER_POLL_MS,
    COMMAND_ATTEMPTS,
    DAB_COUNT_POLL_MS,
    DEBOUNCE_SECONDS,
    HANDSHAKE_KEY,
    HIGH_FREQUENCY_PATHS,
    LANTERN_PREVIEW_SECONDS,
    LED_POLL_MS,
    LEGACY_STATE_POLL_MS,
    LORAX_COMMAND_CHAR,
    LORAX_EVENT_CHAR,
    LORAX_HANDSHAKE_KEY,
    LORAX_PATHS,
    LORAX_REPLY_CHAR,
    LORAX_SERVICE,
    MODEL_SERVICE,
    OPERATING_STATE_PATH,
    PROFILE_COUNT,
    PUP_APP_VERSION,
    PUP_SERVICE,
    RECONNECT_ATTEMPTS,
    RECONNECT_TIMEOUT_SECONDS,
    SERVICE,
    SILLABS_OTA_SERVICE,
    SILLABS_VERSION,
    Characteristic,
    LoraxCommand,
    PathKind,
    profile_path,
)
from ..exception import (
    CharacteristicBlockedError,
    CharacteristicMissingError,
    ConnectFailedError,
    DeviceDisconnectedError,
    HandshakeFailedError,
    ProtocolError,
    PuffcoError,
)
from ..models import (
    Capabilities,
    DeviceCommand,
    DeviceStateSnapshot,
    LightCommand,
    LightMode,
    LoraxReply,
    Profile,
    SessionMode,
    StateDelta,
)
from ..protocol import (
    derive_access_key,
    numbers_to_letters,
    pack_float,
    parse_event,
    parse_limits,
)
from .dispatcher import LoraxDispatcher
from .paths import PathRegistry, watch_interval
from .poller import Poller
from .state import (
    CHARACTERISTIC_BY_PATH,
    DeviceStateMachine,
    TransitionHook,
    decode_float,
    decode_mac,
    decode_profile,
    decode_small_int,
    decode_text,
    decode_u32,
)
from .watchdog import DeviationWatchdog

DataCallback = Callable[[StateDelta], None]
LifecycleCallback = Callable[[str], None]

AMBIENT_POLL = "chamber"

# (poller key, characteristics, base interval)
POLL_GROUPS: tuple[tuple[str, tuple[str, ...], int], ...] = (
    ("led", (Characteristic.ACTIVE_LED_COLOR, Characteristic.LED_BRIGHTNESS), LED_POLL_MS),
    (AMBIENT_POLL, (Characteristic.HEATER_TEMP, Characteristic.CHAMBER_TYPE), CHAMBER_POLL_MS),
    (
        "battery",
        (
            Characteristic.PROFILE_CURRENT,
            Characteristic.BATTERY_CHARGE_SOURCE,
            Characteristic.BATTERY_SOC,
        ),
        BATTERY_POLL_MS,
    ),
    ("dabs", (Characteristic.TOTAL_HEAT_CYCLES,), DAB_COUNT_POLL_MS),
)

INITIAL_READS: tuple[str, ...] = (
    Characteristic.HEATER_TEMP,
    Characteristic.ACTIVE_LED_COLOR,
    Characteristic.LED_BRIGHTNESS,
    Characteristic.BATTERY_SOC,
    Characteristic.OPERATING_STATE,
    Characteristic.STATE_ELAPSED_TIME,
    Characteristic.BATTERY_CHARGE_SOURCE,
    Characteristic.TOTAL_HEAT_CYCLES,
    Characteristic.DABS_PER_DAY,
    Characteristic.DEVICE_NAME,
    Characteristic.PROFILE_CURRENT,
    Characteristic.CHAMBER_TYPE,
)


def _mk_ble_device(addr_or_ble: Union[BLEDevice, str]) -> BLEDevice:
    """Return a BLEDevice, fabricating one when only a MAC is given."""
    from bleak.backends.device import BLEDevice as _BLEDevice  # lazy

    if isinstance(addr_or_ble, _BLEDevice):
        return addr_or_ble
    if hasattr(addr_or_ble, "address"):
        return addr_or_ble
    return _BLEDevice(str(addr_or_ble).upper(), None, 0)


class PuffcoDevice:
    """One session with a Puffco device."""

    _model_name = "Puffco"

    def __init__(
        self,
        ble_device: Union[BLEDevice, str],
        advertisement_data: AdvertisementData | None = None,
        *,
        reply_timeout: float | None = None,
        debounce_s: float = DEBOUNCE_SECONDS,
        auto_reconnect: bool = False,
        transition_hooks: Iterable[TransitionHook] = (),
        diagnostics_sink: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._ble_device = _mk_ble_device(ble_device)
        self._logger = logging.getLogger(self._ble_device.address.replace(":", "-"))
        self._advertisement_data = advertisement_data
        self._client: Any = None  # BleakClientWithServiceCache | None
        self._connect_lock: asyncio.Lock = asyncio.Lock()
        self._operation_lock: asyncio.Lock = asyncio.Lock()
        self._expected_disconnect = False
        self._reply_timeout = reply_timeout
        self._auto_reconnect = auto_reconnect
        self._reconnect_timeout = RECONNECT_TIMEOUT_SECONDS
        self._reconnect_task: asyncio.Task | None = None
        self._lantern_preview_s = LANTERN_PREVIEW_SECONDS
        self._diagnostics_sink = diagnostics_sink

        self.mode: SessionMode | None = None
        self.capabilities: Capabilities | None = None
        self._dispatcher: LoraxDispatcher | None = None
        self._paths: PathRegistry | None = None
        self._pollers: dict[str, Poller] = {}
        self._watchdog: DeviationWatchdog | None = None
        self._polling = False

        self._state = DeviceStateMachine(
            self,
            self._emit,
            debounce_s=debounce_s,
            hooks=transition_hooks,
            name=self.name,
            logger=self._logger,
        )
        self._data_callbacks: list[DataCallback] = []
        self._lifecycle_callbacks: list[LifecycleCallback] = []

    # ---- properties ----
    @property
    def address(self) -> str:
        return self._ble_device.address

    @property
    def name(self) -> str:
        return getattr(self._ble_device, "name", None) or self._ble_device.address

    @property
    def rssi(self) -> int | None:
        if self._advertisement_data:
            return self._advertisement_data.rssi
        return None

    @property
    def client(self) -> Any:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None and bool(getattr(self._client, "is_connected", False))

    @property
    def is_lorax(self) -> bool:
        return self.mode is SessionMode.LORAX

    @property
    def snapshot(self) -> DeviceStateSnapshot:
        return self._state.snapshot

    @property
    def profiles(self) -> dict[int, Profile]:
        return self._state.profiles

    @property
    def paths(self) -> PathRegistry | None:
        return self._paths

    @property
    def pollers(self) -> dict[str, Poller]:
        return self._pollers

    @property
    def watchdog(self) -> DeviationWatchdog | None:
        return self._watchdog

    @property
    def state_machine(self) -> DeviceStateMachine:
        return self._state

    # ---- callbacks ----
    def add_data_callback(self, cb: DataCallback) -> None:
        if cb not in self._data_callbacks:
            self._data_callbacks.append(cb)

    def remove_data_callback(self, cb: DataCallback) -> None:
        try:
            self._data_callbacks.remove(cb)
        except ValueError:
            pass

    def add_lifecycle_callback(self, cb: LifecycleCallback) -> None:
        if cb not in self._lifecycle_callbacks:
            self._lifecycle_callbacks.append(cb)

    def add_transition_hook(self, hook: TransitionHook) -> None:
        self._state.add_hook(hook)

    def _emit(self, delta: StateDelta) -> None:
        self._logger.debug("%s: State delta %s", self.name, delta)
        for cb in tuple(self._data_callbacks):
            try:
                cb(delta)
            except Exception:
                self._logger.debug("%s: data callback raised", self.name, exc_info=True)

    def _notify_lifecycle(self, event: str) -> None:
        for cb in tuple(self._lifecycle_callbacks):
            try:
                cb(event)
            except Exception:
                self._logger.debug("%s: lifecycle callback raised", self.name, exc_info=True)

    def _publish_diagnostics(self) -> None:
        if self._diagnostics_sink is None:
            return
        from ..diagnostics import build_diagnostics  # avoid import cycle

        try:
            self._diagnostics_sink(build_diagnostics(self))
        except Exception:
            self._logger.debug("%s: diagnostics sink raised", self.name, exc_info=True)

    # ────────────────────────────────────────────────────────────────
    # Connection / negotiation
    # ────────────────────────────────────────────────────────────────
    async def connect(self) -> Capabilities:
        """Connect, authenticate and read identity and profiles."""
        if self._connect_lock.locked():
            self._logger.debug(
                "%s: Connection already in progress, waiting for it to complete; RSSI: %s",
                self.name,
                self.rssi,
            )
        async with self._connect_lock:
            if self.capabilities is not None and self.is_connected:
                return self.capabilities

            self._expected_disconnect = False
            self._logger.debug("%s: Connecting; RSSI: %s", self.name, self.rssi)
            try:
                client = await establish_connection(
                    BleakClientWithServiceCache,
                    self._ble_device,
                    self.name,
                    self._disconnected,
                    use_services_cache=True,
                    ble_device_callback=lambda: self._ble_device,
                )
            except (BleakNotFoundError, *BLEAK_EXCEPTIONS) as ex:
                raise ConnectFailedError(f"{self.name}: connection failed: {ex}") from ex

            self._client = client
            self._state.restart()
            try:
                mode, pup = self._negotiate(client.services)
                self.mode = mode
                if mode is SessionMode.LORAX:
                    caps = await self._lorax_handshake(pup)
                else:
                    caps = await self._legacy_handshake()
                self.capabilities = caps
                await self._read_identity(caps)
                caps.profiles = await self._refresh_profiles_locked()
            except BaseException:
                await self._close_client_locked()
                raise

            self._logger.info(
                "%s: Connected in %s mode (model %s, firmware %s)",
                self.name,
                caps.mode.value,
                caps.model,
                caps.firmware,
            )
            self._publish_diagnostics()
            return caps

    def _negotiate(self, services: BleakGATTServiceCollection) -> tuple[SessionMode, bool]:
        if services is None:
            raise ConnectFailedError(f"{self.name}: no GATT services")
        if services.get_service(LORAX_SERVICE) is not None:
            pup = services.get_service(PUP_SERVICE) is not None
            if not pup and services.get_service(SILLABS_OTA_SERVICE) is None:
                raise ConnectFailedError(f"{self.name}: OTA service not found")
            self._logger.debug("%s: Lorax firmware (pup=%s)", self.name, pup)
            return SessionMode.LORAX, pup
        if services.get_service(SERVICE) is None:
            raise ConnectFailedError(f"{self.name}: Puffco service not found")
        if services.get_service(MODEL_SERVICE) is None:
            raise ConnectFailedError(f"{self.name}: device information service not found")
        self._logger.debug("%s: Legacy firmware", self.name)
        return SessionMode.LEGACY, False

    # ────────────────────────────────────────────────────────────────
    # Handshake
    # ────────────────────────────────────────────────────────────────
    async def _lorax_handshake(self, pup: bool) -> Capabilities:
        client = self._client
        # Reading a version characteristic is what makes the OS start pairing.
        probe = PUP_APP_VERSION if pup else SILLABS_VERSION
        try:
            await client.read_gatt_char(probe)
        except BleakError:
            self._logger.debug("%s: Pairing probe read of %s failed", self.name, probe, exc_info=True)

        self._dispatcher = LoraxDispatcher(
            self._write_lorax_frame,
            name=self.name,
            logger=self._logger,
            reply_timeout=self._reply_timeout,
        )
        self._paths = PathRegistry(self._dispatcher, name=self.name, logger=self._logger)
        await client.start_notify(LORAX_REPLY_CHAR, self._reply_handler)

        reply = await self._dispatcher.request(LoraxCommand.GET_LIMITS)
        if reply.error:
            raise HandshakeFailedError(f"{self.name}: GET_LIMITS refused")
        try:
            limits = parse_limits(reply.data)
        except ValueError as ex:
            raise HandshakeFailedError(f"{self.name}: bad limits reply: {ex}") from ex
        self._paths.limits = limits

        reply = await self._dispatcher.request(LoraxCommand.GET_ACCESS_SEED)
        if reply.error or len(reply.data) < 16:
            raise HandshakeFailedError(f"{self.name}: no access seed")
        key = derive_access_key(LORAX_HANDSHAKE_KEY, reply.data)

        reply = await self._dispatcher.request(LoraxCommand.UNLOCK_ACCESS, key)
        if reply.error:
            raise HandshakeFailedError(f"{self.name}: device rejected the access key")
        await client.start_notify(LORAX_EVENT_CHAR, self._event_handler)

        self._logger.info(
            "%s: Lorax session unlocked (max payload %s, files %s, commands %s)",
            self.name,
            limits.max_payload,
            limits.max_files,
            limits.max_commands,
        )
        return Capabilities(mode=SessionMode.LORAX, pup=pup, limits=limits)

    async def _legacy_handshake(self) -> Capabilities:
        try:
            seed = await self._client.read_gatt_char(Characteristic.ACCESS_KEY)
            key = derive_access_key(HANDSHAKE_KEY, seed)
            await self._client.write_gatt_char(Characteristic.ACCESS_KEY, key, True)
        except (BleakError, ValueError) as ex:
            raise HandshakeFailedError(f"{self.name}: legacy handshake failed: {ex}") from ex
        self._logger.info("%s: Legacy session authenticated", self.name)
        return Capabilities(mode=SessionMode.LEGACY)

    async def _read_identity(self, caps: Capabilities) -> None:
        if caps.is_lorax:
            model = decode_u32(await self._try_get_value(Characteristic.HARDWARE_MODEL) or b"")
            caps.model = str(model) if model is not None else None
            hw = await self._try_get_value(Characteristic.HARDWARE_VERSION)
            caps.hardware_version = hw[0] if hw else None
            fw = await self._try_get_value(Characteristic.FIRMWARE_VERSION)
            caps.firmware = numbers_to_letters(fw[0] + 5) if fw else None
            serial = await self._try_get_value(Characteristic.SERIAL_NUMBER)
            caps.serial = decode_text(serial) if serial else None
        else:
            model = await self._try_get_value(Characteristic.HARDWARE_MODEL)
            caps.model = decode_text(model) if model else None
            hw = await self._try_get_value(Characteristic.HARDWARE_VERSION)
            if hw:
                text = decode_text(hw).strip()
                caps.hardware_version = int(text) if text.isdigit() else hw[0]
            fw = await self._try_get_value(Characteristic.FIRMWARE_VERSION)
            caps.firmware = decode_text(fw) if fw else None

        git = await self._try_get_value(Characteristic.GIT_HASH)
        caps.git_hash = decode_text(git) if git else None
        mac = await self._try_get_value(Characteristic.BT_MAC)
        caps.mac = decode_mac(mac) if mac else None

        for key, characteristic, decoder in (
            ("uptime", Characteristic.UPTIME, decode_u32),
            ("utc_time", Characteristic.UTC_TIME, decode_u32),
            ("birthday", Characteristic.DEVICE_BIRTHDAY, decode_u32),
            ("battery_capacity", Characteristic.BATTERY_CAPACITY, decode_float),
            ("chamber_type", Characteristic.CHAMBER_TYPE, decode_small_int),
        ):
            data = await self._try_get_value(characteristic)
            if data:
                caps.details[key] = decoder(data)

    # ────────────────────────────────────────────────────────────────
    # Transport
    # ────────────────────────────────────────────────────────────────
    async def _write_lorax_frame(self, frame: bytes) -> None:
        if self._client is None:
            raise DeviceDisconnectedError(f"{self.name}: not connected")
        await self._client.write_gatt_char(LORAX_COMMAND_CHAR, frame, False)

    def _reply_handler(self, _sender: Any, data: bytearray) -> None:
        if self._dispatcher is not None:
            self._dispatcher.handle_reply(bytes(data))

    def _event_handler(self, _sender: Any, data: bytearray) -> None:
        try:
            event = parse_event(bytes(data))
        except ValueError:
            self._logger.debug("%s: Short event %s", self.name, bytes(data).hex())
            return
        if self._paths is None:
            return
        path = self._paths.path_for(event.watch_id)
        if path is None:
            self._logger.debug("%s: Event for unknown watch %s", self.name, event.watch_id)
            return
        if event.error:
            self._logger.debug("%s: Event error flag on %s", self.name, path)
            return
        if path == OPERATING_STATE_PATH:
            if self._watchdog is not None:
                self._watchdog.feed()
            if len(event.data) != 1:
                return
        self._state.ingest(path, event.data)

    def _require_session(self) -> None:
        if self.mode is None or self._client is None:
            raise DeviceDisconnectedError(f"{self.name}: not connected")

    def _lorax_path(self, key: str) -> str:
        if key.startswith("/"):
            return key
        path = LORAX_PATHS.get(key)
        if path is None:
            raise CharacteristicMissingError(f"No Lorax path for {key}")
        return path

    def _legacy_characteristic(self, key: str) -> str:
        if not key.startswith("/"):
            return key
        characteristic = CHARACTERISTIC_BY_PATH.get(key)
        if characteristic is None:
            raise CharacteristicMissingError(f"Path {key} has no legacy characteristic")
        return characteristic

    # ────────────────────────────────────────────────────────────────
    # Consumer API
    # ────────────────────────────────────────────────────────────────
    async def get_value(self, key: str) -> Optional[bytes]:
        """Read a value by legacy characteristic UUID or Lorax path.

        Lorax replies with the error flag set come back as ``None``.
        """
        self._require_session()
        if self.is_lorax:
            assert self._paths is not None
            reply = await self._paths.read(self._lorax_path(key))
            return None if reply.error else reply.data

        characteristic = self._legacy_characteristic(key)
        if characteristic in BLOCKED_LEGACY_CHARACTERISTICS:
            raise CharacteristicBlockedError(
                f"{self.name}: {characteristic} must not be read on legacy firmware",
                path=key,
            )
        async with self._operation_lock:
            data = await self._client.read_gatt_char(characteristic)
        return bytes(data)

    async def require_value(self, key: str) -> bytes:
        data = await self.get_value(key)
        if data is None:
            raise ProtocolError(
                f"{self.name}: read of {key} failed",
                opcode=LoraxCommand.READ_SHORT,
                path=key,
            )
        return data

    async def _try_get_value(self, key: str) -> Optional[bytes]:
        try:
            return await self.get_value(key)
        except (BleakError, CharacteristicBlockedError, CharacteristicMissingError):
            self._logger.debug("%s: Read of %s failed", self.name, key, exc_info=True)
            return None

    async def _write_value(self, key: str, data: bytes) -> bool:
        self._require_session()
        if self.is_lorax:
            assert self._paths is not None
            path = self._lorax_path(key)
            for attempt in range(1, COMMAND_ATTEMPTS + 1):
                reply = await self._paths.write(path, data)
                if not reply.error:
                    return True
                self._logger.debug(
                    "%s: Write to %s failed (attempt %s/%s)", self.name, path, attempt, COMMAND_ATTEMPTS
                )
            self._logger.warning(
                "%s: Giving up on %s after %s attempts", self.name, path, COMMAND_ATTEMPTS
            )
            return False

        characteristic = self._legacy_characteristic(key)
        self._logger.debug("%s: Writing %s to %s", self.name, data.hex(" ").upper(), characteristic)
        async with self._operation_lock:
            await self._client.write_gatt_char(characteristic, data, True)
        return True

    def _pick(self, command: Union[DeviceCommand, LightCommand]) -> bytes:
        return command.lorax if self.is_lorax else command.legacy

    async def send_command(
        self, target: Union[DeviceCommand, str], data: bytes | None = None
    ) -> bool:
        """Send a DeviceCommand, or raw bytes to a characteristic/path."""
        if isinstance(target, DeviceCommand):
            self._logger.debug("%s: Sending %s", self.name, target.name)
            return await self._write_value(Characteristic.COMMAND, self._pick(target))
        if data is None:
            raise ValueError("data is required when writing to a characteristic or path")
        return await self._write_value(target, bytes(data))

    async def send_raw(self, opcode: int, payload: bytes = b"", path: str | None = None) -> LoraxReply:
        self._require_session()
        if self._dispatcher is None:
            raise PuffcoError(f"{self.name}: raw Lorax frames need a Lorax session")
        return await self._dispatcher.request(opcode, payload, path=path)

    async def watch(self, key: str, interval_ms: int | None = None) -> bool:
        self._require_session()
        if self._paths is None:
            raise PuffcoError(f"{self.name}: watches need a Lorax session")
        return await self._paths.watch(self._lorax_path(key), interval_ms)

    async def unwatch(self, key: str) -> None:
        self._require_session()
        if self._paths is None:
            raise PuffcoError(f"{self.name}: watches need a Lorax session")
        await self._paths.unwatch(self._lorax_path(key))

    # ---- profiles ----
    async def _read_profile(self, index: int, *, select: bool = True) -> Profile:
        if self.is_lorax:
            name = await self._try_get_value(profile_path(PathKind.NAME, index))
            temperature = await self._try_get_value(profile_path(PathKind.PREHEAT_TEMP, index))
            time = await self._try_get_value(profile_path(PathKind.PREHEAT_TIME, index))
            color = await self._try_get_value(profile_path(PathKind.COLOR, index))
            intensity = await self._try_get_value(profile_path(PathKind.INTENSITY, index))
            profile = decode_profile(name, color, temperature, time, intensity)
        else:
            if select:
                await self._write_value(Characteristic.PROFILE, bytes([index, 0, 0, 0]))
            name = await self._try_get_value(Characteristic.PROFILE_NAME)
            color = await self._try_get_value(Characteristic.PROFILE_COLOR)
            temperature = await self._try_get_value(Characteristic.PROFILE_PREHEAT_TEMP)
            time = await self._try_get_value(Characteristic.PROFILE_PREHEAT_TIME)
            profile = decode_profile(name, color, temperature, time)
        self._logger.debug(
            "%s: Profile #%s - %s - %s - %s", self.name, index + 1, profile.name, profile.temperature, profile.time
        )
        return profile

    async def _refresh_profiles_locked(self) -> dict[int, Profile]:
        current = decode_small_int(await self._try_get_value(Characteristic.PROFILE_CURRENT) or b"")
        current = current if current is not None and 0 <= current < PROFILE_COUNT else 0
        if self.is_lorax:
            order = list(range(PROFILE_COUNT))
        else:
            # Legacy firmware exposes one selected profile at a time.
            order = [(idx + current) % PROFILE_COUNT for idx in range(PROFILE_COUNT)]
        profiles: dict[int, Profile] = {}
        for index in order:
            profiles[index] = await self._read_profile(index)
        self._state.profiles = profiles
        return profiles

    async def refresh_profiles(self) -> dict[int, Profile]:
        self._require_session()
        profiles = await self._refresh_profiles_locked()
        if self.capabilities is not None:
            self.capabilities.profiles = profiles
        return profiles

    async def switch_profile(self, index: int) -> Profile:
        """Make the zero-based profile ``index`` current and re-read it."""
        if not 0 <= index < PROFILE_COUNT:
            raise ValueError(f"Profile index out of range 0..{PROFILE_COUNT - 1}: {index}")
        self._require_session()
        if self.is_lorax:
            await self._write_value(Characteristic.PROFILE_CURRENT, bytes([index]))
        else:
            await self._write_value(Characteristic.PROFILE, bytes([index, 0, 0, 0]))
            await self._write_value(Characteristic.PROFILE_CURRENT, pack_float(float(index)))
        profile = await self._read_profile(index, select=False)
        self._state.profiles[index] = profile
        if self.capabilities is not None:
            self.capabilities.profiles[index] = profile
        self._state.apply({"profile": profile})
        return profile

    # ---- lights / settings ----
    async def set_brightness(self, brightness: int) -> None:
        if not 0 <= brightness <= 100:
            raise ValueError("Brightness must be between 0 and 100.")
        value = int(round(brightness * 255 / 100))
        await self._write_value(Characteristic.LANTERN_COLOR, self._pick(LightCommand.LIGHT_DEFAULT))
        await self._write_value(Characteristic.LANTERN_START, self._pick(LightCommand.LANTERN_ON))
        await self._write_value(Characteristic.LED_BRIGHTNESS, bytes([value] * 4))
        # Lantern stays lit briefly so the new brightness is visible.
        await asyncio.sleep(self._lantern_preview_s)
        await self._write_value(Characteristic.LANTERN_START, self._pick(LightCommand.LANTERN_OFF))

    async def set_light_mode(self, mode: LightMode) -> None:
        if mode is LightMode.QUERY_READY:
            await self._write_value(Characteristic.LANTERN_COLOR, self._pick(LightCommand.LIGHT_QUERY_READY))
            await self._write_value(Characteristic.LANTERN_START, self._pick(LightCommand.LANTERN_ON))
        elif mode is LightMode.MARKED_READY:
            await self._write_value(Characteristic.LANTERN_COLOR, self._pick(LightCommand.LIGHT_MARKED_READY))
            await self._write_value(Characteristic.LANTERN_START, self._pick(LightCommand.LANTERN_ON))
        else:
            await self._write_value(Characteristic.LANTERN_START, self._pick(LightCommand.LANTERN_OFF))
            await self._write_value(Characteristic.LANTERN_COLOR, self._pick(LightCommand.LIGHT_NEUTRAL))

    async def update_device_name(self, name: str) -> None:
        await self._write_value(Characteristic.DEVICE_NAME, name.encode("utf-8"))
        self._state.apply({"device_name": name})

    async def update_device_dob(self, date: datetime) -> None:
        await self._write_value(
            Characteristic.DEVICE_BIRTHDAY, struct.pack("<I", int(date.timestamp()) & 0xFFFFFFFF)
        )

    async def boost_temp(self, temperature: float) -> None:
        if not self.is_lorax:
            self._logger.warning("%s: Boost temperature is not supported on legacy firmware", self.name)
            return
        await self._write_value(Characteristic.TEMPERATURE_OVERRIDE, pack_float(temperature))

    async def boost_time(self, seconds: float) -> None:
        if not self.is_lorax:
            self._logger.warning("%s: Boost time is not supported on legacy firmware", self.name)
            return
        await self._write_value(Characteristic.TIME_OVERRIDE, pack_float(seconds))

    # ────────────────────────────────────────────────────────────────
    # Polling / watches
    # ────────────────────────────────────────────────────────────────
    async def start_polling(self) -> DeviceStateSnapshot:
        """Read the initial snapshot, then keep it current."""
        self._require_session()
        if self._polling:
            return self.snapshot

        for characteristic in INITIAL_READS:
            data = await self._try_get_value(characteristic)
            if data is not None:
                self._state.ingest(characteristic, data)
        if not self.snapshot.device_name:
            self._state.apply({"device_name": self.name})
        if self.capabilities is not None:
            self._state.apply(
                {"device_mac": self.capabilities.mac, "device_model": self.capabilities.model}
            )

        for key, characteristics, interval_ms in POLL_GROUPS:
            self._pollers[key] = self._make_poller(key, characteristics, interval_ms)

        if self.is_lorax:
            assert self._paths is not None
            await self._paths.watch(OPERATING_STATE_PATH)
            self._watchdog = DeviationWatchdog(
                OPERATING_STATE_PATH,
                watch_interval(OPERATING_STATE_PATH),
                self._paths.unwatch,
                self._paths.watch,
                name=self.name,
                logger=self._logger,
            )
            self._watchdog.start()
        else:
            self._pollers["state"] = self._make_poller(
                "state", (Characteristic.OPERATING_STATE,), LEGACY_STATE_POLL_MS
            )

        for poller in self._pollers.values():
            poller.start()
        self._polling = True
        self._publish_diagnostics()
        return self.snapshot

    def _make_poller(self, key: str, characteristics: tuple[str, ...], interval_ms: int) -> Poller:
        return Poller(
            key,
            characteristics,
            self.get_value,
            self._state.ingest,
            interval_ms=interval_ms,
            immediate=False,
            name=self.name,
            logger=self._logger,
        )

    # State machine side effects
    async def open_high_frequency_watches(self) -> None:
        if self._paths is None:
            return
        for path in HIGH_FREQUENCY_PATHS:
            await self._paths.watch(path)

    async def close_high_frequency_watches(self) -> None:
        if self._paths is None:
            return
        for path in HIGH_FREQUENCY_PATHS:
            await self._paths.unwatch(path)

    def suspend_ambient_poll(self) -> None:
        poller = self._pollers.get(AMBIENT_POLL)
        if poller is not None and self.is_lorax:
            poller.suspend()

    def resume_ambient_poll(self) -> None:
        poller = self._pollers.get(AMBIENT_POLL)
        if poller is not None:
            poller.resume()

    # ────────────────────────────────────────────────────────────────
    # Teardown / reconnect
    # ────────────────────────────────────────────────────────────────
    def _teardown(self) -> None:
        for poller in self._pollers.values():
            poller.stop()
        self._pollers.clear()
        if self._watchdog is not None:
            self._watchdog.stop()
            self._watchdog = None
        self._state.shutdown()
        if self._dispatcher is not None:
            self._dispatcher.close()
            self._dispatcher = None
        if self._paths is not None:
            self._paths.clear()
            self._paths = None
        self._polling = False
        self.mode = None
        self.capabilities = None

    async def _close_client_locked(self) -> None:
        client = self._client
        lorax = self.is_lorax
        self._expected_disconnect = True
        self._client = None
        self._teardown()
        if client is None or not getattr(client, "is_connected", False):
            return
        if lorax:
            for characteristic in (LORAX_REPLY_CHAR, LORAX_EVENT_CHAR):
                try:
                    await client.stop_notify(characteristic)
                except (BleakError, KeyError, ValueError):
                    self._logger.debug(
                        "%s: stop_notify failed (already stopped?)", self.name, exc_info=True
                    )
        await client.disconnect()

    async def disconnect(self) -> None:
        """Tear the session down; safe to call repeatedly."""
        self._logger.debug("%s: Disconnecting", self.name)
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        async with self._connect_lock:
            await self._close_client_locked()

    def _disconnected(self, client: Any) -> None:
        if self._expected_disconnect:
            self._logger.debug("%s: Disconnected from device; RSSI: %s", self.name, self.rssi)
            return
        self._logger.warning(
            "%s: Device unexpectedly disconnected; RSSI: %s", self.name, self.rssi
        )
        resume_polling = self._polling
        self._client = None
        self._teardown()
        if self._auto_reconnect:
            self._reconnect_task = asyncio.create_task(self._reconnect(resume_polling))
        else:
            self._notify_lifecycle("disconnected")

    async def _reconnect(self, resume_polling: bool) -> None:
        for attempt in range(1, RECONNECT_ATTEMPTS + 1):
            self._notify_lifecycle("reconnecting")
            try:
                await asyncio.wait_for(self.connect(), self._reconnect_timeout)
                if resume_polling:
                    await self.start_polling()
            except (PuffcoError, BleakError, asyncio.TimeoutError) as ex:
                self._logger.warning(
                    "%s: Reconnect attempt %s/%s failed: %s", self.name, attempt, RECONNECT_ATTEMPTS, ex
                )
                continue
            self._logger.info("%s: Reconnected", self.name)
            self._reconnect_task = None
            self._notify_lifecycle("reconnected")
            return
        self._reconnect_task = None
        self._notify_lifecycle("disconnected")


__all__ = ["INITIAL_READS", "POLL_GROUPS", "PuffcoDevice"]
