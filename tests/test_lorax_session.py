import asyncio
import struct
from datetime import datetime, timezone

import pytest
from fakes import SEED, FakeLoraxClient, FakeLoraxFirmware, ble_device, install_clients

from puffco_ble_control.const import (
    HEATER_TEMP_PATH,
    HIGH_FREQUENCY_PATHS,
    LORAX_EVENT_CHAR,
    LORAX_HANDSHAKE_KEY,
    LORAX_REPLY_CHAR,
    LORAX_SERVICE,
    OPERATING_STATE_PATH,
    PUP_APP_VERSION,
    PUP_SERVICE,
    SERVICE,
    SILLABS_OTA_SERVICE,
    SILLABS_VERSION,
    Characteristic,
    LoraxCommand,
)
from puffco_ble_control.device import PuffcoDevice, base_device
from puffco_ble_control.exception import (
    ConnectFailedError,
    DeviceDisconnectedError,
    HandshakeFailedError,
    ProtocolError,
)
from puffco_ble_control.models import (
    DeviceCommand,
    LightCommand,
    LightMode,
    OperatingState,
    SessionMode,
)
from puffco_ble_control.protocol import derive_access_key, pack_float


async def _connected(monkeypatch, firmware=None, **kwargs):
    client = FakeLoraxClient(firmware)
    install_clients(monkeypatch, client)
    dev = PuffcoDevice(ble_device(), **kwargs)
    caps = await dev.connect()
    return dev, client, caps


def test_handshake_sequence_and_identity(monkeypatch):
    async def run():
        dev, client, caps = await _connected(monkeypatch)
        firmware = client.firmware

        assert firmware.opcodes()[:3] == [
            LoraxCommand.GET_LIMITS,
            LoraxCommand.GET_ACCESS_SEED,
            LoraxCommand.UNLOCK_ACCESS,
        ]
        assert firmware.payloads(LoraxCommand.UNLOCK_ACCESS) == [
            derive_access_key(LORAX_HANDSHAKE_KEY, SEED)
        ]
        # pairing probe goes to the OTA version characteristic without the pup service
        assert client.log[0] == ("read", SILLABS_VERSION, None)

        assert caps.mode is SessionMode.LORAX
        assert not caps.pup
        assert (caps.limits.max_payload, caps.limits.max_files, caps.limits.max_commands) == (240, 16, 8)
        assert caps.model == "21"
        assert caps.hardware_version == 3
        assert caps.firmware == "T"
        assert caps.serial == "PX123"
        assert caps.mac == "AA:BB:CC:01:02:03"
        assert caps.git_hash == "deadbee"
        assert caps.details["chamber_type"] == 1
        assert [p.name for p in caps.profiles.values()] == ["A", "B", "C", "D"]
        assert caps.profiles[0].color == (0, 128, 255)
        assert caps.profiles[0].intensity == 0.75
        await dev.disconnect()

    asyncio.run(run())


def test_pup_service_switches_pairing_probe(monkeypatch):
    async def run():
        client = FakeLoraxClient(uuids=(LORAX_SERVICE, PUP_SERVICE))
        install_clients(monkeypatch, client)
        dev = PuffcoDevice(ble_device())
        caps = await dev.connect()
        assert caps.pup
        assert client.log[0] == ("read", PUP_APP_VERSION, None)
        await dev.disconnect()

    asyncio.run(run())


def test_lorax_only_services_negotiate_lorax(monkeypatch):
    async def run():
        client = FakeLoraxClient(uuids=(LORAX_SERVICE, SILLABS_OTA_SERVICE))
        install_clients(monkeypatch, client)
        dev = PuffcoDevice(ble_device())
        caps = await dev.connect()
        assert caps.mode is SessionMode.LORAX
        assert not caps.pup
        await dev.disconnect()

    asyncio.run(run())


@pytest.mark.parametrize("uuids", [(LORAX_SERVICE,), (SERVICE, LORAX_SERVICE)])
def test_lorax_without_ota_or_pup_service_fails(monkeypatch, uuids):
    async def run():
        client = FakeLoraxClient(uuids=uuids)
        install_clients(monkeypatch, client)
        dev = PuffcoDevice(ble_device())
        with pytest.raises(ConnectFailedError):
            await dev.connect()
        assert client.disconnects == 1
        assert dev.mode is None

    asyncio.run(run())


def test_rejected_unlock_tears_the_session_down(monkeypatch):
    async def run():
        firmware = FakeLoraxFirmware()
        firmware.reject_unlock = True
        client = FakeLoraxClient(firmware)
        install_clients(monkeypatch, client)
        dev = PuffcoDevice(ble_device())

        with pytest.raises(HandshakeFailedError):
            await dev.connect()
        assert client.disconnects == 1
        assert LORAX_REPLY_CHAR not in client.notify
        assert dev.mode is None
        assert dev.paths is None

    asyncio.run(run())


def test_reads_with_error_flag_come_back_empty(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch)
        assert await dev.get_value("/p/bat/soc") == pack_float(64.2)
        assert await dev.get_value(Characteristic.BATTERY_SOC) == pack_float(64.2)
        assert await dev.get_value("/p/does/not/exist") is None
        await dev.disconnect()

    asyncio.run(run())


def test_events_drive_high_frequency_watches(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch, debounce_s=0.02)
        deltas = []
        dev.add_data_callback(deltas.append)
        snapshot = await dev.start_polling()

        assert snapshot.state is OperatingState.IDLE
        assert snapshot.temperature == 25
        assert snapshot.device_name == "My Peak"
        assert LORAX_EVENT_CHAR in client.notify
        assert dev.paths.is_watched(OPERATING_STATE_PATH)
        assert dev.watchdog is not None
        assert "state" not in dev.pollers

        client.push_event(OPERATING_STATE_PATH, b"\x07")
        await dev.state_machine.wait_idle()
        assert dev.snapshot.state is OperatingState.HEAT_CYCLE_PREHEAT
        assert all(dev.paths.is_watched(p) for p in HIGH_FREQUENCY_PATHS)
        assert dev.pollers["chamber"].suspended

        client.push_event(HEATER_TEMP_PATH, pack_float(401.3))
        client.push_event(HEATER_TEMP_PATH, pack_float(0.0))
        assert dev.snapshot.temperature == 401
        assert {"temperature": 401} in deltas

        # operating state values wider than one byte are not trusted
        client.push_event(OPERATING_STATE_PATH, pack_float(5.0))
        assert dev.snapshot.state is OperatingState.HEAT_CYCLE_PREHEAT

        client.push_event(OPERATING_STATE_PATH, b"\x05")
        await asyncio.sleep(0.05)
        await dev.state_machine.wait_idle()
        assert not any(dev.paths.is_watched(p) for p in HIGH_FREQUENCY_PATHS)
        assert client.firmware.cleared_watches == len(HIGH_FREQUENCY_PATHS)
        assert not dev.pollers["chamber"].suspended

        await dev.disconnect()

    asyncio.run(run())


def test_send_command_uses_lorax_byte(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch)

        assert await dev.send_command(DeviceCommand.HEAT_CYCLE_BEGIN) is True
        assert client.firmware.values["/p/app/mc"] == b"\x07"

        assert await dev.send_command("/u/sys/name", b"Shelf") is True
        assert client.firmware.values["/u/sys/name"] == b"Shelf"
        await dev.disconnect()

    asyncio.run(run())


def test_rejected_write_is_retried_then_reported(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch)
        client.firmware.rejected_write_paths.add("/p/app/mc")
        before = len(client.firmware.payloads(LoraxCommand.WRITE_SHORT))

        assert await dev.send_command(DeviceCommand.IDLE) is False
        assert len(client.firmware.payloads(LoraxCommand.WRITE_SHORT)) - before == 5
        await dev.disconnect()

    asyncio.run(run())


def test_busy_gatt_writes_are_retried(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch)
        client.busy_failures = 3
        writes_before = len(client.log)

        assert await dev.send_command(DeviceCommand.HEAT_CYCLE_STOP) is True
        assert len(client.log) - writes_before == 4
        assert client.firmware.values["/p/app/mc"] == b"\x08"
        await dev.disconnect()

    asyncio.run(run())


def test_switch_profile_writes_index_and_rereads(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch)
        mark = len(client.firmware.frames)

        profile = await dev.switch_profile(2)

        assert client.firmware.values["/p/app/hcs"] == b"\x02"
        reads = [p[4:].decode() for p in client.firmware.payloads(LoraxCommand.READ_SHORT)]
        assert reads[-5:] == [
            "/u/app/hc/2/name",
            "/u/app/hc/2/temp",
            "/u/app/hc/2/time",
            "/u/app/hc/2/colr",
            "/u/app/hc/2/intn",
        ]
        assert len(client.firmware.frames) - mark == 6
        assert profile.name == "C"
        assert profile.temperature == 510
        assert dev.snapshot.profile == profile
        await dev.disconnect()

    asyncio.run(run())


def test_consumer_watch_and_unwatch(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch)

        assert await dev.watch(Characteristic.BATTERY_SOC, 2000) is True
        assert dev.paths.is_watched("/p/bat/soc")
        await dev.unwatch("/p/bat/soc")
        assert not dev.paths.is_watched("/p/bat/soc")

        reply = await dev.send_raw(LoraxCommand.GET_LIMITS)
        assert not reply.error
        await dev.disconnect()

    asyncio.run(run())


def test_watch_right_after_connect_delivers_events(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch)
        deltas = []
        dev.add_data_callback(deltas.append)

        assert LORAX_EVENT_CHAR in client.notify
        assert await dev.watch(Characteristic.BATTERY_SOC, 1000) is True
        client.push_event("/p/bat/soc", pack_float(71.8))

        assert deltas == [{"battery": 72}]
        assert dev.snapshot.battery == 72
        await dev.disconnect()

    asyncio.run(run())


def test_paths_without_decoder_arrive_as_raw_bytes(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch)
        await dev.start_polling()
        deltas = []
        dev.add_data_callback(deltas.append)

        assert await dev.watch("/p/bat/volt") is True
        client.push_event("/p/bat/volt", pack_float(3.9))
        client.push_event("/p/bat/volt", pack_float(3.9))
        client.push_event("/p/bat/volt", pack_float(3.8))

        assert deltas == [
            {"raw": {"/p/bat/volt": pack_float(3.9)}},
            {"raw": {"/p/bat/volt": pack_float(3.8)}},
        ]
        assert dev.snapshot.raw == {"/p/bat/volt": pack_float(3.8)}
        assert dev.snapshot.to_dict()["raw"] == {"/p/bat/volt": pack_float(3.8).hex()}
        await dev.disconnect()

    asyncio.run(run())


def test_snapshot_does_not_outlive_the_session(monkeypatch):
    async def run():
        first, second = FakeLoraxClient(), FakeLoraxClient()
        install_clients(monkeypatch, first, second)
        dev = PuffcoDevice(ble_device())
        await dev.connect()
        await dev.start_polling()
        assert dev.snapshot.state is OperatingState.IDLE
        await dev.disconnect()

        assert dev.snapshot.state is None
        assert dev.snapshot.temperature is None
        assert dev.profiles == {}

        deltas = []
        dev.add_data_callback(deltas.append)
        await dev.connect()
        await dev.start_polling()

        assert {"state": OperatingState.IDLE} in deltas
        assert {"temperature": 25} in deltas
        assert len(dev.profiles) == 4
        await dev.disconnect()

    asyncio.run(run())


def test_silent_state_watch_is_rewatched_once(monkeypatch):
    monkeypatch.setattr(base_device, "watch_interval", lambda path: 40)
    lifecycle = (LoraxCommand.OPEN, LoraxCommand.WATCH, LoraxCommand.CLOSE)

    async def run():
        dev, client, _ = await _connected(monkeypatch)
        await dev.start_polling()
        firmware = client.firmware
        start = len(firmware.frames)

        ops = []
        for _ in range(300):
            ops = [op for op in firmware.opcodes()[start:] if op in lifecycle]
            if len(ops) >= 4:
                break
            await asyncio.sleep(0.01)
        repairs = dev.watchdog.repairs
        dev.watchdog.stop()

        assert ops == [
            LoraxCommand.CLOSE,
            LoraxCommand.WATCH,
            LoraxCommand.OPEN,
            LoraxCommand.WATCH,
        ]
        assert firmware.cleared_watches == 1
        assert repairs == 1
        assert dev.paths.is_watched(OPERATING_STATE_PATH)
        await dev.disconnect()

    asyncio.run(run())


def test_disconnect_clears_session(monkeypatch):
    async def run():
        events = []
        dev, client, _ = await _connected(monkeypatch)
        dev.add_lifecycle_callback(events.append)
        await dev.start_polling()

        await dev.disconnect()
        await dev.disconnect()

        assert client.disconnects == 1
        assert client.notify == {}
        assert dev.pollers == {}
        assert dev.watchdog is None
        assert events == []
        with pytest.raises(DeviceDisconnectedError):
            await dev.get_value("/p/bat/soc")

    asyncio.run(run())


def test_unexpected_drop_without_reconnect(monkeypatch):
    async def run():
        events = []
        dev, client, _ = await _connected(monkeypatch)
        dev.add_lifecycle_callback(events.append)

        client.drop_link()

        assert events == ["disconnected"]
        assert dev.capabilities is None
        assert not dev.is_connected

    asyncio.run(run())


def test_unexpected_drop_reconnects_when_enabled(monkeypatch):
    async def run():
        events = []
        first, second = FakeLoraxClient(), FakeLoraxClient()
        install_clients(monkeypatch, first, second)
        dev = PuffcoDevice(ble_device(), auto_reconnect=True)
        dev.add_lifecycle_callback(events.append)
        await dev.connect()

        first.drop_link()
        for _ in range(200):
            if "reconnected" in events:
                break
            await asyncio.sleep(0.01)

        assert events == ["reconnecting", "reconnected"]
        assert dev.client is second
        assert dev.capabilities is not None
        await dev.disconnect()

    asyncio.run(run())


def test_diagnostics_sink_receives_report(monkeypatch):
    async def run():
        reports = []
        dev, client, _ = await _connected(monkeypatch, diagnostics_sink=reports.append)

        assert len(reports) == 1
        report = reports[0]
        assert report["mode"] == "lorax"
        assert report["limits"] == {"max_payload": 240, "max_files": 16, "max_commands": 8}
        assert report["identity"]["firmware"] == "T"
        assert {s["uuid"] for s in report["services"]} == {LORAX_SERVICE, SILLABS_OTA_SERVICE}
        await dev.disconnect()

    asyncio.run(run())


def test_settings_writes(monkeypatch):
    async def run():
        dev, client, _ = await _connected(monkeypatch)
        values = client.firmware.values

        await dev.set_light_mode(LightMode.QUERY_READY)
        assert values["/p/app/ltrn/colr"] == LightCommand.LIGHT_QUERY_READY.lorax
        assert values["/p/app/ltrn/cmd"] == b"\x01"
        await dev.set_light_mode(LightMode.DEFAULT)
        assert values["/p/app/ltrn/cmd"] == b"\x00"
        assert values["/p/app/ltrn/colr"] == LightCommand.LIGHT_NEUTRAL.lorax

        dev._lantern_preview_s = 0
        await dev.set_brightness(50)
        assert values["/u/app/ui/lbrt"] == bytes([128] * 4)

        await dev.update_device_dob(datetime(2024, 1, 2, tzinfo=timezone.utc))
        assert values["/u/sys/bday"] == struct.pack("<I", 1704153600)

        await dev.boost_temp(15.0)
        await dev.boost_time(30.0)
        assert values["/p/app/tmpo"] == pack_float(15.0)
        assert values["/p/app/timo"] == pack_float(30.0)

        with pytest.raises(ProtocolError):
            await dev.require_value("/p/nope")
        assert await dev.require_value("/p/bat/soc") == pack_float(64.2)

        values["/u/app/hc/3/name"] = b"Renamed"
        profiles = await dev.refresh_profiles()
        assert profiles[3].name == "Renamed"
        assert dev.capabilities.profiles[3].name == "Renamed"
        await dev.disconnect()

    asyncio.run(run())
