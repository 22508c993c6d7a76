import asyncio
import struct

from fakes import FakeLoraxFirmware

from puffco_ble_control.const import OPERATING_STATE_PATH, LoraxCommand
from puffco_ble_control.device.dispatcher import LoraxDispatcher
from puffco_ble_control.device.paths import PathRegistry, watch_length


def _registry(firmware):
    holder = {}

    async def write(frame):
        reply = firmware.handle(frame)
        asyncio.get_running_loop().call_soon(holder["d"].handle_reply, reply)

    holder["d"] = LoraxDispatcher(write)
    return PathRegistry(holder["d"])


def test_watch_opens_then_subscribes():
    async def run():
        firmware = FakeLoraxFirmware()
        registry = _registry(firmware)
        assert await registry.watch(OPERATING_STATE_PATH)

        assert firmware.opcodes() == [LoraxCommand.OPEN, LoraxCommand.WATCH]
        handle, _, interval, _, length = struct.unpack("<HHHHH", firmware.payloads(LoraxCommand.WATCH)[0])
        assert (interval, length) == (400, 1)
        assert registry.path_for(handle) == OPERATING_STATE_PATH
        assert registry.handle_for(OPERATING_STATE_PATH) == handle

    asyncio.run(run())


def test_single_byte_paths_use_length_one():
    assert watch_length("/p/app/hcs") == 1
    assert watch_length("/p/htr/chmt") == 1
    assert watch_length("/p/app/htr/temp") == 4


def test_rewatch_keeps_one_live_entry():
    async def run():
        firmware = FakeLoraxFirmware()
        registry = _registry(firmware)
        await registry.watch("/p/app/htr/temp")
        await registry.watch("/p/app/htr/temp")

        assert firmware.opcodes() == [
            LoraxCommand.OPEN,
            LoraxCommand.WATCH,
            LoraxCommand.CLOSE,
            LoraxCommand.OPEN,
            LoraxCommand.WATCH,
        ]
        assert list(registry.watch_map.values()) == ["/p/app/htr/temp"]
        assert registry.watched_paths == ["/p/app/htr/temp"]
        assert len(firmware.watches) == 1

    asyncio.run(run())


def test_close_of_unwatched_path_is_a_noop():
    async def run():
        firmware = FakeLoraxFirmware()
        registry = _registry(firmware)
        await registry.close("/p/app/htr/temp")
        await registry.unwatch("/p/app/htr/temp")
        assert firmware.frames == []

    asyncio.run(run())


def test_unwatch_closes_then_clears():
    async def run():
        firmware = FakeLoraxFirmware()
        registry = _registry(firmware)
        await registry.watch("/p/app/stat/elap")
        await registry.unwatch("/p/app/stat/elap")

        assert firmware.opcodes()[-2:] == [LoraxCommand.CLOSE, LoraxCommand.WATCH]
        assert firmware.payloads(LoraxCommand.WATCH)[-1] == bytes(10)
        assert registry.watch_map == {}
        assert registry.path_watchers == {}

    asyncio.run(run())


def test_failed_open_does_not_register():
    async def run():
        firmware = FakeLoraxFirmware()
        registry = _registry(firmware)

        original = firmware._answer

        def refuse_open(opcode, payload):
            if opcode == LoraxCommand.OPEN:
                return True, b""
            return original(opcode, payload)

        firmware._answer = refuse_open
        assert await registry.watch("/p/app/htr/temp") is False
        assert registry.watch_map == {}

    asyncio.run(run())


def test_short_read_and_write():
    async def run():
        firmware = FakeLoraxFirmware()
        registry = _registry(firmware)
        reply = await registry.read("/p/bat/soc")
        assert not reply.error
        missing = await registry.read("/p/nope")
        assert missing.error

        await registry.write("/u/sys/name", b"Peaky")
        assert firmware.values["/u/sys/name"] == b"Peaky"

    asyncio.run(run())
