# puffco_ble_control/device/dispatcher.py
"""Lorax request/reply plumbing.

Every request gets a sequence number and a PendingMessage; the reply
notification handler resolves the future registered under
``(opcode, sequence, path)`` and drops the bookkeeping again.

Writes are serialized by one lock: the GATT stack refuses overlapping
writes ("operation already in progress"), so a rejected write is retried
immediately, up to ``max_busy_retries`` times.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from bleak.exc import BleakError

from ..const import MAX_BUSY_RETRIES, SEQUENCE_MODULO
from ..exception import DeviceDisconnectedError, TransportBusyError
from ..models import LoraxReply, PendingMessage
from ..protocol import encode_command, next_sequence, parse_reply

_LOGGER = logging.getLogger(__name__)

WriteFunc = Callable[[bytes], Awaitable[None]]


def is_busy_error(exc: BaseException) -> bool:
    return "in progress" in str(exc).lower()


class LoraxDispatcher:
    """Owns the sequence counter and the in-flight request table."""

    def __init__(
        self,
        write: WriteFunc,
        *,
        name: str = "puffco",
        logger: logging.Logger | None = None,
        reply_timeout: float | None = None,
        max_busy_retries: int = MAX_BUSY_RETRIES,
    ) -> None:
        self._write = write
        self._name = name
        self._logger = logger or _LOGGER
        self._reply_timeout = reply_timeout
        self._max_busy_retries = max_busy_retries
        self._last_sequence = -1
        self._pending: dict[int, PendingMessage] = {}
        self._waiters: dict[tuple[int, int, Optional[str]], asyncio.Future[LoraxReply]] = {}
        self._write_lock = asyncio.Lock()
        self._alive = True

    # ---- properties ----
    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    @property
    def pending(self) -> dict[int, PendingMessage]:
        return self._pending

    @property
    def busy(self) -> bool:
        return self._write_lock.locked()

    # ---- sequencing ----
    def _allocate_sequence(self) -> int:
        seq = next_sequence(self._last_sequence)
        for _ in range(SEQUENCE_MODULO):
            if seq not in self._pending:
                self._last_sequence = seq
                return seq
            seq = next_sequence(seq)
        raise TransportBusyError("Every sequence number has a reply outstanding")

    # ---- requests ----
    async def request(
        self, opcode: int, payload: bytes = b"", *, path: str | None = None
    ) -> LoraxReply:
        """Send one frame and wait for its reply.

        The returned reply may carry ``error=True``; that is logged here and
        left to the caller to branch on.
        """
        if not self._alive:
            raise DeviceDisconnectedError(f"{self._name}: session closed")

        loop = asyncio.get_running_loop()
        if self._write_lock.locked():
            self._logger.debug(
                "%s: Write in flight, queueing opcode %s", self._name, opcode
            )
        async with self._write_lock:
            sequence = self._allocate_sequence()
            frame = encode_command(opcode, sequence, payload)
            message = PendingMessage(sequence=sequence, opcode=opcode, request=frame, path=path)
            future: asyncio.Future[LoraxReply] = loop.create_future()
            self._pending[sequence] = message
            self._waiters[message.key] = future
            try:
                await self._write_with_retry(frame)
            except BaseException:
                self._discard(message)
                raise

        try:
            if self._reply_timeout is None:
                return await future
            return await asyncio.wait_for(future, self._reply_timeout)
        finally:
            self._discard(message)

    async def _write_with_retry(self, frame: bytes) -> None:
        self._logger.debug("%s: >> %s", self._name, frame.hex(" ").upper())
        for attempt in range(self._max_busy_retries + 1):
            try:
                await self._write(frame)
                return
            except BleakError as ex:
                if not is_busy_error(ex):
                    raise
                self._logger.debug(
                    "%s: GATT busy, retrying write (attempt %s)", self._name, attempt + 1
                )
                await asyncio.sleep(0)
        self._logger.warning(
            "%s: GATT stayed busy after %s retries", self._name, self._max_busy_retries
        )
        raise TransportBusyError(
            f"{self._name}: write rejected {self._max_busy_retries + 1} times"
        )

    def _discard(self, message: PendingMessage) -> None:
        if self._pending.get(message.sequence) is message:
            del self._pending[message.sequence]
        self._waiters.pop(message.key, None)

    # ---- inbound ----
    def handle_reply(self, data: bytes | bytearray) -> Optional[LoraxReply]:
        try:
            reply = parse_reply(data)
        except ValueError:
            self._logger.warning("%s: Dropping short reply %s", self._name, bytes(data).hex())
            return None

        self._logger.debug("%s: << %s", self._name, bytes(data).hex(" ").upper())
        message = self._pending.pop(reply.sequence, None)
        if message is None:
            self._logger.debug("%s: Reply for unknown sequence %s", self._name, reply.sequence)
            return None

        message.response = reply
        if reply.error:
            self._logger.warning(
                "%s: Error flag in reply to opcode %s (seq %s, path %s)",
                self._name,
                message.opcode,
                reply.sequence,
                message.path,
            )
        future = self._waiters.pop(message.key, None)
        if future is not None and not future.done():
            future.set_result(reply)
        return reply

    # ---- teardown ----
    def close(self) -> None:
        """Fail every outstanding waiter and forget all bookkeeping."""
        self._alive = False
        waiters = list(self._waiters.values())
        self._waiters.clear()
        self._pending.clear()
        for future in waiters:
            if not future.done():
                future.set_exception(DeviceDisconnectedError(f"{self._name}: disconnected"))


__all__ = ["LoraxDispatcher", "is_busy_error"]
