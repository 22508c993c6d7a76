# puffco_ble_control/device/paths.py
"""Open / watch / close lifecycle for Lorax paths.

A successful OPEN returns a one-byte handle. WATCH registers that handle
with the firmware and the handle comes back as ``watch_id`` on every event,
so ``watch_map`` (handle → path) routes events and ``path_watchers``
(path → handle) is what CLOSE needs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..const import (
    DEFAULT_WATCH_INTERVAL_MS,
    SINGLE_BYTE_PATHS,
    WATCH_INTERVALS_MS,
    LoraxCommand,
)
from ..models import LoraxLimits, LoraxReply
from ..protocol import (
    close_cmd,
    open_cmd,
    read_short_cmd,
    unwatch_cmd,
    watch_cmd,
    write_short_cmd,
)
from .dispatcher import LoraxDispatcher

_LOGGER = logging.getLogger(__name__)


def watch_length(path: str) -> int:
    return 1 if path in SINGLE_BYTE_PATHS else 4


def watch_interval(path: str) -> int:
    return WATCH_INTERVALS_MS.get(path, DEFAULT_WATCH_INTERVAL_MS)


class PathRegistry:
    def __init__(
        self,
        dispatcher: LoraxDispatcher,
        *,
        name: str = "puffco",
        logger: logging.Logger | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._name = name
        self._logger = logger or _LOGGER
        self._lock = asyncio.Lock()
        self.limits = LoraxLimits()
        self.watch_map: dict[int, str] = {}
        self.path_watchers: dict[str, int] = {}

    def path_for(self, watch_id: int) -> Optional[str]:
        return self.watch_map.get(watch_id)

    def handle_for(self, path: str) -> Optional[int]:
        return self.path_watchers.get(path)

    def is_watched(self, path: str) -> bool:
        return path in self.path_watchers

    @property
    def watched_paths(self) -> list[str]:
        return list(self.path_watchers)

    # ---- short reads/writes ----
    async def read(self, path: str) -> LoraxReply:
        return await self._dispatcher.request(
            LoraxCommand.READ_SHORT, read_short_cmd(self.limits, path), path=path
        )

    async def write(self, path: str, data: bytes, padding: bool = True) -> LoraxReply:
        return await self._dispatcher.request(
            LoraxCommand.WRITE_SHORT, write_short_cmd(path, data, padding), path=path
        )

    # ---- lifecycle ----
    async def open(self, path: str) -> Optional[int]:
        reply = await self._dispatcher.request(LoraxCommand.OPEN, open_cmd(path), path=path)
        if reply.error or not reply.data:
            self._logger.warning("%s: Could not open %s", self._name, path)
            return None
        return reply.data[0]

    async def watch(
        self, path: str, interval_ms: int | None = None, length: int | None = None
    ) -> bool:
        """Open ``path`` and subscribe to it; an existing watch is closed first."""
        async with self._lock:
            if path in self.path_watchers:
                self._logger.debug("%s: %s already watched, closing first", self._name, path)
                await self._close_locked(path)

            handle = await self.open(path)
            if handle is None:
                return False

            interval_ms = interval_ms or watch_interval(path)
            length = length or watch_length(path)
            reply = await self._dispatcher.request(
                LoraxCommand.WATCH, watch_cmd(handle, interval_ms, length), path=path
            )
            if reply.error:
                self._logger.warning("%s: Watch rejected for %s", self._name, path)
                await self._dispatcher.request(
                    LoraxCommand.CLOSE, close_cmd(handle), path=path
                )
                return False

            self.watch_map[handle] = path
            self.path_watchers[path] = handle
            self._logger.debug(
                "%s: Watching %s (handle %s, every %sms)", self._name, path, handle, interval_ms
            )
            return True

    async def close(self, path: str) -> None:
        async with self._lock:
            await self._close_locked(path)

    async def _close_locked(self, path: str) -> bool:
        handle = self.path_watchers.pop(path, None)
        if handle is None:
            return False
        if self.watch_map.get(handle) == path:
            del self.watch_map[handle]
        reply = await self._dispatcher.request(LoraxCommand.CLOSE, close_cmd(handle), path=path)
        if reply.error:
            self._logger.debug("%s: Close of %s reported an error", self._name, path)
        return True

    async def unwatch(self, path: str) -> None:
        """Close the handle, then clear the firmware-side watch slot."""
        async with self._lock:
            if not await self._close_locked(path):
                return
            await self._dispatcher.request(LoraxCommand.WATCH, unwatch_cmd(), path=path)

    def clear(self) -> None:
        self.watch_map.clear()
        self.path_watchers.clear()


__all__ = ["PathRegistry", "watch_interval", "watch_length"]
