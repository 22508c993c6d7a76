# puffco_ble_control/device/poller.py
"""Periodic characteristic reads.

One Poller covers a group of characteristics sharing a base interval. Each
member is read once straight away and then on its own timer; members get an
increasing random offset so a group never reads in lockstep.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Sequence

from ..const import DEFAULT_POLL_MS, POLL_JITTER_MS

_LOGGER = logging.getLogger(__name__)

ReadFunc = Callable[[str], Awaitable[Optional[bytes]]]
DataFunc = Callable[[str, bytes], None]


class Poller:
    def __init__(
        self,
        key: str,
        characteristics: Sequence[str],
        read: ReadFunc,
        on_data: DataFunc,
        *,
        interval_ms: int = DEFAULT_POLL_MS,
        jitter_ms: tuple[int, int] = POLL_JITTER_MS,
        immediate: bool = True,
        rng: random.Random | None = None,
        name: str = "puffco",
        logger: logging.Logger | None = None,
    ) -> None:
        self.key = key
        self.characteristics = tuple(characteristics)
        self._read = read
        self._on_data = on_data
        self._interval_ms = interval_ms
        self._jitter_ms = jitter_ms
        self._immediate = immediate
        self._rng = rng or random.Random()
        self._name = name
        self._logger = logger or _LOGGER
        self._tasks: list[asyncio.Task] = []
        self._suspended = False
        self.intervals_ms: dict[str, int] = {}

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        interval = self._interval_ms
        for characteristic in self.characteristics:
            interval += self._rng.randrange(*self._jitter_ms)
            self.intervals_ms[characteristic] = interval
            self._tasks.append(asyncio.create_task(self._run(characteristic, interval)))

    def suspend(self) -> None:
        self._logger.debug("%s: Suspending poller %s", self._name, self.key)
        self._suspended = True

    def resume(self) -> None:
        self._logger.debug("%s: Resuming poller %s", self._name, self.key)
        self._suspended = False

    def stop(self) -> None:
        if self._tasks:
            self._logger.debug("%s: Stopping poller %s", self._name, self.key)
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    async def _run(self, characteristic: str, interval_ms: int) -> None:
        if self._immediate:
            await self._tick(characteristic)
        while True:
            await asyncio.sleep(interval_ms / 1000)
            if self._suspended:
                continue
            await self._tick(characteristic)

    async def _tick(self, characteristic: str) -> None:
        try:
            data = await self._read(characteristic)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.debug(
                "%s: Poll read of %s failed", self._name, characteristic, exc_info=True
            )
            return
        if data is None:
            return
        try:
            self._on_data(characteristic, data)
        except Exception:
            self._logger.debug("%s: poll callback raised", self._name, exc_info=True)


__all__ = ["Poller"]
