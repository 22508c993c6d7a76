# puffco_ble_control/device/watchdog.py
"""Re-watch a Lorax path whose events silently stopped.

Firmware occasionally drops a watch without any disconnect. The session
feeds the watchdog on every event for the path; if nothing arrived for
twice the watch interval the path is unwatched and watched again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from ..const import REPAIR_DELAY_SECONDS

_LOGGER = logging.getLogger(__name__)


class DeviationWatchdog:
    def __init__(
        self,
        path: str,
        interval_ms: int,
        unwatch: Callable[[str], Awaitable[None]],
        rewatch: Callable[[str], Awaitable[object]],
        *,
        repair_delay: float = REPAIR_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "puffco",
        logger: logging.Logger | None = None,
    ) -> None:
        self.path = path
        self.interval = interval_ms / 1000
        self._unwatch = unwatch
        self._rewatch = rewatch
        self._repair_delay = repair_delay
        self._clock = clock
        self._name = name
        self._logger = logger or _LOGGER
        self._task: asyncio.Task | None = None
        self.last_update = clock()
        self.repairs = 0

    def feed(self) -> None:
        self.last_update = self._clock()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self.feed()
            self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.warning(
                    "%s: Watch repair of %s failed", self._name, self.path, exc_info=True
                )

    async def check(self) -> bool:
        """Repair once if overdue; returns whether a repair ran."""
        overdue = self._clock() - self.last_update
        if overdue <= 2 * self.interval:
            return False

        self.repairs += 1
        self._logger.info(
            "%s: No update on %s for %.1fs, re-watching", self._name, self.path, overdue
        )
        # Counts as fresh so the next tick gives the new watch a full window.
        self.feed()
        try:
            await asyncio.wait_for(self._unwatch(self.path), self._repair_delay or None)
        except asyncio.TimeoutError:
            self._logger.debug("%s: Unwatch of %s timed out", self._name, self.path)
        await asyncio.sleep(self._repair_delay)
        await self._rewatch(self.path)
        self.feed()
        return True


__all__ = ["DeviationWatchdog"]
