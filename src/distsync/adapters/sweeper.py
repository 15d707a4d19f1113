"""Background task that reclaims storage held by expired records."""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Awaitable, Callable, Optional

from distsync.utils.logging import get_logger


class ExpirySweeper:
    """Periodically calls ``purge``; owned by exactly one adapter or store.

    Every read path checks expiry on its own, so a stopped or failing sweep
    only delays reclamation.
    """

    def __init__(
        self,
        purge: Callable[[], Awaitable[int]],
        *,
        interval: dt.timedelta,
        name: str,
    ) -> None:
        if interval.total_seconds() <= 0:
            raise ValueError("Sweep interval must be positive")
        self._purge = purge
        self._interval = interval
        self._name = name
        self.logger = get_logger(name)
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self.logger.debug("Starting expiry sweep every %.3fs", self._interval.total_seconds())
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"{self._name}-sweeper")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None

    async def sweep_once(self) -> int:
        removed = await self._purge()
        if removed:
            self.logger.debug("Purged %d expired records", removed)
        return removed

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.warning("Expiry sweep failed: %s", exc)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval.total_seconds())
            except asyncio.TimeoutError:
                continue
