"""Poll scheduler - one recurring cycle with a countdown.

- exactly one timer task per scheduler
- run_now() (manual refresh) waits behind an in-flight cycle instead of
  racing it, then resets the countdown
- a timer cycle that waited behind a manual one re-checks the countdown
  and is dropped if it was reset
- stop() cancels the timer task and waits for it
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger("triage.scheduler")

T = TypeVar("T")


class PollScheduler(Generic[T]):

    def __init__(
        self,
        cycle: Callable[[str], Awaitable[T]],
        interval: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cycle = cycle
        self.interval = interval
        self._clock = clock
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._deadline: float | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def seconds_left(self) -> int:
        if self._deadline is None:
            return int(self.interval)
        return max(0, math.ceil(self._deadline - self._clock()))

    def start(self) -> None:
        if self.running:
            logger.debug("PollScheduler already running - start() ignored")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="triage_poll_scheduler")
        logger.info("PollScheduler started (every %ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._deadline = None
        logger.info("PollScheduler stopped")

    def _due(self) -> bool:
        return self._deadline is None or self._deadline - self._clock() <= 0

    async def run_now(self, trigger: str = "manual") -> T:
        """Run one cycle, serialized with any other cycle, and reset the countdown."""
        async with self._lock:
            return await self._run_locked(trigger)

    async def _run_locked(self, trigger: str) -> T:
        try:
            return await self._cycle(trigger)
        finally:
            self._deadline = self._clock() + self.interval
            self._wake.set()

    async def _tick(self) -> None:
        async with self._lock:
            # a manual run may have reset the countdown while we waited
            if not self._due():
                logger.debug("Timer cycle skipped: countdown was reset")
                return
            await self._run_locked("timer")

    async def _loop(self) -> None:
        while self._running:
            if self._due():
                try:
                    await self._tick()
                except Exception as exc:
                    logger.error("PollScheduler cycle error: %s", exc, exc_info=True)
                continue

            self._wake.clear()
            try:
                await asyncio.wait_for(
                    self._wake.wait(), timeout=self._deadline - self._clock(),
                )
            except asyncio.TimeoutError:
                pass
