"""
Interval Scheduler

ScheduledLoop fires an async callback on wall-clock interval boundaries,
so periodic reconciliation (sync, audit) does not drift with callback
duration. Intervals missed by a slow callback are skipped, not queued.

Usage:
    async def sync():
        ...

    group = SchedulerGroup()
    group.add("sync", 30.0, sync, run_immediately=True)
    await group.start_all()
"""

import asyncio
import time
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")


class ScheduledLoop:
    """Runs one callback every `interval` seconds in a background task"""

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
        run_immediately: bool = False,
    ):
        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.run_immediately = run_immediately

        self._running = False
        self._task: asyncio.Task | None = None

        self._execution_count = 0
        self._error_count = 0
        self._skipped_count = 0
        self._last_duration = 0.0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def execution_count(self) -> int:
        return self._execution_count

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop and wait for the task to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def _first_boundary(self) -> float:
        now = time.time()
        if self.run_immediately:
            return now
        return ((now // self.interval) + 1) * self.interval

    async def _run(self) -> None:
        next_run = self._first_boundary()

        while self._running:
            delay = next_run - time.time()
            if delay > 0:
                await asyncio.sleep(delay)

            started = time.time()
            try:
                await self.callback()
                self._execution_count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._error_count += 1
                logger.error(f"Scheduled callback '{self.name}' error: {e}", exc_info=True)
            self._last_duration = time.time() - started

            next_run += self.interval
            missed = 0
            now = time.time()
            while next_run <= now:
                next_run += self.interval
                missed += 1

            if missed:
                self._skipped_count += missed
                logger.warning(
                    f"Loop '{self.name}' skipped {missed} interval(s), "
                    f"callback took {self._last_duration:.3f}s"
                )

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "interval_s": self.interval,
            "running": self._running,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "skipped_count": self._skipped_count,
            "last_duration_s": round(self._last_duration, 3),
        }


class SchedulerGroup:
    """Named set of loops started and stopped together"""

    def __init__(self):
        self._loops: dict[str, ScheduledLoop] = {}

    def add(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        run_immediately: bool = False,
    ) -> ScheduledLoop:
        loop = ScheduledLoop(interval_seconds, callback, name, run_immediately)
        self._loops[name] = loop
        return loop

    def get(self, name: str) -> ScheduledLoop | None:
        return self._loops.get(name)

    async def start_all(self) -> None:
        for loop in self._loops.values():
            await loop.start()

    async def stop_all(self) -> None:
        for loop in self._loops.values():
            await loop.stop()

    def get_stats(self) -> dict:
        return {name: loop.get_stats() for name, loop in self._loops.items()}
