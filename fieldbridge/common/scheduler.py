"""
Fixed-Period Scheduler

ScheduledLoop runs an async callback on a fixed grid anchored at its first
run. The callback's own execution time does not push the grid back, and
ticks that were missed while the callback ran are dropped rather than
replayed. Each device runs its write-drain, command-cadence and watchdog
ticks on these loops; polling uses its own due-time scheduler.

Usage:
    loop = ScheduledLoop(1.0, runtime.drain_once, name="inv1.drain", start_delay_seconds=0)
    await loop.start()
    ...
    loop.stop()
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")

Tick = Callable[[], Awaitable[None]]


@dataclass
class LoopStats:
    """Timing counters of one loop, all in seconds unless noted"""
    executions: int = 0
    failures: int = 0
    skipped: int = 0
    lateness_total: float = 0.0
    last_lateness_ms: float = 0.0
    last_duration: float = 0.0

    def as_dict(self) -> dict:
        return {
            "execution_count": self.executions,
            "failure_count": self.failures,
            "skipped_count": self.skipped,
            "drift_total_s": round(self.lateness_total, 3),
            "drift_last_ms": round(self.last_lateness_ms, 1),
            "last_execution_s": round(self.last_duration, 3),
        }


class ScheduledLoop:
    """
    Periodic async callback on a drift-free grid.

    Attributes:
        interval: Seconds between ticks
        callback: Coroutine function run on every tick
        start_delay: Seconds from start() to the first tick
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Tick,
        name: str = "unnamed",
        start_delay_seconds: float | None = None,
    ):
        """
        Args:
            interval_seconds: Time between ticks (sub-second is fine)
            callback: Coroutine function to run each tick
            name: Used in logs, stats and the task name
            start_delay_seconds: Delay before the first tick; one full
                interval when omitted
        """
        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        if start_delay_seconds is None:
            self.start_delay = interval_seconds
        else:
            self.start_delay = max(0.0, start_delay_seconds)

        self.stats = LoopStats()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def execution_count(self) -> int:
        return self.stats.executions

    @property
    def skipped_count(self) -> int:
        return self.stats.skipped

    async def start(self) -> None:
        """Spawn the loop task; a second call is a no-op."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"loop:{self.name}")

    def stop(self) -> None:
        """Cancel the loop task. Safe to call repeatedly."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()

    async def _run(self) -> None:
        clock = asyncio.get_running_loop().time
        due = clock() + self.start_delay
        try:
            while True:
                delay = due - clock()
                if delay > 0:
                    await asyncio.sleep(delay)
                await self._tick(clock() - due, clock)
                due = self._next_due(due, clock())
        except asyncio.CancelledError:
            pass

    async def _tick(self, lateness: float, clock: Callable[[], float]) -> None:
        self.stats.lateness_total += max(0.0, lateness)
        self.stats.last_lateness_ms = lateness * 1000
        started = clock()
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.failures += 1
            logger.error(f"Scheduled callback '{self.name}' error: {e}")
        else:
            self.stats.executions += 1
        self.stats.last_duration = clock() - started

    def _next_due(self, due: float, now: float) -> float:
        """First grid point after `now`; grid points already passed are dropped."""
        passed = 0
        while due <= now:
            due += self.interval
            passed += 1
        if passed > 1:
            self.stats.skipped += passed - 1
            logger.debug(
                f"Loop '{self.name}' dropped {passed - 1} ticks "
                f"(callback took {self.stats.last_duration:.3f}s)"
            )
        return due

    def get_stats(self) -> dict:
        return {"name": self.name, "interval_s": self.interval, **self.stats.as_dict()}


class SchedulerGroup:
    """The named loops of one device, started and stopped together"""

    def __init__(self):
        self._loops: dict[str, ScheduledLoop] = {}

    def add(
        self,
        name: str,
        interval_seconds: float,
        callback: Tick,
        start_delay_seconds: float | None = None,
    ) -> ScheduledLoop:
        loop = ScheduledLoop(interval_seconds, callback, name, start_delay_seconds)
        previous = self._loops.get(name)
        if previous is not None:
            previous.stop()
        self._loops[name] = loop
        return loop

    async def start_all(self) -> None:
        for loop in self._loops.values():
            await loop.start()

    def stop_all(self) -> None:
        for loop in self._loops.values():
            loop.stop()

    def clear(self) -> None:
        """Stop every loop and forget it."""
        self.stop_all()
        self._loops.clear()

    def get(self, name: str) -> ScheduledLoop | None:
        return self._loops.get(name)

    def get_stats(self) -> dict:
        return {name: loop.get_stats() for name, loop in self._loops.items()}

    def __len__(self) -> int:
        return len(self._loops)
