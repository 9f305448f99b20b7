"""
Clock Utilities

The device runtime keeps every due-time and last-write timestamp in
milliseconds on a monotonic clock, so wall clock jumps (NTP sync after
boot) never fire or starve a poll. Components accept a `clock` callable
so tests can drive time by hand.
"""

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], float]


def monotonic_ms() -> float:
    """Milliseconds on the process monotonic clock."""
    return time.monotonic() * 1000.0


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ManualClock:
    """
    Hand-driven millisecond clock.

    Usage:
        clock = ManualClock()
        runtime = DeviceRuntime(..., clock=clock)
        clock.advance(1000)
    """

    def __init__(self, start_ms: float = 0.0):
        self.now_ms = float(start_ms)

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, delta_ms: float) -> float:
        self.now_ms += delta_ms
        return self.now_ms

    def set(self, now_ms: float) -> None:
        self.now_ms = float(now_ms)
