"""
Poll Scheduler

Decides when a device is read and which tier is due.

Two tiers:
- FAST reads the fast subset (or every readable data point when no slow
  tier is configured)
- SLOW reads every readable data point

The slow tier is active only when the template sets both a slow interval
and a non-empty fast id list. When both tiers are due, SLOW wins. Next
due times are measured from when a poll completes, not when it was due,
so a slow device is never asked to catch up in a burst:

- after a SLOW poll both next_fast and next_slow are rescheduled
- after a FAST poll only next_fast is rescheduled
"""

from dataclasses import dataclass, field
from enum import Enum

from ...common.config import DeviceConfig, GatewayConfig, Template
from ...common.timestamp import Clock, monotonic_ms

MIN_POLL_INTERVAL_MS = 250


class SchedulerMode(str, Enum):
    FREE_RUNNING = "free_running"
    COMMAND_CADENCE = "command_cadence"


class PollKind(str, Enum):
    FAST = "fast"
    SLOW = "slow"


@dataclass
class ScheduleState:
    """Mutable per-device scheduling state; reset on every start()"""
    next_fast_at: float | None = None
    next_slow_at: float | None = None
    connected: bool = False
    last_error: str = ""
    watchdog_counter: int = 0
    # dp id -> monotonic ms of the last user/queued write request
    last_write_at: dict[str, float] = field(default_factory=dict)


def resolve_fast_interval(device: DeviceConfig, template: Template, gateway: GatewayConfig) -> int:
    """Device override, then template hint, then gateway default; never below 250 ms."""
    interval = (
        device.poll_interval_ms
        or template.driver_hints.poll.fast_interval_ms
        or gateway.poll_interval_ms
    )
    return max(MIN_POLL_INTERVAL_MS, int(interval))


def resolve_mode(template: Template) -> SchedulerMode:
    if template.driver_hints.command_cadence:
        return SchedulerMode.COMMAND_CADENCE
    return SchedulerMode.FREE_RUNNING


class PollScheduler:
    """Due-time bookkeeping for the fast and slow poll tiers"""

    def __init__(
        self,
        fast_interval_ms: int,
        slow_interval_ms: int | None = None,
        state: ScheduleState | None = None,
        clock: Clock = monotonic_ms,
    ):
        self.fast_interval_ms = max(MIN_POLL_INTERVAL_MS, fast_interval_ms)
        self.slow_interval_ms = slow_interval_ms
        self.state = state if state is not None else ScheduleState()
        self._clock = clock

    @property
    def slow_tier(self) -> bool:
        return bool(self.slow_interval_ms)

    def start(self, now: float | None = None) -> None:
        """Make the first poll due immediately."""
        now = self._clock() if now is None else now
        self.state.next_fast_at = now
        self.state.next_slow_at = now if self.slow_tier else None

    def reset(self) -> None:
        self.state.next_fast_at = None
        self.state.next_slow_at = None

    def due(self, now: float | None = None) -> PollKind | None:
        """Which tier should run now, if any."""
        now = self._clock() if now is None else now
        if self.state.next_slow_at is not None and now >= self.state.next_slow_at:
            return PollKind.SLOW
        if self.state.next_fast_at is not None and now >= self.state.next_fast_at:
            return PollKind.FAST
        return None

    def completed(self, kind: PollKind, now: float | None = None) -> None:
        now = self._clock() if now is None else now
        self.state.next_fast_at = now + self.fast_interval_ms
        if kind is PollKind.SLOW and self.slow_tier:
            self.state.next_slow_at = now + self.slow_interval_ms

    def delay_ms(self, now: float | None = None) -> float:
        """Milliseconds until the next tier is due (0 if one is due now)."""
        now = self._clock() if now is None else now
        candidates = [
            t for t in (self.state.next_fast_at, self.state.next_slow_at) if t is not None
        ]
        if not candidates:
            return float(self.fast_interval_ms)
        return max(0.0, min(candidates) - now)
