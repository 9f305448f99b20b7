"""
Watchdog

Keep-alive counter written to device registers that drop to a safe state
when the counter stops changing. The counter ramps from sequence_min to
sequence_max and wraps back to sequence_min.

Optional parts:
- Activation: with an activation window configured, a target is only fed
  while one of its activation ids was written within the window. Idle
  devices are then allowed to fall back to their own defaults.
- Fail-safe: when every trigger id has been silent for longer than
  silence_ms, write a disable value once. The rule re-arms on the next
  trigger write.
"""

from dataclasses import dataclass

from ...common.config import DatapointDef, Template
from ...common.hints import WatchdogHints, WatchdogTarget
from ...common.logging_setup import get_service_logger
from .poll_scheduler import ScheduleState

logger = get_service_logger("device.watchdog")


@dataclass(frozen=True)
class ResolvedTarget:
    datapoint: DatapointDef
    activation_ids: tuple[str, ...]


class Watchdog:
    """Counter ramp, activation window and fail-safe for one device"""

    def __init__(self, hints: WatchdogHints, template: Template, state: ScheduleState):
        self.hints = hints
        self.state = state
        self.targets: list[ResolvedTarget] = []
        for target in hints.targets:
            resolved = self._resolve(target, template)
            if resolved is not None:
                self.targets.append(resolved)

        self.fail_safe = hints.fail_safe
        self.fail_safe_target: DatapointDef | None = None
        if self.fail_safe is not None:
            dp = template.get_datapoint(self.fail_safe.target_id)
            if dp is None or not dp.writable:
                logger.warning(
                    f"Template {template.id}: fail-safe target {self.fail_safe.target_id} "
                    f"is missing or not writable, fail-safe disabled"
                )
                self.fail_safe = None
            else:
                self.fail_safe_target = dp
        self._fail_safe_fired_at: float | None = None
        self.reset()

    def _resolve(self, target: WatchdogTarget, template: Template) -> ResolvedTarget | None:
        dp = template.get_datapoint(target.dp_id)
        if dp is None or not dp.writable:
            logger.warning(
                f"Template {template.id}: watchdog target {target.dp_id} "
                f"is missing or not writable, skipped"
            )
            return None
        return ResolvedTarget(
            datapoint=dp,
            activation_ids=target.activation_ids or self.hints.activation_ids,
        )

    @property
    def has_work(self) -> bool:
        return bool(self.targets) or self.fail_safe is not None

    @property
    def period_ms(self) -> int:
        return self.hints.period_ms

    @property
    def start_delay_ms(self) -> int:
        return self.hints.start_delay_ms

    def reset(self) -> None:
        # One below the minimum so the first tick writes sequence_min
        self.state.watchdog_counter = self.hints.sequence_min - 1
        self._fail_safe_fired_at = None

    def advance(self) -> int:
        """Step the ramp and return the value to write."""
        value = self.state.watchdog_counter + 1
        if value > self.hints.sequence_max or value < self.hints.sequence_min:
            value = self.hints.sequence_min
        self.state.watchdog_counter = value
        return value

    def _recently_written(self, ids: tuple[str, ...], now: float) -> bool:
        window = self.hints.activation_window_ms
        for dp_id in ids:
            written = self.state.last_write_at.get(dp_id)
            if written is not None and now - written <= window:
                return True
        return False

    def active_targets(self, now: float) -> list[DatapointDef]:
        """Targets to feed on this tick."""
        if not self.hints.activation_window_ms:
            return [t.datapoint for t in self.targets]
        return [
            t.datapoint
            for t in self.targets
            if not t.activation_ids or self._recently_written(t.activation_ids, now)
        ]

    def fail_safe_due(self, now: float) -> bool:
        if self.fail_safe is None:
            return False
        written = [
            self.state.last_write_at[dp_id]
            for dp_id in self.fail_safe.trigger_ids
            if dp_id in self.state.last_write_at
        ]
        if not written:
            return False
        last_trigger = max(written)
        if self._fail_safe_fired_at is not None and last_trigger <= self._fail_safe_fired_at:
            return False
        return now - last_trigger > self.fail_safe.silence_ms

    def mark_fail_safe_fired(self, now: float) -> None:
        self._fail_safe_fired_at = now
