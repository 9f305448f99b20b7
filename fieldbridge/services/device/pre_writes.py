"""
Pre-Write Rules

Some devices need a preparatory write before they accept a command, for
example switching a control mode before taking a power setpoint. Rules
are keyed by trigger data point id (case-insensitive); the steps of every
matching rule run in declaration order before the triggering write.

Each rule has its own cooldown. A rule inside its cooldown is skipped,
but the triggering write still goes ahead.
"""

from ...common.hints import PreWriteRule
from ...common.timestamp import Clock, monotonic_ms


class PreWriteManager:
    """Tracks pre-write rules and their cooldowns for one device"""

    def __init__(self, rules: tuple[PreWriteRule, ...] = (), clock: Clock = monotonic_ms):
        self.rules = tuple(rules)
        self._clock = clock
        # rule index -> last time its steps were executed or queued
        self._last_fired: dict[int, float] = {}

    def __bool__(self) -> bool:
        return bool(self.rules)

    def matching(self, dp_id: str) -> list[tuple[int, PreWriteRule]]:
        key = dp_id.lower()
        return [
            (index, rule)
            for index, rule in enumerate(self.rules)
            if rule.trigger_id.lower() == key
        ]

    def due(self, dp_id: str, now: float | None = None) -> list[tuple[int, PreWriteRule]]:
        """Matching rules that are outside their cooldown."""
        now = self._clock() if now is None else now
        due = []
        for index, rule in self.matching(dp_id):
            last = self._last_fired.get(index)
            if rule.cooldown_ms and last is not None and now - last < rule.cooldown_ms:
                continue
            due.append((index, rule))
        return due

    def mark_fired(self, index: int, now: float | None = None) -> None:
        self._last_fired[index] = self._clock() if now is None else now

    def reset(self, index: int) -> None:
        """Give a rule its cooldown back, e.g. after its steps were dropped."""
        self._last_fired.pop(index, None)

    def clear(self) -> None:
        self._last_fired.clear()
