"""
Write Queue

Per-device coalescing buffer of pending writes, used when a template
throttles writes or runs in command-cadence mode.

- At most one live entry per data point id. A newer write for the same id
  replaces the value, accumulates acknowledgement paths and keeps the
  entry's place in line.
- Drain order: pre-write entries first, then first-registered order.
- An entry that requires pre-writes waits until none of them is queued.
  A requirement that would make two entries wait on each other is dropped.
- A failed entry goes back to the head of the line. After `max_attempts`
  failures it is dropped together with every entry that requires it.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from ...common.hints import DEFAULT_WRITE_MAX_ATTEMPTS


@dataclass
class WriteQueueEntry:
    dp_id: str
    value: Any
    # state path -> user-supplied value to acknowledge once applied
    acks: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    pre_write: bool = False
    # data point ids of pre-writes that must be applied first
    requires: set[str] = field(default_factory=set)
    # indices of the pre-write rules this entry belongs to
    rules: set[int] = field(default_factory=set)


class WriteQueue:
    """Coalescing write queue for one device"""

    def __init__(self, max_per_tick: int = 1, max_attempts: int = DEFAULT_WRITE_MAX_ATTEMPTS):
        self.max_per_tick = max(1, max_per_tick)
        self.max_attempts = max(1, max_attempts)
        self._entries: OrderedDict[str, WriteQueueEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, dp_id: str) -> bool:
        return dp_id in self._entries

    def get(self, dp_id: str) -> WriteQueueEntry | None:
        return self._entries.get(dp_id)

    def ids(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def enqueue(
        self,
        dp_id: str,
        value: Any,
        acks: dict[str, Any] | None = None,
        pre_write: bool = False,
        requires: set[str] | None = None,
        rule: int | None = None,
    ) -> WriteQueueEntry:
        """Add a write, or coalesce it into the live entry for `dp_id`."""
        entry = self._entries.get(dp_id)
        if entry is None:
            entry = WriteQueueEntry(dp_id=dp_id, value=value)
            self._entries[dp_id] = entry
        else:
            entry.value = value
            entry.attempts = 0
        entry.acks.update(acks or {})
        entry.pre_write = entry.pre_write or pre_write
        entry.requires.update(
            r for r in (requires or ())
            if r != dp_id and not self._depends_on(r, dp_id)
        )
        if rule is not None:
            entry.rules.add(rule)
        return entry

    def _depends_on(self, dp_id: str, target: str) -> bool:
        """True if the queued entry for `dp_id` waits on `target`, directly or not."""
        seen: set[str] = set()
        pending = [dp_id]
        while pending:
            current = pending.pop()
            entry = self._entries.get(current)
            if entry is None or current in seen:
                continue
            seen.add(current)
            if target in entry.requires:
                return True
            pending.extend(entry.requires)
        return False

    def _ready(self, entry: WriteQueueEntry) -> bool:
        return not any(dep in self._entries for dep in entry.requires)

    def pop_next(self) -> WriteQueueEntry | None:
        """Remove and return the next entry to apply, or None."""
        chosen = None
        for entry in self._entries.values():
            if entry.pre_write and self._ready(entry):
                chosen = entry
                break
        if chosen is None:
            for entry in self._entries.values():
                if self._ready(entry):
                    chosen = entry
                    break
        if chosen is not None:
            del self._entries[chosen.dp_id]
        return chosen

    def fail(self, entry: WriteQueueEntry) -> list[WriteQueueEntry]:
        """Record a failed attempt for a popped entry.

        Returns the entries dropped as a result (the entry itself and its
        dependents once attempts are exhausted), or an empty list if the
        entry was requeued or superseded by a newer write.
        """
        entry.attempts += 1
        newer = self._entries.get(entry.dp_id)
        if newer is not None:
            # A newer value arrived while this one was in flight
            for path, value in entry.acks.items():
                newer.acks.setdefault(path, value)
            newer.pre_write = newer.pre_write or entry.pre_write
            newer.rules.update(entry.rules)
            return []

        if entry.attempts >= self.max_attempts:
            return [entry] + self._drop_dependents(entry.dp_id)

        self._entries[entry.dp_id] = entry
        self._entries.move_to_end(entry.dp_id, last=False)
        return []

    def discard(self, entry: WriteQueueEntry) -> list[WriteQueueEntry]:
        """Drop a popped entry without retrying, along with its dependents."""
        return [entry] + self._drop_dependents(entry.dp_id)

    def _drop_dependents(self, dp_id: str) -> list[WriteQueueEntry]:
        dropped: list[WriteQueueEntry] = []
        pending = [dp_id]
        while pending:
            current = pending.pop()
            for entry in list(self._entries.values()):
                if current in entry.requires:
                    del self._entries[entry.dp_id]
                    dropped.append(entry)
                    pending.append(entry.dp_id)
        return dropped

    def snapshot(self) -> list[dict]:
        return [
            {
                "dp_id": e.dp_id,
                "value": e.value,
                "attempts": e.attempts,
                "pre_write": e.pre_write,
                "requires": sorted(e.requires),
            }
            for e in self._entries.values()
        ]
