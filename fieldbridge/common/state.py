"""
State Store

The gateway mirrors every data point and alias into an external state
store and accepts unacknowledged writes back from it. StateStore is the
contract the device runtime consumes; MemoryStateStore is the bundled
in-process implementation used by the service and the tests.

Paths are dotted strings:
    devices.<id>.<dpId>
    devices.<id>.aliases.<aliasPath>
    devices.<id>.info.connection
    devices.<id>.info.lastError
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from .timestamp import utc_now_iso


@dataclass
class StateValue:
    value: Any
    ack: bool
    updated_at: str = field(default_factory=utc_now_iso)


@dataclass(frozen=True)
class InboundWrite:
    """A write from a user or automation that the device must apply."""
    path: str
    value: Any


def device_path(device_id: str, *parts: str) -> str:
    return ".".join(("devices", device_id) + parts)


class StateStore(ABC):
    """External state store contract"""

    @abstractmethod
    async def ensure_object(self, path: str, metadata: dict[str, Any]) -> None:
        """Create the object at `path` if it does not exist yet."""

    @abstractmethod
    async def set_state(self, path: str, value: Any, ack: bool = True) -> None:
        """Publish a value. ack=True marks it as confirmed by the device."""

    @abstractmethod
    def subscribe(self, prefix: str) -> None:
        """Deliver inbound writes below `prefix`."""

    @abstractmethod
    def inbound_writes(self) -> AsyncIterator[InboundWrite]:
        """Stream of unacknowledged writes for subscribed prefixes."""


class MemoryStateStore(StateStore):
    """
    In-process state store.

    Values live in a dict guarded by a threading.Lock so the health server
    and tests can read snapshots at any time. Inbound writes are queued on
    an asyncio.Queue and consumed by the device service.
    """

    def __init__(self):
        self._objects: dict[str, dict[str, Any]] = {}
        self._states: dict[str, StateValue] = {}
        self._prefixes: list[str] = []
        self._lock = threading.Lock()
        self._inbound: asyncio.Queue[InboundWrite] | None = None

    def _queue(self) -> asyncio.Queue:
        if self._inbound is None:
            self._inbound = asyncio.Queue()
        return self._inbound

    async def ensure_object(self, path: str, metadata: dict[str, Any]) -> None:
        with self._lock:
            self._objects.setdefault(path, dict(metadata))

    async def set_state(self, path: str, value: Any, ack: bool = True) -> None:
        with self._lock:
            self._states[path] = StateValue(value=value, ack=ack)

    def subscribe(self, prefix: str) -> None:
        with self._lock:
            if prefix not in self._prefixes:
                self._prefixes.append(prefix)

    def _subscribed(self, path: str) -> bool:
        return any(path == p or path.startswith(p + ".") for p in self._prefixes)

    def write(self, path: str, value: Any) -> bool:
        """Inject a user write (ack=False).

        Returns True if a subscriber will see it.
        """
        with self._lock:
            self._states[path] = StateValue(value=value, ack=False)
            subscribed = self._subscribed(path)
        if subscribed:
            self._queue().put_nowait(InboundWrite(path=path, value=value))
        return subscribed

    async def inbound_writes(self) -> AsyncIterator[InboundWrite]:
        queue = self._queue()
        while True:
            yield await queue.get()

    def pending_writes(self) -> int:
        return self._queue().qsize()

    def get_state(self, path: str) -> StateValue | None:
        with self._lock:
            return self._states.get(path)

    def get_value(self, path: str, default: Any = None) -> Any:
        state = self.get_state(path)
        return default if state is None else state.value

    def get_object(self, path: str) -> dict[str, Any] | None:
        with self._lock:
            obj = self._objects.get(path)
            return dict(obj) if obj is not None else None

    def snapshot(self, prefix: str = "") -> dict[str, Any]:
        """Values below `prefix` as a flat {path: value} dict."""
        with self._lock:
            return {
                path: state.value
                for path, state in self._states.items()
                if not prefix or path == prefix or path.startswith(prefix + ".")
            }
