"""
Modbus Bus Registry

Reference-counted registry of physical Modbus links, owned by the runtime
context. The first device addressing a given serial port/baud/parity/
bytesize/stopbits/framer (or TCP host:port) opens the link, later devices
reuse it, and the link closes when the last device releases it.

Every request on a link holds the handle's lock. asyncio.Lock wakes
waiters in FIFO order, so concurrent devices are served in arrival order
and never interleave request/response pairs on the wire.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ...common.logging_setup import get_service_logger
from .client import LinkSettings, ModbusLink

logger = get_service_logger("device.bus")


@dataclass
class BusHandle:
    """A shared link with its serialization lock"""
    key: str
    link: ModbusLink
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refcount: int = 0
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    request_count: int = 0


class BusRegistry:
    """
    Shared Modbus links keyed by their physical identity.

    Usage:
        handle = registry.acquire(settings)
        async with handle.lock:
            await handle.link.read(3, 0, 2, unit_id=1)
        registry.release(handle)
    """

    def __init__(self, link_factory=ModbusLink):
        self._handles: dict[str, BusHandle] = {}
        self._link_factory = link_factory

    def acquire(self, settings: LinkSettings) -> BusHandle:
        """Get (or open) the handle for `settings` and take a reference."""
        key = settings.key
        handle = self._handles.get(key)
        if handle is None:
            handle = BusHandle(key=key, link=self._link_factory(settings))
            self._handles[key] = handle
            logger.debug(f"Created bus handle {key}")
        handle.refcount += 1
        return handle

    def release(self, handle: BusHandle) -> None:
        """Drop a reference; the last one closes the link."""
        current = self._handles.get(handle.key)
        if current is not handle:
            return
        handle.refcount -= 1
        if handle.refcount <= 0:
            del self._handles[handle.key]
            handle.link.close()
            logger.debug(f"Closed bus handle {handle.key}")

    def reset_link(self, handle: BusHandle) -> None:
        """Close the physical link but keep the handle and its references.

        The next request reconnects from a clean state.
        """
        handle.link.close()

    def close_all(self) -> None:
        for handle in list(self._handles.values()):
            handle.link.close()
        self._handles.clear()

    def refcount(self, key: str) -> int:
        handle = self._handles.get(key)
        return handle.refcount if handle else 0

    def __len__(self) -> int:
        return len(self._handles)

    def get_stats(self) -> dict:
        return {
            key: {
                "refcount": handle.refcount,
                "connected": handle.link.is_connected,
                "requests": handle.request_count,
                "opened_at": handle.opened_at.isoformat(),
            }
            for key, handle in self._handles.items()
        }
