"""
Device Service - Field Device Communication

Responsibilities:
- Poll each device on its fast/slow schedule and publish data points
- Derive alias values (grid state, SOC, power limits, ...) from raw points
- Apply inbound writes, optionally throttled through a coalescing queue
- Run template pre-writes and the keep-alive watchdog
- Report connectivity and errors with troubleshooting hints
"""

from .context import RuntimeContext
from .runtime import DeviceRuntime
from .service import DeviceService

__all__ = ["DeviceRuntime", "DeviceService", "RuntimeContext"]
