"""
Driver Contract

One Driver instance per device, selected by protocol name. The device
runtime is the only caller and never calls a driver concurrently with
itself.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable

from ..common.config import DatapointDef, DeviceConfig, Template

if TYPE_CHECKING:
    from ..services.device.context import RuntimeContext

# Push-based drivers deliver {dp_id: value} through this callback
ValueListener = Callable[[dict[str, Any]], Awaitable[None]]


class Driver(ABC):
    """
    Protocol driver.

    Polled drivers (the default) are read by the scheduler on its own
    cadence. Event-stream drivers set `polled = False`: they are connected
    once and push values through the listener installed by the runtime.
    """

    polled: bool = True

    def __init__(self, device: DeviceConfig, template: Template, context: "RuntimeContext"):
        self.device = device
        self.template = template
        self.context = context
        self._listener: ValueListener | None = None

    def set_listener(self, listener: ValueListener | None) -> None:
        self._listener = listener

    async def emit(self, values: dict[str, Any]) -> None:
        """Hand pushed values to the runtime (event-stream drivers)."""
        if self._listener is not None and values:
            await self._listener(values)

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self, datapoints: Iterable[DatapointDef]) -> None:
        """Establish transport, optionally subscribe to event streams. Idempotent."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release transport. Must not raise, even if never connected."""

    @abstractmethod
    async def read_datapoints(self, datapoints: Iterable[DatapointDef]) -> dict[str, Any]:
        """Read a set of data points.

        Absent ids mean "value unavailable this cycle"; that is never an
        error by itself.
        """

    @abstractmethod
    async def write_datapoint(self, dp: DatapointDef, value: Any) -> None:
        """Write one data point.

        Raises a typed DeviceError on protocol rejection or transport loss.
        """
