"""
Drivers

Driver contract plus the protocol -> factory registry. The Modbus driver
(TCP, RTU and ASCII framing) is built in; other protocols are plugged in
by registering a factory on the runtime context's registry.
"""

from typing import TYPE_CHECKING, Callable

from ..common.config import DeviceConfig, Protocol, Template
from ..common.exceptions import ConfigError
from .base import Driver, ValueListener

if TYPE_CHECKING:
    from ..services.device.context import RuntimeContext

DriverFactory = Callable[[DeviceConfig, Template, "RuntimeContext"], Driver]


class DriverRegistry:
    """Maps a protocol to the factory that builds its driver"""

    def __init__(self):
        self._factories: dict[Protocol, DriverFactory] = {}

    def register_driver(self, protocol: Protocol | str, factory: DriverFactory) -> None:
        self._factories[Protocol(protocol)] = factory

    def supports(self, protocol: Protocol | str) -> bool:
        try:
            return Protocol(protocol) in self._factories
        except ValueError:
            return False

    def create_driver(
        self,
        device: DeviceConfig,
        template: Template,
        context: "RuntimeContext",
    ) -> Driver:
        """Build the driver for `device`.

        Raises:
            ConfigError: if no driver is registered for the protocol
        """
        factory = self._factories.get(device.protocol)
        if factory is None:
            raise ConfigError(
                f"No driver registered for protocol '{device.protocol.value}'",
                device_id=device.id,
            )
        return factory(device, template, context)


def default_registry() -> DriverRegistry:
    """Registry with the built-in Modbus drivers."""
    from .modbus.driver import ModbusDriver

    registry = DriverRegistry()
    for protocol in (Protocol.MODBUS_TCP, Protocol.MODBUS_RTU, Protocol.MODBUS_ASCII):
        registry.register_driver(protocol, ModbusDriver)
    return registry


__all__ = [
    "Driver",
    "DriverFactory",
    "DriverRegistry",
    "ValueListener",
    "default_registry",
]
