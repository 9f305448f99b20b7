"""
Runtime Context

Explicit owner of the registries shared by the device runtimes of one
gateway process: the driver registry and the Modbus bus registry.
Nothing here is process-global; tests build their own context.
"""

from dataclasses import dataclass, field

from ...common.config import GatewayConfig
from ...drivers import DriverRegistry, default_registry
from ...drivers.modbus.bus_registry import BusRegistry


@dataclass
class RuntimeContext:
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    drivers: DriverRegistry = field(default_factory=default_registry)
    bus_registry: BusRegistry = field(default_factory=BusRegistry)

    def close(self) -> None:
        """Close every shared link still open."""
        self.bus_registry.close_all()
