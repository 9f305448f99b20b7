"""
Modbus driver package: register codec, read batcher, shared bus registry
and the ModbusDriver itself.
"""

from .bus_registry import BusHandle, BusRegistry
from .client import LinkSettings, ModbusLink
from .driver import ModbusDriver

__all__ = [
    "BusHandle",
    "BusRegistry",
    "LinkSettings",
    "ModbusDriver",
    "ModbusLink",
]
