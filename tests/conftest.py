"""Pytest configuration and fixtures."""

from typing import Any, Iterable

import pytest

from fieldbridge.common.config import DatapointDef, DeviceConfig, Protocol, load_device_config, load_template
from fieldbridge.common.exceptions import ProtocolError
from fieldbridge.common.state import MemoryStateStore
from fieldbridge.common.timestamp import ManualClock
from fieldbridge.drivers.base import Driver
from fieldbridge.drivers.modbus.bus_registry import BusRegistry
from fieldbridge.services.device.context import RuntimeContext
from fieldbridge.services.device.runtime import DeviceRuntime


class FakeDriver(Driver):
    """Polled driver backed by a dict; failures are queued per operation."""

    def __init__(self, device=None, template=None, context=None, values: dict | None = None):
        super().__init__(device, template, context)
        self.values: dict[str, Any] = dict(values or {})
        self.writes: list[tuple[str, Any]] = []
        self.reads: list[list[str]] = []
        self.read_errors: list[BaseException] = []
        self.write_errors: list[BaseException] = []
        self.connect_count = 0
        self.disconnect_count = 0
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, datapoints: Iterable[DatapointDef] = ()) -> None:
        self.connect_count += 1
        self._connected = True

    async def disconnect(self) -> None:
        self.disconnect_count += 1
        self._connected = False

    async def read_datapoints(self, datapoints: Iterable[DatapointDef]) -> dict[str, Any]:
        ids = [dp.id for dp in datapoints]
        self.reads.append(ids)
        if self.read_errors:
            raise self.read_errors.pop(0)
        self._connected = True
        return {dp_id: self.values[dp_id] for dp_id in ids if dp_id in self.values}

    async def write_datapoint(self, dp: DatapointDef, value: Any) -> None:
        if self.write_errors:
            raise self.write_errors.pop(0)
        self.writes.append((dp.id, value))
        self.values[dp.id] = value


class PushDriver(FakeDriver):
    polled = False


class FakeLink:
    """Stand-in for ModbusLink: a register image per function code."""

    def __init__(self, settings=None):
        self.settings = settings
        self.is_connected = False
        self.registers: dict[int, dict[int, int]] = {1: {}, 2: {}, 3: {}, 4: {}}
        self.requests: list[tuple] = []
        self.writes: list[tuple] = []
        self.closed = 0
        self.rejected: set[tuple[int, int]] = set()
        self.read_errors: list[BaseException] = []

    async def connect(self) -> None:
        self.is_connected = True

    def close(self) -> None:
        self.closed += 1
        self.is_connected = False

    async def read(self, fc: int, address: int, count: int, unit_id: int, timeout_s: float | None = None) -> list:
        self.requests.append((fc, address, count, unit_id))
        if self.read_errors:
            raise self.read_errors.pop(0)
        if (fc, address) in self.rejected:
            raise ProtocolError("Modbus exception: Illegal data address (exception code 2)", exception_code=2)
        image = self.registers[fc]
        return [image.get(a, 0) for a in range(address, address + count)]

    async def write(self, fc: int, address: int, values: list, unit_id: int, timeout_s: float | None = None) -> None:
        self.writes.append((fc, address, list(values), unit_id))


INVERTER_TEMPLATE = {
    "id": "inv",
    "name": "Test inverter",
    "category": "PV_INVERTER",
    "datapoints": [
        {"id": "W", "role": "value.power", "unit": "W", "source": {"fc": 3, "address": 0, "data_type": "int16"}},
        {"id": "WH", "unit": "Wh", "source": {"fc": 3, "address": 1, "data_type": "uint32"}},
        {"id": "PVConn", "source": {"fc": 3, "address": 3, "data_type": "uint16"}},
        {
            "id": "WMaxLimPct", "rw": "rw", "unit": "%",
            "source": {"fc": 3, "address": 10, "data_type": "uint16", "write": {"fc": 6}},
        },
        {
            "id": "WMaxLim_Ena", "rw": "rw", "type": "boolean",
            "source": {"fc": 3, "address": 11, "data_type": "uint16", "write": {"fc": 6}},
        },
        {"id": "Heartbeat", "rw": "wo", "source": {"fc": 6, "address": 20, "data_type": "uint16"}},
    ],
}


def make_template(overrides: dict | None = None, hints: dict | None = None):
    data = dict(INVERTER_TEMPLATE)
    data.update(overrides or {})
    if hints is not None:
        data["driver_hints"] = hints
    return load_template(data)


def make_device(**overrides) -> DeviceConfig:
    data = {
        "id": "inv1",
        "protocol": Protocol.MODBUS_TCP.value,
        "template_id": "inv",
        "connection": {"host": "10.0.0.5", "port": 502, "unit_id": 1},
    }
    data.update(overrides)
    return load_device_config(data)


@pytest.fixture
def clock():
    return ManualClock(0)


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def links():
    """Every FakeLink created through the bus registry, in creation order."""
    return []


@pytest.fixture
def context(links):
    def factory(settings):
        link = FakeLink(settings)
        links.append(link)
        return link

    return RuntimeContext(bus_registry=BusRegistry(link_factory=factory))


@pytest.fixture
def make_runtime(store, clock, context):
    """Build a DeviceRuntime around a FakeDriver."""

    def build(hints: dict | None = None, values: dict | None = None, device: dict | None = None,
              template: dict | None = None, driver_cls=FakeDriver):
        tpl = make_template(template, hints)
        dev = make_device(**(device or {}))
        driver = driver_cls(dev, tpl, context, values=values)
        return DeviceRuntime(dev, tpl, store, context, clock=clock, driver=driver)

    return build
