"""
Configuration Dataclasses

Type-safe configuration structures for the gateway: devices, templates
and their data points. Templates are immutable catalog entries shared by
every device that references them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import ConfigError
from .hints import DriverHints, parse_driver_hints


class Protocol(str, Enum):
    """Wire protocols a device can be reached over"""
    MODBUS_TCP = "modbus_tcp"
    MODBUS_RTU = "modbus_rtu"
    MODBUS_ASCII = "modbus_ascii"
    MQTT = "mqtt"
    HTTP = "http"
    UDP = "udp"
    CANBUS = "canbus"
    MBUS = "mbus"
    ONEWIRE = "onewire"
    SPEEDWIRE = "speedwire"

    @property
    def is_modbus(self) -> bool:
        return self in (Protocol.MODBUS_TCP, Protocol.MODBUS_RTU, Protocol.MODBUS_ASCII)


class Access(str, Enum):
    """Data point read/write capability"""
    RO = "ro"
    RW = "rw"
    WO = "wo"

    @property
    def readable(self) -> bool:
        return self is not Access.WO

    @property
    def writable(self) -> bool:
        return self is not Access.RO


class ValueType(str, Enum):
    """Semantic type published to the state store"""
    NUMBER = "number"
    BOOLEAN = "boolean"
    STRING = "string"


@dataclass(frozen=True)
class DatapointDef:
    """One named, typed value exchanged with a device"""
    id: str
    name: str = ""
    rw: Access = Access.RO
    type: ValueType = ValueType.NUMBER
    unit: str = ""
    role: str = ""
    decimals: int | None = None
    # Protocol-specific descriptor, interpreted by the driver
    source: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def readable(self) -> bool:
        return self.rw.readable

    @property
    def writable(self) -> bool:
        return self.rw.writable


@dataclass(frozen=True)
class Template:
    """Read-only catalog entry describing a device family"""
    id: str
    name: str = ""
    category: str = ""
    manufacturer: str = ""
    datapoints: tuple[DatapointDef, ...] = ()
    driver_hints: DriverHints = field(default_factory=DriverHints)

    def get_datapoint(self, dp_id: str) -> DatapointDef | None:
        for dp in self.datapoints:
            if dp.id == dp_id:
                return dp
        return None


@dataclass
class ConnectionSettings:
    """Transport parameters; which fields matter depends on the protocol"""
    host: str = ""
    port: int = 502
    unit_id: int = 1
    timeout_ms: int | None = None
    address_offset: int | None = None
    # Serial (RTU / ASCII)
    serial_port: str = ""
    baudrate: int = 9600
    parity: str = "N"
    bytesize: int = 8
    stopbits: int = 1
    # Register layout
    word_order: str = "be"
    byte_order: str = "be"
    # Per-device overrides of the template's SunSpec hints
    auto_sunspec: bool | None = None
    sunspec_template_base: int | None = None
    # Protocol-specific extras for collaborator drivers (topics, URLs, ...)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeviceConfig:
    """Per-device configuration, immutable for the lifetime of a runtime"""
    id: str
    protocol: Protocol
    template_id: str
    name: str = ""
    enabled: bool = True
    poll_interval_ms: int | None = None
    category: str = ""
    manufacturer: str = ""
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    # Boolean flags consumed by invertIfSetting transforms
    settings: dict[str, bool] = field(default_factory=dict)


@dataclass
class GatewayConfig:
    """Top-level gateway configuration"""
    poll_interval_ms: int = 5000
    modbus_timeout_ms: int = 2000
    register_address_offset: int = 0
    health_port: int = 8090
    templates_path: str = "templates"
    devices: list[DeviceConfig] = field(default_factory=list)


def _parse_access(value: Any, dp_id: str) -> Access:
    try:
        return Access(str(value or "ro").lower())
    except ValueError:
        raise ConfigError(f"Data point {dp_id}: invalid rw '{value}' (expected ro, rw or wo)")


def _parse_value_type(value: Any, dp_id: str) -> ValueType:
    raw = str(value or "number").lower()
    if raw == "bool":
        raw = "boolean"
    try:
        return ValueType(raw)
    except ValueError:
        raise ConfigError(f"Data point {dp_id}: invalid type '{value}'")


def load_datapoint(data: dict[str, Any]) -> DatapointDef:
    """Parse one data point definition"""
    dp_id = data.get("id")
    if not dp_id or not isinstance(dp_id, str):
        raise ConfigError(f"Data point without id: {data!r}")

    decimals = data.get("decimals")
    if decimals is not None and (not isinstance(decimals, int) or decimals < 0):
        raise ConfigError(f"Data point {dp_id}: decimals must be a non-negative integer")

    source = data.get("source") or {}
    if not isinstance(source, dict):
        raise ConfigError(f"Data point {dp_id}: source must be a mapping")

    return DatapointDef(
        id=dp_id,
        name=data.get("name", dp_id),
        rw=_parse_access(data.get("rw"), dp_id),
        type=_parse_value_type(data.get("type"), dp_id),
        unit=data.get("unit", "") or "",
        role=data.get("role", "") or "",
        decimals=decimals,
        source=dict(source),
    )


def load_template(data: dict[str, Any]) -> Template:
    """Parse one template, validating data point ids and driver hints"""
    template_id = data.get("id")
    if not template_id:
        raise ConfigError("Template without id")

    datapoints = []
    seen: set[str] = set()
    for dp_data in data.get("datapoints", []) or []:
        dp = load_datapoint(dp_data)
        if dp.id in seen:
            raise ConfigError(f"Template {template_id}: duplicate data point id '{dp.id}'")
        seen.add(dp.id)
        datapoints.append(dp)

    try:
        hints = parse_driver_hints(data.get("driver_hints"))
    except ConfigError as e:
        raise ConfigError(f"Template {template_id}: {e.detail}")

    return Template(
        id=template_id,
        name=data.get("name", template_id),
        category=str(data.get("category", "") or "").upper(),
        manufacturer=data.get("manufacturer", "") or "",
        datapoints=tuple(datapoints),
        driver_hints=hints,
    )


def _parse_connection(data: dict[str, Any]) -> ConnectionSettings:
    known = {
        "host", "port", "unit_id", "timeout_ms", "address_offset",
        "serial_port", "baudrate", "parity", "bytesize", "stopbits",
        "word_order", "byte_order", "auto_sunspec", "sunspec_template_base",
    }
    extra = {k: v for k, v in data.items() if k not in known}
    return ConnectionSettings(
        host=data.get("host", "") or "",
        port=int(data.get("port") or 502),
        unit_id=int(data.get("unit_id", 1)),
        timeout_ms=data.get("timeout_ms"),
        address_offset=data.get("address_offset"),
        serial_port=data.get("serial_port", "") or "",
        baudrate=int(data.get("baudrate") or 9600),
        parity=str(data.get("parity") or "N").upper(),
        bytesize=int(data.get("bytesize") or 8),
        stopbits=int(data.get("stopbits") or 1),
        word_order=str(data.get("word_order") or "be"),
        byte_order=str(data.get("byte_order") or "be"),
        auto_sunspec=data.get("auto_sunspec"),
        sunspec_template_base=data.get("sunspec_template_base"),
        extra=extra,
    )


def load_device_config(data: dict[str, Any]) -> DeviceConfig:
    """Parse one device entry"""
    device_id = data.get("id")
    if not device_id:
        raise ConfigError("Device without id")

    protocol_raw = str(data.get("protocol", "")).lower()
    try:
        protocol = Protocol(protocol_raw)
    except ValueError:
        raise ConfigError(f"Unsupported protocol '{data.get('protocol')}'", device_id=device_id)

    template_id = data.get("template_id") or data.get("template")
    if not template_id:
        raise ConfigError("Missing template_id", device_id=device_id)

    poll_interval = data.get("poll_interval_ms")
    if poll_interval is not None:
        poll_interval = int(poll_interval)
        if poll_interval <= 0:
            poll_interval = None

    settings = data.get("settings") or {}

    return DeviceConfig(
        id=device_id,
        name=data.get("name", device_id),
        protocol=protocol,
        template_id=template_id,
        enabled=bool(data.get("enabled", True)),
        poll_interval_ms=poll_interval,
        category=str(data.get("category", "") or "").upper(),
        manufacturer=data.get("manufacturer", "") or "",
        connection=_parse_connection(data.get("connection") or {}),
        settings={k: bool(v) for k, v in settings.items()},
    )


def load_gateway_config(config: dict[str, Any]) -> tuple[GatewayConfig, list[tuple[dict, ConfigError]]]:
    """
    Load gateway configuration from a dictionary (parsed YAML).

    Devices that fail to parse are not fatal: they are returned alongside
    the error so the caller can log each one once and carry on.

    Returns:
        Tuple of (GatewayConfig, list of (raw device entry, error))
    """
    gateway = config.get("gateway", {}) or {}
    rejected: list[tuple[dict, ConfigError]] = []
    devices: list[DeviceConfig] = []

    for device_data in config.get("devices", []) or []:
        try:
            devices.append(load_device_config(device_data))
        except ConfigError as e:
            rejected.append((device_data, e))

    return GatewayConfig(
        poll_interval_ms=int(gateway.get("poll_interval_ms", 5000)),
        modbus_timeout_ms=int(gateway.get("modbus_timeout_ms", 2000)),
        register_address_offset=int(gateway.get("register_address_offset", 0)),
        health_port=int(gateway.get("health_port", 8090)),
        templates_path=gateway.get("templates_path", "templates"),
        devices=devices,
    ), rejected
