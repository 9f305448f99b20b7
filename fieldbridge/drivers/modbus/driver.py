"""
Modbus Driver

Implements the Driver contract for Modbus TCP, RTU and ASCII devices:
- batched FC1/FC2/FC3/FC4 reads through the shared bus registry
- FC5/FC6/FC15/FC16 writes with inverse scaling
- dynamic scale factors (SunSpec *_SF registers) with a per-driver cache
- read transforms: invert, invert_if_setting, keep_positive,
  keep_negative_and_invert
- optional SunSpec base/unit-id discovery on first connect
"""

from typing import Any, Iterable

from ...common.config import DatapointDef, DeviceConfig, Protocol, Template
from ...common.exceptions import (
    CodecError,
    ConfigError,
    DeviceError,
    ProtocolError,
    TransportError,
    UnsupportedOperation,
)
from ...common.logging_setup import RateLimitedLogger, get_service_logger
from ..base import Driver
from .batcher import ReadItem, build_groups
from .bus_registry import BusHandle
from .client import LinkSettings
from .codec import (
    BIT_FUNCTION_CODES,
    SUNSPEC_NOT_IMPLEMENTED,
    WRITE_FUNCTION_CODES,
    DataType,
    ModbusSource,
    apply_read_transforms,
    decode_registers,
    encode_value,
    normalize_byte_order,
    normalize_word_order,
    read_source,
    remove_scale,
    write_source,
)

logger = get_service_logger("device.modbus")

_FRAMERS = {
    Protocol.MODBUS_TCP: "tcp",
    Protocol.MODBUS_RTU: "rtu",
    Protocol.MODBUS_ASCII: "ascii",
}


def is_sunspec_signature(registers: list[int]) -> bool:
    """'SunS' in two registers, plain or with bytes swapped inside each word."""
    if len(registers) < 2:
        return False
    r0, r1 = registers[0] & 0xFFFF, registers[1] & 0xFFFF
    return (r0, r1) in ((0x5375, 0x6E53), (0x7553, 0x536E))


class ModbusDriver(Driver):
    """Modbus driver for one device"""

    def __init__(self, device: DeviceConfig, template: Template, context):
        super().__init__(device, template, context)
        if device.protocol not in _FRAMERS:
            raise ConfigError(
                f"Modbus driver cannot handle protocol '{device.protocol.value}'",
                device_id=device.id,
            )

        gateway = context.gateway
        conn = device.connection
        hints = template.driver_hints.modbus

        # 0 or missing means "use the gateway default"
        timeout_ms = conn.timeout_ms if conn.timeout_ms and conn.timeout_ms > 0 else gateway.modbus_timeout_ms
        self.timeout_s = (timeout_ms if timeout_ms and timeout_ms > 0 else 2000) / 1000.0

        # Manual values come from config, auto values from SunSpec discovery
        self.manual_unit_id = conn.unit_id
        self.unit_id = conn.unit_id
        self.manual_address_offset = (
            conn.address_offset if conn.address_offset is not None else gateway.register_address_offset
        )
        self.auto_address_offset = 0

        self.auto_sunspec = conn.auto_sunspec if conn.auto_sunspec is not None else hints.auto_sunspec
        self.sunspec_template_base = (
            conn.sunspec_template_base if conn.sunspec_template_base is not None else hints.sunspec_template_base
        )
        self._sunspec_attempted = False

        self.word_order = normalize_word_order(conn.word_order)
        self.byte_order = normalize_byte_order(conn.byte_order)
        self.max_read_registers = hints.max_read_registers
        self.max_read_bits = hints.max_read_bits

        self.link_settings = LinkSettings(
            framer=_FRAMERS[device.protocol],
            host=conn.host,
            port=conn.port,
            serial_port=conn.serial_port,
            baudrate=conn.baudrate,
            parity=conn.parity,
            bytesize=conn.bytesize,
            stopbits=conn.stopbits,
            timeout_s=self.timeout_s,
        )
        self._handle: BusHandle | None = None
        self._connected = False

        # Latest raw value of every scale factor data point seen
        self.scale_factors: dict[str, int | float] = {}

        self._read_sources: dict[str, ModbusSource] = {}
        for dp in template.datapoints:
            if not dp.readable:
                continue
            try:
                src = read_source(dp)
            except UnsupportedOperation as e:
                raise ConfigError(e.message, device_id=device.id)
            if src is not None:
                self._read_sources[dp.id] = src

        self._errors = RateLimitedLogger(logger)

    @property
    def connected(self) -> bool:
        return self._connected and self._handle is not None and self._handle.link.is_connected

    def address(self, src: ModbusSource) -> int:
        return src.address + self.manual_address_offset + self.auto_address_offset

    async def connect(self, datapoints: Iterable[DatapointDef] = ()) -> None:
        if self.connected:
            return
        if self._handle is None:
            self._handle = self.context.bus_registry.acquire(self.link_settings)

        async with self._handle.lock:
            await self._handle.link.connect()
            self._connected = True
            logger.info(
                f"[{self.device.id}] Modbus connected ({self.link_settings.label}, unit {self.unit_id})"
            )
            if self.auto_sunspec and not self._sunspec_attempted:
                try:
                    await self._discover_sunspec()
                except DeviceError as e:
                    logger.debug(f"[{self.device.id}] SunSpec discovery error: {e}")

    async def disconnect(self) -> None:
        handle, self._handle = self._handle, None
        self._connected = False
        if handle is None:
            return
        try:
            self.context.bus_registry.release(handle)
        except Exception as e:
            logger.debug(f"[{self.device.id}] Error releasing bus: {e}")

    async def _ensure_connected(self) -> BusHandle:
        if not self.connected:
            await self.connect()
        return self._handle

    def _transport_failed(self, handle: BusHandle) -> None:
        """Close the physical link so the next request reconnects cleanly."""
        self._connected = False
        self.context.bus_registry.reset_link(handle)

    async def _request_read(self, handle: BusHandle, fc: int, start: int, count: int, unit_id: int | None = None, timeout_s: float | None = None) -> list:
        async with handle.lock:
            handle.request_count += 1
            return await handle.link.read(
                fc, start, count, self.unit_id if unit_id is None else unit_id, timeout_s or self.timeout_s,
            )

    async def _discover_sunspec(self) -> bool:
        """Probe unit ids, function codes and bases for the 'SunS' marker.

        Runs once per driver while the bus lock is held. Success sets the
        auto address offset (beyond the manual one) and the unit id.
        """
        self._sunspec_attempted = True
        hints = self.template.driver_hints.modbus
        base = self.sunspec_template_base

        bases = list(hints.sunspec_scan_bases) or [base, base - 1, 0, 1]
        unit_ids: list[int] = []
        for uid in [self.manual_unit_id, self.manual_unit_id + 123, 1, 3, 126, *hints.sunspec_scan_unit_ids]:
            if 0 <= uid <= 247 and uid not in unit_ids:
                unit_ids.append(uid)
        fcs = list(hints.sunspec_scan_function_codes) or [3, 4]
        probe_timeout = min(1.0, max(0.3, self.timeout_s))

        link = self._handle.link
        for uid in unit_ids:
            for fc in fcs:
                for candidate in bases:
                    address = candidate + self.manual_address_offset
                    if not 0 <= address <= 65535:
                        continue
                    try:
                        words = await link.read(fc, address, 2, uid, probe_timeout)
                    except ProtocolError:
                        continue
                    except TransportError:
                        if not link.is_connected:
                            return False
                        continue
                    if is_sunspec_signature(words):
                        self.auto_address_offset = candidate - base
                        self.unit_id = uid
                        logger.info(
                            f"[{self.device.id}] SunSpec discovery: found 'SunS' at base={candidate} "
                            f"(FC{fc}, unit {uid}), auto offset {self.auto_address_offset}"
                        )
                        return True

        logger.debug(
            f"[{self.device.id}] SunSpec discovery: signature not found, keeping unit "
            f"{self.unit_id} and offset {self.manual_address_offset}"
        )
        return False

    def scale_factor_for(self, src: ModbusSource) -> int | float:
        if src.scale_factor_ref:
            cached = self.scale_factors.get(src.scale_factor_ref)
            if cached is not None and cached != SUNSPEC_NOT_IMPLEMENTED:
                return cached
        return src.scale_factor

    async def read_datapoints(self, datapoints: Iterable[DatapointDef]) -> dict[str, Any]:
        handle = await self._ensure_connected()

        by_fc: dict[int, list[ReadItem]] = {}
        scale_refs: set[str] = set()
        for dp in datapoints:
            src = self._read_sources.get(dp.id)
            if src is None:
                continue
            if src.scale_factor_ref:
                scale_refs.add(src.scale_factor_ref)
            by_fc.setdefault(src.fc, []).append(
                ReadItem(key=dp.id, address=self.address(src), length=src.length, payload=src)
            )

        # fc -> {address: word or bit}
        words: dict[int, dict[int, Any]] = {}
        protocol_errors: list[ProtocolError] = []
        group_count = 0

        for fc, items in sorted(by_fc.items()):
            max_span = self.max_read_bits if fc in BIT_FUNCTION_CODES else self.max_read_registers
            fc_words = words.setdefault(fc, {})
            for group in build_groups(items, max_span):
                group_count += 1
                try:
                    data = await self._request_read(handle, fc, group.start, group.length)
                except ProtocolError as e:
                    protocol_errors.append(e)
                    self._errors.warning(
                        f"{fc}:{group.start}",
                        f"[{self.device.id}] FC{fc} read {group.start}+{group.length} rejected: {e.message}",
                    )
                    continue
                except TransportError:
                    self._transport_failed(handle)
                    raise
                for offset, word in enumerate(data):
                    fc_words[group.start + offset] = word

        if group_count and len(protocol_errors) == group_count:
            raise protocol_errors[0]

        out: dict[str, Any] = {}
        numeric_raw: dict[str, tuple[int | float, ModbusSource]] = {}

        for fc, items in by_fc.items():
            fc_words = words.get(fc, {})
            for item in items:
                src: ModbusSource = item.payload
                addresses = range(item.address, item.end + 1)
                if any(a not in fc_words for a in addresses):
                    continue
                if fc in BIT_FUNCTION_CODES:
                    out[item.key] = bool(fc_words[item.address])
                    continue
                try:
                    raw = decode_registers(
                        [fc_words[a] for a in addresses],
                        src.data_type,
                        src.word_order or self.word_order,
                        src.byte_order or self.byte_order,
                    )
                except CodecError as e:
                    self._errors.warning(item.key, f"[{self.device.id}] {item.key}: {e.message}")
                    continue
                if isinstance(raw, (bool, str)):
                    out[item.key] = raw
                else:
                    numeric_raw[item.key] = (raw, src)

        # Scale factor cache first, so every consumer in this cycle sees it
        for dp_id, (raw, _src) in numeric_raw.items():
            if (dp_id.endswith("_SF") or dp_id in scale_refs) and raw != SUNSPEC_NOT_IMPLEMENTED:
                self.scale_factors[dp_id] = raw

        for dp_id, (raw, src) in numeric_raw.items():
            out[dp_id] = apply_read_transforms(raw, src, self.scale_factor_for(src), self.device.settings)

        return out

    def encode_write(self, dp: DatapointDef, value: Any) -> tuple[ModbusSource, list]:
        """Validate and encode a write without touching the bus.

        Raises:
            UnsupportedOperation: no write source or a non-write function code
            CodecError: value cannot be encoded
        """
        src = write_source(dp)
        if src is None:
            raise UnsupportedOperation(f"Data point {dp.id} has no Modbus write source", datapoint_id=dp.id)
        if src.fc not in WRITE_FUNCTION_CODES:
            raise UnsupportedOperation(f"Unsupported write function code {src.fc}", datapoint_id=dp.id)

        if src.fc in (5, 15):
            return src, [bool(value) if not isinstance(value, str) else value.strip().lower() in ("1", "true", "on")]

        raw = value
        if isinstance(raw, str) and raw.strip() and src.data_type != DataType.ASCII:
            try:
                raw = float(raw) if any(c in raw for c in ".eE") else int(raw)
            except ValueError:
                raise CodecError(f"Cannot encode {value!r} for {dp.id}", datapoint_id=dp.id)
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            scale = self.scale_factor_for(src)
            if scale:
                raw = remove_scale(raw, scale)

        try:
            registers = encode_value(
                raw,
                src.data_type,
                src.length,
                src.word_order or self.word_order,
                src.byte_order or self.byte_order,
            )
        except CodecError as e:
            raise CodecError(f"{dp.id}: {e.message}", datapoint_id=dp.id) from e

        if src.fc == 6 and len(registers) != 1:
            raise CodecError(
                f"{dp.id}: FC6 writes exactly one register, value needs {len(registers)}",
                datapoint_id=dp.id,
            )
        return src, registers

    async def write_datapoint(self, dp: DatapointDef, value: Any) -> None:
        src, payload = self.encode_write(dp, value)
        handle = await self._ensure_connected()
        try:
            async with handle.lock:
                handle.request_count += 1
                await handle.link.write(src.fc, self.address(src), payload, self.unit_id, self.timeout_s)
        except TransportError:
            self._transport_failed(handle)
            raise
