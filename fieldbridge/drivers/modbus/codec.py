"""
Modbus Register Codec

Converts between device-native 16-bit register words and typed values.

Word order and byte order are independent:
- word order "le" reverses the register sequence (low word first)
- byte order "le" swaps the two bytes inside every register

Decoding always works on the big-endian byte image produced by applying
both orders, so encode(decode(x)) == x for every type and order.
8-bit types occupy the low byte of a single register.
"""

import math
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from ...common.config import DatapointDef
from ...common.exceptions import CodecError, ConfigError, UnsupportedOperation

READ_FUNCTION_CODES = (1, 2, 3, 4)
WRITE_FUNCTION_CODES = (5, 6, 15, 16)
BIT_FUNCTION_CODES = (1, 2, 5, 15)

# SunSpec "not implemented" marker for int16 scale factors
SUNSPEC_NOT_IMPLEMENTED = -32768


class DataType(str, Enum):
    """Register data types"""
    INT8 = "int8"
    UINT8 = "uint8"
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    INT64 = "int64"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    BOOL = "bool"
    ASCII = "ascii"


_TYPE_ALIASES = {"boolean": "bool", "string": "ascii", "float": "float32", "double": "float64"}

# (struct format, registers) for fixed-width numeric types
_STRUCT_FORMATS: dict[DataType, tuple[str, int]] = {
    DataType.INT16: (">h", 1),
    DataType.UINT16: (">H", 1),
    DataType.INT32: (">i", 2),
    DataType.UINT32: (">I", 2),
    DataType.INT64: (">q", 4),
    DataType.UINT64: (">Q", 4),
    DataType.FLOAT32: (">f", 2),
    DataType.FLOAT64: (">d", 4),
}

_INT_RANGES: dict[DataType, tuple[int, int]] = {
    DataType.INT8: (-(2 ** 7), 2 ** 7 - 1),
    DataType.UINT8: (0, 2 ** 8 - 1),
    DataType.INT16: (-(2 ** 15), 2 ** 15 - 1),
    DataType.UINT16: (0, 2 ** 16 - 1),
    DataType.INT32: (-(2 ** 31), 2 ** 31 - 1),
    DataType.UINT32: (0, 2 ** 32 - 1),
    DataType.INT64: (-(2 ** 63), 2 ** 63 - 1),
    DataType.UINT64: (0, 2 ** 64 - 1),
}


def parse_data_type(value: Any) -> DataType:
    raw = str(value or "uint16").lower()
    raw = _TYPE_ALIASES.get(raw, raw)
    try:
        return DataType(raw)
    except ValueError:
        raise ConfigError(f"Unsupported Modbus data type '{value}'")


def register_count(data_type: DataType) -> int:
    """Default number of registers a type occupies (ASCII has no default)."""
    if data_type in (DataType.INT8, DataType.UINT8, DataType.BOOL):
        return 1
    if data_type == DataType.ASCII:
        return 0
    return _STRUCT_FORMATS[data_type][1]


def normalize_word_order(value: Any) -> str:
    raw = str(value or "").lower()
    if raw in ("le", "little", "little_endian", "lswmsw", "lsw_msw"):
        return "le"
    return "be"


def normalize_byte_order(value: Any) -> str:
    raw = str(value or "").lower()
    if raw in ("le", "little", "little_endian"):
        return "le"
    return "be"


def _swap_bytes(buf: bytes) -> bytes:
    out = bytearray(buf)
    for i in range(0, len(out) - 1, 2):
        out[i], out[i + 1] = out[i + 1], out[i]
    return bytes(out)


def registers_to_bytes(registers: list[int], word_order: str = "be", byte_order: str = "be") -> bytes:
    """Big-endian byte image of a register sequence after applying both orders."""
    words = list(registers)
    if normalize_word_order(word_order) == "le":
        words.reverse()
    buf = b"".join(struct.pack(">H", w & 0xFFFF) for w in words)
    if normalize_byte_order(byte_order) == "le":
        buf = _swap_bytes(buf)
    return buf


def bytes_to_registers(buf: bytes, word_order: str = "be", byte_order: str = "be") -> list[int]:
    """Inverse of registers_to_bytes."""
    if len(buf) % 2:
        raise CodecError(f"Byte image of odd length {len(buf)}")
    if normalize_byte_order(byte_order) == "le":
        buf = _swap_bytes(buf)
    words = [struct.unpack_from(">H", buf, i)[0] for i in range(0, len(buf), 2)]
    if normalize_word_order(word_order) == "le":
        words.reverse()
    return words


def decode_registers(
    registers: list[int],
    data_type: DataType,
    word_order: str = "be",
    byte_order: str = "be",
) -> Any:
    """Decode a register slice into a typed value."""
    needed = max(1, register_count(data_type))
    if len(registers) < needed:
        raise CodecError(
            f"{data_type.value} needs {needed} registers, got {len(registers)}"
        )

    buf = registers_to_bytes(registers, word_order, byte_order)

    if data_type == DataType.BOOL:
        return buf[0:2] != b"\x00\x00"
    if data_type == DataType.ASCII:
        text = buf.decode("ascii", errors="replace")
        nul = text.find("\x00")
        if nul >= 0:
            text = text[:nul]
        return text.strip()
    if data_type == DataType.UINT8:
        return buf[1]
    if data_type == DataType.INT8:
        return struct.unpack(">b", buf[1:2])[0]

    fmt, words = _STRUCT_FORMATS[data_type]
    return struct.unpack(fmt, buf[: words * 2])[0]


def _as_number(value: Any, data_type: DataType) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            raise CodecError(f"Cannot encode {value!r} as {data_type.value}")
        if number.is_integer() and "." not in value and "e" not in value.lower():
            return int(value.strip())
        return number
    raise CodecError(f"Cannot encode {value!r} as {data_type.value}")


def encode_value(
    value: Any,
    data_type: DataType,
    length: int | None = None,
    word_order: str = "be",
    byte_order: str = "be",
) -> list[int]:
    """
    Encode a typed value into `length` registers.

    Range and length are validated before anything is produced, so a bad
    value never results in a partial write.

    Raises:
        CodecError: value out of range, not representable, or too long
    """
    natural = register_count(data_type)
    if data_type == DataType.ASCII:
        if not length:
            raise CodecError("ascii values need an explicit register length")
    length = length or natural
    if length < max(1, natural):
        raise CodecError(
            f"{data_type.value} needs {natural} registers, source declares {length}"
        )

    if data_type == DataType.BOOL:
        image = struct.pack(">H", 1 if _truthy(value) else 0)
    elif data_type == DataType.ASCII:
        text = "" if value is None else str(value)
        try:
            raw = text.encode("ascii")
        except UnicodeEncodeError:
            raise CodecError(f"Value {text!r} is not ASCII")
        if len(raw) > length * 2:
            raise CodecError(
                f"String of {len(raw)} bytes does not fit {length} registers"
            )
        image = raw
    else:
        number = _as_number(value, data_type)
        if data_type in (DataType.FLOAT32, DataType.FLOAT64):
            fmt = _STRUCT_FORMATS[data_type][0]
            try:
                image = struct.pack(fmt, float(number))
            except (OverflowError, struct.error):
                raise CodecError(f"{number} out of range for {data_type.value}")
        else:
            if isinstance(number, float):
                if not math.isfinite(number):
                    raise CodecError(f"{number} cannot be encoded as {data_type.value}")
                number = int(round(number))
            low, high = _INT_RANGES[data_type]
            if not low <= number <= high:
                raise CodecError(
                    f"{number} out of range for {data_type.value} [{low}, {high}]"
                )
            if data_type == DataType.INT8:
                image = b"\x00" + struct.pack(">b", number)
            elif data_type == DataType.UINT8:
                image = b"\x00" + struct.pack(">B", number)
            else:
                image = struct.pack(_STRUCT_FORMATS[data_type][0], number)

    image = image.ljust(length * 2, b"\x00")
    return bytes_to_registers(image, word_order, byte_order)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "off", "no")
    return bool(value)


def apply_scale(value: int | float, scale_factor: int) -> int | float:
    if not scale_factor:
        return value
    return value * (10 ** scale_factor)


def remove_scale(value: int | float, scale_factor: int) -> int | float:
    if not scale_factor:
        return value
    return value / (10 ** scale_factor)


@dataclass(frozen=True)
class ModbusSource:
    """Validated Modbus source descriptor for one direction of a data point"""
    fc: int
    address: int
    length: int
    data_type: DataType
    word_order: str | None = None
    byte_order: str | None = None
    scale_factor: int = 0
    scale_factor_ref: str | None = None
    invert: bool = False
    invert_if_setting: str | None = None
    keep_positive: bool = False
    keep_negative_and_invert: bool = False

    @property
    def is_bit(self) -> bool:
        return self.fc in BIT_FUNCTION_CODES

    @property
    def end(self) -> int:
        return self.address + self.length - 1


_SOURCE_KEYS = {
    "kind", "fc", "address", "length", "data_type", "word_order", "byte_order",
    "scale_factor", "scale_factor_ref", "invert", "invert_if_setting",
    "keep_positive", "keep_negative_and_invert", "read", "write",
}


def parse_source(raw: Mapping[str, Any], dp_id: str) -> ModbusSource:
    """Validate a (merged) source mapping.

    Raises:
        ConfigError: unknown keys or malformed values
        UnsupportedOperation: function code outside 1-6, 15, 16
    """
    unknown = sorted(set(raw) - _SOURCE_KEYS)
    if unknown:
        raise ConfigError(f"Data point {dp_id}: unknown source key(s) {', '.join(unknown)}")

    try:
        fc = int(raw["fc"])
        address = int(raw.get("address", 0))
    except (KeyError, TypeError, ValueError):
        raise ConfigError(f"Data point {dp_id}: source needs integer fc and address")
    if fc not in READ_FUNCTION_CODES + WRITE_FUNCTION_CODES:
        raise UnsupportedOperation(f"Unsupported function code {fc}", datapoint_id=dp_id)
    if address < 0:
        raise ConfigError(f"Data point {dp_id}: negative address {address}")

    data_type = DataType.BOOL if fc in BIT_FUNCTION_CODES else parse_data_type(raw.get("data_type"))
    default_length = 1 if fc in BIT_FUNCTION_CODES else register_count(data_type)
    length = raw.get("length", default_length)
    if not isinstance(length, int) or isinstance(length, bool) or length < 1:
        raise ConfigError(f"Data point {dp_id}: invalid register length {length!r}")

    scale_factor = raw.get("scale_factor", 0) or 0
    if not isinstance(scale_factor, int) or isinstance(scale_factor, bool):
        raise ConfigError(f"Data point {dp_id}: scale_factor must be an integer exponent")

    return ModbusSource(
        fc=fc,
        address=address,
        length=length,
        data_type=data_type,
        word_order=normalize_word_order(raw["word_order"]) if raw.get("word_order") else None,
        byte_order=normalize_byte_order(raw["byte_order"]) if raw.get("byte_order") else None,
        scale_factor=scale_factor,
        scale_factor_ref=raw.get("scale_factor_ref") or None,
        invert=bool(raw.get("invert", False)),
        invert_if_setting=raw.get("invert_if_setting") or None,
        keep_positive=bool(raw.get("keep_positive", False)),
        keep_negative_and_invert=bool(raw.get("keep_negative_and_invert", False)),
    )


def _directional(dp: DatapointDef, direction: str) -> dict[str, Any] | None:
    source = dp.source or {}
    kind = source.get("kind", "modbus")
    if kind != "modbus":
        return None
    override = source.get(direction)
    if override is not None and not isinstance(override, dict):
        raise ConfigError(f"Data point {dp.id}: source.{direction} must be a mapping")
    merged = {k: v for k, v in source.items() if k not in ("read", "write")}
    merged.update(override or {})
    if merged.get("fc") is None:
        return None
    return merged


def read_source(dp: DatapointDef) -> ModbusSource | None:
    """Source used to read `dp`, or None if it has none."""
    merged = _directional(dp, "read")
    if merged is None:
        return None
    src = parse_source(merged, dp.id)
    if src.fc not in READ_FUNCTION_CODES:
        return None
    return src


def write_source(dp: DatapointDef) -> ModbusSource | None:
    """Source used to write `dp`.

    A descriptor without a write override keeps its read function code;
    the driver rejects that with UnsupportedOperation at write time.
    """
    merged = _directional(dp, "write")
    if merged is None:
        return None
    return parse_source(merged, dp.id)


def apply_read_transforms(value: int | float, src: ModbusSource, scale_factor: int, settings: Mapping[str, bool]) -> int | float:
    """Scale then apply sign transforms, in that order."""
    value = apply_scale(value, scale_factor)
    if src.invert:
        value = -value
    if src.invert_if_setting and settings.get(src.invert_if_setting, False):
        value = -value
    if src.keep_positive:
        value = max(0, value)
    if src.keep_negative_and_invert:
        value = -value if value < 0 else 0
    return value
