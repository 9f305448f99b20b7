"""Tests for the Modbus register codec."""

import math

import pytest

from fieldbridge.common.config import load_datapoint
from fieldbridge.common.exceptions import CodecError, ConfigError, UnsupportedOperation
from fieldbridge.drivers.modbus.codec import (
    DataType,
    ModbusSource,
    apply_read_transforms,
    decode_registers,
    encode_value,
    parse_source,
    read_source,
    write_source,
)


def test_decode_int32_word_orders():
    """Word order 'le' reverses the register sequence."""
    assert decode_registers([0x0001, 0x0002], DataType.UINT32) == 0x00010002
    assert decode_registers([0x0002, 0x0001], DataType.UINT32, word_order="le") == 0x00010002


def test_decode_byte_swap():
    """Byte order 'le' swaps the bytes inside each register."""
    assert decode_registers([0x3412], DataType.UINT16, byte_order="le") == 0x1234


def test_decode_float32():
    registers = encode_value(1.5, DataType.FLOAT32)
    assert registers == [0x3FC0, 0x0000]
    assert decode_registers(registers, DataType.FLOAT32) == 1.5


def test_decode_signed_types():
    assert decode_registers([0xFFFF], DataType.INT16) == -1
    assert decode_registers([0x00FF], DataType.INT8) == -1
    assert decode_registers([0x00FF], DataType.UINT8) == 255


INT_LIMITS = {
    DataType.INT8: (-2 ** 7, 2 ** 7 - 1),
    DataType.UINT8: (0, 2 ** 8 - 1),
    DataType.INT16: (-2 ** 15, 2 ** 15 - 1),
    DataType.UINT16: (0, 2 ** 16 - 1),
    DataType.INT32: (-2 ** 31, 2 ** 31 - 1),
    DataType.UINT32: (0, 2 ** 32 - 1),
    DataType.INT64: (-2 ** 63, 2 ** 63 - 1),
    DataType.UINT64: (0, 2 ** 64 - 1),
}

ROUND_TRIP_CASES = (
    [(dt, v) for dt, (low, high) in INT_LIMITS.items() for v in sorted({0, -1, low, high} - ({-1} if low == 0 else set()))]
    + [(DataType.FLOAT32, v) for v in (0.0, -1.0, 1.5, -2.75, 3.4028234663852886e38)]
    + [(DataType.FLOAT64, v) for v in (0.0, -1.0, 0.1, -2.75, 1.7976931348623157e308)]
    + [(DataType.BOOL, False), (DataType.BOOL, True)]
)


@pytest.mark.parametrize("word_order, byte_order", [("be", "be"), ("be", "le"), ("le", "be"), ("le", "le")])
@pytest.mark.parametrize("data_type, value", ROUND_TRIP_CASES)
def test_encode_decode_round_trip(data_type, value, word_order, byte_order):
    registers = encode_value(value, data_type, word_order=word_order, byte_order=byte_order)
    decoded = decode_registers(registers, data_type, word_order, byte_order)

    assert decoded == value
    assert encode_value(decoded, data_type, word_order=word_order, byte_order=byte_order) == registers


def test_decode_ascii_stops_at_nul():
    registers = encode_value("AB", DataType.ASCII, length=3)
    assert registers == [0x4142, 0x0000, 0x0000]
    assert decode_registers(registers, DataType.ASCII) == "AB"


def test_decode_too_few_registers():
    with pytest.raises(CodecError):
        decode_registers([1], DataType.UINT32)


def test_encode_out_of_range():
    """A value outside the type range never produces registers."""
    with pytest.raises(CodecError):
        encode_value(70000, DataType.UINT16)
    with pytest.raises(CodecError):
        encode_value(-1, DataType.UINT32)


def test_encode_rejects_non_finite_integer():
    with pytest.raises(CodecError):
        encode_value(math.inf, DataType.INT32)


def test_encode_rounds_floats_for_integer_types():
    assert encode_value(12.6, DataType.UINT16) == [13]


def test_encode_string_too_long():
    with pytest.raises(CodecError):
        encode_value("ABCDE", DataType.ASCII, length=2)


def test_encode_ascii_needs_length():
    with pytest.raises(CodecError):
        encode_value("A", DataType.ASCII)


def test_encode_numeric_string():
    assert encode_value("42", DataType.INT16) == [42]
    with pytest.raises(CodecError):
        encode_value("abc", DataType.INT16)


def test_encode_pads_to_declared_length():
    assert encode_value(1, DataType.UINT16, length=2) == [1, 0]


def test_encode_length_shorter_than_type():
    with pytest.raises(CodecError):
        encode_value(1, DataType.UINT32, length=1)


def test_parse_source_unknown_key():
    with pytest.raises(ConfigError):
        parse_source({"fc": 3, "address": 0, "bogus": 1}, "x")


def test_parse_source_unsupported_function_code():
    with pytest.raises(UnsupportedOperation):
        parse_source({"fc": 23, "address": 0}, "x")


def test_parse_source_bit_function_forces_bool():
    src = parse_source({"fc": 1, "address": 5, "data_type": "uint32"}, "x")
    assert src.data_type is DataType.BOOL
    assert src.length == 1


def test_directional_sources():
    """A write override only replaces the keys it names."""
    dp = load_datapoint({
        "id": "Lim", "rw": "rw",
        "source": {"fc": 3, "address": 10, "data_type": "int32", "write": {"fc": 16}},
    })
    read = read_source(dp)
    write = write_source(dp)
    assert (read.fc, read.address, read.data_type) == (3, 10, DataType.INT32)
    assert (write.fc, write.address, write.data_type) == (16, 10, DataType.INT32)


def test_read_source_ignores_write_only_function():
    dp = load_datapoint({"id": "Cmd", "rw": "wo", "source": {"fc": 6, "address": 1}})
    assert read_source(dp) is None
    assert write_source(dp).fc == 6


def test_read_source_other_kind():
    dp = load_datapoint({"id": "T", "source": {"kind": "mqtt", "topic": "a/b"}})
    assert read_source(dp) is None


def test_read_transforms_order():
    """Scaling happens before sign transforms."""
    src = ModbusSource(fc=3, address=0, length=1, data_type=DataType.INT16, invert=True)
    assert apply_read_transforms(25, src, -1, {}) == pytest.approx(-2.5)

    src = ModbusSource(fc=3, address=0, length=1, data_type=DataType.INT16, keep_negative_and_invert=True)
    assert apply_read_transforms(-40, src, 0, {}) == 40
    assert apply_read_transforms(40, src, 0, {}) == 0

    src = ModbusSource(fc=3, address=0, length=1, data_type=DataType.INT16, invert_if_setting="flip")
    assert apply_read_transforms(5, src, 0, {"flip": True}) == -5
    assert apply_read_transforms(5, src, 0, {}) == 5
