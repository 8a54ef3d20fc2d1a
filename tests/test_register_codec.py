"""Tests for register word decoding and encoding."""

import math

import pytest

from gateway_poller.common.config import ByteOrder, DataType
from gateway_poller.common.exceptions import (
    CodecError,
    DecodeError,
    ErrorCategory,
    InsufficientRegistersError,
)
from gateway_poller.services.device import register_codec


@pytest.mark.parametrize(
    "word, expected",
    [
        (0x0000, 0),
        (0x7FFF, 32767),
        (0x8000, -32768),
        (0xFFFF, -1),
    ],
)
def test_int16_twos_complement_boundaries(word, expected):
    assert register_codec.decode([word], DataType.INT16) == expected


def test_uint16_is_raw_word():
    assert register_codec.decode([0xFFFF], DataType.UINT16) == 65535


def test_float32_big_endian_one():
    assert register_codec.decode([0x3F80, 0x0000], DataType.FLOAT32) == 1.0


def test_float32_word_swapped_one():
    assert register_codec.decode([0x0000, 0x3F80], DataType.FLOAT32, ByteOrder.WORD_SWAPPED) == 1.0


def test_32bit_little_endian_matches_word_swapped():
    words = [0x5678, 0x1234]
    le = register_codec.decode(words, DataType.UINT32, ByteOrder.LITTLE_ENDIAN)
    ws = register_codec.decode(words, DataType.UINT32, ByteOrder.WORD_SWAPPED)
    assert le == ws == 0x12345678


@pytest.mark.parametrize(
    "words, expected",
    [
        ([0xFFFF, 0xFFFF], -1),
        ([0x8000, 0x0000], -2147483648),
        ([0x7FFF, 0xFFFF], 2147483647),
    ],
)
def test_int32_big_endian_boundaries(words, expected):
    assert register_codec.decode(words, DataType.INT32) == expected


def test_float64_teltonika_word_order():
    # Captured from a Teltonika gateway: 100.0
    words = [0x0000, 0x0000, 0x4059, 0x0000]
    assert register_codec.decode(words, DataType.FLOAT64, ByteOrder.WORD_SWAPPED) == 100.0


def test_float64_big_endian():
    assert register_codec.decode([0x4059, 0, 0, 0], DataType.FLOAT64) == 100.0


def test_float64_little_endian_reverses_words():
    assert register_codec.decode([0, 0, 0, 0x4059], DataType.FLOAT64, ByteOrder.LITTLE_ENDIAN) == 100.0


def test_swap_bytes_applies_inside_each_word():
    assert register_codec.decode([0x0100], DataType.UINT16, swap_bytes=True) == 1
    assert register_codec.decode([0x803F, 0x0000], DataType.FLOAT32, swap_bytes=True) == 1.0


def test_extra_words_are_ignored():
    assert register_codec.decode([7, 99, 99], DataType.UINT16) == 7


def test_insufficient_registers_message():
    with pytest.raises(InsufficientRegistersError) as exc_info:
        register_codec.decode([0x0001], DataType.INT32)

    assert str(exc_info.value) == "Int32 requires at least 2 registers, got 1"
    assert exc_info.value.category == ErrorCategory.INSUFFICIENT_REGISTERS


def test_float64_needs_four_words():
    with pytest.raises(InsufficientRegistersError):
        register_codec.decode([0, 0, 0x4059], DataType.FLOAT64)


def test_unknown_data_type_is_decode_error():
    with pytest.raises(DecodeError) as exc_info:
        register_codec.decode([1], "int8")
    assert exc_info.value.category == ErrorCategory.DECODE_FAILURE


def test_word_out_of_range_is_decode_error():
    with pytest.raises(DecodeError):
        register_codec.decode([70000], DataType.UINT16)


def test_nan_decodes_without_error():
    assert math.isnan(register_codec.decode([0x7FC0, 0x0000], DataType.FLOAT32))


@pytest.mark.parametrize("byte_order", list(ByteOrder))
@pytest.mark.parametrize(
    "data_type, value",
    [
        (DataType.INT32, -123456),
        (DataType.UINT32, 3000000000),
        (DataType.FLOAT32, -2.5),
        (DataType.FLOAT64, 12345.678),
    ],
)
def test_encode_is_inverse_of_decode(data_type, value, byte_order):
    words = register_codec.encode(value, data_type, byte_order)
    assert len(words) == register_codec.register_count(data_type)
    assert register_codec.decode(words, data_type, byte_order) == value


def test_encode_rejects_out_of_range_values():
    with pytest.raises(CodecError):
        register_codec.encode(40000, DataType.INT16)
    with pytest.raises(CodecError):
        register_codec.encode(-1, DataType.UINT16)
    with pytest.raises(CodecError):
        register_codec.encode(1.5, DataType.INT32)


def test_scale_multiplies():
    assert register_codec.scale(1234, 0.1) == pytest.approx(123.4)
