"""
Register Codec

Pure conversion between 16-bit Modbus register words and typed values.

Word combination by byte order:

    16-bit          uint16 = w0, int16 = two's complement of w0
    32-bit          big_endian    -> (w0 << 16) | w1
                    little_endian -> (w1 << 16) | w0
                    word_swapped  -> (w1 << 16) | w0
    64-bit          big_endian    -> w0 w1 w2 w3
                    word_swapped  -> w2 w3 w0 w1
                    little_endian -> w3 w2 w1 w0

float64 word_swapped is the layout Teltonika gateways emit: the two
32-bit halves arrive low half first, each half high word first.

swap_bytes additionally swaps the two bytes inside every word before the
words are combined, for devices that are little-endian at byte level.
"""

import struct

from gateway_poller.common.config import ByteOrder, DataType, REGISTER_COUNTS
from gateway_poller.common.exceptions import (
    CodecError,
    DecodeError,
    InsufficientRegistersError,
)

_INT_RANGES: dict[DataType, tuple[int, int]] = {
    DataType.INT16: (-0x8000, 0x7FFF),
    DataType.UINT16: (0, 0xFFFF),
    DataType.INT32: (-0x80000000, 0x7FFFFFFF),
    DataType.UINT32: (0, 0xFFFFFFFF),
}


def _data_type(data_type: DataType | str) -> DataType:
    try:
        return DataType(data_type)
    except ValueError:
        raise DecodeError(f"Unsupported data type: {data_type}") from None


def _byte_order(byte_order: ByteOrder | str) -> ByteOrder:
    try:
        return ByteOrder(byte_order)
    except ValueError:
        raise DecodeError(f"Unsupported byte order: {byte_order}") from None


def register_count(data_type: DataType | str) -> int:
    """Number of registers a data type occupies"""
    return REGISTER_COUNTS[_data_type(data_type)]


def validate_register_count(words: list[int], data_type: DataType | str) -> None:
    """Raise InsufficientRegistersError if words is too short for data_type"""
    dt = _data_type(data_type)
    required = REGISTER_COUNTS[dt]
    if len(words) < required:
        raise InsufficientRegistersError(dt.value, required, len(words))


def _swap_word_bytes(words: list[int]) -> list[int]:
    return [((w & 0xFF) << 8) | (w >> 8) for w in words]


def _combine32(words: list[int], byte_order: ByteOrder) -> int:
    if byte_order == ByteOrder.BIG_ENDIAN:
        return (words[0] << 16) | words[1]
    return (words[1] << 16) | words[0]


def _split32(value: int, byte_order: ByteOrder) -> list[int]:
    high, low = (value >> 16) & 0xFFFF, value & 0xFFFF
    if byte_order == ByteOrder.BIG_ENDIAN:
        return [high, low]
    return [low, high]


def _arrange64(words: list[int], byte_order: ByteOrder) -> list[int]:
    """Reorder four words to/from IEEE big-endian word order (self-inverse)"""
    if byte_order == ByteOrder.BIG_ENDIAN:
        return list(words)
    if byte_order == ByteOrder.WORD_SWAPPED:
        return [words[2], words[3], words[0], words[1]]
    return [words[3], words[2], words[1], words[0]]


def decode(
    words: list[int],
    data_type: DataType | str,
    byte_order: ByteOrder | str = ByteOrder.BIG_ENDIAN,
    swap_bytes: bool = False,
) -> int | float:
    """
    Decode register words into a typed value.

    Args:
        words: Register words as received (extra words are ignored)
        data_type: Target data type
        byte_order: Word ordering of multi-register values
        swap_bytes: Swap the bytes inside every word first

    Returns:
        int for integer types, float for float32/float64

    Raises:
        InsufficientRegistersError: fewer words than the type requires
        DecodeError: unknown data type/byte order or a word outside 0-65535
    """
    dt = _data_type(data_type)
    bo = _byte_order(byte_order)

    validate_register_count(words, dt)
    words = list(words[:REGISTER_COUNTS[dt]])

    for word in words:
        if not isinstance(word, int) or not 0 <= word <= 0xFFFF:
            raise DecodeError(f"Register word out of range: {word!r}")

    if swap_bytes:
        words = _swap_word_bytes(words)

    if dt == DataType.UINT16:
        return words[0]

    if dt == DataType.INT16:
        value = words[0]
        if value > 0x7FFF:
            value -= 0x10000
        return value

    if dt == DataType.FLOAT64:
        packed = struct.pack(">4H", *_arrange64(words, bo))
        return struct.unpack(">d", packed)[0]

    combined = _combine32(words, bo)

    if dt == DataType.UINT32:
        return combined

    if dt == DataType.INT32:
        if combined > 0x7FFFFFFF:
            combined -= 0x100000000
        return combined

    # FLOAT32
    return struct.unpack(">f", struct.pack(">I", combined))[0]


def encode(
    value: int | float,
    data_type: DataType | str,
    byte_order: ByteOrder | str = ByteOrder.BIG_ENDIAN,
    swap_bytes: bool = False,
) -> list[int]:
    """
    Encode a value into register words; exact inverse of decode().

    Raises:
        CodecError: value out of range for the data type
        DecodeError: unknown data type/byte order
    """
    dt = _data_type(data_type)
    bo = _byte_order(byte_order)

    if dt in _INT_RANGES:
        if isinstance(value, float) and not value.is_integer():
            raise CodecError(f"{dt.value} cannot hold non-integer value {value}")
        int_value = int(value)
        low, high = _INT_RANGES[dt]
        if not low <= int_value <= high:
            raise CodecError(f"Value {value} out of range for {dt.value}")

        if dt in (DataType.INT16, DataType.UINT16):
            words = [int_value & 0xFFFF]
        else:
            words = _split32(int_value & 0xFFFFFFFF, bo)

    elif dt == DataType.FLOAT32:
        try:
            bits = struct.unpack(">I", struct.pack(">f", float(value)))[0]
        except (OverflowError, struct.error) as e:
            raise CodecError(f"Value {value} out of range for float32: {e}") from e
        words = _split32(bits, bo)

    else:
        packed = struct.pack(">d", float(value))
        words = _arrange64(list(struct.unpack(">4H", packed)), bo)

    if swap_bytes:
        words = _swap_word_bytes(words)
    return words


def scale(value: int | float, factor: float) -> float:
    """Apply a scale factor (validated non-zero at configuration time)"""
    return value * factor
