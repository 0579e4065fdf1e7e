"""
Register Decoders

Pure conversions from raw 16-bit register words to typed values.
No state, no I/O. Scaling is applied by the poller, not here.
"""

import struct
from typing import Sequence

from meter_collector.common.config import RegisterFormat
from meter_collector.common.exceptions import DecodeError


def registers_to_bytes(words: Sequence[int]) -> bytes:
    """Convert 16-bit registers to bytes, high byte of each word first"""
    out = bytearray()
    for word in words:
        if not 0 <= word <= 0xFFFF:
            raise DecodeError(f"Register value out of range: {word!r}")
        out += word.to_bytes(2, byteorder="big")
    return bytes(out)


def _require_words(words: Sequence[int], needed: int, what: str) -> None:
    if len(words) < needed:
        raise DecodeError(f"{what} needs {needed} registers, got {len(words)}")


def decode_float32_be(words: Sequence[int]) -> float:
    """
    Reinterpret (words[0] << 16) | words[1] as an IEEE-754 binary32.

    NaN and infinity patterns are returned as-is.
    """
    _require_words(words, 2, "float32")
    packed = struct.pack(">HH", words[0], words[1])
    return struct.unpack(">f", packed)[0]


def decode_uint32_be(words: Sequence[int]) -> int:
    """(words[0] << 16) | words[1] as an unsigned 32-bit integer"""
    _require_words(words, 2, "uint32")
    return ((words[0] & 0xFFFF) << 16) | (words[1] & 0xFFFF)


def decode_bcd(data: bytes, integer_digits: int, fractional_digits: int) -> float:
    """
    Decode packed BCD into a fixed-point value.

    Each byte carries two digits, high nibble first. The first
    integer_digits + fractional_digits digits are accumulated
    most-significant first and the result is divided by
    10 ** fractional_digits.

    Example:
        decode_bcd(b"\\x12\\x34\\x56\\x78", 4, 4) == 1234.5678

    Raises:
        DecodeError: on a nibble above 9 or too little data
    """
    total_digits = integer_digits + fractional_digits
    if integer_digits < 0 or fractional_digits < 0:
        raise DecodeError("BCD digit counts must be non-negative")
    if len(data) * 2 < total_digits:
        raise DecodeError(
            f"BCD needs {total_digits} digits, payload holds {len(data) * 2}"
        )

    result = 0
    for i in range(total_digits):
        byte = data[i // 2]
        digit = (byte >> 4) if i % 2 == 0 else (byte & 0x0F)
        if digit > 9:
            raise DecodeError(f"Invalid BCD nibble 0x{digit:X} at digit {i}")
        result = result * 10 + digit

    return result / (10 ** fractional_digits)


def decode_registers(
    fmt: RegisterFormat,
    words: Sequence[int],
    integer_digits: int = 0,
    fractional_digits: int = 0,
) -> float:
    """Decode a device's register slice according to its format"""
    if fmt == RegisterFormat.FLOAT32:
        return decode_float32_be(words)
    if fmt == RegisterFormat.UINT32:
        return float(decode_uint32_be(words))
    if fmt == RegisterFormat.BCD:
        return decode_bcd(registers_to_bytes(words), integer_digits, fractional_digits)
    raise DecodeError(f"Unsupported register format: {fmt!r}")
