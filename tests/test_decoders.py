import math
import random
import struct

import pytest

from meter_collector.common.config import RegisterFormat
from meter_collector.common.exceptions import DecodeError, ProtocolError
from meter_collector.services.device.decoders import (
    decode_bcd,
    decode_float32_be,
    decode_registers,
    decode_uint32_be,
    registers_to_bytes,
)


def test_float32_known_pattern():
    assert decode_float32_be([0x447A, 0x0000]) == 1000.0
    assert decode_float32_be([0x3F80, 0x0000]) == 1.0
    assert decode_float32_be([0xC2F6, 0xE979]) == pytest.approx(-123.456, abs=1e-4)


@pytest.mark.parametrize("value", [0.0, 0.5, -2.25, 1000.0, 65536.0, 3.0e-5])
def test_float32_matches_struct(value):
    bits = struct.unpack(">I", struct.pack(">f", value))[0]
    words = [bits >> 16, bits & 0xFFFF]
    assert decode_float32_be(words) == struct.unpack(">f", struct.pack(">f", value))[0]


def test_float32_special_values_pass_through():
    assert math.isnan(decode_float32_be([0x7FC0, 0x0000]))
    assert decode_float32_be([0x7F80, 0x0000]) == math.inf
    assert decode_float32_be([0xFF80, 0x0000]) == -math.inf


def test_float32_needs_two_registers():
    with pytest.raises(DecodeError):
        decode_float32_be([0x447A])


def test_uint32():
    assert decode_uint32_be([0x0000, 0x04D2]) == 1234
    assert decode_uint32_be([0x0001, 0x0000]) == 65536
    assert decode_uint32_be([0xFFFF, 0xFFFF]) == 0xFFFFFFFF


def test_bcd_fixed_point():
    assert decode_bcd(b"\x12\x34\x56\x78", 4, 4) == pytest.approx(1234.5678)
    assert decode_bcd(b"\x12\x34\x56\x78", 8, 0) == 12345678
    assert decode_bcd(b"\x00\x00\x01\x50", 6, 2) == pytest.approx(1.5)


def test_bcd_uses_only_leading_digits():
    # Trailing nibbles beyond the configured digits are ignored, even if not BCD
    assert decode_bcd(b"\x12\x3F", 3, 0) == 123


def test_bcd_rejects_invalid_nibble():
    with pytest.raises(DecodeError) as exc_info:
        decode_bcd(b"\x12\x3A\x56\x78", 4, 4)
    assert "nibble" in exc_info.value.reason


def test_bcd_rejects_short_payload():
    with pytest.raises(DecodeError):
        decode_bcd(b"\x12", 4, 0)


def test_decode_error_is_a_protocol_error():
    assert issubclass(DecodeError, ProtocolError)


def test_registers_to_bytes_high_byte_first():
    assert registers_to_bytes([0x1234, 0x5678]) == b"\x12\x34\x56\x78"
    with pytest.raises(DecodeError):
        registers_to_bytes([0x10000])


def test_decode_registers_dispatch():
    assert decode_registers(RegisterFormat.FLOAT32, [0x447A, 0x0000]) == 1000.0
    assert decode_registers(RegisterFormat.UINT32, [0x0000, 0x04D2]) == 1234.0
    assert decode_registers(RegisterFormat.BCD, [0x1234, 0x5678], 4, 4) == pytest.approx(1234.5678)


def test_float32_round_trip_over_random_bit_patterns():
    rng = random.Random(1234)
    for _ in range(2000):
        bits = rng.getrandbits(32)
        words = [bits >> 16, bits & 0xFFFF]
        value = decode_float32_be(words)
        if math.isnan(value):
            continue
        assert struct.unpack(">I", struct.pack(">f", value))[0] == bits
