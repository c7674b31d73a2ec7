#!/usr/bin/env python3
"""
primitive_codec.py - Wire encodings for table cells and container headers

Implements the fixed set of scalar and string types used by DB and Loc
tables. Every decoder takes (buffer, pos) and returns (value, new_pos);
every encoder returns the bytes that decode back to the same value.

Wire types:
    Boolean             1 byte, must be 0x00 or 0x01
    Integer             4 bytes, signed, little-endian
    LongInteger         8 bytes, signed, little-endian
    Float               4 bytes, IEEE 754 single, little-endian
    StringU8            u16 LE byte count + UTF-8 bytes
    StringU16           u16 LE character count + UTF-16LE bytes
    OptionalStringU8    u8 presence flag, then StringU8 if non-zero
    OptionalStringU16   u8 presence flag, then StringU16 if non-zero

Usage:
    from primitive_codec import FieldType, decode, encode

    value, pos = decode(buf, 0, FieldType.STRING_U16)
    data = encode(value, FieldType.STRING_U16)
"""

import math
import struct
from enum import Enum
from typing import Any, Tuple

from codec_errors import MalformedField, UnexpectedEndOfData


class FieldType(Enum):
    BOOLEAN = 'Boolean'
    FLOAT = 'Float'
    INTEGER = 'Integer'
    LONG_INTEGER = 'LongInteger'
    STRING_U8 = 'StringU8'
    STRING_U16 = 'StringU16'
    OPTIONAL_STRING_U8 = 'OptionalStringU8'
    OPTIONAL_STRING_U16 = 'OptionalStringU16'

    @classmethod
    def parse(cls, name: str) -> 'FieldType':
        """Look up a type by its schema name ('StringU16') or enum name."""
        try:
            return cls(name)
        except ValueError:
            pass
        try:
            return cls[str(name).upper()]
        except KeyError:
            raise MalformedField(f"Unknown field type: {name}")

    @property
    def is_string(self) -> bool:
        return self in STRING_TYPES


STRING_TYPES = frozenset({
    FieldType.STRING_U8, FieldType.STRING_U16,
    FieldType.OPTIONAL_STRING_U8, FieldType.OPTIONAL_STRING_U16,
})

# Fixed-width types: (struct format, size)
FIXED_FORMATS = {
    FieldType.BOOLEAN: ('<B', 1),
    FieldType.INTEGER: ('<i', 4),
    FieldType.LONG_INTEGER: ('<q', 8),
    FieldType.FLOAT: ('<f', 4),
}

INT_RANGES = {
    FieldType.INTEGER: (-2**31, 2**31 - 1),
    FieldType.LONG_INTEGER: (-2**63, 2**63 - 1),
}

MAX_STRING_LENGTH = 0xFFFF


# =============================================================================
# Raw readers (container headers, table headers)
# =============================================================================

def _check(buf: bytes, pos: int, size: int, what: str) -> None:
    if pos < 0 or pos + size > len(buf):
        raise UnexpectedEndOfData(size, pos, len(buf), what)


def read_u8(buf: bytes, pos: int) -> Tuple[int, int]:
    _check(buf, pos, 1, 'u8')
    return buf[pos], pos + 1


def read_u16(buf: bytes, pos: int) -> Tuple[int, int]:
    _check(buf, pos, 2, 'u16')
    return struct.unpack_from('<H', buf, pos)[0], pos + 2


def read_u32(buf: bytes, pos: int) -> Tuple[int, int]:
    _check(buf, pos, 4, 'u32')
    return struct.unpack_from('<I', buf, pos)[0], pos + 4


def read_bytes(buf: bytes, pos: int, size: int) -> Tuple[bytes, int]:
    _check(buf, pos, size, f'{size} raw bytes')
    return bytes(buf[pos:pos + size]), pos + size


def read_cstring(buf: bytes, pos: int, encoding: str = 'utf-8') -> Tuple[str, int]:
    """Read a null-terminated string. The terminator is consumed."""
    end = buf.find(b'\x00', pos)
    if end < 0:
        raise UnexpectedEndOfData(len(buf) - pos + 1, pos, len(buf), 'null-terminated string')
    try:
        value = bytes(buf[pos:end]).decode(encoding)
    except UnicodeDecodeError as e:
        raise MalformedField(f"Invalid {encoding} string at pos {pos}: {e}")
    return value, end + 1


def write_cstring(value: str, encoding: str = 'utf-8') -> bytes:
    data = value.encode(encoding)
    if b'\x00' in data:
        raise MalformedField(f"String contains a null byte: {value!r}")
    return data + b'\x00'


# =============================================================================
# Strings
# =============================================================================

def _decode_string_u8(buf: bytes, pos: int) -> Tuple[str, int]:
    length, pos = read_u16(buf, pos)
    _check(buf, pos, length, 'StringU8')
    try:
        value = bytes(buf[pos:pos + length]).decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedField(f"Invalid UTF-8 in StringU8 at pos {pos}: {e}")
    return value, pos + length


def _decode_string_u16(buf: bytes, pos: int) -> Tuple[str, int]:
    length, pos = read_u16(buf, pos)
    size = length * 2
    _check(buf, pos, size, 'StringU16')
    try:
        value = bytes(buf[pos:pos + size]).decode('utf-16-le')
    except UnicodeDecodeError as e:
        raise MalformedField(f"Invalid UTF-16 in StringU16 at pos {pos}: {e}")
    return value, pos + size


def _encode_string_u8(value: str) -> bytes:
    data = value.encode('utf-8')
    if len(data) > MAX_STRING_LENGTH:
        raise MalformedField(f"StringU8 too long: {len(data)} bytes")
    return struct.pack('<H', len(data)) + data


def _encode_string_u16(value: str) -> bytes:
    data = value.encode('utf-16-le')
    length = len(data) // 2
    if length > MAX_STRING_LENGTH:
        raise MalformedField(f"StringU16 too long: {length} characters")
    return struct.pack('<H', length) + data


# =============================================================================
# Public codec
# =============================================================================

def decode(buf: bytes, pos: int, field_type: FieldType) -> Tuple[Any, int]:
    """Decode one value of field_type at pos. Returns (value, new_pos)."""
    if field_type == FieldType.BOOLEAN:
        byte, new_pos = read_u8(buf, pos)
        if byte > 1:
            raise MalformedField(f"Invalid Boolean byte 0x{byte:02X} at pos {pos}")
        return byte == 1, new_pos

    if field_type in FIXED_FORMATS:
        fmt, size = FIXED_FORMATS[field_type]
        _check(buf, pos, size, field_type.value)
        return struct.unpack_from(fmt, buf, pos)[0], pos + size

    if field_type == FieldType.STRING_U8:
        return _decode_string_u8(buf, pos)

    if field_type == FieldType.STRING_U16:
        return _decode_string_u16(buf, pos)

    if field_type in (FieldType.OPTIONAL_STRING_U8, FieldType.OPTIONAL_STRING_U16):
        present, new_pos = read_u8(buf, pos)
        if present == 0:
            return '', new_pos
        if field_type == FieldType.OPTIONAL_STRING_U8:
            return _decode_string_u8(buf, new_pos)
        return _decode_string_u16(buf, new_pos)

    raise MalformedField(f"Cannot decode type: {field_type}")


def encode(value: Any, field_type: FieldType) -> bytes:
    """Encode value as field_type. Inverse of decode()."""
    validate_value(value, field_type)

    if field_type == FieldType.BOOLEAN:
        return bytes([1 if value else 0])

    if field_type in FIXED_FORMATS:
        fmt, _ = FIXED_FORMATS[field_type]
        return struct.pack(fmt, value)

    if field_type == FieldType.STRING_U8:
        return _encode_string_u8(value)

    if field_type == FieldType.STRING_U16:
        return _encode_string_u16(value)

    if field_type == FieldType.OPTIONAL_STRING_U8:
        if not value:
            return b'\x00'
        return b'\x01' + _encode_string_u8(value)

    if field_type == FieldType.OPTIONAL_STRING_U16:
        if not value:
            return b'\x00'
        return b'\x01' + _encode_string_u16(value)

    raise MalformedField(f"Cannot encode type: {field_type}")


def validate_value(value: Any, field_type: FieldType) -> None:
    """Raise MalformedField if value cannot be stored as field_type."""
    if field_type == FieldType.BOOLEAN:
        if not isinstance(value, bool):
            raise MalformedField(f"Expected bool for Boolean, got {type(value).__name__}")
        return

    if field_type in INT_RANGES:
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedField(f"Expected int for {field_type.value}, got {type(value).__name__}")
        low, high = INT_RANGES[field_type]
        if not low <= value <= high:
            raise MalformedField(f"{value} out of range for {field_type.value}")
        return

    if field_type == FieldType.FLOAT:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedField(f"Expected float for Float, got {type(value).__name__}")
        if math.isfinite(value) and abs(value) > 3.4028234663852886e38:
            raise MalformedField(f"{value} out of range for Float")
        return

    if field_type in STRING_TYPES:
        if not isinstance(value, str):
            raise MalformedField(f"Expected str for {field_type.value}, got {type(value).__name__}")
        return

    raise MalformedField(f"Unknown type: {field_type}")


def encoded_size(value: Any, field_type: FieldType) -> int:
    if field_type in FIXED_FORMATS:
        return FIXED_FORMATS[field_type][1]
    return len(encode(value, field_type))


# =============================================================================
# Canonical text form (CSV/TSV)
# =============================================================================

def to_text(value: Any, field_type: FieldType) -> str:
    """Render a cell as canonical text: true/false, decimal int, decimal float."""
    if field_type == FieldType.BOOLEAN:
        return 'true' if value else 'false'
    if field_type in INT_RANGES:
        return str(int(value))
    if field_type == FieldType.FLOAT:
        return repr(float(value))
    return str(value)


def from_text(text: str, field_type: FieldType) -> Any:
    """Parse canonical text back into a typed cell value."""
    if field_type == FieldType.BOOLEAN:
        lowered = text.strip().lower()
        if lowered in ('true', '1'):
            return True
        if lowered in ('false', '0'):
            return False
        raise MalformedField(f"Invalid Boolean text: {text!r}")

    if field_type in INT_RANGES:
        try:
            value = int(text.strip(), 10)
        except ValueError:
            raise MalformedField(f"Invalid {field_type.value} text: {text!r}")
        validate_value(value, field_type)
        return value

    if field_type == FieldType.FLOAT:
        try:
            value = float(text.strip())
        except ValueError:
            raise MalformedField(f"Invalid Float text: {text!r}")
        # Store what the wire can hold
        return struct.unpack('<f', struct.pack('<f', value))[0]

    return text


if __name__ == '__main__':
    # Demo
    print("=== Primitive Codec Demo ===\n")
    samples = [
        (True, FieldType.BOOLEAN),
        (-42, FieldType.INTEGER),
        (2**40, FieldType.LONG_INTEGER),
        (1.5, FieldType.FLOAT),
        ('unit_key', FieldType.STRING_U8),
        ('Empire', FieldType.STRING_U16),
        ('', FieldType.OPTIONAL_STRING_U8),
        ('tooltip', FieldType.OPTIONAL_STRING_U16),
    ]
    for value, field_type in samples:
        data = encode(value, field_type)
        decoded, pos = decode(data, 0, field_type)
        print(f"{field_type.value:18} {value!r:14} -> {data.hex().upper():28} -> {decoded!r} ({pos} bytes)")
