#!/usr/bin/env python3
"""
table_codec.py - DB and Loc table encoder/decoder

Converts a table entry's raw bytes plus a TableDefinition into an ordered
list of typed rows, and back. Unmodified tables re-encode byte for byte,
with one exception: an optional string stored as present but empty
(01 00 00) decodes to '' and is written back as absent (00).

DB entry layout:
    [FD FE FC FF + StringU16 guid]     optional GUID block
    [FC FD FE FF + u32 version]        optional version block (absent = v0)
    u8  marker (always 1)
    u32 row count
    rows, one cell per field in field order

Loc entry layout:
    FF FE 'LOC' 00                     signature
    u32 version (1)
    u32 row count
    rows of (key StringU16, text StringU16, tooltip Boolean)

Usage:
    from table_codec import DBTable, LocTable

    table = DBTable.read(entry.data, 'land_units_tables', registry)
    table.insert_row([...])
    entry.data = table.to_bytes()
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from codec_errors import DuplicateKey, InvalidKey, MalformedField
from primitive_codec import (
    FieldType, decode, encode, validate_value,
    read_u8, read_u32, read_bytes,
)
from schema_registry import Field, SchemaRegistry, TableDefinition

logger = logging.getLogger(__name__)

GUID_MARKER = b'\xFD\xFE\xFC\xFF'
VERSION_MARKER = b'\xFC\xFD\xFE\xFF'
LOC_SIGNATURE = b'\xFF\xFELOC\x00'
LOC_VERSION = 1

LOC_DEFINITION = TableDefinition(
    table_name='loc',
    version=LOC_VERSION,
    fields=[
        Field('key', FieldType.STRING_U16, is_key=True),
        Field('text', FieldType.STRING_U16),
        Field('tooltip', FieldType.BOOLEAN),
    ],
)

Row = List[Any]


# =============================================================================
# Headers
# =============================================================================

@dataclass
class DBHeader:
    """Per-entry header of a DB table."""
    version: int = 0
    guid: Optional[str] = None
    has_version_marker: bool = False
    marker: int = 1
    entry_count: int = 0

    def to_bytes(self, entry_count: int) -> bytes:
        out = bytearray()
        if self.guid is not None:
            out += GUID_MARKER
            out += encode(self.guid, FieldType.STRING_U16)
        if self.has_version_marker or self.version:
            out += VERSION_MARKER
            out += struct.pack('<I', self.version)
        out.append(self.marker)
        out += struct.pack('<I', entry_count)
        return bytes(out)


def decode_db_header(buf: bytes) -> Tuple[DBHeader, int]:
    """Parse a DB header. Returns (header, offset of the first row)."""
    header = DBHeader()
    pos = 0
    if buf[pos:pos + 4] == GUID_MARKER:
        header.guid, pos = decode(buf, pos + 4, FieldType.STRING_U16)
    if buf[pos:pos + 4] == VERSION_MARKER:
        header.version, pos = read_u32(buf, pos + 4)
        header.has_version_marker = True
    header.marker, pos = read_u8(buf, pos)
    header.entry_count, pos = read_u32(buf, pos)
    return header, pos


@dataclass
class LocHeader:
    version: int = LOC_VERSION
    entry_count: int = 0

    def to_bytes(self, entry_count: int) -> bytes:
        return LOC_SIGNATURE + struct.pack('<II', self.version, entry_count)


def decode_loc_header(buf: bytes) -> Tuple[LocHeader, int]:
    signature, pos = read_bytes(buf, 0, len(LOC_SIGNATURE))
    if signature != LOC_SIGNATURE:
        raise MalformedField(f"Not a Loc table: signature {signature.hex().upper()}")
    version, pos = read_u32(buf, pos)
    entry_count, pos = read_u32(buf, pos)
    return LocHeader(version=version, entry_count=entry_count), pos


def is_loc_data(buf: bytes) -> bool:
    return bytes(buf[:len(LOC_SIGNATURE)]) == LOC_SIGNATURE


# =============================================================================
# Rows
# =============================================================================

def decode_rows(buf: bytes, pos: int, definition: TableDefinition) -> List[Row]:
    """
    Decode rows from pos until the buffer is exhausted.

    A row cut short by the end of the buffer raises UnexpectedEndOfData;
    it is never returned as a truncated row.
    """
    fields = definition.fields
    if not fields:
        if pos < len(buf):
            raise MalformedField(
                f"Definition '{definition.table_name}' v{definition.version} has no fields "
                f"but {len(buf) - pos} bytes remain"
            )
        return []

    rows = []
    while pos < len(buf):
        row = []
        for f in fields:
            value, pos = decode(buf, pos, f.field_type)
            row.append(value)
        rows.append(row)
    return rows


def encode_rows(rows: Sequence[Sequence[Any]], definition: TableDefinition) -> bytes:
    out = bytearray()
    types = [f.field_type for f in definition.fields]
    for row in rows:
        for value, field_type in zip(row, types):
            out += encode(value, field_type)
    return bytes(out)


def validate_rows(rows: Sequence[Sequence[Any]], definition: TableDefinition) -> None:
    """Check row length and every cell's type against the definition."""
    width = len(definition.fields)
    for i, row in enumerate(rows):
        if len(row) != width:
            raise MalformedField(f"Row {i} has {len(row)} cells, definition has {width} fields")
        for value, f in zip(row, definition.fields):
            try:
                validate_value(value, f.field_type)
            except MalformedField as e:
                raise MalformedField(f"Row {i}, field '{f.name}': {e}")


def validate_keys(rows: Sequence[Sequence[Any]], key_index: int) -> None:
    """Loc-style key rules: non-empty, no whitespace, unique."""
    seen = {}
    for i, row in enumerate(rows):
        key = row[key_index]
        if not key:
            raise InvalidKey(f"Row {i}: key is empty")
        if any(c.isspace() for c in key):
            raise InvalidKey(f"Row {i}: key {key!r} contains whitespace")
        if key in seen:
            raise DuplicateKey(f"Row {i}: key {key!r} already used by row {seen[key]}")
        seen[key] = i


# =============================================================================
# Tables
# =============================================================================

class Table:
    """Typed rows bound to one definition. All edits validate before committing."""

    unique_keys = False

    def __init__(self, definition: TableDefinition, rows: Optional[List[Row]] = None):
        self.definition = definition
        self.rows: List[Row] = []
        if rows:
            self.commit_rows(rows)

    def __len__(self) -> int:
        return len(self.rows)

    def _check(self, rows: Sequence[Sequence[Any]]) -> None:
        validate_rows(rows, self.definition)
        if self.unique_keys:
            validate_keys(rows, self.definition.key_indexes[0])

    def commit_rows(self, rows: Sequence[Sequence[Any]]) -> None:
        """Replace all rows. Nothing changes if any row is invalid."""
        candidate = [list(row) for row in rows]
        self._check(candidate)
        self.rows = candidate

    def insert_row(self, row: Sequence[Any], index: Optional[int] = None) -> None:
        candidate = [list(r) for r in self.rows]
        if index is None:
            candidate.append(list(row))
        else:
            candidate.insert(index, list(row))
        self._check(candidate)
        self.rows = candidate

    def update_cell(self, row_index: int, column: int, value: Any) -> None:
        candidate = [list(r) for r in self.rows]
        candidate[row_index][column] = value
        self._check(candidate)
        self.rows = candidate

    def delete_rows(self, indexes: Sequence[int]) -> None:
        doomed = set(indexes)
        self.rows = [row for i, row in enumerate(self.rows) if i not in doomed]

    def column(self, name: str) -> List[Any]:
        index = self.definition.field_index(name)
        return [row[index] for row in self.rows]


class DBTable(Table):
    """A DB table entry (db/<table_name>/<file>)."""

    def __init__(self, definition: TableDefinition, rows: Optional[List[Row]] = None,
                 header: Optional[DBHeader] = None):
        super().__init__(definition, rows)
        self.header = header or DBHeader(version=definition.version,
                                         has_version_marker=definition.version > 0)

    @property
    def table_name(self) -> str:
        return self.definition.table_name

    @classmethod
    def read(cls, data: bytes, table_name: str, registry: SchemaRegistry) -> 'DBTable':
        header, pos = decode_db_header(data)
        definition = registry.require(table_name, header.version)
        rows = decode_rows(data, pos, definition)
        if len(rows) != header.entry_count:
            raise MalformedField(
                f"Table '{table_name}' header declares {header.entry_count} rows, "
                f"decoded {len(rows)}"
            )
        logger.debug("Decoded %s v%d: %d rows", table_name, header.version, len(rows))
        table = cls(definition, header=header)
        table.rows = rows
        return table

    def to_bytes(self) -> bytes:
        return self.header.to_bytes(len(self.rows)) + encode_rows(self.rows, self.definition)


class LocTable(Table):
    """A localisation table: unique, whitespace-free keys."""

    unique_keys = True

    def __init__(self, rows: Optional[List[Row]] = None, header: Optional[LocHeader] = None):
        super().__init__(LOC_DEFINITION, rows)
        self.header = header or LocHeader()

    @classmethod
    def read(cls, data: bytes) -> 'LocTable':
        header, pos = decode_loc_header(data)
        rows = decode_rows(data, pos, LOC_DEFINITION)
        if len(rows) != header.entry_count:
            raise MalformedField(
                f"Loc header declares {header.entry_count} rows, decoded {len(rows)}"
            )
        table = cls(header=header)
        # Game files are not held to the edit-time key rules
        table.rows = rows
        return table

    def to_bytes(self) -> bytes:
        return self.header.to_bytes(len(self.rows)) + encode_rows(self.rows, self.definition)


def table_name_from_path(path: Sequence[str]) -> str:
    """db/<table_name>/<file> -> table_name"""
    if len(path) < 3 or path[0] != 'db':
        raise MalformedField(f"Not a DB table path: {'/'.join(path)}")
    return path[1]


def read_table(path: Sequence[str], data: bytes, registry: Optional[SchemaRegistry] = None) -> Table:
    """Decode an entry as a Loc or DB table, chosen from its path and signature."""
    if is_loc_data(data) or (path and path[-1].endswith('.loc')):
        return LocTable.read(data)
    if registry is None:
        raise MalformedField("A schema is required to decode DB tables")
    return DBTable.read(data, table_name_from_path(path), registry)
