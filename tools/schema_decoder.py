#!/usr/bin/env python3
"""
schema_decoder.py - Interactive discovery of DB table definitions

A DecoderSession walks an undocumented table entry field by field. The
operator proposes a type at the cursor; if the bytes decode as that type the
field is committed and the cursor advances, otherwise nothing changes.

String lengths are only known by decoding, so any structural edit (move,
remove, retype, load another version) replays every committed field from the
first byte after the table header. Replay is deterministic: running it again
without edits gives the same cursor and previews. An edit whose replay fails
leaves the session exactly as it was.

Usage:
    from schema_decoder import DecoderSession

    session = DecoderSession(entry_data, 'land_units_tables', registry)
    session.commit_field('key', FieldType.STRING_U16, is_key=True)
    session.commit_field('category', FieldType.STRING_U16)
    definition = session.finalize()
"""

import logging
import string
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from codec_errors import CodecError, DecoderSessionError, MalformedField
from primitive_codec import FieldType, decode
from schema_registry import Field, SchemaRegistry, TableDefinition
from table_codec import decode_db_header, decode_rows

logger = logging.getLogger(__name__)


class DecoderState(Enum):
    IDLE = 'idle'
    COMMITTED = 'committed'
    REJECTED = 'rejected'


@dataclass(frozen=True)
class DecodedField:
    """A committed field and where it sits in the first decoded row."""
    field: Field
    start: int
    end: int
    preview: Any

    @property
    def length(self) -> int:
        return self.end - self.start


def _replay(data: bytes, start: int, fields: List[Field]) -> Tuple[List[DecodedField], int]:
    decoded = []
    pos = start
    for f in fields:
        value, end = decode(data, pos, f.field_type)
        decoded.append(DecodedField(field=f, start=pos, end=end, preview=value))
        pos = end
    return decoded, pos


class DecoderSession:
    """Stateful field-by-field decoder for one table entry."""

    def __init__(self, data: bytes, table_name: str,
                 registry: Optional[SchemaRegistry] = None,
                 version: Optional[int] = None,
                 initial_index: Optional[int] = None):
        self.data = bytes(data)
        self.table_name = table_name
        self.registry = registry

        if version is None or initial_index is None:
            header, header_end = decode_db_header(self.data)
            self.header = header
            if version is None:
                version = header.version
            if initial_index is None:
                initial_index = header_end
        else:
            self.header = None

        self.version = version
        self.initial_index = initial_index
        self.state = DecoderState.IDLE
        self._decoded: List[DecodedField] = []
        self._cursor = initial_index

    # =========================================================================
    # Inspection
    # =========================================================================

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def remaining(self) -> int:
        return len(self.data) - self._cursor

    @property
    def fields(self) -> List[Field]:
        return [d.field for d in self._decoded]

    @property
    def decoded(self) -> List[DecodedField]:
        return list(self._decoded)

    def probe(self, field_type: FieldType) -> Tuple[Any, int]:
        """Decode field_type at the cursor without committing."""
        return decode(self.data, self._cursor, field_type)

    def probe_all(self) -> Dict[FieldType, Tuple[Optional[Any], Optional[str]]]:
        """Preview every primitive type at the cursor: type -> (value, error)."""
        previews = {}
        for field_type in FieldType:
            try:
                value, _ = self.probe(field_type)
                previews[field_type] = (value, None)
            except CodecError as e:
                previews[field_type] = (None, str(e))
        return previews

    def hex_view(self, width: int = 16, lines: int = 4) -> str:
        """Hex dump starting at the row containing the cursor."""
        start = self._cursor - (self._cursor % width)
        out = []
        for line_start in range(start, min(start + width * lines, len(self.data)), width):
            chunk = self.data[line_start:line_start + width]
            hex_part = ' '.join(
                (f'[{b:02X}' if line_start + i == self._cursor else f'{b:02X}')
                for i, b in enumerate(chunk)
            )
            text_part = ''.join(
                chr(b) if chr(b) in string.printable and b >= 0x20 else '.'
                for b in chunk
            )
            out.append(f'{line_start:08X}  {hex_part:<{width * 3 + 1}}  {text_part}')
        return '\n'.join(out)

    # =========================================================================
    # Editing
    # =========================================================================

    def commit_field(self, name: str, field_type: FieldType, is_key: bool = False,
                     reference: Optional[Tuple[str, str]] = None,
                     description: str = '') -> DecodedField:
        """
        Decode field_type at the cursor and, if it fits, append it.

        Raises the codec error (cursor unchanged) if the bytes at the cursor
        are not a valid field_type or run past the end of the buffer.
        """
        if not name:
            raise DecoderSessionError("Field name is required")
        if any(d.field.name == name for d in self._decoded):
            raise DecoderSessionError(f"Field '{name}' already exists")
        try:
            value, end = decode(self.data, self._cursor, field_type)
        except CodecError:
            self.state = DecoderState.REJECTED
            logger.debug("Rejected %s at %d", field_type.value, self._cursor)
            raise

        decoded = DecodedField(
            field=Field(name, field_type, is_key, reference, description),
            start=self._cursor, end=end, preview=value,
        )
        self._decoded.append(decoded)
        self._cursor = end
        self.state = DecoderState.COMMITTED
        logger.debug("Committed %s %s [%d:%d] = %r", name, field_type.value, decoded.start, end, value)
        return decoded

    def replay(self) -> int:
        """Re-decode every field from the initial index. Returns the cursor."""
        self._apply(self.fields)
        return self._cursor

    def _apply(self, fields: List[Field]) -> None:
        decoded, cursor = _replay(self.data, self.initial_index, fields)
        self._decoded = decoded
        self._cursor = cursor
        self.state = DecoderState.IDLE
        logger.debug("Replayed %d fields, cursor at %d", len(fields), cursor)

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._decoded):
            raise DecoderSessionError(f"No field at index {index}")

    def move_field(self, index: int, new_index: int) -> None:
        self._check_index(index)
        self._check_index(new_index)
        fields = self.fields
        fields.insert(new_index, fields.pop(index))
        self._apply(fields)

    def move_up(self, index: int) -> None:
        if index > 0:
            self.move_field(index, index - 1)

    def move_down(self, index: int) -> None:
        if index < len(self._decoded) - 1:
            self.move_field(index, index + 1)

    def remove_field(self, index: int) -> None:
        self._check_index(index)
        fields = self.fields
        del fields[index]
        self._apply(fields)

    def change_field_type(self, index: int, field_type: FieldType) -> None:
        self._check_index(index)
        fields = self.fields
        fields[index] = replace(fields[index], field_type=field_type)
        self._apply(fields)

    def update_field(self, index: int, **changes: Any) -> None:
        """Change name, is_key, reference or description of a field."""
        self._check_index(index)
        if 'field_type' in changes:
            raise DecoderSessionError("Use change_field_type() to retype a field")
        new_name = changes.get('name')
        if new_name is not None and any(
                i != index and d.field.name == new_name for i, d in enumerate(self._decoded)):
            raise DecoderSessionError(f"Field '{new_name}' already exists")
        fields = self.fields
        fields[index] = replace(fields[index], **changes)
        self._apply(fields)

    def clear(self) -> None:
        self._apply([])

    # =========================================================================
    # Schema interaction
    # =========================================================================

    def _require_registry(self) -> SchemaRegistry:
        if self.registry is None:
            raise DecoderSessionError("No schema loaded for this session")
        return self.registry

    def known_versions(self) -> List[int]:
        return self._require_registry().list_versions(self.table_name)

    def load_definition(self, version: int) -> None:
        """Replace the committed fields with those of an existing definition."""
        definition = self._require_registry().require(self.table_name, version)
        self._apply(list(definition.fields))

    def delete_definition(self, version: int) -> None:
        """Remove (table, version) from the registry. Cannot be undone."""
        self._require_registry().remove(self.table_name, version)

    def finalize(self) -> TableDefinition:
        return TableDefinition(self.table_name, self.version, self.fields)

    def check_definition(self) -> int:
        """
        Decode the whole entry with the committed fields.

        Returns the row count; raises if the bytes do not split into whole
        rows or the count disagrees with the header.
        """
        rows = decode_rows(self.data, self.initial_index, self.finalize())
        if self.header is not None and len(rows) != self.header.entry_count:
            raise MalformedField(
                f"Decoded {len(rows)} rows, header declares {self.header.entry_count}"
            )
        return len(rows)

    def save(self, schema_path: Optional[Union[str, Path]] = None) -> TableDefinition:
        """Store the finalized definition in the registry (and on disk if a path is given)."""
        registry = self._require_registry()
        definition = self.finalize()
        if schema_path is not None:
            registry.save_definition(schema_path, definition)
        else:
            registry.put(definition)
        logger.info("Saved decoded definition %s v%d (%d fields)",
                    self.table_name, self.version, len(definition.fields))
        return definition
