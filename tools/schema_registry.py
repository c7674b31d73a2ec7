#!/usr/bin/env python3
"""
schema_registry.py - Versioned table definitions for DB tables

A schema is a catalog of table definitions, one list of versions per table
name. Callers always ask for an exact (table, version) pair, usually the
version embedded in the table's own header; there is no migration between
versions.

Schemas persist as one YAML document per game:

    dialect: PFH5
    tables:
      land_units_tables:
        - version: 3
          fields:
            - name: key
              type: StringU16
              key: true
            - name: category
              type: StringU16
              reference: [unit_categories_tables, key]
              description: Unit category shown in the UI

Usage:
    from schema_registry import SchemaRegistry

    registry = SchemaRegistry.load('schema_wh2.yaml')
    definition = registry.require('land_units_tables', 3)
"""

import copy
import logging
import os
import tempfile
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import yaml

from codec_errors import MalformedField, SchemaNotFound
from primitive_codec import FieldType

logger = logging.getLogger(__name__)

FIELD_KEYS = {'name', 'type', 'key', 'reference', 'description'}


@dataclass
class Field:
    """One column of a table definition."""
    name: str
    field_type: FieldType
    is_key: bool = False
    reference: Optional[Tuple[str, str]] = None
    description: str = ''

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'name': self.name, 'type': self.field_type.value}
        if self.is_key:
            result['key'] = True
        if self.reference:
            result['reference'] = list(self.reference)
        if self.description:
            result['description'] = self.description
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Field':
        if not isinstance(data, dict) or 'name' not in data or 'type' not in data:
            raise MalformedField(f"Field needs 'name' and 'type': {data!r}")
        unknown = set(data) - FIELD_KEYS
        if unknown:
            warnings.warn(f"Field '{data['name']}' has unknown keys: {sorted(unknown)}")
        reference = data.get('reference')
        if reference is not None:
            if not isinstance(reference, (list, tuple)) or len(reference) != 2:
                raise MalformedField(
                    f"Field '{data['name']}' reference must be [table, column], got {reference!r}"
                )
            reference = (str(reference[0]), str(reference[1]))
        return cls(
            name=str(data['name']),
            field_type=FieldType.parse(data['type']),
            is_key=bool(data.get('key', False)),
            reference=reference,
            description=str(data.get('description', '') or ''),
        )


@dataclass
class TableDefinition:
    """Ordered field layout for one (table name, version) pair."""
    table_name: str
    version: int
    fields: List[Field] = field(default_factory=list)

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def key_indexes(self) -> List[int]:
        return [i for i, f in enumerate(self.fields) if f.is_key]

    def field_index(self, name: str) -> int:
        for i, f in enumerate(self.fields):
            if f.name == name:
                return i
        raise SchemaNotFound(f"{self.table_name}.{name}", self.version)

    def validate(self) -> List[str]:
        """Return a list of structural problems (empty if valid)."""
        errors = []
        if not self.table_name:
            errors.append("Table name is empty")
        if self.version < 0:
            errors.append(f"Version must be >= 0, got {self.version}")
        seen = set()
        for i, f in enumerate(self.fields):
            if not f.name:
                errors.append(f"Field {i} has no name")
            elif f.name in seen:
                errors.append(f"Duplicate field name: {f.name}")
            seen.add(f.name)
            if not isinstance(f.field_type, FieldType):
                errors.append(f"Field '{f.name}' has invalid type {f.field_type!r}")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'fields': [f.to_dict() for f in self.fields],
        }

    @classmethod
    def from_dict(cls, table_name: str, data: Dict[str, Any]) -> 'TableDefinition':
        if not isinstance(data, dict) or 'version' not in data:
            raise MalformedField(f"Definition of '{table_name}' needs a 'version'")
        return cls(
            table_name=table_name,
            version=int(data['version']),
            fields=[Field.from_dict(f) for f in data.get('fields', []) or []],
        )


class SchemaRegistry:
    """
    In-memory catalog of table definitions keyed by (table name, version).

    The registry is an explicit handle: load it once per game, pass it to
    the codecs that need it, and swap it with load() when the game changes.
    """

    def __init__(self, dialect: str = ''):
        self.dialect = dialect
        self._tables: Dict[str, Dict[int, TableDefinition]] = {}

    def __contains__(self, key: Tuple[str, int]) -> bool:
        table_name, version = key
        return version in self._tables.get(table_name, {})

    def __len__(self) -> int:
        return sum(len(v) for v in self._tables.values())

    def __iter__(self) -> Iterator[TableDefinition]:
        for table_name in sorted(self._tables):
            for version in self.list_versions(table_name):
                yield self._tables[table_name][version]

    def get(self, table_name: str, version: int) -> Optional[TableDefinition]:
        return self._tables.get(table_name, {}).get(version)

    def require(self, table_name: str, version: int) -> TableDefinition:
        definition = self.get(table_name, version)
        if definition is None:
            raise SchemaNotFound(table_name, version)
        return definition

    def put(self, definition: TableDefinition) -> None:
        """Insert or replace the definition for its exact (name, version)."""
        errors = definition.validate()
        if errors:
            raise MalformedField(
                f"Invalid definition for '{definition.table_name}' v{definition.version}: "
                + '; '.join(errors)
            )
        versions = self._tables.setdefault(definition.table_name, {})
        replaced = definition.version in versions
        versions[definition.version] = copy.deepcopy(definition)
        logger.debug("%s definition %s v%d",
                     'Replaced' if replaced else 'Added',
                     definition.table_name, definition.version)

    def remove(self, table_name: str, version: int) -> None:
        versions = self._tables.get(table_name, {})
        if version not in versions:
            raise SchemaNotFound(table_name, version)
        del versions[version]
        if not versions:
            del self._tables[table_name]
        logger.info("Removed definition %s v%d", table_name, version)

    def list_versions(self, table_name: str) -> List[int]:
        """Versions known for a table, newest first."""
        return sorted(self._tables.get(table_name, {}), reverse=True)

    def table_names(self) -> List[str]:
        return sorted(self._tables)

    def latest(self, table_name: str) -> TableDefinition:
        versions = self.list_versions(table_name)
        if not versions:
            raise SchemaNotFound(table_name)
        return self._tables[table_name][versions[0]]

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        tables = {}
        for table_name in self.table_names():
            tables[table_name] = [
                self._tables[table_name][v].to_dict()
                for v in self.list_versions(table_name)
            ]
        return {'dialect': self.dialect, 'tables': tables}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SchemaRegistry':
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise MalformedField("Schema document must be a mapping")
        registry = cls(dialect=str(data.get('dialect', '') or ''))
        for table_name, versions in (data.get('tables') or {}).items():
            for entry in versions or []:
                registry.put(TableDefinition.from_dict(str(table_name), entry))
        return registry

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'SchemaRegistry':
        """Load a schema document from a YAML file."""
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        registry = cls.from_dict(data)
        logger.info("Loaded schema %s: %d tables, %d definitions",
                    path, len(registry.table_names()), len(registry))
        return registry

    def save(self, path: Union[str, Path]) -> None:
        """Write the whole registry to a YAML file."""
        _write_yaml(Path(path), self.to_dict())
        logger.info("Saved schema %s (%d definitions)", path, len(self))

    def save_definition(self, path: Union[str, Path], definition: TableDefinition) -> None:
        """
        Put one definition and persist only that record.

        Other tables and versions already in the file are kept as they are on
        disk, even if this registry holds a different set.
        """
        self.put(definition)
        path = Path(path)
        if path.exists():
            with open(path, 'r', encoding='utf-8') as f:
                document = yaml.safe_load(f) or {}
        else:
            document = {'dialect': self.dialect, 'tables': {}}

        tables = document.setdefault('tables', {}) or {}
        document['tables'] = tables
        versions = [
            v for v in (tables.get(definition.table_name) or [])
            if int(v.get('version', -1)) != definition.version
        ]
        versions.append(definition.to_dict())
        versions.sort(key=lambda v: int(v['version']), reverse=True)
        tables[definition.table_name] = versions

        _write_yaml(path, document)
        logger.info("Saved definition %s v%d to %s",
                    definition.table_name, definition.version, path)


def _write_yaml(path: Path, document: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            yaml.safe_dump(document, f, default_flow_style=False,
                           allow_unicode=True, sort_keys=False)
        os.replace(tmp_name, path)
    except BaseException:
        os.unlink(tmp_name)
        raise
