#!/usr/bin/env python3
"""
dependency_resolver.py - Reference lookups against a game's dependency pack

A dependency pack is a PackFile holding only the db/ tables of a game's
data.pack. Fields that declare a reference (table, column) are checked
against the values of that column across every entry of that table.

The resolver opens the pack read-only and decodes tables on demand. Decoded
columns are cached together with the definitions used to decode them; every
lookup re-resolves those definitions, so removing or replacing a version in
the registry invalidates the cache instead of serving stale values.

Usage:
    from dependency_resolver import DependencyResolver

    resolver = DependencyResolver(registry)
    resolver.load('wh2.pack')
    resolver.value_exists('unit_categories_tables', 'key', 'cavalry')
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from packfile import PackFile, PackType
from schema_registry import SchemaRegistry, TableDefinition
from table_codec import DBTable, Table, decode_db_header

logger = logging.getLogger(__name__)

DEPENDENCY_PREFIXES = ('db',)

# (row index, field name, missing value)
MissingReference = Tuple[int, str, Any]


class DependencyResolver:
    """Read-only view over a dependency pack for reference validation."""

    def __init__(self, registry: SchemaRegistry, pack: Optional[PackFile] = None):
        self.registry = registry
        self.pack = pack
        self._cache: Dict[Tuple[str, str], Tuple[Tuple[TableDefinition, ...], Set[Any]]] = {}

    @property
    def is_loaded(self) -> bool:
        return self.pack is not None

    def load(self, pack_path: Union[str, Path],
             prefixes: Sequence[str] = DEPENDENCY_PREFIXES) -> PackFile:
        """Open a dependency pack read-only, keeping only entries under prefixes."""
        pack = PackFile.open(pack_path, lazy=True)
        pack.filter_prefix(prefixes)
        pack.read_only = True
        self.pack = pack
        self._cache.clear()
        logger.info("Loaded dependency pack %s (%d entries)", pack_path, len(pack))
        return pack

    def _table_entries(self, table_name: str):
        if self.pack is None:
            return []
        return self.pack.entries_under(('db', table_name))

    def column_values(self, table_name: str, column: str) -> Set[Any]:
        """
        All values of table_name.column in the dependency pack.

        Raises SchemaNotFound if an entry's version has no definition.
        """
        entries = self._table_entries(table_name)
        definitions = []
        for entry in entries:
            header, _ = decode_db_header(entry.data)
            definitions.append(self.registry.require(table_name, header.version))

        cached = self._cache.get((table_name, column))
        if cached is not None and len(cached[0]) == len(definitions) and all(
                a is b for a, b in zip(cached[0], definitions)):
            return cached[1]

        values: Set[Any] = set()
        for entry in entries:
            table = DBTable.read(entry.data, table_name, self.registry)
            values.update(table.column(column))
        self._cache[(table_name, column)] = (tuple(definitions), values)
        logger.debug("Cached %d values of %s.%s", len(values), table_name, column)
        return values

    def value_exists(self, table_name: str, column: str, value: Any) -> bool:
        return value in self.column_values(table_name, column)

    def find_missing_references(self, table: Table,
                                extra_sources: Sequence[Table] = ()) -> List[MissingReference]:
        """
        Cells whose referenced value is in neither the dependency pack nor
        extra_sources (tables from the pack being edited).
        """
        missing = []
        for index, f in enumerate(table.definition.fields):
            if not f.reference:
                continue
            ref_table, ref_column = f.reference
            known = set(self.column_values(ref_table, ref_column))
            for source in extra_sources:
                if source.definition.table_name == ref_table:
                    known.update(source.column(ref_column))
            for row_index, row in enumerate(table.rows):
                value = row[index]
                if value in ('', None):
                    continue
                if value not in known:
                    missing.append((row_index, f.name, value))
        return missing


def generate_dependency_pack(data_pack: Union[str, Path], output: Union[str, Path]) -> PackFile:
    """Write the db/ tables of a game's data.pack to output as a new pack."""
    source = PackFile.open(data_pack, lazy=True, read_only=True)
    pack = PackFile.new(source.dialect, PackType.RELEASE)
    entries = [e for e in source if e.path[0] in DEPENDENCY_PREFIXES]
    pack.add_entries((e.path, e.data) for e in entries)
    pack.save(output)
    logger.info("Generated dependency pack %s from %s (%d entries)", output, data_pack, len(pack))
    return pack
