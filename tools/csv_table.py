#!/usr/bin/env python3
"""
csv_table.py - CSV/TSV projection of DB and Loc tables

One text line per row, columns in field order, cells in canonical text form
(true/false, decimal integers, decimal floats). An optional first line of
field names is written on export and recognised on import.

Import is all-or-nothing: the whole file is parsed and validated before the
table is touched, so any failure leaves the previous rows in place.

Usage:
    python tools/csv_table.py export table.bin out.csv --schema schema.yaml --table land_units_tables
    python tools/csv_table.py import in.csv table.bin --schema schema.yaml --table land_units_tables
"""

import argparse
import csv
import io
import logging
import sys
from pathlib import Path
from typing import Any, List, Sequence, Union

from codec_errors import CodecError, CsvImportError, MalformedField
from primitive_codec import from_text, to_text
from schema_registry import TableDefinition
from table_codec import Row, Table

logger = logging.getLogger(__name__)


def rows_to_text(rows: Sequence[Sequence[Any]], definition: TableDefinition,
                 delimiter: str = ',', header: bool = True) -> str:
    out = io.StringIO()
    writer = csv.writer(out, delimiter=delimiter, lineterminator='\n')
    if header:
        writer.writerow(definition.field_names)
    types = [f.field_type for f in definition.fields]
    for row in rows:
        writer.writerow([to_text(v, t) for v, t in zip(row, types)])
    return out.getvalue()


def rows_from_text(text: str, definition: TableDefinition, delimiter: str = ',') -> List[Row]:
    """Parse every line into typed rows. Raises CsvImportError on the first bad line."""
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    width = len(definition.fields)
    types = [f.field_type for f in definition.fields]
    rows = []
    for line_no, record in enumerate(reader, 1):
        if not record:
            continue
        if line_no == 1 and record == definition.field_names:
            continue
        if len(record) != width:
            raise CsvImportError(
                f"expected {width} columns for '{definition.table_name}', got {len(record)}",
                line_no,
            )
        try:
            rows.append([from_text(cell, t) for cell, t in zip(record, types)])
        except MalformedField as e:
            raise CsvImportError(str(e), line_no)
    return rows


def export_csv(table: Table, path: Union[str, Path], delimiter: str = ',',
               header: bool = True) -> int:
    """Write table rows to path. Returns the number of rows written."""
    text = rows_to_text(table.rows, table.definition, delimiter, header)
    with open(path, 'w', encoding='utf-8', newline='') as f:
        f.write(text)
    logger.info("Exported %d rows of %s to %s", len(table.rows), table.definition.table_name, path)
    return len(table.rows)


def import_csv(table: Table, path: Union[str, Path], delimiter: str = ',') -> int:
    """
    Replace table rows with the contents of path.

    The table keeps its previous rows on any failure. A wrong column count,
    an unparsable cell or a value the definition rejects raises
    CsvImportError; a broken Loc key rule raises DuplicateKey or InvalidKey.
    """
    with open(path, 'r', encoding='utf-8', newline='') as f:
        text = f.read()
    rows = rows_from_text(text, table.definition, delimiter)
    try:
        table.commit_rows(rows)
    except MalformedField as e:
        raise CsvImportError(str(e))
    logger.info("Imported %d rows into %s from %s", len(rows), table.definition.table_name, path)
    return len(rows)


def main():
    from schema_registry import SchemaRegistry
    from table_codec import DBTable, LocTable

    parser = argparse.ArgumentParser(description='Convert a DB/Loc table entry to or from CSV')
    parser.add_argument('mode', choices=['export', 'import'])
    parser.add_argument('source', type=Path)
    parser.add_argument('target', type=Path)
    parser.add_argument('--schema', type=Path, help='Schema YAML (DB tables only)')
    parser.add_argument('--table', help='DB table name, e.g. land_units_tables')
    parser.add_argument('--tsv', action='store_true', help='Use tab as delimiter')
    args = parser.parse_args()

    delimiter = '\t' if args.tsv else ','
    binary_path = args.source if args.mode == 'export' else args.target

    try:
        data = binary_path.read_bytes()
        if args.table:
            if not args.schema:
                parser.error('--schema is required with --table')
            table = DBTable.read(data, args.table, SchemaRegistry.load(args.schema))
        else:
            table = LocTable.read(data)

        if args.mode == 'export':
            count = export_csv(table, args.target, delimiter)
            print(f"Exported {count} rows to {args.target}")
        else:
            count = import_csv(table, args.source, delimiter)
            args.target.write_bytes(table.to_bytes())
            print(f"Imported {count} rows into {args.target}")
    except (CodecError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
