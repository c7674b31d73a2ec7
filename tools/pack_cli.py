#!/usr/bin/env python3
"""
pack_cli.py - Command-line front end for the PackFile tools

Usage:
    pack-tools packfile my_mod.pack --list
    pack-tools packfile my_mod.pack --new PFH5 --type mod
    pack-tools packfile my_mod.pack --add-files db/land_units_tables my_units
    pack-tools packfile my_mod.pack --add-folders text/db ./loc_files
    pack-tools packfile my_mod.pack --delete-files db/land_units_tables/my_units
    pack-tools packfile my_mod.pack --delete-folders text
    pack-tools packfile my_mod.pack --extract out/ [PATH...]
    pack-tools packfile my_mod.pack --patch-siege-ai

    pack-tools table my_mod.pack --export db/land_units_tables/my_units units.tsv
    pack-tools table my_mod.pack --import units.tsv db/land_units_tables/my_units

    pack-tools schema --versions land_units_tables
    pack-tools schema --remove land_units_tables 3

    pack-tools dependency --generate data.pack wh2.pack
    pack-tools dependency --check my_mod.pack db/land_units_tables/my_units

Schema and dependency pack locations come from pack_config (config file or
PACK_TOOLS_* environment variables) unless given with --schema/--dependency-pack.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from codec_errors import CodecError
from csv_table import export_csv, import_csv
from dependency_resolver import DependencyResolver, generate_dependency_pack
from pack_config import ToolConfig, load_config
from packfile import DIALECTS, PackFile, PackType, split_path
from schema_registry import SchemaRegistry
from table_codec import read_table

logger = logging.getLogger(__name__)


def _registry(args: argparse.Namespace, config: ToolConfig) -> SchemaRegistry:
    path = args.schema or config.schema_path()
    return SchemaRegistry.load(path)


# =============================================================================
# packfile
# =============================================================================

def cmd_packfile(args: argparse.Namespace, config: ToolConfig) -> None:
    if args.new:
        pack = PackFile.new(args.new, PackType[(args.type or 'mod').upper()])
        pack.save(args.pack)
        print(f"Created {args.new} {pack.pack_type.name} pack {args.pack}")
        return

    read_only = bool(args.list or args.extract)
    pack = PackFile.open(args.pack, lazy=read_only, read_only=read_only)

    if args.list:
        print(f"{pack.dialect} {pack.pack_type.name} - {len(pack)} entries")
        for entry in pack:
            print(f"  {entry.size:>10}  {entry.path_str}")
        return

    if args.extract:
        dest, paths = Path(args.extract[0]), args.extract[1:]
        if not paths:
            written = pack.extract_all(dest)
        else:
            written = []
            for p in paths:
                if p in pack:
                    written.append(pack.extract_file(p, dest))
                else:
                    written.extend(pack.extract_folder(p, dest))
        print(f"Extracted {len(written)} files to {dest}")
        return

    if args.add_files:
        dest, files = split_path(args.add_files[0]), args.add_files[1:]
        for f in files:
            pack.add_file(f, dest + (Path(f).name,), overwrite=args.overwrite)
        print(f"Added {len(files)} files under {'/'.join(dest)}")
    elif args.add_folders:
        dest, folders = split_path(args.add_folders[0]), args.add_folders[1:]
        count = 0
        for folder in folders:
            count += len(pack.add_folder(folder, dest + (Path(folder).name,),
                                         overwrite=args.overwrite))
        print(f"Added {count} files under {'/'.join(dest)}")
    elif args.delete_files:
        for p in args.delete_files:
            pack.delete(p)
        print(f"Deleted {len(args.delete_files)} files")
    elif args.delete_folders:
        count = sum(pack.delete_folder(p) for p in args.delete_folders)
        print(f"Deleted {count} files")
    elif args.patch_siege_ai:
        for line in pack.patch_siege_ai():
            print(line)
    elif args.type:
        pack.pack_type = PackType[args.type.upper()]
        print(f"Pack type set to {pack.pack_type.name}")
    else:
        print(f"{pack.dialect} {pack.pack_type.name} - {len(pack)} entries")
        return

    pack.save()


# =============================================================================
# table
# =============================================================================

def cmd_table(args: argparse.Namespace, config: ToolConfig) -> None:
    delimiter = '\t' if args.tsv else ','
    entry_path = args.export[0] if args.export else args.import_[1]
    segments = split_path(entry_path)
    registry = None if segments[0] != 'db' else _registry(args, config)

    if args.export:
        pack = PackFile.open(args.pack, lazy=True, read_only=True)
        table = read_table(segments, pack.read(segments), registry)
        count = export_csv(table, args.export[1], delimiter)
        print(f"Exported {count} rows to {args.export[1]}")
        return

    csv_path = args.import_[0]
    pack = PackFile.open(args.pack)
    table = read_table(segments, pack.read(segments), registry)
    count = import_csv(table, csv_path, delimiter)
    pack.add(segments, table.to_bytes(), overwrite=True)
    pack.save()
    print(f"Imported {count} rows into {entry_path}")


# =============================================================================
# schema
# =============================================================================

def cmd_schema(args: argparse.Namespace, config: ToolConfig) -> None:
    path = args.schema or config.schema_path()
    registry = SchemaRegistry.load(path)
    if args.versions:
        versions = registry.list_versions(args.versions)
        if not versions:
            print(f"No definitions for {args.versions}")
        for version in versions:
            definition = registry.require(args.versions, version)
            print(f"  v{version}: {len(definition.fields)} fields")
    elif args.remove:
        table_name, version = args.remove
        registry.remove(table_name, version)
        registry.save(path)
        print(f"Removed {table_name} v{version} from {path}")
    else:
        for table_name in registry.table_names():
            print(f"  {table_name}: {registry.list_versions(table_name)}")


# =============================================================================
# dependency
# =============================================================================

def cmd_dependency(args: argparse.Namespace, config: ToolConfig) -> None:
    if args.generate:
        data_pack = args.generate[0]
        output = Path(args.generate[1]) if len(args.generate) > 1 else config.dependency_pack_path()
        pack = generate_dependency_pack(data_pack, output)
        print(f"Wrote {len(pack)} entries to {output}")
        return

    pack_path, entry_path = args.check
    registry = _registry(args, config)
    resolver = DependencyResolver(registry)
    resolver.load(args.dependency_pack or config.dependency_pack_path())

    pack = PackFile.open(pack_path, lazy=True, read_only=True)
    segments = split_path(entry_path)
    table = read_table(segments, pack.read(segments), registry)
    own_tables = []
    for f in table.definition.fields:
        if f.reference:
            for entry in pack.entries_under(('db', f.reference[0])):
                own_tables.append(read_table(entry.path, entry.data, registry))
    missing = resolver.find_missing_references(table, own_tables)
    for row, field_name, value in missing:
        print(f"  row {row}: {field_name} = {value!r} not found")
    print(f"{len(missing)} missing references")


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='pack-tools', description='PackFile codec tools')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='-v for INFO, -vv for DEBUG logging')
    parser.add_argument('--config', type=Path, help='Tool config YAML')
    parser.add_argument('--schema', type=Path, help='Schema YAML (overrides config)')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('packfile', help='Inspect or edit a PackFile')
    p.add_argument('pack', type=Path)
    actions = p.add_mutually_exclusive_group()
    actions.add_argument('--list', action='store_true')
    actions.add_argument('--new', choices=DIALECTS, help='Create an empty pack')
    actions.add_argument('--add-files', nargs='+', metavar=('DEST', 'FILE'))
    actions.add_argument('--add-folders', nargs='+', metavar=('DEST', 'DIR'))
    actions.add_argument('--delete-files', nargs='+', metavar='PATH')
    actions.add_argument('--delete-folders', nargs='+', metavar='PATH')
    actions.add_argument('--extract', nargs='+', metavar=('DEST', 'PATH'))
    actions.add_argument('--patch-siege-ai', action='store_true')
    p.add_argument('--type', choices=[t.name.lower() for t in PackType],
                   help='Pack type (with --new, or alone to change it)')
    p.add_argument('--overwrite', action='store_true', help='Replace existing entries when adding')
    p.set_defaults(func=cmd_packfile)

    p = sub.add_parser('table', help='Export or import a table entry as CSV/TSV')
    p.add_argument('pack', type=Path)
    actions = p.add_mutually_exclusive_group(required=True)
    actions.add_argument('--export', nargs=2, metavar=('ENTRY', 'CSV'))
    actions.add_argument('--import', dest='import_', nargs=2, metavar=('CSV', 'ENTRY'))
    p.add_argument('--tsv', action='store_true', help='Tab-separated instead of comma')
    p.set_defaults(func=cmd_table)

    p = sub.add_parser('schema', help='Inspect or edit a schema file')
    actions = p.add_mutually_exclusive_group()
    actions.add_argument('--versions', metavar='TABLE')
    actions.add_argument('--remove', nargs=2, metavar=('TABLE', 'VERSION'))
    p.set_defaults(func=cmd_schema)

    p = sub.add_parser('dependency', help='Dependency pack tools')
    actions = p.add_mutually_exclusive_group(required=True)
    actions.add_argument('--generate', nargs='+', metavar=('DATA_PACK', 'OUTPUT'))
    actions.add_argument('--check', nargs=2, metavar=('PACK', 'ENTRY'))
    p.add_argument('--dependency-pack', type=Path, help='Dependency pack (overrides config)')
    p.set_defaults(func=cmd_dependency)

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format='%(levelname)s %(name)s: %(message)s')

    if args.command == 'packfile' and (args.add_files or args.add_folders or args.extract):
        values = args.add_files or args.add_folders or args.extract
        if args.extract is None and len(values) < 2:
            parser.error('expected DEST followed by at least one path')
    if args.command == 'schema' and args.remove:
        try:
            args.remove = [args.remove[0], int(args.remove[1])]
        except ValueError:
            parser.error(f"VERSION must be an integer, got {args.remove[1]!r}")

    try:
        config = load_config(args.config)
        logger.debug("Using game %s, schemas in %s", config.game, config.schema_dir)
        args.func(args, config)
    except (CodecError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
