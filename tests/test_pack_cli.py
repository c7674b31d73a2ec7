"""
Tests for the pack-tools command line.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))

from pack_cli import main
from packfile import PackFile, PackType
from schema_registry import SchemaRegistry
from table_codec import DBTable


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    monkeypatch.setenv('XDG_CONFIG_HOME', str(tmp_path / 'xdg'))
    for name in ('PACK_TOOLS_SCHEMA_DIR', 'PACK_TOOLS_DEPENDENCY_DIR', 'PACK_TOOLS_GAME'):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.integration
class TestPackfileCommand:
    """Tests for `pack-tools packfile`."""

    def test_list(self, pack_file, capsys):
        main(['packfile', str(pack_file), '--list'])
        out = capsys.readouterr().out
        assert 'PFH5 MOD - 3 entries' in out
        assert 'db/land_units_tables/my_units' in out

    def test_new_with_type(self, tmp_path):
        path = tmp_path / 'new.pack'
        main(['packfile', str(path), '--new', 'PFH4', '--type', 'movie'])
        pack = PackFile.open(path)
        assert pack.dialect == 'PFH4'
        assert pack.pack_type == PackType.MOVIE

    def test_add_and_delete_files(self, tmp_path, pack_file):
        src = tmp_path / 'readme.txt'
        src.write_bytes(b'hello')
        main(['packfile', str(pack_file), '--add-files', 'docs', str(src)])
        assert PackFile.open(pack_file).read('docs/readme.txt') == b'hello'

        main(['packfile', str(pack_file), '--delete-files', 'docs/readme.txt'])
        assert 'docs/readme.txt' not in PackFile.open(pack_file)

    def test_add_folders(self, tmp_path, pack_file):
        folder = tmp_path / 'text'
        folder.mkdir()
        (folder / 'a.loc').write_bytes(b'x')
        main(['packfile', str(pack_file), '--add-folders', 'mod', str(folder)])
        assert 'mod/text/a.loc' in PackFile.open(pack_file)

    def test_delete_folders(self, pack_file):
        main(['packfile', str(pack_file), '--delete-folders', 'db'])
        assert PackFile.open(pack_file).list_paths() == ['ui/skins/default/button.png']

    def test_extract(self, tmp_path, pack_file):
        dest = tmp_path / 'out'
        main(['packfile', str(pack_file), '--extract', str(dest), 'ui'])
        assert (dest / 'ui' / 'skins' / 'default' / 'button.png').exists()

    def test_change_type(self, pack_file):
        main(['packfile', str(pack_file), '--type', 'patch'])
        assert PackFile.open(pack_file).pack_type == PackType.PATCH

    def test_error_exit(self, tmp_path, capsys):
        bad = tmp_path / 'bad.pack'
        bad.write_bytes(b'NOPE' + b'\x00' * 24)
        with pytest.raises(SystemExit) as exc:
            main(['packfile', str(bad), '--list'])
        assert exc.value.code == 1
        assert capsys.readouterr().err.startswith('Error:')

    def test_missing_add_dest(self, pack_file):
        with pytest.raises(SystemExit) as exc:
            main(['packfile', str(pack_file), '--add-files', 'only_dest'])
        assert exc.value.code == 2


@pytest.mark.integration
class TestTableCommand:
    """Tests for `pack-tools table`."""

    def test_export_import_tsv(self, tmp_path, pack_file, schema_file, units_entry):
        tsv = tmp_path / 'units.tsv'
        entry = 'db/land_units_tables/my_units'
        main(['--schema', str(schema_file), 'table', str(pack_file),
              '--export', entry, str(tsv), '--tsv'])
        lines = tsv.read_text(encoding='utf-8').splitlines()
        assert lines[0].split('\t') == ['key', 'category', 'cost', 'speed', 'flying']

        tsv.write_text('\n'.join(lines[:2]) + '\n', encoding='utf-8')
        main(['--schema', str(schema_file), 'table', str(pack_file),
              '--import', str(tsv), entry, '--tsv'])
        table = DBTable.read(PackFile.open(pack_file).read(entry), 'land_units_tables',
                             SchemaRegistry.load(schema_file))
        assert table.column('key') == ['wh_main_emp_inf_swordsmen']


@pytest.mark.integration
class TestSchemaCommand:
    """Tests for `pack-tools schema`."""

    def test_versions(self, schema_file, capsys):
        main(['--schema', str(schema_file), 'schema', '--versions', 'land_units_tables'])
        assert 'v2: 5 fields' in capsys.readouterr().out

    def test_remove(self, schema_file):
        main(['--schema', str(schema_file), 'schema', '--remove', 'land_units_tables', '2'])
        assert SchemaRegistry.load(schema_file).list_versions('land_units_tables') == []

    def test_remove_missing_version(self, schema_file):
        with pytest.raises(SystemExit) as exc:
            main(['--schema', str(schema_file), 'schema', '--remove', 'land_units_tables', '9'])
        assert exc.value.code == 1

    def test_remove_non_numeric_version(self, schema_file, capsys):
        with pytest.raises(SystemExit) as exc:
            main(['--schema', str(schema_file), 'schema', '--remove', 'land_units_tables', 'two'])
        assert exc.value.code == 2
        assert 'VERSION must be an integer' in capsys.readouterr().err
        assert SchemaRegistry.load(schema_file).list_versions('land_units_tables') == [2]


@pytest.mark.integration
class TestDependencyCommand:
    """Tests for `pack-tools dependency`."""

    def test_generate_and_check(self, tmp_path, pack_file, schema_file, capsys):
        dep = tmp_path / 'wh2.pack'
        main(['dependency', '--generate', str(pack_file), str(dep)])
        assert PackFile.open(dep).list_paths('db') != []

        main(['--schema', str(schema_file), 'dependency', '--check', str(pack_file),
              'db/land_units_tables/my_units', '--dependency-pack', str(dep)])
        assert '0 missing references' in capsys.readouterr().out
