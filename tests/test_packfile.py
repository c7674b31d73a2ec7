"""
Tests for the PackFile container engine.
"""

import struct
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))

from codec_errors import (
    CorruptContainer, EntryNotFound, MalformedField, PathCollision, ReadOnlyContainer,
)
from packfile import (
    FLAG_INDEX_TIMESTAMPS, HEADER_SIZE, SIEGE_AI_MARKER, SIEGE_AI_REPLACEMENT,
    PackFile, PackType, split_path,
)


def snapshot(pack):
    return [(e.path, e.data) for e in pack]


class TestLayout:
    """Tests for the on-disk layout."""

    def test_header_fields(self, sample_pack):
        data = sample_pack.to_bytes()
        tag, raw_type, pi_count, pi_size, count, index_size, _ = \
            struct.unpack_from('<4sIIIIII', data, 0)
        assert tag == b'PFH5'
        assert raw_type & 0x0F == PackType.MOD
        assert (pi_count, pi_size) == (0, 0)
        assert count == 3
        # PFH5 index entry: size u32 + compressed u8 + path + NUL
        first = data[HEADER_SIZE:HEADER_SIZE + index_size]
        assert first[5:5 + len(b'db\\land_units_tables\\my_units') + 1] == \
            b'db\\land_units_tables\\my_units\x00'

    def test_pfh4_has_no_compressed_flag(self):
        pack = PackFile.new('PFH4', PackType.RELEASE)
        pack.add('a/b', b'xyz')
        data = pack.to_bytes()
        index_size = struct.unpack_from('<I', data, 20)[0]
        assert index_size == 4 + len(b'a\\b\x00')

    def test_index_timestamps_flag(self):
        pack = PackFile('PFH5', PackType.MOD, flags=FLAG_INDEX_TIMESTAMPS)
        pack.add('a/b', b'xyz', timestamp=1234)
        reopened = PackFile.from_bytes(pack.to_bytes())
        assert reopened.has_index_timestamps
        assert reopened.get('a/b').timestamp == 1234

    def test_pack_index_roundtrip(self):
        pack = PackFile.new()
        pack.pack_index = ['base_mod.pack', 'other.pack']
        pack.add('x', b'1')
        reopened = PackFile.from_bytes(pack.to_bytes())
        assert reopened.pack_index == ['base_mod.pack', 'other.pack']
        assert reopened.read('x') == b'1'

    def test_compressed_flag_passthrough(self):
        pack = PackFile.new()
        pack.add('x', b'data').compressed = True
        assert PackFile.from_bytes(pack.to_bytes()).get('x').compressed


class TestOpen:
    """Tests for reading containers."""

    def test_unknown_tag(self, sample_pack):
        data = b'PFH3' + sample_pack.to_bytes()[4:]
        with pytest.raises(CorruptContainer):
            PackFile.from_bytes(data)

    def test_short_file(self):
        with pytest.raises(CorruptContainer):
            PackFile.from_bytes(b'PFH5')

    def test_unknown_pack_type(self, sample_pack):
        data = bytearray(sample_pack.to_bytes())
        data[4] = 0x09
        with pytest.raises(CorruptContainer):
            PackFile.from_bytes(bytes(data))

    def test_duplicate_paths(self):
        pack = PackFile.new()
        pack.add('a/one', b'1')
        pack.add('a/two', b'2')
        data = pack.to_bytes().replace(b'a\\two', b'a\\one')
        with pytest.raises(CorruptContainer):
            PackFile.from_bytes(data)

    def test_truncated_payload(self, sample_pack):
        with pytest.raises(CorruptContainer):
            PackFile.from_bytes(sample_pack.to_bytes()[:-3])

    def test_open_save_open_identity(self, tmp_path, pack_file):
        first = PackFile.open(pack_file)
        out = tmp_path / 'copy.pack'
        first.save(out)
        second = PackFile.open(out)
        assert snapshot(second) == snapshot(first)
        assert out.read_bytes() == pack_file.read_bytes()

    def test_lazy_open(self, pack_file, units_entry):
        pack = PackFile.open(pack_file, lazy=True)
        entry = pack.get('db/land_units_tables/my_units')
        assert not entry.is_loaded
        assert entry.data == units_entry
        assert entry.is_loaded

    def test_lazy_save_over_source(self, pack_file):
        pack = PackFile.open(pack_file, lazy=True)
        before = snapshot(PackFile.open(pack_file))
        pack.delete('ui/skins/default/button.png')
        pack.save()
        assert snapshot(PackFile.open(pack_file)) == before[:2]


class TestEdit:
    """Tests for add/delete/rename."""

    def test_add_collision_leaves_pack_unchanged(self, sample_pack):
        before = snapshot(sample_pack)
        with pytest.raises(PathCollision):
            sample_pack.add('ui/skins/default/button.png', b'other')
        assert snapshot(sample_pack) == before

    def test_add_overwrite_keeps_position(self, sample_pack):
        sample_pack.add('db/land_units_tables/my_units', b'new', overwrite=True)
        assert sample_pack.list_paths()[0] == 'db/land_units_tables/my_units'
        assert sample_pack.read('db/land_units_tables/my_units') == b'new'

    def test_add_entries_checks_whole_batch(self, sample_pack):
        before = snapshot(sample_pack)
        with pytest.raises(PathCollision):
            sample_pack.add_entries([('new/a', b'1'), ('new/a', b'2')])
        assert snapshot(sample_pack) == before

    def test_delete_keeps_order(self, sample_pack):
        sample_pack.delete('db/unit_categories_tables/data__')
        assert sample_pack.list_paths() == [
            'db/land_units_tables/my_units', 'ui/skins/default/button.png',
        ]

    def test_delete_missing(self, sample_pack):
        with pytest.raises(EntryNotFound):
            sample_pack.delete('nope')

    def test_delete_folder_by_segment(self, sample_pack):
        sample_pack.add('dbx/file', b'1')
        assert sample_pack.delete_folder('db') == 2
        assert sample_pack.list_paths() == ['ui/skins/default/button.png', 'dbx/file']

    def test_rename(self, sample_pack):
        sample_pack.rename('ui/skins/default/button.png', 'ui/button.png')
        assert sample_pack.list_paths()[2] == 'ui/button.png'
        assert 'ui/skins/default/button.png' not in sample_pack

    def test_rename_collision(self, sample_pack):
        with pytest.raises(PathCollision):
            sample_pack.rename('ui/skins/default/button.png', 'db/land_units_tables/my_units')
        assert 'ui/skins/default/button.png' in sample_pack

    def test_rename_folder(self, sample_pack):
        assert sample_pack.rename_folder('db', 'old_db') == 2
        assert sample_pack.list_paths('old_db') == [
            'old_db/land_units_tables/my_units', 'old_db/unit_categories_tables/data__',
        ]

    def test_rename_folder_collision_is_atomic(self, sample_pack):
        sample_pack.add('moved/unit_categories_tables/data__', b'x')
        before = snapshot(sample_pack)
        with pytest.raises(PathCollision):
            sample_pack.rename_folder('db', 'moved')
        assert snapshot(sample_pack) == before

    def test_read_only(self, pack_file):
        pack = PackFile.open(pack_file, read_only=True)
        with pytest.raises(ReadOnlyContainer):
            pack.add('x', b'1')
        with pytest.raises(ReadOnlyContainer):
            pack.save()

    def test_pack_type_setter(self, sample_pack):
        sample_pack.pack_type = PackType.MOVIE
        assert PackFile.from_bytes(sample_pack.to_bytes()).pack_type == PackType.MOVIE
        with pytest.raises(CorruptContainer):
            sample_pack.pack_type = 12

    def test_split_path(self):
        assert split_path('db\\a/b') == ('db', 'a', 'b')
        with pytest.raises(EntryNotFound):
            split_path('')


class TestDisk:
    """Tests for adding from and extracting to the filesystem."""

    def test_add_file_and_folder(self, tmp_path, sample_pack):
        src = tmp_path / 'src'
        (src / 'sub').mkdir(parents=True)
        (src / 'a.txt').write_bytes(b'A')
        (src / 'sub' / 'b.txt').write_bytes(b'B')

        sample_pack.add_file(src / 'a.txt', 'text/a.txt')
        added = sample_pack.add_folder(src, 'data')
        assert [e.path_str for e in added] == ['data/a.txt', 'data/sub/b.txt']
        assert sample_pack.read('text/a.txt') == b'A'

    def test_extract_converges(self, tmp_path, sample_pack):
        one = sample_pack.extract_file('ui/skins/default/button.png', tmp_path / 'one')
        assert one == tmp_path / 'one' / 'button.png'

        folder = sample_pack.extract_folder('db', tmp_path / 'folder')
        assert tmp_path / 'folder' / 'db' / 'land_units_tables' / 'my_units' in folder

        everything = sample_pack.extract_all(tmp_path / 'all')
        assert len(everything) == 3
        assert (tmp_path / 'all' / 'ui' / 'skins' / 'default' / 'button.png').read_bytes() == \
            b'\x89PNG fake'

    def test_extract_missing_folder(self, tmp_path, sample_pack):
        with pytest.raises(EntryNotFound):
            sample_pack.extract_folder('nope', tmp_path)

    def test_parent_segment_in_index_rejected(self, tmp_path):
        pack = PackFile.new('PFH5')
        pack.add('db/ok', b'payload')
        data = pack.to_bytes().replace(b'db\\ok\x00', b'..\\ok\x00')
        with pytest.raises(CorruptContainer):
            PackFile.from_bytes(data)
        assert not (tmp_path / 'ok').exists()

    @pytest.mark.parametrize('path', ['../x', 'db/./x', 'C:/x', ['db', '/etc']])
    def test_unsafe_paths_rejected_on_add(self, sample_pack, path):
        before = snapshot(sample_pack)
        with pytest.raises(MalformedField):
            sample_pack.add(path, b'x')
        assert snapshot(sample_pack) == before
        assert path not in sample_pack

    def test_extract_stays_below_destination(self, tmp_path, sample_pack):
        entry = sample_pack.get('ui/skins/default/button.png')
        entry.path = ('..', 'escaped.png')
        with pytest.raises(MalformedField):
            sample_pack.extract_all(tmp_path / 'out')
        assert not (tmp_path / 'escaped.png').exists()


class TestSiegeAI:
    """Tests for the siege map patch."""

    FOLDER = 'terrain/tiles/battle/_assembly_kit/siege_map'

    def test_patch(self):
        pack = PackFile.new()
        pack.add(f'{self.FOLDER}/bmd_data.bin', b'head' + SIEGE_AI_MARKER + b'tail')
        pack.add(f'{self.FOLDER}/catchment_01.xml', b'<xml/>')
        pack.add('db/other/x', b'1')

        report = pack.patch_siege_ai()
        assert len(report) == 2
        assert pack.read(f'{self.FOLDER}/bmd_data.bin') == b'head' + SIEGE_AI_REPLACEMENT + b'tail'
        assert f'{self.FOLDER}/catchment_01.xml' not in pack
        assert 'db/other/x' in pack

    def test_nothing_to_patch(self, sample_pack):
        with pytest.raises(EntryNotFound):
            sample_pack.patch_siege_ai()
