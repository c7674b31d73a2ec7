"""
Tests for the interactive schema decoder session.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))

from codec_errors import (
    DecoderSessionError, MalformedField, SchemaNotFound, UnexpectedEndOfData,
)
from primitive_codec import FieldType
from schema_decoder import DecoderSession, DecoderState
from schema_registry import SchemaRegistry

from conftest import units_definition

UNIT_TYPES = [
    ('key', FieldType.STRING_U16),
    ('category', FieldType.STRING_U16),
    ('cost', FieldType.INTEGER),
    ('speed', FieldType.FLOAT),
    ('flying', FieldType.BOOLEAN),
]


def commit_all(session, count=len(UNIT_TYPES)):
    for name, field_type in UNIT_TYPES[:count]:
        session.commit_field(name, field_type, is_key=(name == 'key'))


class TestCommit:
    """Tests for committing fields at the cursor."""

    def test_cursor_starts_after_header(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        assert session.cursor == 13
        assert session.version == 2
        assert session.state == DecoderState.IDLE

    def test_commit_advances(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        decoded = session.commit_field('key', FieldType.STRING_U16, is_key=True)
        assert decoded.preview == 'wh_main_emp_inf_swordsmen'
        assert decoded.start == 13
        assert decoded.length == 2 + 2 * 25
        assert session.cursor == decoded.end
        assert session.state == DecoderState.COMMITTED

    def test_rejected_commit_leaves_cursor(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        with pytest.raises(MalformedField):
            session.commit_field('flag', FieldType.BOOLEAN)
        assert session.cursor == 13
        assert session.fields == []
        assert session.state == DecoderState.REJECTED

    def test_commit_past_end(self):
        session = DecoderSession(b'\x01\x01\x00\x00\x00\x05\x00ab', 'short_tables')
        with pytest.raises(UnexpectedEndOfData):
            session.commit_field('name', FieldType.STRING_U8)
        assert session.cursor == 5

    def test_duplicate_name(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        session.commit_field('key', FieldType.STRING_U16)
        with pytest.raises(DecoderSessionError):
            session.commit_field('key', FieldType.STRING_U16)

    def test_full_row_matches_table(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        commit_all(session)
        assert [d.preview for d in session.decoded] == \
            ['wh_main_emp_inf_swordsmen', 'inf_melee', 600, 4.5, False]
        assert session.check_definition() == 3


class TestReplay:
    """Tests for structural edits that replay from the initial index."""

    def test_replay_is_idempotent(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        commit_all(session, 3)
        before = (session.cursor, session.decoded)
        session.replay()
        first = (session.cursor, session.decoded)
        session.replay()
        assert first == before
        assert (session.cursor, session.decoded) == first

    def test_remove_field_shifts_later_fields(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        commit_all(session, 2)
        session.remove_field(0)
        assert session.fields[0].name == 'category'
        assert session.decoded[0].start == 13
        assert session.decoded[0].preview == 'wh_main_emp_inf_swordsmen'

    def test_failed_retype_restores_state(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        commit_all(session, 3)
        before = (session.cursor, session.decoded, session.state)
        with pytest.raises(MalformedField):
            session.change_field_type(0, FieldType.BOOLEAN)
        assert (session.cursor, session.decoded, session.state) == before

    def test_move_up_and_down(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        commit_all(session)
        session.move_down(3)
        assert [f.name for f in session.fields][3:] == ['flying', 'speed']
        session.move_up(4)
        assert [f.name for f in session.fields][3:] == ['speed', 'flying']
        assert session.check_definition() == 3

    def test_move_out_of_range(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        commit_all(session, 1)
        with pytest.raises(DecoderSessionError):
            session.move_field(0, 3)

    def test_update_field_metadata(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        commit_all(session, 2)
        session.update_field(1, name='unit_category', reference=('unit_categories_tables', 'key'))
        assert session.fields[1].name == 'unit_category'
        assert session.fields[1].reference == ('unit_categories_tables', 'key')
        with pytest.raises(DecoderSessionError):
            session.update_field(1, name='key')

    def test_clear(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        commit_all(session)
        session.clear()
        assert session.fields == []
        assert session.cursor == 13


class TestInspection:
    """Tests for previews that never commit."""

    def test_probe_all(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        previews = session.probe_all()
        assert set(previews) == set(FieldType)
        value, error = previews[FieldType.STRING_U16]
        assert value == 'wh_main_emp_inf_swordsmen' and error is None
        value, error = previews[FieldType.BOOLEAN]
        assert value is None and 'Boolean' in error
        assert session.cursor == 13

    def test_hex_view_marks_cursor(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        view = session.hex_view()
        assert view.startswith('00000000')
        assert '[19' in view


class TestSchemaInteraction:
    """Tests for loading, deleting and saving definitions."""

    def test_load_definition(self, units_entry, registry):
        session = DecoderSession(units_entry, 'land_units_tables', registry)
        assert session.known_versions() == [2]
        session.load_definition(2)
        assert [f.name for f in session.fields] == [n for n, _ in UNIT_TYPES]
        assert session.check_definition() == 3

    def test_load_missing_definition(self, units_entry, registry):
        session = DecoderSession(units_entry, 'land_units_tables', registry)
        with pytest.raises(SchemaNotFound):
            session.load_definition(8)

    def test_delete_definition(self, units_entry, registry):
        session = DecoderSession(units_entry, 'land_units_tables', registry)
        session.delete_definition(2)
        assert session.known_versions() == []

    def test_no_registry(self, units_entry):
        session = DecoderSession(units_entry, 'land_units_tables')
        with pytest.raises(DecoderSessionError):
            session.known_versions()

    def test_finalize_and_save(self, tmp_path, units_entry):
        registry = SchemaRegistry(dialect='PFH5')
        session = DecoderSession(units_entry, 'land_units_tables', registry)
        commit_all(session)
        path = tmp_path / 'schema.yaml'
        definition = session.save(path)
        assert definition.version == 2
        assert [f.field_type for f in definition.fields] == \
            [f.field_type for f in units_definition().fields]
        assert SchemaRegistry.load(path).list_versions('land_units_tables') == [2]
