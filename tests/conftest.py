"""
pytest configuration and fixtures for the PackFile codec tests.

Provides reusable fixtures for:
- A small schema registry with DB table definitions
- Raw DB / Loc table entries
- PackFiles built in memory or written to tmp_path
- Hypothesis property-based testing configuration
"""

import os
import struct
import sys
from pathlib import Path

import pytest

# Add project paths
sys.path.insert(0, str(Path(__file__).parent.parent / "tools"))

# Configure Hypothesis profiles
from hypothesis import settings, Verbosity, Phase

# Default profile: balanced speed and coverage
settings.register_profile(
    "default",
    max_examples=100,
    deadline=None,
)

# CI profile: more thorough testing
settings.register_profile(
    "ci",
    max_examples=500,
    deadline=None,
    suppress_health_check=[],
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)

# Dev profile: fast iteration
settings.register_profile(
    "dev",
    max_examples=10,
    deadline=None,
)

# Debug profile: verbose output
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)

settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "default"))


from primitive_codec import FieldType, encode
from schema_registry import Field, SchemaRegistry, TableDefinition
from table_codec import VERSION_MARKER


def units_definition(version=2):
    """land_units_tables: key, category (-> unit_categories_tables.key), cost, speed, flying."""
    return TableDefinition('land_units_tables', version, [
        Field('key', FieldType.STRING_U16, is_key=True),
        Field('category', FieldType.STRING_U16, reference=('unit_categories_tables', 'key')),
        Field('cost', FieldType.INTEGER),
        Field('speed', FieldType.FLOAT),
        Field('flying', FieldType.BOOLEAN),
    ])


def categories_definition(version=0):
    return TableDefinition('unit_categories_tables', version, [
        Field('key', FieldType.STRING_U16, is_key=True),
        Field('icon', FieldType.OPTIONAL_STRING_U8),
    ])


def build_db_entry(definition, rows, version=None):
    """Raw DB entry bytes: version block (if any), marker, count, rows."""
    version = definition.version if version is None else version
    out = bytearray()
    if version:
        out += VERSION_MARKER + struct.pack('<I', version)
    out += b'\x01' + struct.pack('<I', len(rows))
    for row in rows:
        for value, f in zip(row, definition.fields):
            out += encode(value, f.field_type)
    return bytes(out)


UNIT_ROWS = [
    ['wh_main_emp_inf_swordsmen', 'inf_melee', 600, 4.5, False],
    ['wh_main_emp_cav_outriders', 'cav_missile', 1000, 8.25, False],
    ['wh_main_emp_mon_griffon', 'monster', 1400, 6.0, True],
]

CATEGORY_ROWS = [
    ['inf_melee', 'icon_inf.png'],
    ['cav_missile', ''],
    ['monster', 'icon_monster.png'],
]


@pytest.fixture
def registry():
    """Registry holding land_units_tables v2 and unit_categories_tables v0."""
    reg = SchemaRegistry(dialect='PFH5')
    reg.put(units_definition())
    reg.put(categories_definition())
    return reg


@pytest.fixture
def units_entry():
    return build_db_entry(units_definition(), UNIT_ROWS)


@pytest.fixture
def categories_entry():
    return build_db_entry(categories_definition(), CATEGORY_ROWS)


@pytest.fixture
def schema_file(tmp_path, registry):
    path = tmp_path / 'schema_wh2.yaml'
    registry.save(path)
    return path


@pytest.fixture
def sample_pack(units_entry, categories_entry):
    """In-memory PFH5 mod pack with two DB tables and a loose file."""
    from packfile import PackFile
    pack = PackFile.new('PFH5')
    pack.add('db/land_units_tables/my_units', units_entry)
    pack.add('db/unit_categories_tables/data__', categories_entry)
    pack.add('ui/skins/default/button.png', b'\x89PNG fake')
    return pack


@pytest.fixture
def pack_file(tmp_path, sample_pack):
    path = tmp_path / 'my_mod.pack'
    sample_pack.save(path)
    return path


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests that touch the filesystem end to end"
    )
