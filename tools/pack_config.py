#!/usr/bin/env python3
"""
pack_config.py - Supported games and tool paths

Maps each supported game to its PackFile dialect, schema file and
dependency pack, and resolves where those files live.

Tool config is an optional YAML file:

    schema_dir: ~/pack_tools/schemas
    dependency_dir: ~/pack_tools/dependencies
    game: warhammer_2

Environment variables override the file:
    PACK_TOOLS_SCHEMA_DIR, PACK_TOOLS_DEPENDENCY_DIR, PACK_TOOLS_GAME

Defaults live under $XDG_CONFIG_HOME/pack_tools (~/.config/pack_tools).
"""

import logging
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

import yaml

from codec_errors import CorruptContainer, MalformedField

logger = logging.getLogger(__name__)

APP_NAME = 'pack_tools'
CONFIG_FILE = 'config.yaml'
CONFIG_KEYS = {'schema_dir', 'dependency_dir', 'game'}


@dataclass(frozen=True)
class GameInfo:
    key: str
    display_name: str
    dialect: str
    schema_file: str
    dependency_pack: str


SUPPORTED_GAMES: Dict[str, GameInfo] = {
    'warhammer_2': GameInfo('warhammer_2', 'Warhammer 2', 'PFH5', 'schema_wh2.yaml', 'wh2.pack'),
    'warhammer': GameInfo('warhammer', 'Warhammer', 'PFH4', 'schema_wh.yaml', 'wh.pack'),
}

DEFAULT_GAME = 'warhammer_2'


def get_game(key: str) -> GameInfo:
    try:
        return SUPPORTED_GAMES[key]
    except KeyError:
        raise MalformedField(
            f"Unknown game '{key}'. Supported: {', '.join(sorted(SUPPORTED_GAMES))}"
        )


def game_for_dialect(dialect: str) -> GameInfo:
    """The game whose packs use this dialect tag. Unknown tags raise."""
    for game in SUPPORTED_GAMES.values():
        if game.dialect == dialect:
            return game
    raise CorruptContainer(f"No supported game uses PackFile dialect {dialect!r}")


def get_config_dir() -> Path:
    xdg = os.environ.get('XDG_CONFIG_HOME')
    base = Path(xdg) if xdg else Path.home() / '.config'
    return base / APP_NAME


@dataclass
class ToolConfig:
    schema_dir: Path
    dependency_dir: Path
    game: str = DEFAULT_GAME

    @property
    def game_info(self) -> GameInfo:
        return get_game(self.game)

    def schema_path(self, game: Optional[str] = None) -> Path:
        return self.schema_dir / get_game(game or self.game).schema_file

    def dependency_pack_path(self, game: Optional[str] = None) -> Path:
        return self.dependency_dir / get_game(game or self.game).dependency_pack


def load_config(path: Optional[Union[str, Path]] = None) -> ToolConfig:
    """
    Build the tool config from defaults, an optional YAML file and the
    environment, in that order of precedence (environment wins).

    A missing file at the default location is fine; a missing file that was
    asked for explicitly is an error.
    """
    config_dir = get_config_dir()
    values = {
        'schema_dir': str(config_dir / 'schemas'),
        'dependency_dir': str(config_dir / 'dependencies'),
        'game': DEFAULT_GAME,
    }

    file_path = Path(path) if path is not None else config_dir / CONFIG_FILE
    if path is not None or file_path.exists():
        with open(file_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise MalformedField(f"Config file {file_path} must be a mapping")
        unknown = set(data) - CONFIG_KEYS
        if unknown:
            warnings.warn(f"Config file {file_path} has unknown keys: {sorted(unknown)}")
        values.update({k: str(v) for k, v in data.items() if k in CONFIG_KEYS and v is not None})
        logger.debug("Loaded config %s", file_path)

    for key, env in (('schema_dir', 'PACK_TOOLS_SCHEMA_DIR'),
                     ('dependency_dir', 'PACK_TOOLS_DEPENDENCY_DIR'),
                     ('game', 'PACK_TOOLS_GAME')):
        if os.environ.get(env):
            values[key] = os.environ[env]

    get_game(values['game'])
    return ToolConfig(
        schema_dir=Path(values['schema_dir']).expanduser(),
        dependency_dir=Path(values['dependency_dir']).expanduser(),
        game=values['game'],
    )
