#!/usr/bin/env python3
"""
packfile.py - PackFile container reader/writer

A PackFile is a flat archive of entries addressed by '/'-delimited paths.
Two dialects are supported, PFH4 and PFH5; they differ only in the PFH5
per-entry compressed flag. Any other tag is rejected.

Layout (little-endian):
    Header (28 bytes):
        tag[4]              b'PFH4' / b'PFH5'
        u32 type            low nibble = PackType, upper bits = flags
        u32 pack_index_count
        u32 pack_index_size
        u32 file_count
        u32 file_index_size
        u32 timestamp
    Pack index:   null-terminated names of packs this pack depends on
    File index:   per entry
        u32 size
        u32 timestamp       only if flag 0x40 is set
        u8  compressed      PFH5 only, passed through untouched
        path                null-terminated, '\\' separators
    Payloads concatenated in index order

Payloads may be loaded lazily: an entry then holds (source file, offset,
size) and reads its bytes on first access.

Paths are checked on the way in: empty, '.', '..' and drive-prefixed
segments are rejected, so extraction always stays below its destination.

Usage:
    pack-tools packfile my_mod.pack --list
    pack-tools packfile my_mod.pack --extract out/ db/land_units_tables

    from packfile import PackFile
    pack = PackFile.open('my_mod.pack')
    pack.add('db/land_units_tables/my_mod', data)
    pack.save()
"""

import logging
import mmap
import os
import struct
import tempfile
import warnings
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from codec_errors import (
    CodecError, CorruptContainer, EntryNotFound, MalformedField, PathCollision,
    ReadOnlyContainer,
)
from primitive_codec import read_bytes, read_cstring, read_u8, read_u32, write_cstring

logger = logging.getLogger(__name__)

HEADER_FORMAT = '<4sIIIIII'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

DIALECTS = ('PFH4', 'PFH5')
COMPRESSION_DIALECTS = ('PFH5',)

TYPE_MASK = 0x0F
FLAG_INDEX_TIMESTAMPS = 0x40

SIEGE_AI_FOLDER = ('terrain', 'tiles', 'battle', '_assembly_kit')
SIEGE_AI_MAP_FILE = 'bmd_data.bin'
SIEGE_AI_MARKER = b'AIH_SIEGE_AREA_NODE'
SIEGE_AI_REPLACEMENT = b'AIH_FORT_PERIMETER'

PathLike = Union[str, Sequence[str]]


class PackType(IntEnum):
    BOOT = 0
    RELEASE = 1
    PATCH = 2
    MOD = 3
    MOVIE = 4


def split_path(path: PathLike) -> Tuple[str, ...]:
    """'db/units/x' or ['db', 'units', 'x'] -> ('db', 'units', 'x')"""
    if isinstance(path, str):
        segments = path.replace('\\', '/').split('/')
    else:
        segments = list(path)
    segments = tuple(s for s in segments if s)
    if not segments:
        raise EntryNotFound('')
    for s in segments:
        if s in ('.', '..') or any(c in s for c in ':/\\'):
            raise MalformedField(f"Invalid path segment {s!r} in {join_path(segments)}")
    return segments


def join_path(path: Sequence[str]) -> str:
    return '/'.join(path)


def is_under(path: Sequence[str], prefix: Sequence[str]) -> bool:
    """Segment-wise prefix test: 'db/units' is under 'db', 'dbx/a' is not."""
    return len(path) > len(prefix) and tuple(path[:len(prefix)]) == tuple(prefix)


# =============================================================================
# Entries
# =============================================================================

@dataclass
class PackedFile:
    """One container entry. Payload is either in memory or a (file, offset) handle."""
    path: Tuple[str, ...]
    size: int = 0
    timestamp: int = 0
    compressed: bool = False
    source: Optional[Path] = None
    offset: int = 0
    _data: Optional[bytes] = field(default=None, repr=False)

    @property
    def path_str(self) -> str:
        return join_path(self.path)

    @property
    def is_loaded(self) -> bool:
        return self._data is not None

    @property
    def data(self) -> bytes:
        if self._data is None:
            if self.source is None:
                return b''
            with open(self.source, 'rb') as f:
                f.seek(self.offset)
                data = f.read(self.size)
            if len(data) != self.size:
                raise CorruptContainer(
                    f"{self.source}: entry {self.path_str} truncated "
                    f"({len(data)} of {self.size} bytes)"
                )
            self._data = data
        return self._data

    @data.setter
    def data(self, value: bytes) -> None:
        self._data = bytes(value)
        self.size = len(self._data)
        self.source = None

    def load(self) -> None:
        """Pull a lazy payload into memory."""
        _ = self.data


# =============================================================================
# Container
# =============================================================================

class PackFile:
    """An ordered, path-unique collection of entries with a PFH4/PFH5 header."""

    def __init__(self, dialect: str = 'PFH5', pack_type: PackType = PackType.MOD,
                 flags: int = 0, timestamp: int = 0,
                 pack_index: Optional[List[str]] = None,
                 path: Optional[Path] = None, read_only: bool = False):
        if dialect not in DIALECTS:
            raise CorruptContainer(f"Unsupported PackFile dialect: {dialect!r}")
        self.dialect = dialect
        self._pack_type = PackType(pack_type)
        self.flags = flags & ~TYPE_MASK
        self.timestamp = timestamp
        self.pack_index: List[str] = list(pack_index or [])
        self.path = Path(path) if path is not None else None
        self.read_only = read_only
        self._entries: List[PackedFile] = []
        self._by_path: Dict[Tuple[str, ...], PackedFile] = {}

    @classmethod
    def new(cls, dialect: str = 'PFH5', pack_type: PackType = PackType.MOD) -> 'PackFile':
        return cls(dialect=dialect, pack_type=pack_type)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PackedFile]:
        return iter(list(self._entries))

    def __contains__(self, path: PathLike) -> bool:
        try:
            return split_path(path) in self._by_path
        except (EntryNotFound, MalformedField):
            return False

    @property
    def pack_type(self) -> PackType:
        return self._pack_type

    @pack_type.setter
    def pack_type(self, value: int) -> None:
        self._check_writable()
        try:
            self._pack_type = PackType(value)
        except ValueError:
            raise CorruptContainer(f"Unknown pack type: {value}")

    @property
    def has_index_timestamps(self) -> bool:
        return bool(self.flags & FLAG_INDEX_TIMESTAMPS)

    # =========================================================================
    # Reading
    # =========================================================================

    @classmethod
    def from_bytes(cls, data: bytes, source: Optional[Path] = None,
                   lazy: bool = False, read_only: bool = False) -> 'PackFile':
        """
        Parse a whole container.

        With lazy=True (and a source path) payloads are left on disk and
        read on first access.
        """
        if len(data) < HEADER_SIZE:
            raise CorruptContainer(f"File too short for a PackFile header ({len(data)} bytes)")
        (tag, raw_type, pack_index_count, pack_index_size,
         file_count, file_index_size, timestamp) = struct.unpack_from(HEADER_FORMAT, data, 0)

        try:
            dialect = tag.decode('ascii')
        except UnicodeDecodeError:
            dialect = None
        if dialect not in DIALECTS:
            raise CorruptContainer(f"Unknown PackFile tag {tag!r}")
        try:
            pack_type = PackType(raw_type & TYPE_MASK)
        except ValueError:
            raise CorruptContainer(f"Unknown pack type {raw_type & TYPE_MASK}")

        pack = cls(dialect=dialect, pack_type=pack_type, flags=raw_type, timestamp=timestamp,
                   path=source, read_only=read_only)

        pos = HEADER_SIZE
        index_end = pos + pack_index_size
        try:
            for _ in range(pack_index_count):
                name, pos = read_cstring(data, pos)
                pack.pack_index.append(name)
            if pos != index_end:
                raise CorruptContainer(
                    f"Pack index size mismatch: header says {pack_index_size}, "
                    f"read {pos - HEADER_SIZE}"
                )

            file_index_end = pos + file_index_size
            index: List[Tuple[Tuple[str, ...], int, int, bool]] = []
            for _ in range(file_count):
                size, pos = read_u32(data, pos)
                entry_timestamp = 0
                if pack.has_index_timestamps:
                    entry_timestamp, pos = read_u32(data, pos)
                compressed = False
                if dialect in COMPRESSION_DIALECTS:
                    flag, pos = read_u8(data, pos)
                    compressed = bool(flag)
                raw_path, pos = read_cstring(data, pos)
                try:
                    segments = split_path(raw_path)
                except MalformedField as e:
                    raise CorruptContainer(f"Unsafe path in PackFile index: {e}")
                index.append((segments, size, entry_timestamp, compressed))
            if pos != file_index_end:
                raise CorruptContainer(
                    f"File index size mismatch: header says {file_index_size}, "
                    f"read {pos - index_end}"
                )

            for segments, size, entry_timestamp, compressed in index:
                if segments in pack._by_path:
                    raise CorruptContainer(f"Duplicate path in PackFile: {join_path(segments)}")
                entry = PackedFile(segments, size=size, timestamp=entry_timestamp,
                                   compressed=compressed)
                if lazy and source is not None:
                    if pos + size > len(data):
                        raise CorruptContainer(f"Truncated payload for {join_path(segments)}")
                    entry.source = source
                    entry.offset = pos
                    pos += size
                else:
                    entry._data, pos = read_bytes(data, pos, size)
                pack._append(entry)
        except EntryNotFound:
            raise CorruptContainer("Empty path in PackFile index")
        except CorruptContainer:
            raise
        except CodecError as e:
            raise CorruptContainer(f"Truncated PackFile: {e}")

        if pos != len(data):
            warnings.warn(f"{len(data) - pos} trailing bytes after the last payload")
        logger.debug("Parsed %s %s: %d entries, %d pack dependencies",
                     dialect, pack_type.name, len(pack), len(pack.pack_index))
        return pack

    @classmethod
    def open(cls, path: Union[str, Path], lazy: bool = False,
             read_only: bool = False) -> 'PackFile':
        path = Path(path)
        with open(path, 'rb') as f:
            if not lazy or os.fstat(f.fileno()).st_size < HEADER_SIZE:
                pack = cls.from_bytes(f.read(), source=path, read_only=read_only)
            else:
                with mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) as view:
                    pack = cls.from_bytes(view, source=path, lazy=True, read_only=read_only)
        logger.info("Opened %s (%s, %d entries)", path, pack.dialect, len(pack))
        return pack

    # =========================================================================
    # Lookup
    # =========================================================================

    def list_paths(self, prefix: Optional[PathLike] = None) -> List[str]:
        if prefix is None:
            return [e.path_str for e in self._entries]
        segments = split_path(prefix)
        return [e.path_str for e in self._entries
                if e.path == segments or is_under(e.path, segments)]

    def get(self, path: PathLike) -> PackedFile:
        segments = split_path(path)
        entry = self._by_path.get(segments)
        if entry is None:
            raise EntryNotFound(join_path(segments))
        return entry

    def read(self, path: PathLike) -> bytes:
        return self.get(path).data

    def entries_under(self, prefix: PathLike) -> List[PackedFile]:
        segments = split_path(prefix)
        return [e for e in self._entries if is_under(e.path, segments)]

    # =========================================================================
    # Mutation
    # =========================================================================

    def _check_writable(self) -> None:
        if self.read_only:
            raise ReadOnlyContainer(f"PackFile {self.path or '<memory>'} is read-only")

    def _append(self, entry: PackedFile) -> None:
        self._entries.append(entry)
        self._by_path[entry.path] = entry

    def _rebuild_lookup(self) -> None:
        self._by_path = {e.path: e for e in self._entries}

    def add(self, path: PathLike, data: bytes, overwrite: bool = False,
            timestamp: int = 0) -> PackedFile:
        """
        Add an entry at path.

        An existing entry is replaced in place only with overwrite=True;
        otherwise PathCollision is raised and nothing changes.
        """
        return self.add_entries([(path, data)], overwrite=overwrite, timestamp=timestamp)[0]

    def add_entries(self, items: Iterable[Tuple[PathLike, bytes]], overwrite: bool = False,
                    timestamp: int = 0) -> List[PackedFile]:
        """Add several entries. All paths are checked before any is added."""
        self._check_writable()
        staged = []
        seen = set()
        for path, data in items:
            segments = split_path(path)
            if segments in seen or (segments in self._by_path and not overwrite):
                raise PathCollision(join_path(segments))
            seen.add(segments)
            staged.append((segments, bytes(data)))

        added = []
        for segments, data in staged:
            existing = self._by_path.get(segments)
            if existing is not None:
                existing.data = data
                existing.timestamp = timestamp
                added.append(existing)
                logger.debug("Replaced %s (%d bytes)", join_path(segments), len(data))
                continue
            entry = PackedFile(segments, timestamp=timestamp)
            entry.data = data
            self._append(entry)
            added.append(entry)
            logger.debug("Added %s (%d bytes)", join_path(segments), len(data))
        return added

    def add_file(self, disk_path: Union[str, Path], dest: PathLike,
                 overwrite: bool = False) -> PackedFile:
        disk_path = Path(disk_path)
        return self.add(dest, disk_path.read_bytes(), overwrite=overwrite,
                        timestamp=int(disk_path.stat().st_mtime))

    def add_folder(self, disk_dir: Union[str, Path], dest_prefix: Optional[PathLike] = None,
                   overwrite: bool = False) -> List[PackedFile]:
        """Add every file under disk_dir, keeping its relative layout under dest_prefix."""
        disk_dir = Path(disk_dir)
        if not disk_dir.is_dir():
            raise EntryNotFound(str(disk_dir))
        prefix = split_path(dest_prefix) if dest_prefix else ()
        items = []
        for file_path in sorted(p for p in disk_dir.rglob('*') if p.is_file()):
            relative = file_path.relative_to(disk_dir).parts
            items.append((prefix + relative, file_path.read_bytes()))
        return self.add_entries(items, overwrite=overwrite)

    def delete(self, path: PathLike) -> None:
        self._check_writable()
        entry = self.get(path)
        self._entries = [e for e in self._entries if e is not entry]
        del self._by_path[entry.path]
        logger.debug("Deleted %s", entry.path_str)

    def delete_folder(self, prefix: PathLike) -> int:
        """Delete every entry under prefix. Returns how many were removed."""
        self._check_writable()
        segments = split_path(prefix)
        doomed = [e for e in self._entries if is_under(e.path, segments)]
        if not doomed:
            raise EntryNotFound(join_path(segments))
        doomed_ids = {id(e) for e in doomed}
        self._entries = [e for e in self._entries if id(e) not in doomed_ids]
        self._rebuild_lookup()
        logger.debug("Deleted folder %s (%d entries)", join_path(segments), len(doomed))
        return len(doomed)

    def rename(self, old_path: PathLike, new_path: PathLike) -> None:
        """Move an entry to new_path, keeping its position in the index."""
        self._check_writable()
        entry = self.get(old_path)
        target = split_path(new_path)
        if target == entry.path:
            return
        if target in self._by_path:
            raise PathCollision(join_path(target))
        del self._by_path[entry.path]
        entry.path = target
        self._by_path[target] = entry
        logger.debug("Renamed to %s", entry.path_str)

    def rename_folder(self, old_prefix: PathLike, new_prefix: PathLike) -> int:
        """Move every entry under old_prefix to new_prefix. All or nothing."""
        self._check_writable()
        old = split_path(old_prefix)
        new = split_path(new_prefix)
        moving = [e for e in self._entries if is_under(e.path, old)]
        if not moving:
            raise EntryNotFound(join_path(old))
        moving_ids = {id(e) for e in moving}
        targets = {}
        for entry in moving:
            target = new + entry.path[len(old):]
            other = self._by_path.get(target)
            if other is not None and id(other) not in moving_ids:
                raise PathCollision(join_path(target))
            targets[id(entry)] = target
        for entry in moving:
            entry.path = targets[id(entry)]
        self._rebuild_lookup()
        logger.debug("Renamed folder %s -> %s (%d entries)",
                     join_path(old), join_path(new), len(moving))
        return len(moving)

    def filter_prefix(self, prefixes: Sequence[PathLike]) -> None:
        """Keep only entries under one of prefixes."""
        keep = [split_path(p) for p in prefixes]
        self._entries = [e for e in self._entries
                         if any(is_under(e.path, k) for k in keep)]
        self._rebuild_lookup()

    # =========================================================================
    # Extraction
    # =========================================================================

    def _write_entry(self, entry: PackedFile, dest_dir: Path,
                     strip: Sequence[str] = ()) -> Path:
        target = dest_dir.joinpath(*entry.path[len(strip):])
        root = dest_dir.resolve()
        if root not in target.resolve().parents:
            raise MalformedField(f"{entry.path_str} would be written outside {dest_dir}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(entry.data)
        return target

    def extract_file(self, path: PathLike, dest_dir: Union[str, Path]) -> Path:
        entry = self.get(path)
        return self._write_entry(entry, Path(dest_dir), entry.path[:-1])

    def extract_folder(self, prefix: PathLike, dest_dir: Union[str, Path]) -> List[Path]:
        """Extract every entry under prefix, keeping its full path below dest_dir."""
        entries = self.entries_under(prefix)
        if not entries:
            raise EntryNotFound(join_path(split_path(prefix)))
        return [self._write_entry(e, Path(dest_dir)) for e in entries]

    def extract_all(self, dest_dir: Union[str, Path]) -> List[Path]:
        return [self._write_entry(e, Path(dest_dir)) for e in self._entries]

    # =========================================================================
    # Writing
    # =========================================================================

    def to_bytes(self) -> bytes:
        pack_index = b''.join(write_cstring(name) for name in self.pack_index)

        file_index = bytearray()
        for entry in self._entries:
            file_index += struct.pack('<I', entry.size)
            if self.has_index_timestamps:
                file_index += struct.pack('<I', entry.timestamp)
            if self.dialect in COMPRESSION_DIALECTS:
                file_index.append(1 if entry.compressed else 0)
            file_index += write_cstring('\\'.join(entry.path))

        header = struct.pack(
            HEADER_FORMAT,
            self.dialect.encode('ascii'),
            self.flags | int(self._pack_type),
            len(self.pack_index),
            len(pack_index),
            len(self._entries),
            len(file_index),
            self.timestamp,
        )
        payloads = b''.join(entry.data for entry in self._entries)
        return header + pack_index + bytes(file_index) + payloads

    def save(self, path: Optional[Union[str, Path]] = None) -> Path:
        """
        Write the container to path (default: where it was opened from).

        Lazy payloads are read before the target is replaced, so saving over
        the source file is safe.
        """
        self._check_writable()
        target = Path(path) if path is not None else self.path
        if target is None:
            raise EntryNotFound('<no save path>')

        for entry in self._entries:
            entry.load()
        data = self.to_bytes()

        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=target.name, suffix='.tmp', dir=str(target.parent))
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            os.unlink(tmp_name)
            raise

        self.path = target
        logger.info("Saved %s (%d entries, %d bytes)", target, len(self), len(data))
        return target

    # =========================================================================
    # Special operations
    # =========================================================================

    def patch_siege_ai(self) -> List[str]:
        """
        Prepare a siege map pack for the AI.

        Deletes the .xml files under terrain/tiles/battle/_assembly_kit and
        swaps the siege-area marker in bmd_data.bin files there. Returns a
        line per change; raises EntryNotFound if nothing needed patching.
        """
        self._check_writable()
        report = []
        xml_entries = [e for e in self._entries
                       if is_under(e.path, SIEGE_AI_FOLDER) and e.path[-1].endswith('.xml')]
        map_entries = [e for e in self._entries
                       if is_under(e.path, SIEGE_AI_FOLDER) and e.path[-1] == SIEGE_AI_MAP_FILE]

        for entry in map_entries:
            data = entry.data
            if SIEGE_AI_MARKER in data:
                entry.data = data.replace(SIEGE_AI_MARKER, SIEGE_AI_REPLACEMENT)
                report.append(f"patched {entry.path_str}")

        if xml_entries:
            doomed = {id(e) for e in xml_entries}
            self._entries = [e for e in self._entries if id(e) not in doomed]
            self._rebuild_lookup()
            report.extend(f"deleted {e.path_str}" for e in xml_entries)

        if not report:
            raise EntryNotFound(join_path(SIEGE_AI_FOLDER) + ' (nothing to patch)')
        logger.info("Siege AI patch: %d changes", len(report))
        return report

