#!/usr/bin/env python3
"""
esf_tree.py - ESF node tree encoder/decoder and editor

ESF files hold a generic tree: records (named, versioned containers) whose
children are split into ordered groups, and typed scalar leaves. The root is
always a record.

Binary layout (little-endian):
    u32 signature (0xABCA0000, "CAAB")
    u32 unknown
    u32 creation date (unix time)
    u32 offset of the record name table
    root record         nested at most MAX_DEPTH records deep
    name table: u16 count + StringU8 per name

    Record: u8 0x80 | u16 name index | u8 version | u32 group count
            per group: u32 absolute end offset, then child nodes up to it
    Leaf:   u8 type code | value

Leaf type codes:
    0x01 bool   0x02 i8    0x03 i16   0x04 i32   0x05 i64
    0x06 u8     0x07 u16   0x08 u32   0x09 u64   0x0A f32
    0x0B f64    0x0C coord2d (2 x f32)           0x0D coord3d (3 x f32)
    0x0E utf16 (StringU16)  0x0F ascii (StringU8) 0x10 angle (u16)

An editor can keep a record's own data and its descendants apart:
clone_without_children() and children_snapshot() are independent,
JSON-serialisable units, and recombine() rebuilds the original node.

Usage:
    from esf_tree import decode_esf, encode_esf, EsfEditor, SetLeaf

    esf = decode_esf(data)
    editor = EsfEditor(esf)
    editor.apply(SetLeaf(((0, 2),), 1.5))
    data = encode_esf(editor.esf)
"""

import copy
import json
import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterator, List, Sequence, Tuple, Union

from codec_errors import MalformedField
from primitive_codec import FieldType, decode, encode, read_bytes, read_u8, read_u16, read_u32

logger = logging.getLogger(__name__)

ESF_SIGNATURE = 0xABCA0000
RECORD_CODE = 0x80
HEADER_SIZE = 16
# Deepest record nesting accepted when decoding or encoding
MAX_DEPTH = 256


class LeafType(IntEnum):
    BOOL = 0x01
    I8 = 0x02
    I16 = 0x03
    I32 = 0x04
    I64 = 0x05
    U8 = 0x06
    U16 = 0x07
    U32 = 0x08
    U64 = 0x09
    F32 = 0x0A
    F64 = 0x0B
    COORD2D = 0x0C
    COORD3D = 0x0D
    UTF16 = 0x0E
    ASCII = 0x0F
    ANGLE = 0x10


LEAF_FORMATS = {
    LeafType.I8: '<b',
    LeafType.I16: '<h',
    LeafType.I32: '<i',
    LeafType.I64: '<q',
    LeafType.U8: '<B',
    LeafType.U16: '<H',
    LeafType.U32: '<I',
    LeafType.U64: '<Q',
    LeafType.F32: '<f',
    LeafType.F64: '<d',
    LeafType.COORD2D: '<2f',
    LeafType.COORD3D: '<3f',
    LeafType.ANGLE: '<H',
}

STRING_LEAVES = {
    LeafType.UTF16: FieldType.STRING_U16,
    LeafType.ASCII: FieldType.STRING_U8,
}


# =============================================================================
# Node model
# =============================================================================

@dataclass
class LeafNode:
    leaf_type: LeafType
    value: Any


@dataclass
class RecordNode:
    name: str
    version: int = 0
    children: List[List['Node']] = field(default_factory=list)

    def iter_children(self) -> Iterator['Node']:
        for group in self.children:
            yield from group


Node = Union[LeafNode, RecordNode]
NodePath = Tuple[Tuple[int, int], ...]


@dataclass
class EsfFile:
    signature: int = ESF_SIGNATURE
    unknown: int = 0
    creation_date: int = 0
    root: RecordNode = field(default_factory=lambda: RecordNode('ROOT'))

    def clone_without_root_node(self) -> 'EsfFile':
        return EsfFile(self.signature, self.unknown, self.creation_date, RecordNode(''))


# =============================================================================
# Decoding
# =============================================================================

def _decode_leaf(buf: bytes, pos: int, code: int) -> Tuple[LeafNode, int]:
    try:
        leaf_type = LeafType(code)
    except ValueError:
        raise MalformedField(f"Unknown ESF node type 0x{code:02X} at pos {pos - 1}")

    if leaf_type == LeafType.BOOL:
        value, new_pos = decode(buf, pos, FieldType.BOOLEAN)
        return LeafNode(leaf_type, value), new_pos

    if leaf_type in STRING_LEAVES:
        value, new_pos = decode(buf, pos, STRING_LEAVES[leaf_type])
        return LeafNode(leaf_type, value), new_pos

    fmt = LEAF_FORMATS[leaf_type]
    raw, new_pos = read_bytes(buf, pos, struct.calcsize(fmt))
    values = struct.unpack(fmt, raw)
    value = values if len(values) > 1 else values[0]
    return LeafNode(leaf_type, value), new_pos


def _decode_node(buf: bytes, pos: int, names: List[str], depth: int = 0) -> Tuple[Node, int]:
    code, pos = read_u8(buf, pos)
    if code != RECORD_CODE:
        return _decode_leaf(buf, pos, code)
    if depth >= MAX_DEPTH:
        raise MalformedField(f"Records nested deeper than {MAX_DEPTH} at pos {pos - 1}")

    name_index, pos = read_u16(buf, pos)
    if name_index >= len(names):
        raise MalformedField(f"Record name index {name_index} out of range ({len(names)} names)")
    version, pos = read_u8(buf, pos)
    group_count, pos = read_u32(buf, pos)

    children = []
    for _ in range(group_count):
        group_end, pos = read_u32(buf, pos)
        if group_end < pos or group_end > len(buf):
            raise MalformedField(f"Invalid group end offset {group_end} at pos {pos - 4}")
        group = []
        while pos < group_end:
            child, pos = _decode_node(buf, pos, names, depth + 1)
            group.append(child)
        if pos != group_end:
            raise MalformedField(f"Group overran its end offset {group_end} (pos {pos})")
        children.append(group)

    return RecordNode(names[name_index], version, children), pos


def _decode_names(buf: bytes, pos: int) -> List[str]:
    count, pos = read_u16(buf, pos)
    names = []
    for _ in range(count):
        name, pos = decode(buf, pos, FieldType.STRING_U8)
        names.append(name)
    return names


def decode_esf(data: bytes) -> EsfFile:
    signature, pos = read_u32(data, 0)
    if signature != ESF_SIGNATURE:
        raise MalformedField(f"Unsupported ESF signature 0x{signature:08X}")
    unknown, pos = read_u32(data, pos)
    creation_date, pos = read_u32(data, pos)
    names_offset, pos = read_u32(data, pos)
    names = _decode_names(data, names_offset)

    root, end = _decode_node(data[:names_offset], pos, names)
    if not isinstance(root, RecordNode):
        raise MalformedField("ESF root node is not a record")
    if end != names_offset:
        raise MalformedField(f"Root record ends at {end}, name table starts at {names_offset}")
    logger.debug("Decoded ESF root '%s' with %d names", root.name, len(names))
    return EsfFile(signature, unknown, creation_date, root)


# =============================================================================
# Encoding
# =============================================================================

def _encode_leaf(node: LeafNode) -> bytes:
    leaf_type = LeafType(node.leaf_type)
    if leaf_type == LeafType.BOOL:
        return bytes([leaf_type]) + encode(node.value, FieldType.BOOLEAN)
    if leaf_type in STRING_LEAVES:
        return bytes([leaf_type]) + encode(node.value, STRING_LEAVES[leaf_type])
    fmt = LEAF_FORMATS[leaf_type]
    values = node.value if isinstance(node.value, (tuple, list)) else (node.value,)
    try:
        return bytes([leaf_type]) + struct.pack(fmt, *values)
    except struct.error as e:
        raise MalformedField(f"Invalid {leaf_type.name} value {node.value!r}: {e}")


def _collect_names(node: Node, names: Dict[str, int], depth: int = 0) -> None:
    if isinstance(node, RecordNode):
        if depth >= MAX_DEPTH:
            raise MalformedField(f"Records nested deeper than {MAX_DEPTH} under '{node.name}'")
        names.setdefault(node.name, len(names))
        for child in node.iter_children():
            _collect_names(child, names, depth + 1)


def _encode_node(out: bytearray, node: Node, names: Dict[str, int]) -> None:
    if isinstance(node, LeafNode):
        out += _encode_leaf(node)
        return

    out += struct.pack('<BHBI', RECORD_CODE, names[node.name], node.version, len(node.children))
    for group in node.children:
        end_slot = len(out)
        out += b'\x00\x00\x00\x00'
        for child in group:
            _encode_node(out, child, names)
        struct.pack_into('<I', out, end_slot, len(out))


def encode_esf(esf: EsfFile) -> bytes:
    if not isinstance(esf.root, RecordNode):
        raise MalformedField("ESF root node must be a record")
    names: Dict[str, int] = {}
    _collect_names(esf.root, names)
    if len(names) > 0xFFFF:
        raise MalformedField(f"Too many record names: {len(names)}")

    out = bytearray(HEADER_SIZE)
    _encode_node(out, esf.root, names)
    names_offset = len(out)
    struct.pack_into('<IIII', out, 0, esf.signature, esf.unknown, esf.creation_date, names_offset)

    out += struct.pack('<H', len(names))
    for name in names:
        out += encode(name, FieldType.STRING_U8)
    return bytes(out)


# =============================================================================
# Snapshots
# =============================================================================

def clone_without_children(node: Node) -> Node:
    """The node's own data: a record keeps name and version, a leaf is copied."""
    if isinstance(node, RecordNode):
        return RecordNode(node.name, node.version, [])
    return LeafNode(node.leaf_type, copy.deepcopy(node.value))


def children_snapshot(node: Node) -> List[List[Node]]:
    if isinstance(node, RecordNode):
        return copy.deepcopy(node.children)
    return []


def recombine(childless: Node, children: Sequence[Sequence[Node]]) -> Node:
    """Rebuild a node from its childless snapshot and its children snapshot."""
    if isinstance(childless, LeafNode):
        if children:
            raise MalformedField("A leaf node cannot take children")
        return copy.deepcopy(childless)
    if childless.children:
        raise MalformedField(f"Record '{childless.name}' snapshot already has children")
    return RecordNode(childless.name, childless.version,
                      [list(copy.deepcopy(group)) for group in children])


def node_to_dict(node: Node) -> Dict[str, Any]:
    if isinstance(node, RecordNode):
        return {
            'record': node.name,
            'version': node.version,
            'children': [[node_to_dict(c) for c in group] for group in node.children],
        }
    value = list(node.value) if isinstance(node.value, tuple) else node.value
    return {'type': LeafType(node.leaf_type).name, 'value': value}


def node_from_dict(data: Dict[str, Any]) -> Node:
    if 'record' in data:
        return RecordNode(
            name=data['record'],
            version=int(data.get('version', 0)),
            children=[[node_from_dict(c) for c in group] for group in data.get('children', [])],
        )
    try:
        leaf_type = LeafType[data['type']]
    except KeyError:
        raise MalformedField(f"Unknown leaf type in snapshot: {data.get('type')!r}")
    value = data['value']
    if leaf_type in (LeafType.COORD2D, LeafType.COORD3D):
        value = tuple(value)
    return LeafNode(leaf_type, value)


def dump_snapshot(snapshot: Union[Node, Sequence[Sequence[Node]]]) -> str:
    """Serialise a node or a children snapshot to JSON."""
    if isinstance(snapshot, (LeafNode, RecordNode)):
        return json.dumps(node_to_dict(snapshot))
    return json.dumps([[node_to_dict(n) for n in group] for group in snapshot])


def load_snapshot(text: str) -> Union[Node, List[List[Node]]]:
    data = json.loads(text)
    if isinstance(data, list):
        return [[node_from_dict(n) for n in group] for group in data]
    return node_from_dict(data)


# =============================================================================
# Editing
# =============================================================================

@dataclass(frozen=True)
class SetLeaf:
    path: NodePath
    value: Any


@dataclass(frozen=True)
class RenameRecord:
    path: NodePath
    name: str


@dataclass(frozen=True)
class ReplaceChildren:
    path: NodePath
    children: Tuple[Tuple[Node, ...], ...]


@dataclass(frozen=True)
class ReplaceNode:
    path: NodePath
    node: Node


EditCommand = Union[SetLeaf, RenameRecord, ReplaceChildren, ReplaceNode]


class EsfEditor:
    """
    Editable view over an ESF tree.

    Nodes are addressed by paths of (group index, child index) pairs from
    the root; the empty path is the root. Edits are explicit commands that
    are checked before the tree changes.
    """

    def __init__(self, esf: EsfFile):
        self.esf = esf

    @property
    def root(self) -> RecordNode:
        return self.esf.root

    def node_at(self, path: NodePath) -> Node:
        node: Node = self.root
        for depth, (group, index) in enumerate(path):
            if not isinstance(node, RecordNode):
                raise MalformedField(f"Path {path} goes through a leaf at depth {depth}")
            try:
                node = node.children[group][index]
            except IndexError:
                raise MalformedField(f"Path {path} has no node at depth {depth}")
        return node

    def walk(self) -> Iterator[Tuple[NodePath, Node]]:
        """Pre-order walk yielding (path, node)."""
        stack: List[Tuple[NodePath, Node]] = [((), self.root)]
        while stack:
            path, node = stack.pop()
            yield path, node
            if isinstance(node, RecordNode):
                items = []
                for g, group in enumerate(node.children):
                    for i, child in enumerate(group):
                        items.append((path + ((g, i),), child))
                stack.extend(reversed(items))

    def _replace(self, path: NodePath, new_node: Node) -> None:
        if not path:
            if not isinstance(new_node, RecordNode):
                raise MalformedField("ESF root node must be a record")
            self.esf.root = new_node
            return
        parent = self.node_at(path[:-1])
        group, index = path[-1]
        parent.children[group][index] = new_node

    def apply(self, command: EditCommand) -> None:
        node = self.node_at(command.path)

        if isinstance(command, SetLeaf):
            if not isinstance(node, LeafNode):
                raise MalformedField(f"Node at {command.path} is not a leaf")
            updated = LeafNode(node.leaf_type, command.value)
            try:
                _encode_leaf(updated)
            except (TypeError, ValueError) as e:
                raise MalformedField(f"Invalid value for {LeafType(node.leaf_type).name}: {e}")
            self._replace(command.path, updated)

        elif isinstance(command, RenameRecord):
            if not isinstance(node, RecordNode):
                raise MalformedField(f"Node at {command.path} is not a record")
            if not command.name:
                raise MalformedField("Record name cannot be empty")
            node.name = command.name

        elif isinstance(command, ReplaceChildren):
            if not isinstance(node, RecordNode):
                raise MalformedField(f"Node at {command.path} is not a record")
            node.children = [list(copy.deepcopy(group)) for group in command.children]

        elif isinstance(command, ReplaceNode):
            self._replace(command.path, copy.deepcopy(command.node))

        else:
            raise MalformedField(f"Unknown edit command: {command!r}")

        logger.debug("Applied %s at %s", type(command).__name__, command.path)
