"""Compound File Binary (version 3) writer.

Only what an encrypted OOXML container needs: a tree of storages and
streams, written in one pass. Reading goes through olefile.

Layout: FAT sectors, DIFAT sectors, mini FAT, directory, mini stream,
then regular streams. Timestamps and CLSIDs are zero so equal input gives
equal bytes.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional

SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
SECTOR_SIZE = 512
MINI_SECTOR_SIZE = 64
MINI_STREAM_CUTOFF = 4096
DIR_ENTRY_SIZE = 128

FREESECT = 0xFFFFFFFF
ENDOFCHAIN = 0xFFFFFFFE
FATSECT = 0xFFFFFFFD
DIFSECT = 0xFFFFFFFC
NOSTREAM = 0xFFFFFFFF

ENTRIES_PER_SECTOR = SECTOR_SIZE // 4
HEADER_DIFAT_ENTRIES = 109

TYPE_STORAGE = 1
TYPE_STREAM = 2
TYPE_ROOT = 5


@dataclass
class _Node:
    name: str
    kind: int
    data: bytes = b""
    children: List["_Node"] = field(default_factory=list)
    sid: int = 0
    left: int = NOSTREAM
    right: int = NOSTREAM
    child: int = NOSTREAM
    start: int = ENDOFCHAIN

    def find(self, name: str) -> Optional["_Node"]:
        for node in self.children:
            if node.name == name:
                return node
        return None


def _sort_key(name: str):
    # Directory order: shorter names first, then case-insensitive code point order
    return len(name), name.upper()


def _build_tree(streams: Dict[str, bytes]) -> _Node:
    root = _Node("Root Entry", TYPE_ROOT)
    for path, data in streams.items():
        parts = path.split("/")
        node = root
        for storage in parts[:-1]:
            child = node.find(storage)
            if child is None:
                child = _Node(storage, TYPE_STORAGE)
                node.children.append(child)
            node = child
        node.children.append(_Node(parts[-1], TYPE_STREAM, data=data))
    return root


def _flatten(root: _Node) -> List[_Node]:
    ordered = [root]
    queue = [root]
    while queue:
        node = queue.pop(0)
        node.children.sort(key=lambda n: _sort_key(n.name))
        for child in node.children:
            child.sid = len(ordered)
            ordered.append(child)
            queue.append(child)
    return ordered


def _link_siblings(node: _Node) -> None:
    """Arrange each storage's children as a balanced binary tree of sibling links."""
    def build(items: List[_Node]) -> int:
        if not items:
            return NOSTREAM
        mid = len(items) // 2
        items[mid].left = build(items[:mid])
        items[mid].right = build(items[mid + 1:])
        return items[mid].sid

    node.child = build(node.children)
    for child in node.children:
        _link_siblings(child)


def _sectors(size: int, unit: int) -> int:
    return (size + unit - 1) // unit


def _pad(data: bytes, unit: int) -> bytes:
    remainder = len(data) % unit
    return data if remainder == 0 else data + b"\x00" * (unit - remainder)


def _dir_entry(node: _Node, size: int) -> bytes:
    name = node.name.encode("utf-16-le")
    if len(name) > 62:
        raise ValueError(f"Compound file entry name too long: {node.name!r}")
    return struct.pack(
        "<64sHBBIII16sIQQIQ",
        name,
        len(name) + 2 if name else 0,
        node.kind,
        1,  # black
        node.left,
        node.right,
        node.child,
        b"\x00" * 16,
        0,
        0,
        0,
        node.start,
        size,
    )


def write_compound_file(streams: Dict[str, bytes]) -> bytes:
    """Build a compound file from ``{"Storage/Stream": data}``."""
    root = _build_tree(streams)
    nodes = _flatten(root)
    _link_siblings(root)

    # Mini stream
    mini_stream = bytearray()
    mini_fat: List[int] = []
    big: List[_Node] = []
    for node in nodes:
        if node.kind != TYPE_STREAM:
            continue
        if len(node.data) >= MINI_STREAM_CUTOFF:
            big.append(node)
            continue
        if not node.data:
            node.start = ENDOFCHAIN
            continue
        count = _sectors(len(node.data), MINI_SECTOR_SIZE)
        node.start = len(mini_fat)
        mini_fat.extend(range(node.start + 1, node.start + count))
        mini_fat.append(ENDOFCHAIN)
        mini_stream += _pad(node.data, MINI_SECTOR_SIZE)

    n_minifat = _sectors(len(mini_fat) * 4, SECTOR_SIZE)
    n_dir = _sectors(len(nodes) * DIR_ENTRY_SIZE, SECTOR_SIZE)
    n_ministream = _sectors(len(mini_stream), SECTOR_SIZE)
    n_big = sum(_sectors(len(n.data), SECTOR_SIZE) for n in big)
    payload = n_minifat + n_dir + n_ministream + n_big

    n_fat = 1
    while True:
        n_difat = max(0, _sectors(n_fat - HEADER_DIFAT_ENTRIES, ENTRIES_PER_SECTOR - 1))
        if payload + n_fat + n_difat <= n_fat * ENTRIES_PER_SECTOR:
            break
        n_fat += 1

    fat = [FREESECT] * (n_fat * ENTRIES_PER_SECTOR)
    cursor = 0

    def chain(count: int) -> int:
        nonlocal cursor
        if count == 0:
            return ENDOFCHAIN
        start = cursor
        for i in range(count - 1):
            fat[start + i] = start + i + 1
        fat[start + count - 1] = ENDOFCHAIN
        cursor += count
        return start

    fat_sectors = list(range(cursor, cursor + n_fat))
    for s in fat_sectors:
        fat[s] = FATSECT
    cursor += n_fat
    difat_sectors = list(range(cursor, cursor + n_difat))
    for s in difat_sectors:
        fat[s] = DIFSECT
    cursor += n_difat

    minifat_start = chain(n_minifat)
    dir_start = chain(n_dir)
    root.start = chain(n_ministream) if mini_stream else ENDOFCHAIN
    for node in big:
        node.start = chain(_sectors(len(node.data), SECTOR_SIZE))

    # Header
    difat_head = fat_sectors[:HEADER_DIFAT_ENTRIES]
    difat_head += [FREESECT] * (HEADER_DIFAT_ENTRIES - len(difat_head))
    header = struct.pack(
        "<8s16sHHHHH6sIIIIIIIII",
        SIGNATURE,
        b"\x00" * 16,
        0x003E,
        0x0003,
        0xFFFE,
        9,  # 512-byte sectors
        6,  # 64-byte mini sectors
        b"\x00" * 6,
        0,  # directory sector count (v3)
        n_fat,
        dir_start,
        0,
        MINI_STREAM_CUTOFF,
        minifat_start if n_minifat else ENDOFCHAIN,
        n_minifat,
        difat_sectors[0] if difat_sectors else ENDOFCHAIN,
        n_difat,
    ) + struct.pack(f"<{HEADER_DIFAT_ENTRIES}I", *difat_head)

    out = bytearray(header)
    out += struct.pack(f"<{len(fat)}I", *fat)

    overflow = fat_sectors[HEADER_DIFAT_ENTRIES:]
    for i, _ in enumerate(difat_sectors):
        entries = overflow[i * (ENTRIES_PER_SECTOR - 1):(i + 1) * (ENTRIES_PER_SECTOR - 1)]
        entries += [FREESECT] * (ENTRIES_PER_SECTOR - 1 - len(entries))
        next_sector = difat_sectors[i + 1] if i + 1 < len(difat_sectors) else ENDOFCHAIN
        out += struct.pack(f"<{ENTRIES_PER_SECTOR}I", *entries, next_sector)

    if n_minifat:
        padded = mini_fat + [FREESECT] * (n_minifat * ENTRIES_PER_SECTOR - len(mini_fat))
        out += struct.pack(f"<{len(padded)}I", *padded)

    directory = bytearray()
    for node in nodes:
        size = len(mini_stream) if node.kind == TYPE_ROOT else len(node.data)
        directory += _dir_entry(node, size)
    unused = _Node("", 0, start=0)
    while len(directory) % SECTOR_SIZE:
        directory += _dir_entry(unused, 0)
    out += directory

    out += _pad(bytes(mini_stream), SECTOR_SIZE)
    for node in big:
        out += _pad(node.data, SECTOR_SIZE)
    return bytes(out)
