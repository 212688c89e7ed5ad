#!/usr/bin/env python3
"""
Zelda64 ROM access layer.

- Byte order detection and in-place normalization to big-endian (.z64).
- Yaz0 container decoding.
- Header title / game variant detection.
- File table ("dmadata") lookup and file materialization.
- Optional file name table.
"""

from __future__ import annotations

import dataclasses
import struct
from typing import Dict, List, Optional, Tuple, Union

import numpy as np


ORDER_MAGIC = {
    0x80371240: "z64",
    0x37804012: "v64",
    0x40123780: "n64",
}

YAZ0_MAGIC = b"Yaz0"
ABSENT = 0xFFFFFFFF

FILE_TABLE_RECORD = 16
FILE_TABLE_HEAD = 0x1060

NAME_TABLE_SIGNATURE = b"makerom\x00"

MM_TITLE = b"ZELDA MAJORA'S MASK "


class Z64Error(Exception):
    pass


class RomFormatError(Z64Error):
    pass


class TableNotFoundError(Z64Error):
    pass


class DecodeError(Z64Error):
    pass


Buffer = Union[bytes, bytearray, memoryview]


def be32(b: Buffer, off: int) -> int:
    return struct.unpack_from(">I", b, off)[0]


def detect_rom_order(raw: Buffer) -> str:
    if len(raw) < 4:
        return "unknown"
    return ORDER_MAGIC.get(be32(raw, 0), "unknown")


def normalize_rom_be(buf: bytearray) -> str:
    """Rewrite ``buf`` to big-endian word order in place and return the order it had."""
    order = detect_rom_order(buf)
    words = len(buf) // 4
    if order == "z64":
        return order
    if order == "n64":
        np.frombuffer(buf, dtype=np.uint32, count=words).byteswap(inplace=True)
        return order
    if order == "v64":
        np.frombuffer(buf, dtype=np.uint16, count=words * 2).byteswap(inplace=True)
        return order
    magic = be32(buf, 0) if len(buf) >= 4 else 0
    raise RomFormatError(f"unknown endianness (magic 0x{magic:08X})")


def rom_name(rom_be: Buffer) -> str:
    if len(rom_be) < 0x34:
        return ""
    raw = bytes(rom_be[0x20:0x34])
    return raw.decode("ascii", errors="ignore").rstrip(" \x00")


@dataclasses.dataclass(frozen=True)
class RomVariant:
    key: str
    title: str
    scene_stride: int


OCARINA = RomVariant("oot", "Ocarina of Time", 0x14)
MAJORAS_MASK = RomVariant("mm", "Majora's Mask", 0x10)


def detect_variant(rom_be: Buffer) -> RomVariant:
    if bytes(rom_be[0x20:0x34]) == MM_TITLE:
        return MAJORAS_MASK
    return OCARINA


def yaz0_decompress(rom: Buffer, off: int = 0) -> Tuple[bytes, int]:
    if bytes(rom[off : off + 4]) != YAZ0_MAGIC:
        raise DecodeError("Not a Yaz0 stream")
    if off + 0x10 > len(rom):
        raise DecodeError("Yaz0 header out of range")
    dec_size = be32(rom, off + 4)
    src = off + 0x10
    out = bytearray()
    n = len(rom)
    valid = 0
    code = 0
    while len(out) < dec_size:
        if valid == 0:
            if src >= n:
                raise DecodeError("Yaz0 code stream out of range")
            code = rom[src]
            src += 1
            valid = 8
        if (code & 0x80) != 0:
            if src >= n:
                raise DecodeError("Yaz0 raw out of range")
            out.append(rom[src])
            src += 1
        else:
            if src + 1 >= n:
                raise DecodeError("Yaz0 backref out of range")
            b1 = rom[src]
            b2 = rom[src + 1]
            src += 2
            dist = ((b1 & 0x0F) << 8) | b2
            copy_len = b1 >> 4
            if copy_len == 0:
                if src >= n:
                    raise DecodeError("Yaz0 count out of range")
                copy_len = rom[src] + 0x12
                src += 1
            else:
                copy_len += 2
            back = len(out) - (dist + 1)
            if back < 0:
                raise DecodeError("Yaz0 invalid back-reference")
            # Byte by byte: a run may read what it has just written.
            for _ in range(copy_len):
                out.append(out[back])
                back += 1
                if len(out) >= dec_size:
                    break
        code = (code << 1) & 0xFF
        valid -= 1
    return bytes(out), src - off


@dataclasses.dataclass(frozen=True)
class AddressRange:
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start

    def __str__(self) -> str:
        return f"{self.start:08X}-{self.end:08X}"


@dataclasses.dataclass(frozen=True)
class FileTableEntry:
    index: int
    virtual: AddressRange
    physical: AddressRange


class MaterializedFile:
    """Decoded bytes of one file table entry. Use as a context manager."""

    owned = False

    def __init__(self, entry: FileTableEntry, data: Buffer) -> None:
        self.entry = entry
        self.data = data

    @property
    def size(self) -> int:
        return len(self.data)

    def release(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> "MaterializedFile":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class OwnedFile(MaterializedFile):
    """Freshly decompressed buffer, owned by the caller."""

    owned = True

    def release(self) -> None:
        self.data = b""


class BorrowedFile(MaterializedFile):
    """View into the ROM image for a file stored raw."""

    def release(self) -> None:
        if isinstance(self.data, memoryview):
            self.data.release()


class FileTable:
    def __init__(self, rom: Buffer, start: int, count: int) -> None:
        self.rom = rom
        self.start = start
        self.count = count
        self._by_start: Optional[Dict[int, List[Tuple[int, int]]]] = None

    def __len__(self) -> int:
        return self.count

    @classmethod
    def locate(cls, rom: Buffer) -> "FileTable":
        # dmadata opens with makerom (0x0000-0x1060, stored at 0) then boot (0x1060-...).
        n = len(rom) // FILE_TABLE_RECORD
        if n < 3:
            raise TableNotFoundError("file table not found")
        rows = np.frombuffer(rom, dtype=">u4", count=n * 4).reshape(n, 4)
        heads = np.flatnonzero(
            (rows[:, 0] == 0) & (rows[:, 1] == FILE_TABLE_HEAD) & (rows[:, 2] == 0) & (rows[:, 3] == 0)
        )
        for r in heads.tolist():
            if r + 2 >= n:
                break
            v0, v1, p0, p1 = (int(x) for x in rows[r + 1])
            if v0 == FILE_TABLE_HEAD and v1 and p0 == FILE_TABLE_HEAD and p1 == 0:
                own_start, own_end = int(rows[r + 2, 0]), int(rows[r + 2, 1])
                start = r * FILE_TABLE_RECORD
                count = max(0, own_end - own_start) // FILE_TABLE_RECORD
                count = min(count, (len(rom) - start) // FILE_TABLE_RECORD)
                return cls(rom, start, count)
        raise TableNotFoundError("file table not found")

    def entry(self, index: int) -> Optional[FileTableEntry]:
        if index < 0 or index >= self.count:
            return None
        off = self.start + index * FILE_TABLE_RECORD
        vs, ve, ps, pe = struct.unpack_from(">4I", self.rom, off)
        return FileTableEntry(index, AddressRange(vs, ve), AddressRange(ps, pe))

    def entries(self) -> List[FileTableEntry]:
        return [e for e in (self.entry(i) for i in range(self.count)) if e is not None]

    def open(self, index: int) -> Optional[MaterializedFile]:
        """Materialize file ``index``; None when the slot is not populated."""
        e = self.entry(index)
        if e is None:
            return None
        v, p = e.virtual, e.physical
        if not v.end or p.start == ABSENT or p.end == ABSENT:
            return None
        # A zero physical end marks a file stored uncompressed.
        if p.end and bytes(self.rom[p.start : p.start + 4]) == YAZ0_MAGIC:
            data, _ = yaz0_decompress(self.rom, p.start)
            return OwnedFile(e, data)
        size = v.size
        if size < 0 or p.start + size > len(self.rom):
            return None
        return BorrowedFile(e, memoryview(self.rom)[p.start : p.start + size])

    def _index(self) -> Dict[int, List[Tuple[int, int]]]:
        if self._by_start is None:
            by_start: Dict[int, List[Tuple[int, int]]] = {}
            for e in self.entries():
                by_start.setdefault(e.virtual.start, []).append((e.index, e.virtual.end))
            self._by_start = by_start
        return self._by_start

    def find(self, start: int, end: int = 0) -> int:
        """Index of the first file starting at ``start`` (and ending at ``end`` if non-zero), else -1."""
        for index, vend in self._index().get(start, ()):
            if not end or vend == end:
                return index
        return -1


class FileNameTable:
    def __init__(self, start: int, names: List[str]) -> None:
        self.start = start
        self.names = names

    @classmethod
    def locate(cls, rom: Buffer, count: int) -> Optional["FileNameTable"]:
        data = rom if isinstance(rom, (bytes, bytearray)) else bytes(rom)
        pos = 0
        while True:
            i = data.find(NAME_TABLE_SIGNATURE, pos)
            if i < 0:
                return None
            if i % 4 == 0:
                return cls(i, _read_names(data, i, count))
            pos = i + 1

    def name(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.names):
            return self.names[index]
        return None


def _read_names(data: Union[bytes, bytearray], start: int, count: int) -> List[str]:
    names: List[str] = []
    j = start
    n = len(data)
    for _ in range(count):
        # Names are NUL-padded to word boundaries.
        while j < n and data[j] == 0:
            j += 1
        if j >= n:
            break
        end = data.find(b"\x00", j)
        if end < 0:
            end = n
        names.append(data[j:end].decode("ascii", errors="replace"))
        j = end
    return names
