from __future__ import annotations

import dataclasses
import struct
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from z64classify import CODE_SIGNATURE


Z64_MAGIC = 0x80371240
OOT_TITLE = b"THE LEGEND OF ZELDA "
MM_TITLE = b"ZELDA MAJORA'S MASK "

TABLE_AT = 0x1060
DATA_AT = 0x4000
VBASE = 0x00100000

# A non-zero word that no file starts at.
BAD = 0x12345678


def be_words(*words: int) -> bytes:
    return struct.pack(f">{len(words)}I", *words)


def yaz0_literal(data: bytes) -> bytes:
    """Yaz0 stream made only of literal runs."""
    out = bytearray(b"Yaz0" + struct.pack(">I", len(data)) + bytes(8))
    for i in range(0, len(data), 8):
        out.append(0xFF)
        out += data[i : i + 8]
    return bytes(out)


def to_n64(rom: bytes) -> bytearray:
    out = bytearray(rom)
    for i in range(0, len(out) - 3, 4):
        out[i : i + 4] = out[i : i + 4][::-1]
    return out


def to_v64(rom: bytes) -> bytearray:
    out = bytearray(rom)
    for i in range(0, len(out) - 1, 2):
        out[i], out[i + 1] = out[i + 1], out[i]
    return out


def scene_file(rooms: Sequence[Tuple[int, int]] = ()) -> bytes:
    data = bytearray(be_words(0x04000000 | (len(rooms) << 16), 0x02000010, 0x14000000, 0))
    for vs, ve in rooms:
        data += be_words(vs, ve)
    data += bytes(8)
    return bytes(data)


def map_file() -> bytes:
    return be_words(0x14000000, 0, 0x0A000000, 0x03000000)


def object_file(tag: int = 0) -> bytes:
    return be_words(0x06000000, 0x06000100 + tag, 0xDF000000, 0)


def actor_file(group: int, obj: int, info: int = 0x10) -> bytes:
    """0x60-byte overlay: init info at ``info``, relocation table footer at 0x40."""
    data = bytearray(0x60)
    struct.pack_into(">H", data, info, 0x0001)
    data[info + 2] = group
    struct.pack_into(">H", data, info + 8, obj)
    struct.pack_into(">5I", data, 0x40, 0x38, 0, 0, 0, 0)
    struct.pack_into(">I", data, 0x5C, 0x20)
    return bytes(data)


def scene_record(vs: int, ve: int, stride: int = 0x14) -> bytes:
    return be_words(vs, ve) + bytes(stride - 8)


def object_record(vs: int, ve: int) -> bytes:
    return be_words(vs, ve)


def actor_record(vs: int, ve: int, vram: int = 0x80800000, info: int = 0x10) -> bytes:
    return be_words(vs, ve, vram, vram + 0x60, 0, vram + info, 0, 0)


def code_file(*chunks: bytes) -> bytes:
    return b"".join(chunks) + CODE_SIGNATURE


class RomBuilder:
    """Minimal Zelda64-shaped image: header, file table at 0x1060, files from 0x4000."""

    SYSTEM_FILES = 3

    def __init__(self, title: bytes = OOT_TITLE) -> None:
        self.title = title
        self.files: List[Tuple[bytes, Optional[bytes], int, int]] = []
        self._vnext = VBASE

    def add(self, data: bytes, compressed: bool = False, stored: Optional[bytes] = None) -> int:
        if compressed and stored is None:
            stored = yaz0_literal(data)
        vstart = self._vnext
        vend = vstart + len(data)
        self._vnext = (vend + 0xF) & ~0xF
        self.files.append((data, stored, vstart, vend))
        return self.SYSTEM_FILES + len(self.files) - 1

    def vrange(self, index: int) -> Tuple[int, int]:
        _, _, vs, ve = self.files[index - self.SYSTEM_FILES]
        return vs, ve

    def data(self, index: int) -> bytes:
        return self.files[index - self.SYSTEM_FILES][0]

    def build(self, names: Optional[Sequence[str]] = None) -> bytearray:
        count = self.SYSTEM_FILES + len(self.files)
        rom = bytearray(DATA_AT)
        struct.pack_into(">I", rom, 0, Z64_MAGIC)
        rom[0x20:0x34] = self.title
        records = [
            (0, 0x1060, 0, 0),
            (0x1060, 0x1070, 0x1060, 0),
            (0x2000, 0x2000 + count * 16, TABLE_AT, 0),
        ]
        for data, stored, vs, ve in self.files:
            phys = len(rom)
            if stored is None:
                rom += data
                records.append((vs, ve, phys, 0))
            else:
                rom += stored
                records.append((vs, ve, phys, phys + len(stored)))
            rom += bytes(-len(rom) % 16)
        for i, rec in enumerate(records):
            struct.pack_into(">4I", rom, TABLE_AT + i * 16, *rec)
        if names is not None:
            for name in ["makerom", "boot", "dmadata", *names]:
                raw = name.encode("ascii") + b"\x00"
                rom += raw + bytes(-len(raw) % 4)
            rom += bytes(-len(rom) % 16)
        return rom


@dataclasses.dataclass
class StandardRom:
    builder: RomBuilder
    rom: bytearray
    maps: List[int]
    scenes: List[int]
    objects: List[int]
    actors: List[int]
    code: int

    def vrange(self, index: int) -> Tuple[int, int]:
        return self.builder.vrange(index)

    def name(self, index: int) -> str:
        vs, ve = self.vrange(index)
        return f"{vs:08X}-{ve:08X}"


def make_standard_rom(title: bytes = OOT_TITLE, names: Optional[Dict[int, str]] = None) -> StandardRom:
    """Three scenes (the first compressed, with one room), five objects, three actors."""
    stride = 0x10 if title == MM_TITLE else 0x14
    b = RomBuilder(title)
    m0 = b.add(map_file())
    s0 = b.add(scene_file([b.vrange(m0)]), compressed=True)
    s1 = b.add(scene_file())
    s2 = b.add(scene_file())
    objects = [b.add(object_file(i)) for i in range(5)]
    actors = [
        b.add(actor_file(5, 0x012)),
        b.add(actor_file(2, 0x015)),
        b.add(actor_file(0x20, 0x001)),
    ]
    code = code_file(
        scene_record(BAD, 0, stride),
        *[scene_record(*b.vrange(s), stride) for s in (s0, s1, s2)],
        bytes(stride),
        object_record(BAD, 0),
        *[object_record(*b.vrange(o)) for o in objects],
        bytes(8),
        actor_record(BAD, 0),
        *[actor_record(*b.vrange(a)) for a in actors],
        bytes(0x20),
    )
    c = b.add(code)
    name_list = None
    if names is not None:
        name_list = [names.get(i, f"file_{i}") for i in range(RomBuilder.SYSTEM_FILES, c + 1)]
    rom = b.build(name_list)
    return StandardRom(b, rom, [m0], [s0, s1, s2], objects, actors, c)


@pytest.fixture
def standard_rom() -> StandardRom:
    return make_standard_rom()
