#!/usr/bin/env python3
"""
Content-type guessing for decoded Zelda64 files.

The result is one of the Z* tags below. Checks run in a fixed order and the
first match wins: size, code signature, actor overlay footer, then a scan of
the bytes as 8-byte scene/room commands or display list commands.
"""

from __future__ import annotations

import struct
from typing import Union

import numpy as np

from z64rom import be32


ZDATA = "zdata"
ZASM = "zasm"
ZACTOR = "zactor"
ZOBJ = "zobj"
ZSCENE = "zscene"
ZMAP = "zmap"

# Last 32 bytes of the code file.
CODE_SIGNATURE = bytes.fromhex(
    "18F96A6EB8E38276"
    "471D18F982766A6E"
    "6A6E8276E707B8E3"
    "7D8A471D6A6E18F9"
)

OVERLAY_HEADER_SIZE = 0x28
OVERLAY_TABLE_MIN = 0x18

CMD_END = 0x14000000
CMD_ROOM_LIST = 0x04
CMD_COLLISION = 0x05
CMD_SPECIAL = 0x06
CMD_ENTRANCE = 0x01
DL_END = 0xDF000000
HEADER_SCAN_LIMIT = 0x100

FLAG_ROOM_LIST = 0x80000000
FLAG_COLLISION = 0x40000000
FLAG_ENTRANCE = 0x20000000
FLAG_KNOWN = FLAG_ROOM_LIST | FLAG_COLLISION | FLAG_ENTRANCE


def is_actor_overlay(data: Union[bytes, bytearray, memoryview]) -> bool:
    size = len(data)
    if size < 8:
        return False
    tlen = be32(data, size - 4)
    if not (OVERLAY_TABLE_MIN <= tlen < size):
        return False
    table = size - tlen
    text, dat, rodata, bss, relocs = struct.unpack_from(">5I", data, table)
    total = OVERLAY_HEADER_SIZE + text + dat + rodata + bss + relocs * 4
    return total - (total % 0x10) == size


def _scan_commands(data: bytes) -> str:
    n = len(data) // 8
    words = np.frombuffer(data, dtype=">u4", count=n * 2).reshape(n, 2)
    w0 = words[:, 0]
    w1 = words[:, 1]

    ends = np.flatnonzero((w0 == CMD_END) & (w1 == 0))
    ends = ends[ends < HEADER_SCAN_LIMIT // 8]
    dl_ends = np.flatnonzero((w0 == DL_END) & (w1 == 0))
    end = int(ends[0]) if ends.size else None
    dl_end = int(dl_ends[0]) if dl_ends.size else None

    if end is not None and (dl_end is None or end < dl_end):
        cmds = w0[:end] >> 24
        flags = 0
        if np.any(cmds == CMD_ROOM_LIST):
            flags |= FLAG_ROOM_LIST
        if np.any(((cmds == CMD_COLLISION) & (w1[:end] == 0)) | (cmds == CMD_SPECIAL)):
            flags |= FLAG_COLLISION
        if np.any(cmds == CMD_ENTRANCE):
            flags |= FLAG_ENTRANCE
        if flags & FLAG_ROOM_LIST and not flags & ~FLAG_KNOWN:
            return ZSCENE
        return ZMAP
    if dl_end is not None:
        return ZOBJ
    return ZDATA


def classify(data: Union[bytes, bytearray, memoryview]) -> str:
    size = len(data)
    if size < 8:
        return ZDATA
    if size > 32 and bytes(data[size - 32 :]) == CODE_SIGNATURE:
        return ZASM
    if is_actor_overlay(data):
        return ZACTOR
    return _scan_commands(data if isinstance(data, bytes) else bytes(data))
