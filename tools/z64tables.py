#!/usr/bin/env python3
"""
Locate the scene, object and actor tables inside the Zelda64 code file.

None of the tables has a header. Each one is found from three anchor files of
its kind (the first three seen while scanning the file table): their virtual
ranges are searched for verbatim in the code bytes, then the table is walked
backward record by record for as long as the records still look like table
entries.
"""

from __future__ import annotations

import dataclasses
import struct
from typing import Callable, List, Optional, Sequence

import numpy as np

from z64rom import AddressRange, FileTable, TableNotFoundError, be32


SCENE = "scene"
OBJECT = "object"
ACTOR = "actor"

OBJECT_STRIDE = 0x08
ACTOR_STRIDE = 0x20

ANCHOR_COUNT = 3


@dataclasses.dataclass
class AnchorSet:
    kind: str
    ranges: List[AddressRange] = dataclasses.field(default_factory=list)
    seen: int = 0

    def add(self, vrange: AddressRange) -> None:
        if len(self.ranges) < ANCHOR_COUNT:
            self.ranges.append(vrange)
        self.seen += 1

    @property
    def complete(self) -> bool:
        return len(self.ranges) >= ANCHOR_COUNT


def find_anchor_offsets(code: bytes, ranges: Sequence[AddressRange], stride: int) -> List[Optional[int]]:
    """Offsets in ``code`` of the (start, end) word pair of each range, None where absent."""
    offsets: List[Optional[int]] = [None] * len(ranges)
    n = len(code) // 4
    if n < 2 or not ranges:
        return offsets
    words = np.frombuffer(code, dtype=">u4", count=n)
    first = words[:-1]
    second = words[1:]
    mask = np.zeros(n - 1, dtype=bool)
    for r in ranges:
        mask |= (first == r.start) & (second == r.end)

    resume = 0
    for w in np.flatnonzero(mask).tolist():
        off = w * 4
        if off < resume:
            continue
        pair = (int(words[w]), int(words[w + 1]))
        for k, r in enumerate(ranges):
            if offsets[k] is None and (r.start, r.end) == pair:
                offsets[k] = off
                # One match per record.
                resume = off + stride
                break
        if all(o is not None for o in offsets):
            break
    return offsets


def walk_table_start(code: bytes, seed: int, stride: int, is_entry: Callable[[int, int], bool]) -> int:
    """Step back from ``seed`` while the previous record is empty or accepted by ``is_entry``.

    Empty records are crossed inside the table, but zero filler in front of it
    is not part of it: the result is the first non-empty record reached.
    """
    i = seed
    while i >= stride:
        prev = i - stride
        w0, w1 = struct.unpack_from(">2I", code, prev)
        if w0 != 0 and not is_entry(w0, w1):
            break
        i = prev
    while i < seed and be32(code, i) == 0:
        i += stride
    return i


def scene_table_boundary(offsets: Sequence[Optional[int]], stride: int) -> int:
    """Lowest anchor offset, once the three anchors are shown to sit on one record grid.

    lo/hi are the smallest and largest located offsets and mid is the one strictly
    between them (lo when there is none). Both lo->mid and mid->hi must be whole
    records.
    """
    found = [o for o in offsets if o is not None]
    if not found:
        raise TableNotFoundError("scene table not found")
    lo = min(found)
    hi = max(found)
    mid = next((o for o in found if lo < o < hi), lo)
    if (mid - lo) % stride or (hi - mid) % stride:
        raise TableNotFoundError(
            f"scene table not found (anchors 0x{lo:X}/0x{mid:X}/0x{hi:X} not aligned to 0x{stride:X})"
        )
    return lo


def _require_anchors(anchors: AnchorSet) -> None:
    if not anchors.complete:
        raise TableNotFoundError(
            f"{anchors.kind} table not found (only {len(anchors.ranges)} {anchors.kind} files seen)"
        )


def locate_scene_table(code: bytes, anchors: AnchorSet, stride: int, files: FileTable) -> int:
    _require_anchors(anchors)
    offsets = find_anchor_offsets(code, anchors.ranges, stride)
    seed = scene_table_boundary(offsets, stride)
    return walk_table_start(code, seed, stride, lambda w0, w1: files.find(w0, w1) >= 0)


def _locate_from_first_anchor(code: bytes, anchors: AnchorSet, stride: int, files: FileTable) -> int:
    _require_anchors(anchors)
    offsets = find_anchor_offsets(code, anchors.ranges, stride)
    seed = next((o for o in offsets if o is not None), None)
    if seed is None:
        raise TableNotFoundError(f"{anchors.kind} table not found")
    return walk_table_start(code, seed, stride, lambda w0, w1: files.find(w0) >= 0)


def locate_object_table(code: bytes, anchors: AnchorSet, files: FileTable) -> int:
    return _locate_from_first_anchor(code, anchors, OBJECT_STRIDE, files)


def locate_actor_table(code: bytes, anchors: AnchorSet, files: FileTable) -> int:
    return _locate_from_first_anchor(code, anchors, ACTOR_STRIDE, files)
