#!/usr/bin/env python3
"""
Zelda64 (N64) asset dumper.

Finds the file table, the code file, and the scene/object/actor tables that
live inside the code file, then writes every referenced file under
``data/`` with a readable name:

    data/scenes/<idx>/<name>.zscene
    data/scenes/<idx>/maps/<name>.zmap
    data/actors/<category>/<idx> [obj <id>] - <name>.zactor
    data/objects/<idx> - <name>.zobj
    data/gk_<idx> - <name>.zobj, fk_..., dk_...

Works on Ocarina of Time and Majora's Mask images in any byte order.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import pathlib
import struct
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import yaml

from z64classify import CMD_END, CMD_ROOM_LIST, ZACTOR, ZASM, ZOBJ, ZSCENE, classify
from z64rom import (
    DecodeError,
    FileNameTable,
    FileTable,
    FileTableEntry,
    MaterializedFile,
    RomVariant,
    TableNotFoundError,
    Z64Error,
    be32,
    detect_variant,
    normalize_rom_be,
    rom_name,
)
from z64tables import (
    ACTOR,
    ACTOR_STRIDE,
    OBJECT,
    OBJECT_STRIDE,
    SCENE,
    AnchorSet,
    locate_actor_table,
    locate_object_table,
    locate_scene_table,
)


SCENES = "scenes"
ACTORS = "actors"
OBJECTS = "objects"
ALL_KINDS = (SCENES, ACTORS, OBJECTS)

ACTOR_GROUPS = {
    1: "props (1)",
    2: "player",
    3: "bombs",
    4: "npcs",
    5: "enemies",
    6: "props (2)",
    7: "items and actions",
    8: "misc",
    9: "bosses",
    10: "doors",
    11: "chests",
}

# gameplay_keep, field_keep, dangeon_keep
OBJECT_OVERRIDES = {1: "gk", 2: "fk", 3: "dk"}

STEP_WIDTH = 30


class ConfigError(Z64Error):
    pass


@dataclasses.dataclass(frozen=True)
class DumpConfig:
    output_dir: pathlib.Path = pathlib.Path(".")
    extract: Tuple[str, ...] = ALL_KINDS
    use_name_table: bool = True
    skip_empty_records: bool = False
    report: Optional[pathlib.Path] = None


def _load_config(path: pathlib.Path) -> Dict[str, Any]:
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    try:
        if ext == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse config {path}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping/object")
    return data


def load_config(path: pathlib.Path) -> DumpConfig:
    data = _load_config(path)
    known = {f.name for f in dataclasses.fields(DumpConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    kw: Dict[str, Any] = {}
    if data.get("output_dir") is not None:
        kw["output_dir"] = pathlib.Path(str(data["output_dir"]))
    if data.get("report") is not None:
        kw["report"] = pathlib.Path(str(data["report"]))
    if "extract" in data:
        kinds = data["extract"]
        if isinstance(kinds, str):
            kinds = [kinds]
        if not isinstance(kinds, list) or any(k not in ALL_KINDS for k in kinds):
            raise ConfigError(f"'extract' must be a list drawn from: {', '.join(ALL_KINDS)}")
        kw["extract"] = tuple(k for k in ALL_KINDS if k in kinds)
    for key in ("use_name_table", "skip_empty_records"):
        if key in data:
            if not isinstance(data[key], bool):
                raise ConfigError(f"'{key}' must be true or false")
            kw[key] = data[key]
    return DumpConfig(**kw)


@dataclasses.dataclass
class CodeSegment:
    entry: FileTableEntry
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclasses.dataclass
class Context:
    rom: bytearray
    order: str
    variant: RomVariant
    files: FileTable
    code: CodeSegment
    anchors: Dict[str, AnchorSet]
    names: Optional[FileNameTable] = None
    tables: Dict[str, int] = dataclasses.field(default_factory=dict)

    def set_table(self, kind: str, offset: int) -> None:
        if kind in self.tables:
            raise Z64Error(f"{kind} table already located at 0x{self.tables[kind]:X}")
        self.tables[kind] = offset

    def table(self, kind: str) -> int:
        if kind not in self.tables:
            raise Z64Error(f"{kind} table has not been located")
        return self.tables[kind]

    def table_vaddr(self, kind: str) -> int:
        return self.code.entry.virtual.start + self.table(kind)

    def file_name(self, index: int) -> str:
        if self.names is not None:
            name = self.names.name(index)
            if name:
                return _safe_name(name)
        e = self.files.entry(index)
        return str(e.virtual) if e is not None else f"file {index:04X}"


def _safe_name(name: str) -> str:
    return name.replace("/", "_").replace("\\", "_").strip() or "_"


def _step(label: str, result: str) -> None:
    print(f"{label + '...':<{STEP_WIDTH}}{result}")


def load_rom(path: pathlib.Path) -> bytearray:
    return bytearray(path.read_bytes())


def locate_code_segment(files: FileTable) -> Tuple[CodeSegment, Dict[str, AnchorSet]]:
    """Classify files in table order until the code file and three anchors of each kind are known."""
    kinds = {ZSCENE: SCENE, ZOBJ: OBJECT, ZACTOR: ACTOR}
    anchors = {kind: AnchorSet(kind) for kind in (SCENE, OBJECT, ACTOR)}
    code: Optional[CodeSegment] = None
    for index in range(len(files)):
        try:
            f = files.open(index)
        except DecodeError as e:
            print(f"  [WARN] file {index:04X} not decodable, treated as data: {e}")
            continue
        if f is None:
            continue
        with f:
            ftype = classify(f.data)
            if ftype == ZASM:
                if code is None:
                    code = CodeSegment(f.entry, bytes(f.data))
            elif ftype in kinds:
                anchors[kinds[ftype]].add(f.entry.virtual)
        if code is not None and all(a.complete for a in anchors.values()):
            break
    if code is None:
        raise TableNotFoundError("code file not found")
    return code, anchors


def bootstrap(rom: bytearray, use_name_table: bool = True) -> Context:
    order = normalize_rom_be(rom)
    _step("byteswapping", "ok" if order == "z64" else f"{order} -> big endian")

    variant = detect_variant(rom)
    _step("checking rom type", variant.title)

    files = FileTable.locate(rom)
    _step("locating file table", f"found [{files.start:08X}, {len(files)} files]")

    code, anchors = locate_code_segment(files)
    _step("locating code file", f"found [{code.entry.virtual}]")

    names = FileNameTable.locate(rom, len(files)) if use_name_table else None
    _step("locating file name table", f"found [{names.start:08X}]" if names is not None else "N/A")

    return Context(rom=rom, order=order, variant=variant, files=files, code=code, anchors=anchors, names=names)


def locate_tables(ctx: Context, kinds: Tuple[str, ...] = ALL_KINDS) -> None:
    code = ctx.code.data
    if SCENES in kinds:
        ctx.set_table(SCENE, locate_scene_table(code, ctx.anchors[SCENE], ctx.variant.scene_stride, ctx.files))
        _step("locating scene table", f"found [{ctx.table_vaddr(SCENE):08X}]")
    if OBJECTS in kinds:
        ctx.set_table(OBJECT, locate_object_table(code, ctx.anchors[OBJECT], ctx.files))
        _step("locating object table", f"found [{ctx.table_vaddr(OBJECT):08X}]")
    if ACTORS in kinds:
        ctx.set_table(ACTOR, locate_actor_table(code, ctx.anchors[ACTOR], ctx.files))
        _step("locating actor table", f"found [{ctx.table_vaddr(ACTOR):08X}]")


@dataclasses.dataclass
class ExtractStats:
    kind: str
    written: int = 0
    walked: int = 0
    skipped: int = 0
    maps: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"written": self.written, "walked": self.walked, "skipped": self.skipped, "maps": self.maps}


def iter_table(ctx: Context, start: int, stride: int, skip_empty: bool = False) -> Iterator[Tuple[int, int, int]]:
    """Yield (table index, record offset, file index) until an empty or unknown record."""
    code = ctx.code.data
    for off in range(start, len(code) - max(stride, 8) + 1, stride):
        w0, w1 = struct.unpack_from(">2I", code, off)
        if not w0:
            if skip_empty:
                continue
            return
        index = ctx.files.find(w0, w1)
        if index < 0:
            return
        yield (off - start) // stride, off, index


def iter_scene_rooms(files: FileTable, scene: Union[bytes, memoryview]) -> Iterator[int]:
    """File indices of the rooms listed by a scene's room-list commands."""
    size = len(scene)
    for i in range(0, size - 7, 8):
        w0, w1 = struct.unpack_from(">2I", scene, i)
        if (w0 >> 24) == CMD_ROOM_LIST:
            count = (w0 >> 16) & 0xFF
            base = w1 & 0x00FFFFFF
            for k in range(count):
                off = base + k * 8
                if off + 8 > size:
                    break
                index = files.find(be32(scene, off))
                if index >= 0:
                    yield index
        elif w0 == CMD_END:
            break


def _open(ctx: Context, index: int, stats: ExtractStats) -> Optional[MaterializedFile]:
    try:
        f = ctx.files.open(index)
    except DecodeError as e:
        print(f"  [WARN] {stats.kind}: file {index:04X} failed to decode: {e}")
        f = None
    if f is None:
        stats.skipped += 1
    return f


def _write(path: pathlib.Path, data: Union[bytes, memoryview]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def extract_scenes(ctx: Context, out_dir: pathlib.Path, skip_empty: bool = False) -> ExtractStats:
    stats = ExtractStats(SCENES)
    root = out_dir / "data" / "scenes"
    for idx, _, index in iter_table(ctx, ctx.table(SCENE), ctx.variant.scene_stride, skip_empty):
        stats.walked += 1
        f = _open(ctx, index, stats)
        if f is None:
            continue
        with f:
            scene_dir = root / str(idx)
            _write(scene_dir / f"{ctx.file_name(index)}.zscene", f.data)
            stats.written += 1
            for room in iter_scene_rooms(ctx.files, f.data):
                m = _open(ctx, room, stats)
                if m is None:
                    continue
                with m:
                    _write(scene_dir / "maps" / f"{ctx.file_name(room)}.zmap", m.data)
                    stats.maps += 1
    return stats


def actor_category(group: int) -> str:
    return ACTOR_GROUPS.get(group, f"unknown group {group:02X}")


def extract_actors(ctx: Context, out_dir: pathlib.Path, skip_empty: bool = False) -> ExtractStats:
    stats = ExtractStats(ACTORS)
    code = ctx.code.data
    root = out_dir / "data" / "actors"
    for idx, off, index in iter_table(ctx, ctx.table(ACTOR), ACTOR_STRIDE, skip_empty):
        stats.walked += 1
        # Init info pointer minus the overlay's load address.
        info = (be32(code, off + 0x14) - be32(code, off + 0x08)) & 0xFFFFFFFF
        f = _open(ctx, index, stats)
        if f is None:
            continue
        with f:
            data = f.data
            if info + 10 > len(data):
                print(f"  [WARN] actors: {idx:03X} init info 0x{info:X} outside file ({len(data)} bytes)")
                stats.skipped += 1
                continue
            category = actor_category(data[info + 2])
            obj = (data[info + 8] << 8) | data[info + 9]
            name = f"{idx:03X} [obj {obj:03X}] - {ctx.file_name(index)}.zactor"
            _write(root / category / name, data)
            stats.written += 1
    return stats


def object_path(data_dir: pathlib.Path, idx: int, name: str) -> pathlib.Path:
    prefix = OBJECT_OVERRIDES.get(idx)
    if prefix is not None:
        return data_dir / f"{prefix}_{idx:03X} - {name}.zobj"
    return data_dir / "objects" / f"{idx:03X} - {name}.zobj"


def extract_objects(ctx: Context, out_dir: pathlib.Path, skip_empty: bool = False) -> ExtractStats:
    stats = ExtractStats(OBJECTS)
    data_dir = out_dir / "data"
    for idx, _, index in iter_table(ctx, ctx.table(OBJECT), OBJECT_STRIDE, skip_empty):
        stats.walked += 1
        f = _open(ctx, index, stats)
        if f is None:
            continue
        with f:
            _write(object_path(data_dir, idx, ctx.file_name(index)), f.data)
            stats.written += 1
    return stats


def build_report(rom_path: pathlib.Path, ctx: Context, stats: List[ExtractStats]) -> Dict[str, Any]:
    return {
        "rom": str(rom_path),
        "rom_order": ctx.order,
        "name": rom_name(ctx.rom),
        "variant": ctx.variant.key,
        "file_table": {"offset": f"0x{ctx.files.start:08X}", "files": len(ctx.files)},
        "code": {
            "virtual": f"0x{ctx.code.entry.virtual.start:08X}-0x{ctx.code.entry.virtual.end:08X}",
            "size": ctx.code.size,
        },
        "file_name_table": f"0x{ctx.names.start:08X}" if ctx.names is not None else None,
        # Files of each kind classified before the code file and all anchors were known.
        "anchor_files_seen": {kind: a.seen for kind, a in ctx.anchors.items()},
        "tables": {kind: f"0x{ctx.table_vaddr(kind):08X}" for kind in ctx.tables},
        "extracted": {s.kind: s.as_dict() for s in stats},
    }


def dump(rom_path: pathlib.Path, cfg: DumpConfig) -> Dict[str, Any]:
    ctx = bootstrap(load_rom(rom_path), use_name_table=cfg.use_name_table)
    locate_tables(ctx, cfg.extract)

    stats: List[ExtractStats] = []
    if SCENES in cfg.extract:
        s = extract_scenes(ctx, cfg.output_dir, cfg.skip_empty_records)
        _step("extracting scenes and maps", f"ok    [{s.written}/{s.walked} scenes, {s.maps} maps]")
        stats.append(s)
    if ACTORS in cfg.extract:
        s = extract_actors(ctx, cfg.output_dir, cfg.skip_empty_records)
        _step("extracting actors", f"ok    [{s.written}/{s.walked} actors]")
        stats.append(s)
    if OBJECTS in cfg.extract:
        s = extract_objects(ctx, cfg.output_dir, cfg.skip_empty_records)
        _step("extracting objects", f"ok    [{s.written}/{s.walked} objects]")
        stats.append(s)

    report = build_report(rom_path, ctx, stats)
    if cfg.report is not None:
        cfg.report.parent.mkdir(parents=True, exist_ok=True)
        cfg.report.write_text(json.dumps(report, indent=2), encoding="utf-8")
    return report


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="z64dump", description="Dump scenes, maps, actors and objects from a Zelda64 ROM")
    p.add_argument("rom", help="Path to ROM (.z64/.v64/.n64)")
    p.add_argument("--outdir", help="Output folder for data/ (default: current directory)")
    p.add_argument("--config", help="Optional JSON/YAML config")
    p.add_argument("--json", help="Optional output JSON report path")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    print("z64dump\n" + "-" * 45)
    try:
        cfg = load_config(pathlib.Path(args.config)) if args.config else DumpConfig()
        if args.outdir:
            cfg = dataclasses.replace(cfg, output_dir=pathlib.Path(args.outdir))
        if args.json:
            cfg = dataclasses.replace(cfg, report=pathlib.Path(args.json))
        dump(pathlib.Path(args.rom), cfg)
    except (Z64Error, OSError) as e:
        print(f"ERROR: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
