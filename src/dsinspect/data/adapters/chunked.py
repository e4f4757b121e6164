"""Chunked-index sources (LitData and MDS manifests) and bare chunk file lists.

Chunk layout shared by both manifests::

    u32 num_items
    u32 offsets[num_items + 1]      absolute, little-endian
    item 0 .. item n-1              contiguous

Each item starts with a header of little-endian u32 field sizes followed by
the field payloads in order. LitData writes one size per field; MDS writes
sizes only for variable-width columns and takes fixed widths from the index.
Items and fields are derived from the offset table and item headers without
touching payload bytes; a field read is one ranged read.
"""

from __future__ import annotations

import json
import logging
import os
import struct
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ...errors import MalformedFormat, NotFound, UnsupportedFeature
from ..chunk_cache import codec_from_suffix, decompress_bytes, normalize_codec
from ..models import FieldRef, ItemRef, ShardSummary, SourceKind
from .base import DatasetAdapter, ShardKey

logger = logging.getLogger(__name__)

INDEX_CANDIDATES = ("index.json", "index.json.zstd", "index.json.zst")
MAX_INFERRED_FIELDS = 64
_LAYOUT_CACHE_SIZE = 32


def read_index_file(path: str | Path) -> Dict[str, Any]:
    """Load an index manifest, decompressing ``.zst``/``.zstd`` variants."""
    path = Path(path)
    raw = path.read_bytes()
    codec = codec_from_suffix(path)
    if codec:
        raw = decompress_bytes(raw, codec)
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedFormat("Index is not valid JSON", context={"index": path.name}) from exc
    if not isinstance(data, dict):
        raise MalformedFormat("Index root must be an object", context={"index": path.name})
    return data


def is_mds_index(data: Dict[str, Any]) -> bool:
    shards = data.get("shards")
    return isinstance(shards, list) and bool(shards) and isinstance(shards[0], dict) and shards[0].get("format") == "mds"


def is_litdata_index(data: Dict[str, Any]) -> bool:
    return isinstance(data.get("chunks"), list) and isinstance(data.get("config"), dict)


@dataclass
class ChunkLayout:
    """Offset table plus per-item field sizes for one chunk file."""

    offsets: List[int]
    field_sizes: List[List[int]]
    header_sizes: List[int]

    @property
    def item_count(self) -> int:
        return len(self.offsets) - 1

    @property
    def item_bytes(self) -> int:
        return self.offsets[-1] - self.offsets[0]


@dataclass
class _ShardSpec:
    summary: ShardSummary
    codec: Optional[str] = None
    encodings: List[Optional[str]] = field(default_factory=list)
    names: List[Optional[str]] = field(default_factory=list)
    # None entries are variable width (MDS); empty list means "one size per field"
    fixed_sizes: List[Optional[int]] = field(default_factory=list)
    nfields: Optional[int] = None


def _u32_list(data: bytes, count: int) -> List[int]:
    return list(struct.unpack(f"<{count}I", data[: 4 * count]))


def read_offset_table(fh, name: str, file_size: int) -> List[int]:
    head = fh.read(4)
    if len(head) != 4:
        raise MalformedFormat("Chunk shorter than its item count", context={"shard": name, "offset": 0})
    (count,) = struct.unpack("<I", head)
    table_bytes = 4 * (count + 1)
    if 4 + table_bytes > file_size:
        raise MalformedFormat(
            "Offset table runs past end of chunk",
            context={"shard": name, "offset": 4, "items": count, "file_size": file_size},
        )
    offsets = _u32_list(fh.read(table_bytes), count + 1)
    if offsets[0] != 4 + table_bytes:
        raise MalformedFormat(
            "First item does not follow the offset table",
            context={"shard": name, "offset": 4, "expected": 4 + table_bytes, "found": offsets[0]},
        )
    for i in range(count):
        if offsets[i + 1] < offsets[i]:
            raise MalformedFormat(
                "Offset table is not monotonic",
                context={"shard": name, "item": i, "offset": 4 + 4 * (i + 1)},
            )
    if offsets[-1] > file_size:
        raise MalformedFormat(
            "Offset table points past end of chunk",
            context={"shard": name, "offset": offsets[-1], "file_size": file_size},
        )
    return offsets


def infer_field_count(item_bytes: Sequence[bytes]) -> int:
    """Smallest n where n u32 sizes plus their payloads fill every sample item."""
    first = item_bytes[0]
    for n in range(1, MAX_INFERRED_FIELDS + 1):
        if 4 * n > len(first):
            break
        if _fits(first, n) and all(_fits(other, n) for other in item_bytes[1:]):
            return n
    raise MalformedFormat("Cannot infer field count from item header", context={"item_bytes": len(first)})


def _fits(item: bytes, n: int) -> bool:
    if 4 * n > len(item):
        return False
    sizes = _u32_list(item, n)
    return 4 * n + sum(sizes) == len(item)


def read_chunk_layout(
    path: str,
    name: str,
    *,
    nfields: Optional[int] = None,
    fixed_sizes: Sequence[Optional[int]] = (),
) -> ChunkLayout:
    """Parse the offset table and every item header of a local chunk."""
    file_size = os.path.getsize(path)
    with open(path, "rb") as fh:
        offsets = read_offset_table(fh, name, file_size)
        count = len(offsets) - 1

        if fixed_sizes:
            variable = sum(1 for s in fixed_sizes if s is None)
        else:
            if nfields is None and count:
                samples = []
                for i in range(min(count, 2)):
                    fh.seek(offsets[i])
                    samples.append(fh.read(offsets[i + 1] - offsets[i]))
                nfields = infer_field_count(samples)
                logger.debug("Inferred %d field(s) per item for %s", nfields, name)
            variable = nfields or 0

        header_len = 4 * variable
        field_sizes: List[List[int]] = []
        header_sizes: List[int] = []
        for i in range(count):
            begin, end = offsets[i], offsets[i + 1]
            fh.seek(begin)
            header = fh.read(header_len)
            if len(header) != header_len or header_len > end - begin:
                raise MalformedFormat(
                    "Truncated item header", context={"shard": name, "item": i, "offset": begin}
                )
            var_sizes = _u32_list(header, variable)
            if fixed_sizes:
                it = iter(var_sizes)
                sizes = [s if s is not None else next(it) for s in fixed_sizes]
            else:
                sizes = var_sizes
            if header_len + sum(sizes) != end - begin:
                raise MalformedFormat(
                    "Item field sizes disagree with offset table",
                    context={
                        "shard": name,
                        "item": i,
                        "offset": begin,
                        "declared": end - begin,
                        "computed": header_len + sum(sizes),
                    },
                )
            field_sizes.append(sizes)
            header_sizes.append(header_len)
    return ChunkLayout(offsets=offsets, field_sizes=field_sizes, header_sizes=header_sizes)


class _ChunkedAdapterBase(DatasetAdapter):
    def __init__(self, source, ctx) -> None:
        super().__init__(source, ctx)
        self._specs: Dict[str, _ShardSpec] = {}
        self._layouts: "OrderedDict[str, ChunkLayout]" = OrderedDict()
        self._layouts_lock = threading.Lock()

    def _spec(self, key: ShardKey) -> _ShardSpec:
        summary = self.shard(key)
        return self._specs[summary.filename]

    def _readable(self, spec: _ShardSpec) -> str:
        # resolved per read: the chunk cache may evict a decompressed copy at any time
        path = spec.summary.path or ""
        if spec.codec:
            return str(self.ctx.chunk_cache.get_decompressed(path, spec.codec))
        return path

    def layout(self, key: ShardKey) -> ChunkLayout:
        spec = self._spec(key)
        name = spec.summary.filename
        with self._layouts_lock:
            cached = self._layouts.get(name)
            if cached is not None:
                self._layouts.move_to_end(name)
                return cached
            layout = read_chunk_layout(
                self._readable(spec), name, nfields=spec.nfields, fixed_sizes=spec.fixed_sizes
            )
            declared = spec.summary.item_count
            if declared is not None and declared != layout.item_count:
                logger.warning(
                    "Shard %s declares %d item(s) but offset table holds %d",
                    name,
                    declared,
                    layout.item_count,
                )
            self._layouts[name] = layout
            while len(self._layouts) > _LAYOUT_CACHE_SIZE:
                self._layouts.popitem(last=False)
            return layout

    def list_items(self, shard: ShardKey) -> List[ItemRef]:
        layout = self.layout(shard)
        return [self.item(shard, i) for i in range(layout.item_count)]

    def item(self, shard: ShardKey, index: int) -> ItemRef:
        spec = self._spec(shard)
        layout = self.layout(shard)
        if not 0 <= index < layout.item_count:
            raise NotFound("Item index out of range", context={"shard": spec.summary.filename, "item": index})
        sizes = layout.field_sizes[index]
        fields = [
            FieldRef(
                index=j,
                size=size,
                name=spec.names[j] if j < len(spec.names) else None,
                encoding=spec.encodings[j] if j < len(spec.encodings) else None,
            )
            for j, size in enumerate(sizes)
        ]
        return ItemRef(
            index=index,
            total_bytes=layout.offsets[index + 1] - layout.offsets[index],
            fields=fields,
        )

    def field_range(self, shard: ShardKey, item: int, field_index: int) -> tuple:
        layout = self.layout(shard)
        sizes = layout.field_sizes[item]
        start = layout.offsets[item] + layout.header_sizes[item] + sum(sizes[:field_index])
        return start, sizes[field_index]

    def read_field(self, shard: ShardSummary, item: ItemRef, field: FieldRef, limit: Optional[int] = None) -> bytes:
        spec = self._specs[shard.filename]
        start, size = self.field_range(shard.filename, item.index, field.index)
        length = size if limit is None else min(size, limit)
        return self.ctx.fetcher.read_exact(self._readable(spec), start, length, what="field payload")


class ChunkedIndexAdapter(_ChunkedAdapterBase):
    """LitData ``index.json`` (``chunks`` + ``config``) or MDS ``shards`` manifests."""

    kind = SourceKind.CHUNKED_INDEX

    def __init__(self, source, ctx) -> None:
        super().__init__(source, ctx)
        self.index_path = Path(source.paths[0] if source.paths else source.location)
        self.index: Dict[str, Any] = {}
        self.flavor = "litdata"

    def _load_shards(self) -> List[ShardSummary]:
        self.index = read_index_file(self.index_path)
        root = self.index_path.parent
        if is_mds_index(self.index):
            self.flavor = "mds"
            specs = self._mds_specs(root)
        elif is_litdata_index(self.index):
            specs = self._litdata_specs(root)
        else:
            raise MalformedFormat(
                "Index has neither 'chunks'/'config' nor MDS 'shards'",
                context={"index": self.index_path.name},
            )
        self._specs = {spec.summary.filename: spec for spec in specs}
        missing = [s.summary.filename for s in specs if not s.summary.exists]
        if missing:
            logger.warning("%d shard(s) listed in %s are missing on disk", len(missing), self.index_path.name)
        return [spec.summary for spec in specs]

    def _litdata_specs(self, root: Path) -> List[_ShardSpec]:
        config = self.index.get("config") or {}
        data_format = config.get("data_format")
        encodings = [str(x) for x in data_format] if isinstance(data_format, list) else []
        codec = normalize_codec(config.get("compression"))
        specs = []
        for entry in self.index.get("chunks") or []:
            if not isinstance(entry, dict) or not entry.get("filename"):
                raise MalformedFormat("Chunk entry without filename", context={"index": self.index_path.name})
            name = str(entry["filename"])
            path = root / name
            exists = path.is_file()
            shard_codec = codec or codec_from_suffix(name)
            summary = ShardSummary(
                filename=name,
                size=path.stat().st_size if exists else None,
                item_count=_opt_int(entry.get("chunk_size")),
                exists=exists,
                item_bytes=_opt_int(entry.get("chunk_bytes")),
                path=str(path),
                compression=shard_codec,
            )
            specs.append(
                _ShardSpec(
                    summary=summary,
                    codec=shard_codec,
                    encodings=list(encodings),
                    nfields=len(encodings) or None,
                )
            )
        return specs

    def _mds_specs(self, root: Path) -> List[_ShardSpec]:
        if self.index.get("version", 2) != 2:
            raise UnsupportedFeature("Unsupported MDS index version", context={"version": self.index.get("version")})
        specs = []
        for entry in self.index["shards"]:
            if entry.get("format") != "mds":
                raise UnsupportedFeature("Unsupported shard format", context={"format": entry.get("format")})
            raw = entry.get("raw_data") or {}
            zipped = entry.get("zip_data") or {}
            raw_path = root / raw["basename"] if raw.get("basename") else None
            zip_path = root / zipped["basename"] if zipped.get("basename") else None
            codec = None
            if raw_path is not None and raw_path.is_file():
                path, declared_bytes = raw_path, raw.get("bytes")
            elif zip_path is not None and zip_path.is_file():
                path, declared_bytes = zip_path, zipped.get("bytes")
                codec = normalize_codec(entry.get("compression")) or codec_from_suffix(zip_path)
            else:
                path = raw_path or zip_path
                declared_bytes = raw.get("bytes") or zipped.get("bytes")
            if path is None:
                raise MalformedFormat("MDS shard without raw_data or zip_data", context={"index": self.index_path.name})
            exists = path.is_file()
            names = [str(n) for n in entry.get("column_names") or []]
            encodings = [str(e) for e in entry.get("column_encodings") or []]
            sizes = list(entry.get("column_sizes") or [])
            if not (len(names) == len(encodings) == len(sizes)):
                raise MalformedFormat(
                    "MDS column lists differ in length",
                    context={"shard": path.name, "names": len(names), "encodings": len(encodings), "sizes": len(sizes)},
                )
            summary = ShardSummary(
                filename=path.name,
                size=path.stat().st_size if exists else _opt_int(declared_bytes),
                item_count=_opt_int(entry.get("samples")),
                exists=exists,
                item_bytes=None,
                path=str(path),
                compression=codec,
            )
            specs.append(
                _ShardSpec(
                    summary=summary,
                    codec=codec,
                    encodings=encodings,
                    names=names,
                    fixed_sizes=[_opt_int(s) for s in sizes],
                    nfields=len(names),
                )
            )
        return specs


class ChunkFileListAdapter(_ChunkedAdapterBase):
    """One or more chunk files picked without their manifest."""

    kind = SourceKind.CHUNKED_FILE_LIST

    def _load_shards(self) -> List[ShardSummary]:
        paths = sorted(self.source.paths or [self.source.location], key=lambda p: os.path.basename(p))
        specs = []
        for raw in paths:
            path = Path(raw)
            exists = path.is_file()
            codec = codec_from_suffix(path)
            summary = ShardSummary(
                filename=path.name,
                size=path.stat().st_size if exists else None,
                item_count=None,
                exists=exists,
                path=str(path),
                compression=codec,
            )
            specs.append(_ShardSpec(summary=summary, codec=codec))
        self._specs = {spec.summary.filename: spec for spec in specs}
        return [spec.summary for spec in specs]

    def layout(self, key: ShardKey) -> ChunkLayout:
        layout = super().layout(key)
        summary = self._specs[self.shard(key).filename].summary
        # counts are derived, not declared, for bare chunk files
        summary.item_count = layout.item_count
        summary.item_bytes = layout.item_bytes
        return layout


def _opt_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
