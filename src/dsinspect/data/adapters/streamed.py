"""WebDataset-style tar shards on local disk.

Members are grouped into samples by key: the member path up to the first
``.`` of its final component. The remainder is the field name. A sample closes
as soon as a member with a different key appears, so samples are only known by
scanning forward; :class:`ScanCursor` values cached per page boundary make the
next (and any earlier) page resumable without restarting the scan.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ...errors import MalformedFormat, NotFound
from ..chunk_cache import open_decompressed
from ..fetcher import local_identity
from ..models import FieldRef, ItemRef, ItemsPage, ScanCursor, ShardSummary, SourceKind
from ..tar_headers import ForwardReader, iter_members
from .base import DatasetAdapter, ShardKey

logger = logging.getLogger(__name__)

TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.zst", ".tar.zstd")
_RECENT_ITEMS = 4096

PendingField = Tuple[str, int, int, str]


def is_tar_shard(name: str) -> bool:
    return name.lower().endswith(TAR_SUFFIXES)


def tar_codec(name: str) -> Optional[str]:
    lower = name.lower()
    if lower.endswith((".tar.gz", ".tgz")):
        return "gzip"
    if lower.endswith((".tar.zst", ".tar.zstd")):
        return "zstd"
    return None


def normalize_member_path(member_path: str) -> str:
    """Drop leading ``./`` and ``/`` and use forward slashes (``./a\\b.jpg`` -> ``a/b.jpg``)."""
    path = member_path.strip()
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/").replace("\\", "/")


def split_sample_key(member_path: str) -> Tuple[str, str]:
    """Split ``dir/abc.seg.png`` into key ``dir/abc`` and field ``seg.png``.

    Names without a usable stem or suffix become their own sample with a
    single ``bin`` field. Field names are lowercased.
    """
    path = normalize_member_path(member_path)
    dirname, slash, base = path.rpartition("/")
    stem, dot, suffix = base.partition(".")
    if not dot or not stem or not suffix:
        return path, "bin"
    key = f"{dirname}{slash}{stem}"
    return key, suffix.lower()


def build_sample(index: int, key: str, pending: Sequence[PendingField]) -> ItemRef:
    ordered = sorted(pending, key=lambda f: (f[0], f[3]))
    fields = [
        FieldRef(index=j, size=size, name=name, offset=offset)
        for j, (name, size, offset, _member) in enumerate(ordered)
    ]
    return ItemRef(index=index, total_bytes=sum(f.size for f in fields), fields=fields, key=key)


class _FileReader:
    def __init__(self, path: str) -> None:
        self._fh = open(path, "rb")

    def read_at(self, offset: int, length: int) -> bytes:
        self._fh.seek(offset)
        return self._fh.read(length)

    def close(self) -> None:
        self._fh.close()


def group_samples(
    read_at,
    shard_id: str,
    *,
    start: Optional[ScanCursor],
    offset: int,
    length: int,
    compute_total: bool = False,
    on_cursor=None,
    checkpoint_every: int = 0,
):
    """Scan members into samples, collecting ``[offset, offset + length)``.

    Returns ``(items, cursor, total, known_count)``. ``cursor`` resumes at
    sample ``offset + length``; ``total`` is set only when the scan hit the
    end of the archive.
    """
    end = offset + length
    if start is None:
        index, position, pending_key, pending = 0, 0, None, []
    else:
        index, position = start.index, start.position
        pending_key, pending = start.pending_key, list(start.pending_fields)

    items: List[ItemRef] = []
    cursor: Optional[ScanCursor] = None
    total: Optional[int] = None
    finished = True
    for member in iter_members(read_at, position):
        if member.is_dir:
            continue
        key, name = split_sample_key(member.name)
        entry = (name, member.size, member.data_offset, member.name)
        if pending_key is not None and key != pending_key:
            if offset <= index < end:
                items.append(build_sample(index, pending_key, pending))
            index += 1
            pending_key, pending = key, [entry]
            snapshot = ScanCursor(
                shard=shard_id,
                position=member.next_offset,
                index=index,
                pending_key=pending_key,
                pending_fields=tuple(pending),
            )
            if on_cursor is not None and (
                index in (offset, end) or (checkpoint_every and index % checkpoint_every == 0)
            ):
                on_cursor(snapshot)
            if index == end:
                cursor = snapshot
                if not compute_total:
                    finished = False
                    break
        else:
            pending_key = key
            pending.append(entry)

    if finished:
        if pending_key is not None:
            if offset <= index < end:
                items.append(build_sample(index, pending_key, pending))
            index += 1
            pending_key = None
        total = index
    known = total if total is not None else index + (1 if pending_key is not None else 0)
    return items, cursor, total, known


class StreamedArchiveAdapter(DatasetAdapter):
    kind = SourceKind.STREAMED_ARCHIVE_DIR

    def __init__(self, source, ctx) -> None:
        super().__init__(source, ctx)
        self._recent: "OrderedDict[Tuple[str, int], ItemRef]" = OrderedDict()
        self._recent_lock = threading.Lock()

    def _load_shards(self) -> List[ShardSummary]:
        root = Path(self.source.location)
        base = root if root.is_dir() else root.parent
        paths = self.source.paths or [str(root)]
        shards = []
        for raw in paths:
            path = Path(raw)
            exists = path.is_file()
            try:
                name = path.relative_to(base).as_posix()
            except ValueError:
                name = path.name
            shards.append(
                ShardSummary(
                    filename=name,
                    size=path.stat().st_size if exists else None,
                    item_count=None,
                    exists=exists,
                    path=str(path),
                    compression=tar_codec(path.name),
                )
            )
        shards.sort(key=lambda s: s.filename)
        return shards

    def shard_identity(self, summary: ShardSummary) -> str:
        try:
            resolved, size, mtime_ns = local_identity(summary.path or "")
        except FileNotFoundError as exc:
            raise NotFound("Shard vanished", context={"shard": summary.filename}) from exc
        return f"{resolved}:{size}:{mtime_ns}"

    def _open_reader(self, summary: ShardSummary):
        if summary.compression:
            path, codec = summary.path, summary.compression
            return ForwardReader(lambda: open_decompressed(path, codec))
        return _FileReader(summary.path or "")

    def list_items_page(
        self,
        shard: ShardKey,
        offset: int,
        length: int,
        *,
        compute_total: bool = False,
    ) -> ItemsPage:
        summary = self.shard(shard)
        length = self.config.clamp_page(length)
        offset = max(0, offset)
        shard_id = self.shard_identity(summary)
        scans = self.ctx.scan_cache
        source_id = self.source.identity

        known_total = scans.get_total(source_id, shard_id)
        if known_total is not None and offset >= known_total:
            return ItemsPage(items=[], offset=offset, total=known_total, known_count=known_total)

        start = scans.nearest(source_id, shard_id, offset)
        logger.debug(
            "Scanning %s for items [%d, %d) from %s",
            summary.filename,
            offset,
            offset + length,
            f"cursor@{start.index}" if start else "start",
        )
        reader = self._open_reader(summary)
        try:
            items, cursor, total, known = group_samples(
                reader.read_at,
                shard_id,
                start=start,
                offset=offset,
                length=length,
                compute_total=compute_total,
                on_cursor=lambda c: scans.put(source_id, c),
                checkpoint_every=self.config.default_page_size,
            )
        finally:
            reader.close()

        if total is not None:
            scans.set_total(source_id, shard_id, total)
            summary.item_count = total
        else:
            total = known_total
            if total is not None:
                known = total
        for item in items:
            self._remember(shard_id, item)
        return ItemsPage(items=items, offset=offset, cursor=cursor, total=total, known_count=known)

    def _remember(self, shard_id: str, item: ItemRef) -> None:
        key = (shard_id, item.index)
        with self._recent_lock:
            self._recent[key] = item
            self._recent.move_to_end(key)
            while len(self._recent) > _RECENT_ITEMS:
                self._recent.popitem(last=False)

    def item(self, shard: ShardKey, index: int) -> ItemRef:
        summary = self.shard(shard)
        key = (self.shard_identity(summary), index)
        with self._recent_lock:
            cached = self._recent.get(key)
        if cached is not None:
            return cached
        return super().item(shard, index)

    def read_field(self, shard: ShardSummary, item: ItemRef, field: FieldRef, limit: Optional[int] = None) -> bytes:
        length = field.size if limit is None else min(field.size, limit)
        offset = field.offset or 0
        if not shard.compression:
            return self.ctx.fetcher.read_exact(shard.path or "", offset, length, what="tar member")
        reader = self._open_reader(shard)
        try:
            data = reader.read_at(offset, length)
        finally:
            reader.close()
        if len(data) != length:
            raise MalformedFormat(
                "Truncated tar member", context={"shard": shard.filename, "offset": offset}
            )
        return data


def find_tar_shards(directory: str | os.PathLike) -> List[str]:
    found = []
    for dirpath, _dirnames, filenames in os.walk(directory):
        for name in filenames:
            if is_tar_shard(name):
                found.append(os.path.join(dirpath, name))
    return sorted(found)
