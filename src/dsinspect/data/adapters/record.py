"""Remote records: a Zenodo-style record with files, or a single file URL.

Each file is a shard. ZIP files and uncompressed TAR files list their entries
as items (one field per item); any other file is a single item with a single
field, peeked with one ranged read of its first bytes.
"""

from __future__ import annotations

import logging
import posixpath
import re
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import quote, unquote, urlsplit

from ...errors import InvalidRequest, MalformedFormat, NotFound, UnsupportedFeature
from ..models import (
    ArchiveEntry,
    FieldPreview,
    FieldRef,
    ItemRef,
    ItemsPage,
    RecordFile,
    RecordSummary,
    ShardSummary,
    SourceKind,
)
from .base import DatasetAdapter, FieldKey, ShardKey
from .remote_archive import RemoteTar, RemoteZip

logger = logging.getLogger(__name__)

_RECORD_PATH_RE = re.compile(r"^/(?:api/)?records?/(\d+)/?$")
_CONTENT_PATH_RE = re.compile(r"^/api/records/(\d+)/files/(.+)/content$")
_RECENT_ITEMS = 4096


def is_record_host(host: str) -> bool:
    host = host.lower()
    return host == "zenodo.org" or host.endswith(".zenodo.org")


def parse_record_url(url: str) -> Optional[Tuple[str, str]]:
    """``(base_url, record_id)`` for record page/API URLs, else None."""
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not is_record_host(parts.hostname or ""):
        return None
    match = _RECORD_PATH_RE.match(parts.path)
    if not match:
        return None
    return f"{parts.scheme}://{parts.netloc}", match.group(1)


def archive_kind(name: str) -> Optional[str]:
    lower = name.lower()
    if lower.endswith(".zip"):
        return "zip"
    if lower.endswith(".tar"):
        return "tar"
    if lower.endswith((".tar.gz", ".tgz", ".tar.zst", ".tar.zstd", ".tar.bz2", ".tar.xz")):
        return "compressed-tar"
    return None


def content_url(base: str, record_id: str, name: str, link: Optional[str]) -> str:
    """Only ``/api/records/<id>/files/<name>/content`` on the record host is fetched."""
    if link:
        parts = urlsplit(link)
        match = _CONTENT_PATH_RE.match(parts.path)
        if (
            match
            and is_record_host(parts.hostname or "")
            and f"{parts.scheme}://{parts.netloc}" == base
            and match.group(1) == record_id
        ):
            return link
        logger.debug("Ignoring off-pattern file link %s", link)
    return f"{base}/api/records/{record_id}/files/{quote(name, safe='')}/content"


def parse_record(payload: Dict[str, Any], base: str, record_id: str) -> RecordSummary:
    if not isinstance(payload, dict):
        raise MalformedFormat("Record response is not an object", context={"record": record_id})
    meta = payload.get("metadata") or {}
    raw_files: Union[List[Any], Dict[str, Any], None] = payload.get("files")
    if isinstance(raw_files, dict):
        entries = raw_files.get("entries") or []
        raw_files = list(entries.values()) if isinstance(entries, dict) else list(entries)
    files = []
    for item in raw_files or []:
        if not isinstance(item, dict):
            continue
        name = item.get("key") or item.get("filename")
        if not name:
            continue
        links = item.get("links") or {}
        files.append(
            RecordFile(
                name=str(name),
                size=int(item.get("size") or item.get("filesize") or 0),
                url=content_url(base, record_id, str(name), links.get("content") or links.get("self")),
                checksum=item.get("checksum"),
            )
        )
    creators = [str(c.get("name")) for c in meta.get("creators") or [] if isinstance(c, dict) and c.get("name")]
    access = meta.get("access_right")
    if access is None and isinstance(payload.get("access"), dict):
        access = payload["access"].get("record")
    return RecordSummary(
        record_id=str(record_id),
        title=meta.get("title") or payload.get("title"),
        doi=payload.get("doi") or meta.get("doi"),
        publication_date=meta.get("publication_date"),
        version=meta.get("version"),
        access_right=access,
        creators=creators,
        files=files,
    )


class RemoteRecordAdapter(DatasetAdapter):
    kind = SourceKind.REMOTE_RECORD

    def __init__(self, source, ctx) -> None:
        super().__init__(source, ctx)
        self.summary: Optional[RecordSummary] = None
        self._zips: Dict[str, RemoteZip] = {}
        self._recent: "OrderedDict[Tuple[str, int], ItemRef]" = OrderedDict()
        self._recent_lock = threading.Lock()

    def _fetch_summary(self) -> RecordSummary:
        parsed = parse_record_url(self.source.location)
        if parsed is not None:
            base, record_id = parsed
            payload = self.ctx.fetcher.get_json(f"{base}/api/records/{record_id}")
            return parse_record(payload, base, record_id)
        url = self.source.location
        size = self.ctx.fetcher.size(url)
        name = unquote(posixpath.basename(urlsplit(url).path)) or "download"
        return RecordSummary(record_id=url, title=name, files=[RecordFile(name=name, size=size, url=url)])

    def record_summary(self) -> RecordSummary:
        if self.summary is None:
            self.summary = self._fetch_summary()
        return self.summary

    def _load_shards(self) -> List[ShardSummary]:
        return [
            ShardSummary(filename=f.name, size=f.size, item_count=None, exists=True, path=f.url)
            for f in self.record_summary().files
        ]

    # -- archives ----------------------------------------------------------

    def _zip(self, summary: ShardSummary) -> RemoteZip:
        zf = self._zips.get(summary.filename)
        if zf is None:
            zf = self._zips[summary.filename] = RemoteZip(
                self.ctx.fetcher, summary.path or "", self.config.zip_tail_bytes
            )
        return zf

    def _tar(self, summary: ShardSummary) -> RemoteTar:
        return RemoteTar(
            self.ctx.fetcher,
            summary.path or "",
            self.config.tar_scan_window,
            self.config.tar_max_entries,
        )

    def _shard_id(self, summary: ShardSummary) -> str:
        return f"{summary.path}:{summary.size}"

    def list_entries(self, shard: ShardKey, offset: int = 0, length: Optional[int] = None) -> Tuple[List[ArchiveEntry], Optional[int]]:
        """Archive entries of a shard and the total when known."""
        summary = self.shard(shard)
        kind = archive_kind(summary.filename)
        if kind == "zip":
            entries = self._zip(summary).entries()
            end = None if length is None else offset + length
            return entries[offset:end], len(entries)
        if kind == "tar":
            page = self._tar_page(summary, offset, length or self.config.tar_page_size)
            return page[0], page[2]
        if kind == "compressed-tar":
            raise UnsupportedFeature(
                "Compressed TAR archives cannot be read by range", context={"shard": summary.filename}
            )
        raise InvalidRequest("Shard is not an archive", context={"shard": summary.filename})

    def _tar_page(self, summary: ShardSummary, offset: int, length: int):
        length = max(1, min(length, self.config.tar_max_page_size))
        shard_id = self._shard_id(summary)
        scans = self.ctx.scan_cache
        source_id = self.source.identity
        known_total = scans.get_total(source_id, shard_id)
        if known_total is not None and offset >= known_total:
            return [], None, known_total, known_total
        start = scans.nearest(source_id, shard_id, offset)
        entries, cursor, total, known = self._tar(summary).scan(
            shard_id,
            start=start,
            offset=offset,
            length=length,
            on_cursor=lambda c: scans.put(source_id, c),
        )
        if total is not None:
            scans.set_total(source_id, shard_id, total)
        else:
            total = known_total
            if total is not None:
                known = total
        return entries, cursor, total, known

    @staticmethod
    def _entry_item(index: int, entry: ArchiveEntry) -> ItemRef:
        fref = FieldRef(index=0, size=entry.uncompressed_size, name=entry.name, offset=entry.data_offset)
        return ItemRef(index=index, total_bytes=entry.uncompressed_size, fields=[fref], key=entry.name)

    # -- navigation ------------------------------------------------------

    def list_items_page(
        self,
        shard: ShardKey,
        offset: int,
        length: int,
        *,
        compute_total: bool = False,
    ) -> ItemsPage:
        summary = self.shard(shard)
        offset = max(0, offset)
        kind = archive_kind(summary.filename)
        if kind == "zip":
            files = [e for e in self._zip(summary).entries() if not e.is_dir]
            length = self.config.clamp_page(length)
            items = [self._entry_item(i, files[i]) for i in range(offset, min(len(files), offset + length))]
            summary.item_count = len(files)
            return ItemsPage(items=items, offset=offset, total=len(files), known_count=len(files))
        if kind == "tar":
            entries, cursor, total, known = self._tar_page(summary, offset, length or self.config.tar_page_size)
            items = [self._entry_item(offset + i, e) for i, e in enumerate(entries)]
            shard_id = self._shard_id(summary)
            for item in items:
                self._remember(shard_id, item)
            if total is not None:
                summary.item_count = total
            return ItemsPage(items=items, offset=offset, cursor=cursor, total=total, known_count=known)
        if kind == "compressed-tar":
            raise UnsupportedFeature(
                "Compressed TAR archives cannot be read by range", context={"shard": summary.filename}
            )
        size = summary.size or 0
        summary.item_count = 1
        whole = ItemRef(
            index=0, total_bytes=size, fields=[FieldRef(index=0, size=size, name=summary.filename)], key=summary.filename
        )
        items = [whole] if offset == 0 and length > 0 else []
        return ItemsPage(items=items, offset=offset, total=1, known_count=1)

    def _remember(self, shard_id: str, item: ItemRef) -> None:
        key = (shard_id, item.index)
        with self._recent_lock:
            self._recent[key] = item
            self._recent.move_to_end(key)
            while len(self._recent) > _RECENT_ITEMS:
                self._recent.popitem(last=False)

    def item(self, shard: ShardKey, index: int) -> ItemRef:
        summary = self.shard(shard)
        with self._recent_lock:
            cached = self._recent.get((self._shard_id(summary), index))
        if cached is not None:
            return cached
        return super().item(shard, index)

    def peek_field(self, shard: ShardKey, item: int, field: FieldKey) -> FieldPreview:
        summary, ref, fref = self.resolve(shard, item, field)
        if archive_kind(summary.filename) is None:
            limit = self.config.record_peek_bytes
        else:
            limit = self.config.preview_bytes
        data = self.read_field(summary, ref, fref, limit=limit)
        return self._preview(data, fref, limit=limit)

    def read_field(self, shard: ShardSummary, item: ItemRef, field: FieldRef, limit: Optional[int] = None) -> bytes:
        kind = archive_kind(shard.filename)
        if kind == "zip":
            files = [e for e in self._zip(shard).entries() if not e.is_dir]
            if not 0 <= item.index < len(files):
                raise NotFound("Entry index out of range", context={"shard": shard.filename, "item": item.index})
            return self._zip(shard).read_entry(files[item.index], limit)
        if kind == "tar":
            entry = ArchiveEntry(
                name=field.name or "",
                compressed_size=field.size,
                uncompressed_size=field.size,
                method="stored",
                data_offset=field.offset,
            )
            return self._tar(shard).read_entry(entry, limit)
        size = field.size
        if limit is None and size > self.config.max_inline_download:
            raise InvalidRequest(
                "File too large to download inline",
                context={"shard": shard.filename, "size": size, "limit": self.config.max_inline_download},
            )
        length = size if limit is None else min(size, limit)
        return self.ctx.fetcher.read_exact(shard.path or "", 0, length, what="record file")
