"""Navigation contract shared by every format adapter.

Adapters are synchronous; the engine runs them off the event loop. Each one
lists shards, derives items and fields for a shard, and reads field bytes.
Previews and materialization are built here on top of ``read_field`` so every
format reports sizes and extensions the same way.
"""

from __future__ import annotations

import abc
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from ...errors import InvalidRequest, NotFound
from ..audio.pipeline import AudioPipeline
from ..chunk_cache import ChunkCache
from ..fetcher import ByteRangeFetcher
from ..models import FieldPreview, FieldRef, ItemRef, ItemsPage, MaterializedFile, ShardSummary, Source, SourceKind
from ..preview import build_preview, extension_for_encoding
from ..scan_cache import ScanCursorCache
from ..settings import EngineConfig
from ..temp_files import TempFileStore

logger = logging.getLogger(__name__)

ShardKey = Union[str, int]
FieldKey = Union[str, int]


@dataclass
class AdapterContext:
    config: EngineConfig
    fetcher: ByteRangeFetcher
    chunk_cache: ChunkCache
    scan_cache: ScanCursorCache
    temp_store: TempFileStore
    audio: AudioPipeline


def member_extension(name: Optional[str]) -> Optional[str]:
    """Extension of an archive member or sample field name (``a/b.JPG`` -> ``jpg``)."""
    if not name:
        return None
    base = name.rsplit("/", 1)[-1]
    if "." not in base:
        return base.lower() if base.isalnum() and len(base) <= 8 else None
    ext = base.rsplit(".", 1)[-1].lower()
    return ext if ext.isalnum() and len(ext) <= 8 else None


class DatasetAdapter(abc.ABC):
    kind: SourceKind

    def __init__(self, source: Source, ctx: AdapterContext) -> None:
        self.source = source
        self.ctx = ctx
        self.config = ctx.config
        self._shards: Optional[List[ShardSummary]] = None

    # -- shards ----------------------------------------------------------

    @abc.abstractmethod
    def _load_shards(self) -> List[ShardSummary]:
        ...

    def load_manifest(self) -> List[ShardSummary]:
        if self._shards is None:
            self._shards = self._load_shards()
            logger.info(
                "Loaded %s source %s: %d shard(s)",
                self.kind.value,
                self.source.location,
                len(self._shards),
            )
        return list(self._shards)

    def shard(self, key: ShardKey) -> ShardSummary:
        shards = self.load_manifest()
        found: Optional[ShardSummary] = None
        if isinstance(key, int):
            if 0 <= key < len(shards):
                found = shards[key]
        else:
            found = next((s for s in shards if s.filename == key), None)
        if found is None:
            raise NotFound("Unknown shard", context={"shard": key})
        if not found.exists:
            raise NotFound("Shard listed in manifest is missing", context={"shard": found.filename})
        return found

    # -- items -----------------------------------------------------------

    def list_items(self, shard: ShardKey) -> List[ItemRef]:
        raise InvalidRequest(
            "Shard has no global index; use paged listing",
            context={"kind": self.kind.value, "shard": shard},
        )

    def list_items_page(
        self,
        shard: ShardKey,
        offset: int,
        length: int,
        *,
        compute_total: bool = False,
    ) -> ItemsPage:
        items = self.list_items(shard)
        page = items[offset: offset + length]
        return ItemsPage(items=page, offset=offset, total=len(items), known_count=len(items))

    def item(self, shard: ShardKey, index: int) -> ItemRef:
        page = self.list_items_page(shard, index, 1)
        if not page.items or page.items[0].index != index:
            raise NotFound("Item index out of range", context={"shard": shard, "item": index})
        return page.items[0]

    def resolve(self, shard: ShardKey, item: int, field: FieldKey) -> Tuple[ShardSummary, ItemRef, FieldRef]:
        summary = self.shard(shard)
        if item < 0:
            raise InvalidRequest("Negative item index", context={"item": item})
        ref = self.item(summary.filename, item)
        if isinstance(field, int):
            if not 0 <= field < len(ref.fields):
                raise NotFound(
                    "Field index out of range",
                    context={"shard": summary.filename, "item": item, "field": field},
                )
            return summary, ref, ref.fields[field]
        for candidate in ref.fields:
            if candidate.name == field:
                return summary, ref, candidate
        raise NotFound("No such field", context={"shard": summary.filename, "item": item, "field": field})

    # -- bytes -----------------------------------------------------------

    @abc.abstractmethod
    def read_field(self, shard: ShardSummary, item: ItemRef, field: FieldRef, limit: Optional[int] = None) -> bytes:
        """Field bytes, or only the first ``limit`` bytes when given."""

    def declared_ext(self, field: FieldRef) -> Optional[str]:
        return extension_for_encoding(field.encoding) or member_extension(field.name)

    def _preview(self, data: bytes, field: FieldRef, limit: Optional[int] = None) -> FieldPreview:
        cfg = self.config
        return build_preview(
            data[: limit or cfg.preview_bytes],
            size=field.size,
            declared_ext=self.declared_ext(field),
            encoding=field.encoding,
            text_chars=cfg.preview_text_chars,
            hex_bytes=cfg.hex_bytes,
            binary_ratio=cfg.binary_ratio,
        )

    def peek_field(self, shard: ShardKey, item: int, field: FieldKey) -> FieldPreview:
        summary, ref, fref = self.resolve(shard, item, field)
        data = self.read_field(summary, ref, fref, limit=self.config.preview_bytes)
        return self._preview(data, fref)

    def artifact_name(self, summary: ShardSummary, item: ItemRef, field: FieldRef) -> str:
        tag = hashlib.sha256(self.source.identity.encode("utf-8")).hexdigest()[:8]
        base = os.path.basename(summary.filename.rstrip("/")) or "shard"
        return f"{tag}-{base}-i{item.index}-f{field.index}"

    def _read_whole(self, summary: ShardSummary, ref: ItemRef, fref: FieldRef) -> bytes:
        if fref.size > self.config.max_open_bytes:
            raise InvalidRequest(
                "Field too large to materialize",
                context={"size": fref.size, "limit": self.config.max_open_bytes},
            )
        return self.read_field(summary, ref, fref, limit=None)

    def materialize_field(self, shard: ShardKey, item: int, field: FieldKey, request_id: int) -> MaterializedFile:
        summary, ref, fref = self.resolve(shard, item, field)
        data = self._read_whole(summary, ref, fref)
        ext = self._preview(data, fref).guessed_ext or "bin"
        path = self.ctx.temp_store.write(self.artifact_name(summary, ref, fref), ext, data, request_id)
        return MaterializedFile(path=str(path), size=len(data), ext=ext)

    def prepare_audio(self, shard: ShardKey, item: int, field: FieldKey, request_id: int) -> MaterializedFile:
        summary, ref, fref = self.resolve(shard, item, field)
        data = self._read_whole(summary, ref, fref)
        ext = self._preview(data, fref).guessed_ext
        return self.ctx.audio.prepare(
            data, name=self.artifact_name(summary, ref, fref), request_id=request_id, ext=ext
        )

    def close(self) -> None:
        """Release adapter-held resources; caches are invalidated by the engine."""
