"""Engine facade: the request/response operations a UI or CLI calls.

One source is active at a time. ``load`` assigns it a fresh request id and
invalidates everything tied to the previous one; every result comes back
wrapped in :class:`Response` carrying the request id it was issued against,
so callers can drop late answers for a source they already left.

Adapters are synchronous and run in worker threads; the catalog adapter is
natively async. Identical concurrent requests share one computation.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..errors import InvalidRequest
from .adapters.base import AdapterContext, FieldKey, ShardKey
from .audio.pipeline import AudioPipeline
from .chunk_cache import ChunkCache, get_cache
from .fetcher import ByteRangeFetcher
from .models import (
    CatalogPage,
    FieldPreview,
    ItemRef,
    ItemsPage,
    MaterializedFile,
    RecordSummary,
    Response,
    ShardSummary,
    Source,
    SourceKind,
)
from .router import create_adapter, detect_source
from .scan_cache import ScanCursorCache
from .settings import EngineConfig
from .single_flight import SingleFlight
from .temp_files import TempFileStore

logger = logging.getLogger(__name__)


class Engine:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        fetcher: Optional[ByteRangeFetcher] = None,
        chunk_cache: Optional[ChunkCache] = None,
        temp_store: Optional[TempFileStore] = None,
        scan_cache: Optional[ScanCursorCache] = None,
        catalog_transport=None,
    ) -> None:
        self.config = config or EngineConfig()
        self.fetcher = fetcher or ByteRangeFetcher(
            timeout=self.config.http_timeout, user_agent=self.config.user_agent
        )
        self.chunk_cache = chunk_cache or get_cache()
        self.temp_store = temp_store or TempFileStore()
        self.scan_cache = scan_cache or ScanCursorCache()
        self.ctx = AdapterContext(
            config=self.config,
            fetcher=self.fetcher,
            chunk_cache=self.chunk_cache,
            scan_cache=self.scan_cache,
            temp_store=self.temp_store,
            audio=AudioPipeline(self.temp_store),
        )
        self._catalog_transport = catalog_transport
        self._ids = itertools.count(1)
        self._source: Optional[Source] = None
        self._adapter: Any = None
        self._retired: List[Any] = []
        self._flights = SingleFlight()

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "Engine":
        """Build an engine from the loaded YAML configuration mapping."""
        cfg = cfg or {}
        temp_cfg = cfg.get("temp_files") or {}
        root = temp_cfg.get("root")
        kwargs.setdefault("chunk_cache", ChunkCache(config=cfg.get("chunk_cache") or {}))
        kwargs.setdefault(
            "temp_store",
            TempFileStore(
                Path(root).expanduser() if root else None,
                max_age_hours=float(temp_cfg.get("max_age_hours", 24.0)),
            ),
        )
        return cls(EngineConfig.from_dict(cfg.get("engine")), **kwargs)

    @property
    def source(self) -> Optional[Source]:
        return self._source

    # -- plumbing --------------------------------------------------------

    def _active(self, source: Source, *kinds: SourceKind):
        if self._source is None or source.request_id != self._source.request_id:
            raise InvalidRequest(
                "Source is no longer loaded",
                context={"request_id": source.request_id, "location": source.location},
            )
        if kinds and source.kind not in kinds:
            raise InvalidRequest(
                "Operation not available for this source kind",
                context={"kind": source.kind.value},
            )
        return self._adapter

    async def _call(self, adapter: Any, name: str, *args: Any, **kwargs: Any) -> Any:
        method = getattr(adapter, name)
        if inspect.iscoroutinefunction(method):
            return await method(*args, **kwargs)
        return await asyncio.to_thread(method, *args, **kwargs)

    async def _run(self, source: Source, op: str, key: tuple, adapter: Any, *args: Any, **kwargs: Any) -> Response:
        flight_key = (source.request_id, op) + key
        value = await self._flights.run(flight_key, lambda: self._call(adapter, op, *args, **kwargs))
        return Response(source.request_id, value)

    async def _close_adapter(self, adapter: Any) -> None:
        try:
            await self._call(adapter, "close")
        except Exception as exc:
            logger.warning("Error closing %s adapter: %s", getattr(adapter, "kind", "?"), exc)

    # -- operations ------------------------------------------------------

    async def detect(self, path_or_url: str) -> Response[SourceKind]:
        source = await asyncio.to_thread(detect_source, path_or_url)
        return Response(0, source.kind)

    async def load(
        self,
        location: str,
        paths: Optional[Sequence[str]] = None,
        *,
        credential: Optional[str] = None,
    ) -> Response[Source]:
        """Detect and activate a source, retiring the previous one."""
        source = await asyncio.to_thread(detect_source, location, paths, credential=credential)
        source.request_id = next(self._ids)
        adapter = create_adapter(source, self.ctx, catalog_transport=self._catalog_transport)

        previous, previous_adapter = self._source, self._adapter
        self._source, self._adapter = source, adapter
        # adapters retired one load ago have no reads left in flight worth keeping
        for stale in self._retired:
            await self._close_adapter(stale)
        self._retired = []
        if previous is not None:
            dropped = self.scan_cache.invalidate_source(previous.identity)
            removed = self.temp_store.release(previous.request_id)
            logger.debug(
                "Retired source %d: %d cursor shard(s), %d temp file(s) dropped",
                previous.request_id,
                dropped,
                removed,
            )
            self._retired.append(previous_adapter)
        logger.info("Loaded %s source %s as request %d", source.kind.value, location, source.request_id)
        return Response(source.request_id, source)

    async def load_manifest(self, source: Source) -> Response[List[ShardSummary]]:
        adapter = self._active(source)
        return await self._run(source, "load_manifest", (), adapter)

    async def list_items(self, source: Source, shard: ShardKey) -> Response[List[ItemRef]]:
        adapter = self._active(source)
        response = await self._run(source, "list_items", (shard,), adapter, shard)
        if len(response.value) > self.config.max_listed_items:
            raise InvalidRequest(
                "Shard has too many items to list at once; use paged listing",
                context={"shard": shard, "items": len(response.value), "limit": self.config.max_listed_items},
            )
        return response

    async def list_items_page(
        self,
        source: Source,
        shard: ShardKey,
        offset: int = 0,
        length: Optional[int] = None,
        *,
        compute_total: bool = False,
    ) -> Response[ItemsPage]:
        adapter = self._active(source)
        if offset < 0:
            raise InvalidRequest("Negative offset", context={"offset": offset})
        length = self.config.clamp_page(length)
        key = (shard, offset, length, compute_total)
        return await self._run(
            source, "list_items_page", key, adapter, shard, offset, length, compute_total=compute_total
        )

    async def peek_field(self, source: Source, shard: ShardKey, item: int, field: FieldKey) -> Response[FieldPreview]:
        adapter = self._active(source)
        return await self._run(source, "peek_field", (shard, item, field), adapter, shard, item, field)

    async def materialize_field(
        self, source: Source, shard: ShardKey, item: int, field: FieldKey
    ) -> Response[MaterializedFile]:
        adapter = self._active(source)
        return await self._run(
            source, "materialize_field", (shard, item, field), adapter, shard, item, field, source.request_id
        )

    async def prepare_audio_preview(
        self, source: Source, shard: ShardKey, item: int, field: FieldKey
    ) -> Response[MaterializedFile]:
        """Materialize a field as a playable file, decoding SPHERE to WAV."""
        adapter = self._active(source)
        return await self._run(
            source, "prepare_audio", (shard, item, field), adapter, shard, item, field, source.request_id
        )

    async def list_catalog_rows(
        self,
        source: Source,
        config: Optional[str] = None,
        split: Optional[str] = None,
        offset: int = 0,
        length: Optional[int] = None,
        credential: Optional[str] = None,
    ) -> Response[CatalogPage]:
        adapter = self._active(source, SourceKind.REMOTE_CATALOG)
        if credential is not None:
            await adapter.set_credential(credential)
        return await self._run(
            source, "list_catalog_rows", (config, split, offset, length), adapter, config, split, offset, length
        )

    async def catalog_configs(self, source: Source) -> Response[Dict[str, List[str]]]:
        adapter = self._active(source, SourceKind.REMOTE_CATALOG)
        return await self._run(source, "catalog_configs", (), adapter)

    async def record_summary(self, source: Source) -> Response[RecordSummary]:
        adapter = self._active(source, SourceKind.REMOTE_RECORD)
        return await self._run(source, "record_summary", (), adapter)

    async def list_archive_entries(
        self, source: Source, shard: ShardKey, offset: int = 0, length: Optional[int] = None
    ) -> Response[tuple]:
        """``(entries, total)`` for a ZIP or TAR file of a remote record."""
        adapter = self._active(source, SourceKind.REMOTE_RECORD)
        return await self._run(source, "list_entries", (shard, offset, length), adapter, shard, offset, length)

    async def release(self, source: Source) -> Response[int]:
        """Drop the temp files held by ``source``'s request id."""
        removed = self.temp_store.release(source.request_id)
        return Response(source.request_id, removed)

    async def close(self) -> None:
        for adapter in self._retired:
            await self._close_adapter(adapter)
        self._retired = []
        if self._adapter is not None:
            await self._close_adapter(self._adapter)
        if self._source is not None:
            self.scan_cache.invalidate_source(self._source.identity)
            self.temp_store.release(self._source.request_id)
        self._source, self._adapter = None, None
        await asyncio.to_thread(self.fetcher.close)

    async def __aenter__(self) -> "Engine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


__all__ = ["Engine", "EngineConfig"]
