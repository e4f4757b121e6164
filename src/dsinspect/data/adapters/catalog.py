"""Hosted catalog datasets, browsed page by page through the preview API.

Shards are ``config/split`` pairs. Rows are fetched on demand with the
service's row cap; cells become fields. Strings preview as text, other values
as pretty JSON, and ``{"src": url}`` media cells are downloaded from an
allow-listed host on peek and materialize.
"""

from __future__ import annotations

import json
import logging
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

from ...errors import InvalidRequest, MalformedFormat, NotFound
from ..catalog_client import CatalogClient
from ..models import (
    CatalogFeature,
    CatalogPage,
    FieldPreview,
    FieldRef,
    ItemRef,
    ItemsPage,
    MaterializedFile,
    ShardSummary,
    Source,
    SourceKind,
)
from ..preview import build_preview
from .base import AdapterContext, FieldKey, ShardKey, member_extension

logger = logging.getLogger(__name__)

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CATALOG_HOSTS = {"huggingface.co", "www.huggingface.co", "hf.co"}
_ASSET_CACHE = 32
_ROW_CACHE = 2048
_MIME_EXT = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/flac": "flac",
    "audio/ogg": "ogg",
}


def parse_repo_id(location: str) -> Optional[Tuple[str, Optional[str]]]:
    """``(repo_id, revision)`` for a catalog dataset URL, else None.

    Accepts ``https://huggingface.co/datasets/<ns>[/<name>]``, the ``hf.co``
    short host and ``hf://datasets/<ns>/<name>[@rev]``.
    """
    revision = None
    if location.startswith("hf://"):
        rest = location[len("hf://"):]
        if not rest.startswith("datasets/"):
            return None
        parts = [p for p in rest[len("datasets/"):].split("/") if p]
        if len(parts) < 2:
            return None
        name = parts[1]
        if "@" in name:
            name, revision = name.split("@", 1)
        segments = [parts[0], name]
    else:
        split = urlsplit(location)
        if split.scheme not in ("http", "https") or (split.hostname or "").lower() not in _CATALOG_HOSTS:
            return None
        parts = [unquote(p) for p in split.path.split("/") if p]
        if len(parts) < 2 or parts[0] != "datasets":
            return None
        segments = parts[1:3]
        # /datasets/<name>/viewer/... style paths for un-namespaced datasets
        if len(segments) == 2 and segments[1] in ("viewer", "tree", "blob", "resolve", "discussions"):
            segments = segments[:1]
    if not all(_SEGMENT_RE.match(s) for s in segments):
        return None
    return "/".join(segments), revision


def pick_default_split(splits: List[str]) -> Optional[str]:
    if not splits:
        return None
    if "train" in splits:
        return "train"
    for name in splits:
        if name.startswith("train"):
            return name
    return splits[0]


def parse_schema(features: Any) -> List[CatalogFeature]:
    schema = []
    for position, feature in enumerate(features or []):
        if not isinstance(feature, dict):
            continue
        ftype = feature.get("type") or {}
        if isinstance(ftype, dict):
            dtype = ftype.get("dtype") or ftype.get("_type") or "unknown"
        elif isinstance(ftype, list):
            dtype = "list"
        else:
            dtype = str(ftype)
        schema.append(
            CatalogFeature(
                name=str(feature.get("name", position)),
                dtype=str(dtype),
                index=int(feature.get("feature_idx", position)),
            )
        )
    return schema


def is_asset_cell(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get("src"), str)


def _first_asset(value: Any) -> Optional[Dict[str, Any]]:
    if is_asset_cell(value):
        return value
    # audio cells are lists of sources
    if isinstance(value, list) and value and is_asset_cell(value[0]):
        return value[0]
    return None


def cell_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, indent=2, ensure_ascii=False, default=str).encode("utf-8")


class CatalogAdapter:
    """Async counterpart of :class:`DatasetAdapter` for the hosted catalog."""

    kind = SourceKind.REMOTE_CATALOG

    def __init__(self, source: Source, ctx: AdapterContext, *, transport=None) -> None:
        parsed = parse_repo_id(source.location)
        if parsed is None:
            raise InvalidRequest("Not a catalog dataset URL", context={"location": source.location})
        self.source = source
        self.ctx = ctx
        self.config = ctx.config
        self.repo_id, self.revision = parsed
        self._transport = transport
        self.client = self._make_client(source.credential)
        self._shards: Optional[List[ShardSummary]] = None
        self._schemas: Dict[str, List[CatalogFeature]] = {}
        self._rows: "OrderedDict[Tuple[str, int], Dict[str, Any]]" = OrderedDict()
        self._assets: "OrderedDict[str, Tuple[bytes, Optional[str]]]" = OrderedDict()

    def _make_client(self, credential: Optional[str]) -> CatalogClient:
        return CatalogClient(
            self.config.catalog_base_url,
            credential=credential,
            timeout=self.config.http_timeout,
            user_agent=self.config.user_agent,
            transport=self._transport,
        )

    async def set_credential(self, credential: Optional[str]) -> None:
        """Swap the session credential; cached listings are dropped with it."""
        if credential == self.source.credential:
            return
        await self.client.close()
        self.source.credential = credential
        self.client = self._make_client(credential)
        self._shards = None
        self._schemas.clear()
        self._rows.clear()
        self._assets.clear()

    # -- shards ----------------------------------------------------------

    async def load_manifest(self) -> List[ShardSummary]:
        if self._shards is None:
            payload = await self.client.splits(self.repo_id)
            entries = payload.get("splits")
            if not isinstance(entries, list):
                raise MalformedFormat("Splits response has no split list", context={"dataset": self.repo_id})
            shards = []
            seen = set()
            for entry in entries:
                name = f"{entry.get('config')}/{entry.get('split')}"
                if name in seen:
                    continue
                seen.add(name)
                shards.append(ShardSummary(filename=name, size=None, item_count=None, path=self.repo_id))
            self._shards = shards
            logger.info("Loaded catalog dataset %s: %d config/split pair(s)", self.repo_id, len(shards))
        return list(self._shards)

    async def catalog_configs(self) -> Dict[str, List[str]]:
        """Configs mapped to their splits, default split first."""
        configs: Dict[str, List[str]] = {}
        for shard in await self.load_manifest():
            config, _, split = shard.filename.partition("/")
            configs.setdefault(config, []).append(split)
        for config, splits in configs.items():
            default = pick_default_split(splits)
            configs[config] = [default] + [s for s in splits if s != default]
        return configs

    async def shard(self, key: ShardKey) -> ShardSummary:
        shards = await self.load_manifest()
        if isinstance(key, int):
            if 0 <= key < len(shards):
                return shards[key]
        else:
            for shard in shards:
                if shard.filename == key:
                    return shard
        raise NotFound("Unknown config/split", context={"dataset": self.repo_id, "shard": key})

    async def _split_key(self, config: Optional[str], split: Optional[str]) -> Tuple[str, str]:
        configs = await self.catalog_configs()
        if not configs:
            raise NotFound("Dataset has no configs", context={"dataset": self.repo_id})
        if config is None:
            config = "default" if "default" in configs else next(iter(configs))
        if config not in configs:
            raise NotFound("Unknown config", context={"dataset": self.repo_id, "config": config})
        if split is None:
            split = configs[config][0]
        if split not in configs[config]:
            raise NotFound("Unknown split", context={"dataset": self.repo_id, "config": config, "split": split})
        return config, split

    # -- rows ------------------------------------------------------------

    async def list_catalog_rows(
        self,
        config: Optional[str] = None,
        split: Optional[str] = None,
        offset: int = 0,
        length: Optional[int] = None,
    ) -> CatalogPage:
        config, split = await self._split_key(config, split)
        if offset < 0:
            raise InvalidRequest("Negative row offset", context={"offset": offset})
        if length is None or length <= 0:
            length = self.config.catalog_default_rows
        length = min(length, self.config.catalog_max_rows)
        shard_name = f"{config}/{split}"
        summary = await self.shard(shard_name)
        if summary.item_count is not None and offset >= summary.item_count:
            return CatalogPage(
                rows=[], schema=self._schemas.get(shard_name, []), total=summary.item_count,
                partial=False, offset=offset, length=length,
            )

        payload = await self.client.rows(self.repo_id, config, split, offset, length)
        schema = parse_schema(payload.get("features"))
        self._schemas[shard_name] = schema
        total = payload.get("num_rows_total")
        total = int(total) if total is not None else None
        if total is not None:
            summary.item_count = total
        rows = []
        for position, entry in enumerate(payload.get("rows") or []):
            row = entry.get("row") if isinstance(entry, dict) and "row" in entry else entry
            if not isinstance(row, dict):
                continue
            index = int(entry.get("row_idx", offset + position)) if isinstance(entry, dict) else offset + position
            self._remember(shard_name, index, row)
            rows.append(row)
        return CatalogPage(
            rows=rows,
            schema=schema,
            total=total,
            partial=bool(payload.get("partial", False)),
            offset=offset,
            length=length,
        )

    def _remember(self, shard_name: str, index: int, row: Dict[str, Any]) -> None:
        key = (shard_name, index)
        self._rows[key] = row
        self._rows.move_to_end(key)
        while len(self._rows) > _ROW_CACHE:
            self._rows.popitem(last=False)

    def _columns(self, shard_name: str, row: Dict[str, Any]) -> List[str]:
        schema = self._schemas.get(shard_name)
        if schema:
            return [f.name for f in sorted(schema, key=lambda f: f.index)]
        return list(row.keys())

    def _item(self, shard_name: str, index: int, row: Dict[str, Any]) -> ItemRef:
        fields = []
        for j, column in enumerate(self._columns(shard_name, row)):
            value = row.get(column)
            fields.append(FieldRef(index=j, size=len(cell_bytes(value)), name=column))
        return ItemRef(index=index, total_bytes=sum(f.size for f in fields), fields=fields, key=str(index))

    async def list_items_page(
        self,
        shard: ShardKey,
        offset: int,
        length: int,
        *,
        compute_total: bool = False,
    ) -> ItemsPage:
        summary = await self.shard(shard)
        config, _, split = summary.filename.partition("/")
        page = await self.list_catalog_rows(config, split, offset, length)
        items = [self._item(summary.filename, offset + i, row) for i, row in enumerate(page.rows)]
        known = page.total if page.total is not None else offset + len(items)
        total = None if page.partial else page.total
        return ItemsPage(items=items, offset=offset, total=total, known_count=known)

    async def list_items(self, shard: ShardKey) -> List[ItemRef]:
        raise InvalidRequest(
            "Catalog splits are paged; use paged listing",
            context={"kind": self.kind.value, "shard": shard},
        )

    async def _row(self, shard_name: str, index: int) -> Dict[str, Any]:
        if index < 0:
            raise InvalidRequest("Negative item index", context={"item": index})
        cached = self._rows.get((shard_name, index))
        if cached is not None:
            return cached
        config, _, split = shard_name.partition("/")
        page = await self.list_catalog_rows(config, split, index, 1)
        if not page.rows:
            raise NotFound("Row index out of range", context={"shard": shard_name, "item": index})
        return page.rows[0]

    async def _resolve(self, shard: ShardKey, item: int, field: FieldKey) -> Tuple[ShardSummary, FieldRef, Any]:
        summary = await self.shard(shard)
        row = await self._row(summary.filename, item)
        ref = self._item(summary.filename, item, row)
        if isinstance(field, int):
            if not 0 <= field < len(ref.fields):
                raise NotFound("Field index out of range", context={"shard": summary.filename, "item": item, "field": field})
            fref = ref.fields[field]
        else:
            fref = next((f for f in ref.fields if f.name == field), None)
            if fref is None:
                raise NotFound("No such column", context={"shard": summary.filename, "item": item, "field": field})
        return summary, fref, row.get(fref.name or "")

    async def _cell_payload(self, value: Any) -> Tuple[bytes, Optional[str]]:
        asset = _first_asset(value)
        if asset is None:
            return cell_bytes(value), ("txt" if isinstance(value, str) else "json")
        url = asset["src"]
        cached = self._assets.get(url)
        if cached is None:
            data = await self.client.fetch_asset(url, max_bytes=self.config.max_open_bytes)
            mime = str(asset.get("type") or "").split(";")[0].strip().lower()
            ext = _MIME_EXT.get(mime) or member_extension(urlsplit(url).path)
            cached = (data, ext)
            self._assets[url] = cached
            while len(self._assets) > _ASSET_CACHE:
                self._assets.popitem(last=False)
        else:
            self._assets.move_to_end(url)
        return cached

    def _preview(self, data: bytes, declared_ext: Optional[str]) -> FieldPreview:
        cfg = self.config
        return build_preview(
            data[: cfg.preview_bytes],
            size=len(data),
            declared_ext=declared_ext,
            text_chars=cfg.preview_text_chars,
            hex_bytes=cfg.hex_bytes,
            binary_ratio=cfg.binary_ratio,
        )

    async def peek_field(self, shard: ShardKey, item: int, field: FieldKey) -> FieldPreview:
        _summary, _fref, value = await self._resolve(shard, item, field)
        data, ext = await self._cell_payload(value)
        return self._preview(data, ext)

    async def materialize_field(self, shard: ShardKey, item: int, field: FieldKey, request_id: int) -> MaterializedFile:
        summary, fref, value = await self._resolve(shard, item, field)
        data, declared = await self._cell_payload(value)
        ext = self._preview(data, declared).guessed_ext or "bin"
        name = f"{self.repo_id.replace('/', '__')}-{summary.filename.replace('/', '-')}-i{item}-f{fref.index}"
        path = self.ctx.temp_store.write(name, ext, data, request_id)
        return MaterializedFile(path=str(path), size=len(data), ext=ext)

    async def prepare_audio(self, shard: ShardKey, item: int, field: FieldKey, request_id: int) -> MaterializedFile:
        summary, fref, value = await self._resolve(shard, item, field)
        data, declared = await self._cell_payload(value)
        ext = self._preview(data, declared).guessed_ext
        name = f"{self.repo_id.replace('/', '__')}-{summary.filename.replace('/', '-')}-i{item}-f{fref.index}"
        return self.ctx.audio.prepare(data, name=name, request_id=request_id, ext=ext)

    async def close(self) -> None:
        await self.client.close()
