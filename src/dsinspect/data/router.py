"""Source detection and adapter dispatch by :class:`SourceKind`."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import InvalidRequest, MalformedFormat, NotFound
from .adapters.base import AdapterContext
from .adapters.catalog import CatalogAdapter, parse_repo_id
from .adapters.chunked import (
    INDEX_CANDIDATES,
    ChunkedIndexAdapter,
    ChunkFileListAdapter,
    is_litdata_index,
    is_mds_index,
    read_index_file,
)
from .adapters.record import RemoteRecordAdapter
from .adapters.streamed import StreamedArchiveAdapter, find_tar_shards, is_tar_shard
from .fetcher import is_remote
from .models import Source, SourceKind

logger = logging.getLogger(__name__)

CHUNK_SUFFIXES = (".bin", ".bin.zst", ".bin.zstd")
MDS_SUFFIXES = (".mds", ".mds.zst", ".mds.zstd")
_INDEX_SUFFIXES = ("index.json", "index.json.zst", "index.json.zstd")


def is_index_name(name: str) -> bool:
    return name.lower().endswith(_INDEX_SUFFIXES)


def is_chunk_name(name: str) -> bool:
    return name.lower().endswith(CHUNK_SUFFIXES)


def _find_index(directory: Path) -> Optional[Path]:
    for candidate in INDEX_CANDIDATES:
        path = directory / candidate
        if path.is_file():
            return path
    others = sorted(p for p in directory.iterdir() if p.is_file() and is_index_name(p.name))
    return others[0] if others else None


def _index_source(location: str, index_path: Path) -> Source:
    data = read_index_file(index_path)
    if not (is_mds_index(data) or is_litdata_index(data)):
        raise MalformedFormat(
            "Index has neither 'chunks'/'config' nor MDS 'shards'",
            context={"index": index_path.name},
        )
    return Source(kind=SourceKind.CHUNKED_INDEX, location=location, paths=[str(index_path)])


def _detect_file(path: Path) -> Source:
    name = path.name
    if is_index_name(name):
        return _index_source(str(path), path)
    if name.lower().endswith(MDS_SUFFIXES):
        index = _find_index(path.parent)
        if index is None:
            raise NotFound("MDS shard without a sibling index", context={"path": str(path)})
        return _index_source(str(path), index)
    if is_tar_shard(name):
        return Source(kind=SourceKind.STREAMED_ARCHIVE_DIR, location=str(path), paths=[str(path)])
    if is_chunk_name(name):
        return Source(kind=SourceKind.CHUNKED_FILE_LIST, location=str(path), paths=[str(path)])
    raise InvalidRequest("Unrecognised dataset file", context={"path": str(path)})


def _detect_directory(path: Path) -> Source:
    index = _find_index(path)
    if index is not None:
        return _index_source(str(path), index)
    shards = find_tar_shards(path)
    if shards:
        return Source(kind=SourceKind.STREAMED_ARCHIVE_DIR, location=str(path), paths=shards)
    chunks = sorted(str(p) for p in path.iterdir() if p.is_file() and is_chunk_name(p.name))
    if chunks:
        return Source(kind=SourceKind.CHUNKED_FILE_LIST, location=str(path), paths=chunks)
    raise InvalidRequest("Directory holds no recognised dataset files", context={"path": str(path)})


def _detect_selection(paths: Sequence[str]) -> Source:
    names = [os.path.basename(p) for p in paths]
    missing = [p for p in paths if not os.path.exists(p)]
    if missing:
        raise NotFound("Selected file not found", context={"path": missing[0]})
    location = os.path.commonpath([os.path.abspath(p) for p in paths])
    if all(is_chunk_name(n) for n in names):
        return Source(kind=SourceKind.CHUNKED_FILE_LIST, location=location, paths=sorted(paths))
    if all(is_tar_shard(n) for n in names):
        return Source(kind=SourceKind.STREAMED_ARCHIVE_DIR, location=location, paths=sorted(paths))
    raise InvalidRequest("Selected files are not all chunk files or all tar shards", context={"count": len(paths)})


def detect_source(location: str, paths: Optional[Sequence[str]] = None, *, credential: Optional[str] = None) -> Source:
    """Resolve a path, URL or multi-file selection into a :class:`Source`."""
    if paths and len(paths) > 1:
        return _detect_selection(list(paths))
    if location.startswith("hf://") or (is_remote(location) and parse_repo_id(location) is not None):
        if parse_repo_id(location) is None:
            raise InvalidRequest("Unrecognised catalog URL", context={"location": location})
        return Source(kind=SourceKind.REMOTE_CATALOG, location=location, credential=credential)
    if is_remote(location):
        return Source(kind=SourceKind.REMOTE_RECORD, location=location, credential=credential)
    path = Path(location).expanduser()
    if not path.exists():
        raise NotFound("Path does not exist", context={"path": location})
    source = _detect_directory(path) if path.is_dir() else _detect_file(path)
    logger.debug("Detected %s for %s", source.kind.value, location)
    return source


def detect(path_or_url: str) -> SourceKind:
    return detect_source(path_or_url).kind


AdapterFactory = Callable[..., object]

ADAPTERS: Dict[SourceKind, AdapterFactory] = {
    SourceKind.CHUNKED_INDEX: ChunkedIndexAdapter,
    SourceKind.CHUNKED_FILE_LIST: ChunkFileListAdapter,
    SourceKind.STREAMED_ARCHIVE_DIR: StreamedArchiveAdapter,
    SourceKind.REMOTE_CATALOG: CatalogAdapter,
    SourceKind.REMOTE_RECORD: RemoteRecordAdapter,
}


def create_adapter(source: Source, ctx: AdapterContext, *, catalog_transport=None):
    factory = ADAPTERS[source.kind]
    if source.kind is SourceKind.REMOTE_CATALOG:
        return factory(source, ctx, transport=catalog_transport)
    return factory(source, ctx)


def supported_kinds() -> List[str]:
    return [kind.value for kind in ADAPTERS]
