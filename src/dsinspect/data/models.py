"""Common data model every adapter normalises to."""

from __future__ import annotations

import base64
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

T = TypeVar("T")


class SourceKind(str, Enum):
    CHUNKED_INDEX = "chunked-index"
    CHUNKED_FILE_LIST = "chunked-file-list"
    STREAMED_ARCHIVE_DIR = "streamed-archive-dir"
    REMOTE_CATALOG = "remote-catalog"
    REMOTE_RECORD = "remote-record"


@dataclass
class Source:
    """One selected dataset instance.

    ``location`` is the path or URL the user picked. ``paths`` holds the
    concrete files resolved during detection (the index file, the chunk files
    of a file list, the tar shards of a directory). ``request_id`` is assigned
    by the engine on load and increases monotonically.
    """

    kind: SourceKind
    location: str
    request_id: int = 0
    paths: List[str] = field(default_factory=list)
    credential: Optional[str] = field(default=None, repr=False)

    @property
    def identity(self) -> str:
        return f"{self.kind.value}:{self.location}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "location": self.location,
            "request_id": self.request_id,
            "paths": list(self.paths),
        }


@dataclass
class ShardSummary:
    """One physical storage unit.

    ``size`` is the byte size on storage. ``item_bytes`` is the declared sum of
    item sizes when the format records it (LitData ``chunk_bytes``).
    """

    filename: str
    size: Optional[int]
    item_count: Optional[int]
    exists: bool = True
    item_bytes: Optional[int] = None
    path: Optional[str] = None
    compression: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FieldRef:
    index: int
    size: int
    name: Optional[str] = None
    encoding: Optional[str] = None
    # absolute payload offset, for archive members located by scanning
    offset: Optional[int] = None


@dataclass
class ItemRef:
    index: int
    total_bytes: int
    fields: List[FieldRef] = field(default_factory=list)
    key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FieldPreview:
    text: Optional[str]
    hex_snippet: str
    guessed_ext: Optional[str]
    is_binary: bool
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScanCursor:
    """Resumable position in a forward-only scan of one shard.

    ``position`` is the raw byte offset just past the last member consumed.
    ``index`` is the index of the sample (or entry) that is open at that
    position; ``pending_key``/``pending_fields`` describe it when a sample was
    already started by the member that closed the previous one.
    """

    shard: str
    position: int
    index: int
    pending_key: Optional[str] = None
    # (name, size, offset, member path)
    pending_fields: Tuple[Tuple[str, int, int, str], ...] = ()

    def to_token(self) -> str:
        payload = {
            "s": self.shard,
            "p": self.position,
            "i": self.index,
            "k": self.pending_key,
            "f": [list(f) for f in self.pending_fields],
        }
        raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii")

    @classmethod
    def from_token(cls, token: str) -> "ScanCursor":
        payload = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
        return cls(
            shard=payload["s"],
            position=int(payload["p"]),
            index=int(payload["i"]),
            pending_key=payload.get("k"),
            pending_fields=tuple(
                (str(n), int(sz), int(off), str(m)) for n, sz, off, m in payload.get("f", [])
            ),
        )


@dataclass
class ArchiveEntry:
    """One member of a remote ZIP or TAR archive.

    ``offset`` is the local-header offset (ZIP) or the header block offset
    (TAR). ``data_offset`` is only known up front for TAR members.
    """

    name: str
    compressed_size: int
    uncompressed_size: int
    method: str
    is_dir: bool = False
    offset: int = 0
    data_offset: Optional[int] = None
    encrypted: bool = False
    crc32: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ItemsPage:
    """One page of items.

    ``total`` is only set once a full scan (or an index) established it;
    ``known_count`` is then a lower bound ("at least N").
    """

    items: List[ItemRef]
    offset: int
    cursor: Optional[ScanCursor] = None
    total: Optional[int] = None
    known_count: int = 0

    @property
    def partial(self) -> bool:
        return self.total is None


@dataclass
class MaterializedFile:
    path: str
    size: int
    ext: str
    decoded_from: Optional[str] = None


@dataclass
class CatalogFeature:
    name: str
    dtype: str
    index: int


@dataclass
class CatalogPage:
    rows: List[Dict[str, Any]]
    schema: List[CatalogFeature]
    total: Optional[int]
    partial: bool
    offset: int = 0
    length: int = 0


@dataclass
class RecordFile:
    name: str
    size: int
    url: str
    checksum: Optional[str] = None


@dataclass
class RecordSummary:
    record_id: str
    title: Optional[str] = None
    doi: Optional[str] = None
    publication_date: Optional[str] = None
    version: Optional[str] = None
    access_right: Optional[str] = None
    creators: List[str] = field(default_factory=list)
    files: List[RecordFile] = field(default_factory=list)


@dataclass
class Response(Generic[T]):
    """Engine result tagged with the request id it was issued against."""

    request_id: int
    value: T


__all__ = [
    "SourceKind",
    "Source",
    "ShardSummary",
    "FieldRef",
    "ItemRef",
    "FieldPreview",
    "ScanCursor",
    "ArchiveEntry",
    "ItemsPage",
    "MaterializedFile",
    "CatalogFeature",
    "CatalogPage",
    "RecordFile",
    "RecordSummary",
    "Response",
]
