"""Per-format adapters behind one navigation contract."""

from .base import AdapterContext, DatasetAdapter
from .catalog import CatalogAdapter
from .chunked import ChunkedIndexAdapter, ChunkFileListAdapter
from .record import RemoteRecordAdapter
from .streamed import StreamedArchiveAdapter

__all__ = [
    "AdapterContext",
    "DatasetAdapter",
    "CatalogAdapter",
    "ChunkedIndexAdapter",
    "ChunkFileListAdapter",
    "RemoteRecordAdapter",
    "StreamedArchiveAdapter",
]
