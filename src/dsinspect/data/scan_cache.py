"""Bounded cache of :class:`ScanCursor` values for forward-only shards.

Keys are ``(source identity, shard identity)``; within a shard, cursors are
indexed by the sample/entry index they resume at. A shard identity embeds
size and mtime (or the remote size), so a rewritten shard simply stops
matching and its old cursors age out.
"""

from __future__ import annotations

import bisect
import logging
import threading
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from .models import ScanCursor

logger = logging.getLogger(__name__)

_Key = Tuple[str, str]


class _ShardCursors:
    __slots__ = ("indices", "cursors", "total")

    def __init__(self) -> None:
        self.indices: List[int] = []
        self.cursors: Dict[int, ScanCursor] = {}
        self.total: Optional[int] = None


class ScanCursorCache:
    def __init__(self, max_shards: int = 256, max_cursors_per_shard: int = 512) -> None:
        self.max_shards = max_shards
        self.max_cursors_per_shard = max_cursors_per_shard
        self._shards: "OrderedDict[_Key, _ShardCursors]" = OrderedDict()
        self._lock = threading.Lock()

    def _entry(self, source_id: str, shard_id: str, create: bool) -> Optional[_ShardCursors]:
        key = (source_id, shard_id)
        entry = self._shards.get(key)
        if entry is None and create:
            entry = self._shards[key] = _ShardCursors()
            while len(self._shards) > self.max_shards:
                evicted, _ = self._shards.popitem(last=False)
                logger.debug("Evicted scan cursors for %s", evicted)
        if entry is not None:
            self._shards.move_to_end(key)
        return entry

    def put(self, source_id: str, cursor: ScanCursor) -> None:
        with self._lock:
            entry = self._entry(source_id, cursor.shard, create=True)
            if cursor.index not in entry.cursors:
                bisect.insort(entry.indices, cursor.index)
            entry.cursors[cursor.index] = cursor
            if len(entry.indices) > self.max_cursors_per_shard:
                # keep the earliest cursors, they anchor every backwards seek
                dropped = entry.indices.pop()
                entry.cursors.pop(dropped, None)

    def nearest(self, source_id: str, shard_id: str, index: int) -> Optional[ScanCursor]:
        """Latest cursor at or before ``index``."""
        with self._lock:
            entry = self._entry(source_id, shard_id, create=False)
            if entry is None:
                return None
            pos = bisect.bisect_right(entry.indices, index)
            if pos == 0:
                return None
            return entry.cursors[entry.indices[pos - 1]]

    def set_total(self, source_id: str, shard_id: str, total: int) -> None:
        with self._lock:
            self._entry(source_id, shard_id, create=True).total = total

    def get_total(self, source_id: str, shard_id: str) -> Optional[int]:
        with self._lock:
            entry = self._entry(source_id, shard_id, create=False)
            return entry.total if entry is not None else None

    def invalidate_source(self, source_id: str) -> int:
        with self._lock:
            doomed = [key for key in self._shards if key[0] == source_id]
            for key in doomed:
                del self._shards[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._shards.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(e.cursors) for e in self._shards.values())
