"""
Decompressed Shard Cache

Compressed chunk files and index manifests are decompressed to disk once and
reused for every later field read. Entries are keyed by the source file's
identity (resolved path, size, mtime) so a rewritten shard is never served
stale, and the cache is bounded by total size with LRU eviction.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import os
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import zstandard

from ..errors import MalformedFormat, UnsupportedFeature
from ..system.paths import get_cache_dir
from .fetcher import local_identity

logger = logging.getLogger(__name__)

SUPPORTED_CODECS = ("zstd", "gzip")


def normalize_codec(codec: Optional[str]) -> Optional[str]:
    """Map index/suffix spellings (``zstd:7``, ``zst``, ``gz``) to a codec name."""
    if not codec:
        return None
    name = codec.split(":", 1)[0].strip().lower()
    if name in ("zstd", "zst"):
        return "zstd"
    if name in ("gzip", "gz"):
        return "gzip"
    return name


def codec_from_suffix(path: str | Path) -> Optional[str]:
    name = str(path).lower()
    if name.endswith((".zst", ".zstd")):
        return "zstd"
    if name.endswith((".gz", ".tgz")):
        return "gzip"
    return None


def open_decompressed(path: str | Path, codec: str):
    """Open a forward-only decompressed byte stream."""
    codec = normalize_codec(codec) or codec
    if codec == "zstd":
        fh = open(path, "rb")
        return zstandard.ZstdDecompressor().stream_reader(fh, closefd=True)
    if codec == "gzip":
        return gzip.open(path, "rb")
    raise UnsupportedFeature("Unsupported compression codec", context={"codec": codec})


def decompress_bytes(data: bytes, codec: str) -> bytes:
    codec = normalize_codec(codec) or codec
    if codec == "zstd":
        try:
            return zstandard.ZstdDecompressor().decompressobj().decompress(data)
        except zstandard.ZstdError as exc:
            raise MalformedFormat("Corrupt zstd data", context={"error": str(exc)}) from exc
    if codec == "gzip":
        try:
            return gzip.decompress(data)
        except (OSError, EOFError) as exc:
            raise MalformedFormat("Corrupt gzip data", context={"error": str(exc)}) from exc
    raise UnsupportedFeature("Unsupported compression codec", context={"codec": codec})


class ChunkCache:
    """
    Manages decompressed copies of compressed shards.

    Features:
    - Decompress-once per shard identity, shared across requests
    - At most one decompression in flight per key (per-key locks)
    - LRU eviction when the total size limit is exceeded
    - Metadata file tracking source, codec and access times
    """

    _instance: Optional["ChunkCache"] = None
    _lock = threading.Lock()

    def __init__(self, cache_dir: Optional[Path] = None, max_size_mb: Optional[float] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the shard cache.

        Args:
            cache_dir: Directory for decompressed files (default: <cache dir>/chunks)
            max_size_mb: Maximum total cache size in MB (default: from config or 2048)
            config: ``chunk_cache`` configuration section
        """
        config = config or {}
        if cache_dir is None:
            configured = config.get("cache_dir")
            cache_dir = Path(configured).expanduser() if configured else get_cache_dir() / "chunks"

        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.max_size_mb = float(max_size_mb or config.get("max_size_mb", 2048.0))
        self._cache_lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self.decompressions = 0

        self.metadata_file = self.cache_dir / "cache_metadata.json"
        self._load_metadata()

    @classmethod
    def get_instance(cls, cache_dir: Optional[Path] = None, max_size_mb: Optional[float] = None, config: Optional[Dict[str, Any]] = None) -> "ChunkCache":
        """Get or create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(cache_dir, max_size_mb, config)
        return cls._instance

    def _load_metadata(self) -> None:
        self.metadata: Dict[str, Dict[str, Any]] = {}
        if self.metadata_file.exists():
            try:
                with open(self.metadata_file, "r", encoding="utf-8") as f:
                    self.metadata = json.load(f)
            except (OSError, ValueError):
                logger.warning("Chunk cache metadata unreadable, starting fresh: %s", self.metadata_file)
                self.metadata = {}

    def _save_metadata(self) -> None:
        tmp = self.metadata_file.with_suffix(".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self.metadata, f, indent=2)
            os.replace(tmp, self.metadata_file)
        except OSError as exc:
            logger.warning("Could not persist chunk cache metadata: %s", exc)

    def _get_cache_key(self, path: str, size: int, mtime_ns: int, codec: str) -> str:
        """
        Generate a cache key for a compressed file.

        Args:
            path: Resolved source path
            size: Source size in bytes
            mtime_ns: Source modification time
            codec: Compression codec

        Returns:
            Hex string cache key
        """
        key_str = f"{path}:{size}:{mtime_ns}:{codec}"
        return hashlib.sha256(key_str.encode("utf-8")).hexdigest()[:16]

    def _lock_for(self, key: str) -> threading.Lock:
        with self._cache_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def get_decompressed(self, path: str | Path, codec: str) -> Path:
        """
        Return the path of a decompressed copy of ``path``, creating it once.

        Args:
            path: Compressed source file
            codec: Compression codec (``zstd`` or ``gzip``)

        Returns:
            Path to the decompressed file inside the cache directory
        """
        codec = normalize_codec(codec) or ""
        if codec not in SUPPORTED_CODECS:
            raise UnsupportedFeature(
                "Unsupported compression codec", context={"codec": codec, "path": Path(path).name}
            )
        resolved, size, mtime_ns = local_identity(path)
        key = self._get_cache_key(resolved, size, mtime_ns, codec)
        target = self.cache_dir / f"{key}.bin"

        with self._lock_for(key):
            with self._cache_lock:
                info = self.metadata.get(key)
                if info is not None and target.exists():
                    info["last_access"] = time.time()
                    self._save_metadata()
                    return target

            logger.info("Decompressing %s (%s) into chunk cache", Path(path).name, codec)
            part = target.with_suffix(".part")
            try:
                with open_decompressed(path, codec) as src, open(part, "wb") as dst:
                    while True:
                        block = src.read(1 << 20)
                        if not block:
                            break
                        dst.write(block)
            except (zstandard.ZstdError, OSError, EOFError) as exc:
                part.unlink(missing_ok=True)
                raise MalformedFormat(
                    "Failed to decompress shard",
                    context={"path": Path(path).name, "codec": codec, "error": str(exc)},
                ) from exc
            os.replace(part, target)
            self.decompressions += 1

            with self._cache_lock:
                now = time.time()
                self.metadata[key] = {
                    "source": resolved,
                    "codec": codec,
                    "source_size": size,
                    "size": target.stat().st_size,
                    "timestamp": now,
                    "last_access": now,
                    "created": datetime.now().isoformat(),
                }
                self._enforce_size_limit(keep=key)
                self._save_metadata()
        return target

    def _get_total_cache_size_mb(self) -> float:
        total = 0
        for key in self.metadata:
            cache_file = self.cache_dir / f"{key}.bin"
            if cache_file.exists():
                total += cache_file.stat().st_size
        return total / (1024 * 1024)

    def _enforce_size_limit(self, keep: Optional[str] = None) -> None:
        """Remove least recently used entries while over the size limit."""
        current = self._get_total_cache_size_mb()
        if current <= self.max_size_mb:
            return
        for key, _ in sorted(self.metadata.items(), key=lambda kv: kv[1].get("last_access", 0)):
            if current <= self.max_size_mb * 0.9:
                break
            if key == keep:
                continue
            cache_file = self.cache_dir / f"{key}.bin"
            if cache_file.exists():
                current -= cache_file.stat().st_size / (1024 * 1024)
                cache_file.unlink()
            del self.metadata[key]
            logger.debug("Evicted chunk cache entry %s", key)

    def clear(self, source_prefix: Optional[str] = None) -> int:
        """
        Remove cached entries.

        Args:
            source_prefix: Only remove entries whose source path starts with this

        Returns:
            Number of entries removed
        """
        with self._cache_lock:
            doomed = [
                key for key, info in self.metadata.items()
                if source_prefix is None or str(info.get("source", "")).startswith(source_prefix)
            ]
            for key in doomed:
                (self.cache_dir / f"{key}.bin").unlink(missing_ok=True)
                del self.metadata[key]
            if doomed:
                self._save_metadata()
            return len(doomed)

    def get_cache_stats(self) -> Dict[str, Any]:
        with self._cache_lock:
            size_mb = self._get_total_cache_size_mb()
            return {
                "cache_dir": str(self.cache_dir),
                "entries": len(self.metadata),
                "total_size_mb": round(size_mb, 2),
                "max_size_mb": self.max_size_mb,
                "size_limit_status": f"{size_mb:.1f}MB / {self.max_size_mb:.1f}MB",
                "codecs": sorted({info.get("codec", "?") for info in self.metadata.values()}),
            }


def get_cache(config: Optional[Dict[str, Any]] = None) -> ChunkCache:
    """Get the global chunk cache instance."""
    return ChunkCache.get_instance(config=config)
