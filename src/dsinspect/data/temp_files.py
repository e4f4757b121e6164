"""Reference-counted temp artifacts (materialized fields, decoded audio).

Each file is held by the set of request ids that produced or reused it.
Releasing a request id deletes every file no other request still holds.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Optional, Set

from ..system.paths import get_temp_dir
from .preview import sanitize_name

logger = logging.getLogger(__name__)


class TempFileStore:
    def __init__(self, root: Optional[Path] = None, *, max_age_hours: float = 24.0) -> None:
        self.root = Path(root) if root is not None else get_temp_dir() / "artifacts"
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_age_hours = max_age_hours
        self._holders: Dict[Path, Set[int]] = {}
        self._lock = threading.Lock()

    def path_for(self, name: str, ext: Optional[str] = None) -> Path:
        stem = sanitize_name(name)
        suffix = f".{sanitize_name(ext)}" if ext else ""
        return self.root / f"{stem}{suffix}"

    def get(self, name: str, ext: Optional[str], request_id: int) -> Optional[Path]:
        """Return an existing artifact and take a reference on it."""
        path = self.path_for(name, ext)
        with self._lock:
            if path.exists():
                self._holders.setdefault(path, set()).add(request_id)
                return path
        return None

    def write(self, name: str, ext: Optional[str], data: bytes, request_id: int) -> Path:
        path = self.path_for(name, ext)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.part")
        with open(tmp, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
        with self._lock:
            self._holders.setdefault(path, set()).add(request_id)
        logger.debug("Wrote temp artifact %s (%d bytes) for request %d", path.name, len(data), request_id)
        return path

    def adopt(self, path: Path, request_id: int) -> Path:
        """Take a reference on a file written by another component."""
        with self._lock:
            self._holders.setdefault(Path(path), set()).add(request_id)
        return Path(path)

    def refcount(self, path: Path) -> int:
        with self._lock:
            return len(self._holders.get(Path(path), ()))

    def release(self, request_id: int) -> int:
        """Drop ``request_id``'s references; returns the number of files deleted."""
        doomed = []
        with self._lock:
            for path, holders in list(self._holders.items()):
                holders.discard(request_id)
                if not holders:
                    doomed.append(path)
                    del self._holders[path]
        removed = 0
        for path in doomed:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Could not remove temp artifact %s: %s", path, exc)
        return removed

    def cleanup_stale(self) -> int:
        """Delete unreferenced files older than ``max_age_hours``."""
        cutoff = time.time() - self.max_age_hours * 3600
        removed = 0
        with self._lock:
            held = set(self._holders)
        for path in self.root.iterdir():
            if path in held or not path.is_file():
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.debug("Skipping stale cleanup of %s: %s", path, exc)
        return removed

    def stats(self) -> Dict[str, object]:
        files = [p for p in self.root.iterdir() if p.is_file()]
        with self._lock:
            held = len(self._holders)
        return {
            "root": str(self.root),
            "files": len(files),
            "held": held,
            "size_bytes": sum(p.stat().st_size for p in files),
        }
