"""Centralized path resolution helpers for dsinspect.

Standard XDG locations are used unless overridden.

Environment variable overrides:
- DSINSPECT_CACHE_DIR: Override cache path (decompressed shards)
- DSINSPECT_TEMP_DIR: Override temp path (materialized fields, decoded audio)
- DSINSPECT_CONFIG_DIR: Override config path
"""

from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from pathlib import Path

_WINDOWS = os.name == "nt"


def _ensure_dir(path: Path) -> Path:
    """Create directory if it doesn't exist and return path."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        # caller surfaces the permission error on first write
        pass
    return path


def _env_path(var: str) -> Path | None:
    """Get a path from an environment variable."""
    value = os.environ.get(var)
    if not value:
        return None
    return Path(value).expanduser()


def _xdg_base(var: str, fallback: str) -> Path:
    base = _env_path(var)
    if base is not None:
        return base
    if _WINDOWS:
        local = _env_path("LOCALAPPDATA")
        if local is not None:
            return local
    return Path.home() / fallback


@lru_cache(maxsize=1)
def get_config_dir() -> Path:
    override = _env_path("DSINSPECT_CONFIG_DIR")
    if override is not None:
        return _ensure_dir(override)
    return _xdg_base("XDG_CONFIG_HOME", ".config") / "dsinspect"


@lru_cache(maxsize=1)
def get_cache_dir() -> Path:
    override = _env_path("DSINSPECT_CACHE_DIR")
    if override is not None:
        return _ensure_dir(override)
    return _ensure_dir(_xdg_base("XDG_CACHE_HOME", ".cache") / "dsinspect")


@lru_cache(maxsize=1)
def get_temp_dir() -> Path:
    """Root for materialized fields and decoded audio."""
    override = _env_path("DSINSPECT_TEMP_DIR")
    if override is not None:
        return _ensure_dir(override)
    return _ensure_dir(Path(tempfile.gettempdir()) / "dataset-inspector")


def get_user_config_file() -> Path:
    return get_config_dir() / "config.yaml"
