"""Engine settings built from the ``engine:`` section of the YAML config."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from .fetcher import DEFAULT_USER_AGENT

# EOCD (22 bytes) plus the largest possible ZIP comment
ZIP_TAIL_BYTES = 22 + 0xFFFF


@dataclass
class EngineConfig:
    preview_bytes: int = 16 * 1024
    preview_text_chars: int = 8 * 1024
    hex_bytes: int = 48
    binary_ratio: float = 0.10
    max_listed_items: int = 5000
    default_page_size: int = 200
    max_page_size: int = 5000
    max_open_bytes: int = 256 * 1024 * 1024
    http_timeout: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    zip_tail_bytes: int = ZIP_TAIL_BYTES
    tar_scan_window: int = 64 * 1024
    tar_page_size: int = 25
    tar_max_page_size: int = 200
    tar_max_entries: int = 250_000
    catalog_base_url: str = "https://datasets-server.huggingface.co/"
    catalog_default_rows: int = 25
    catalog_max_rows: int = 100
    record_peek_bytes: int = 64 * 1024
    max_inline_download: int = 50 * 1024 * 1024

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        if not data:
            return cls()
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known or value is None:
                continue
            default = getattr(cls, key)
            kwargs[key] = type(default)(value)
        return cls(**kwargs)

    def clamp_page(self, length: Optional[int]) -> int:
        if length is None or length <= 0:
            return self.default_page_size
        return min(length, self.max_page_size)
