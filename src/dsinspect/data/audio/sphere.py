"""NIST SPHERE header parsing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from ...errors import MalformedFormat

SPHERE_MAGIC = b"NIST_1A"

HeaderValue = Union[int, float, str]


@dataclass
class SphereHeader:
    header_bytes: int
    channel_count: int
    sample_rate: int
    sample_n_bytes: int
    sample_byte_format: Optional[str] = None
    sample_coding: str = "pcm"
    sample_count: Optional[int] = None
    fields: Dict[str, HeaderValue] = field(default_factory=dict)

    @property
    def base_coding(self) -> str:
        """``pcm``, ``ulaw`` or ``alaw`` with any shorten suffix removed."""
        base = self.sample_coding.split(",", 1)[0].strip().lower()
        if base in ("mu-law", "mulaw", "u-law"):
            return "ulaw"
        if base in ("a-law",):
            return "alaw"
        return base

    @property
    def is_shorten(self) -> bool:
        return "shorten" in self.sample_coding.lower()

    @property
    def big_endian(self) -> bool:
        return self.sample_byte_format == "10"


def is_sphere(data: bytes) -> bool:
    return data[: len(SPHERE_MAGIC)] == SPHERE_MAGIC


def _parse_value(kind: str, raw: str) -> HeaderValue:
    if kind == "-i":
        return int(raw)
    if kind == "-r":
        return float(raw)
    if kind.startswith("-s"):
        length = kind[2:]
        if length.isdigit():
            return raw[: int(length)]
        return raw
    raise ValueError(kind)


def parse_sphere_header(data: bytes) -> SphereHeader:
    """Parse the ASCII header that precedes SPHERE sample data.

    Layout: ``NIST_1A`` line, header length line, then ``name -type value``
    lines terminated by ``end_head``.
    """
    if not is_sphere(data):
        raise MalformedFormat("Missing NIST_1A signature")
    try:
        header_bytes = int(data[8:16].decode("ascii").strip())
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedFormat("Unreadable SPHERE header length", context={"offset": 8}) from exc
    if header_bytes < 16 or header_bytes > len(data):
        raise MalformedFormat(
            "SPHERE header length out of range",
            context={"header_bytes": header_bytes, "available": len(data)},
        )

    text = data[16:header_bytes].decode("latin-1")
    fields: Dict[str, HeaderValue] = {}
    terminated = False
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if line == "end_head":
            terminated = True
            break
        if line.startswith(";"):
            continue
        parts = line.split(None, 2)
        if len(parts) < 3:
            continue
        name, kind, raw = parts
        try:
            fields[name] = _parse_value(kind, raw)
        except ValueError as exc:
            raise MalformedFormat(
                "Bad SPHERE header field", context={"field": name, "type": kind}
            ) from exc
    if not terminated:
        raise MalformedFormat("SPHERE header missing end_head")

    def _int(name: str, default: Optional[int]) -> Optional[int]:
        value = fields.get(name, default)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise MalformedFormat("Non-numeric SPHERE field", context={"field": name}) from exc

    sample_rate = _int("sample_rate", None)
    if not sample_rate:
        raise MalformedFormat("SPHERE header has no sample_rate")
    n_bytes = _int("sample_n_bytes", 2) or 2
    byte_format = fields.get("sample_byte_format")
    if byte_format is None and n_bytes == 2:
        byte_format = "01"

    return SphereHeader(
        header_bytes=header_bytes,
        channel_count=_int("channel_count", 1) or 1,
        sample_rate=sample_rate,
        sample_n_bytes=n_bytes,
        sample_byte_format=str(byte_format) if byte_format is not None else None,
        sample_coding=str(fields.get("sample_coding", "pcm")),
        sample_count=_int("sample_count", None),
        fields=fields,
    )
