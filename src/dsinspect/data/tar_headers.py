"""512-byte TAR header parsing shared by local and remote archive scans.

Handles ustar prefix/name joining, GNU ``L`` long names and PAX ``x``/``g``
path records. :func:`iter_members` drives a scan over any ``read_at`` callable
so the same loop serves seekable files, forward-only decompression streams and
windowed HTTP range reads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from ..errors import MalformedFormat

logger = logging.getLogger(__name__)

BLOCK_SIZE = 512
MAX_META_BYTES = 1024 * 1024

ReadAt = Callable[[int, int], bytes]


@dataclass
class TarHeader:
    name: str
    size: int
    typeflag: str


@dataclass
class TarMember:
    name: str
    size: int
    header_offset: int
    data_offset: int
    is_dir: bool

    @property
    def next_offset(self) -> int:
        return self.data_offset + padded_size(self.size)


def padded_size(size: int) -> int:
    return (size + BLOCK_SIZE - 1) // BLOCK_SIZE * BLOCK_SIZE


def is_zero_block(block: bytes) -> bool:
    return not block.strip(b"\x00")


def _cstr(raw: bytes) -> str:
    raw = raw.split(b"\x00", 1)[0]
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def parse_number(field: bytes) -> int:
    """Octal numeric field, or GNU base-256 when the high bit is set."""
    if field and field[0] & 0x80:
        value = field[0] & 0x7F
        for b in field[1:]:
            value = (value << 8) | b
        return value
    text = field.split(b"\x00", 1)[0].strip(b" \x00")
    if not text:
        return 0
    return int(text, 8)


def _checksum_ok(block: bytes) -> bool:
    try:
        stored = parse_number(block[148:156])
    except ValueError:
        return False
    unsigned = sum(block[:148]) + 32 * 8 + sum(block[156:])
    return stored == unsigned


def parse_header(block: bytes, offset: int = 0) -> TarHeader:
    if len(block) != BLOCK_SIZE:
        raise MalformedFormat("Truncated tar header", context={"offset": offset})
    if not _checksum_ok(block):
        raise MalformedFormat("Tar header checksum mismatch", context={"offset": offset})
    try:
        size = parse_number(block[124:136])
    except ValueError as exc:
        raise MalformedFormat("Bad tar size field", context={"offset": offset}) from exc
    name = _cstr(block[0:100])
    if block[257:262] == b"ustar":
        prefix = _cstr(block[345:500])
        if prefix:
            name = f"{prefix}/{name}"
    typeflag = chr(block[156]) if block[156] else "0"
    return TarHeader(name=name, size=size, typeflag=typeflag)


def parse_pax(data: bytes) -> Dict[str, str]:
    """Parse ``"<len> key=value\\n"`` PAX records."""
    records: Dict[str, str] = {}
    pos = 0
    while pos < len(data):
        space = data.find(b" ", pos)
        if space < 0:
            break
        try:
            length = int(data[pos:space])
        except ValueError:
            break
        if length <= 0:
            break
        record = data[space + 1: pos + length]
        if record.endswith(b"\n"):
            record = record[:-1]
        key, sep, value = record.partition(b"=")
        if sep:
            records[key.decode("utf-8", "replace")] = value.decode("utf-8", "replace")
        pos += length
    return records


def iter_members(read_at: ReadAt, start: int = 0) -> Iterator[TarMember]:
    """Yield members from header block ``start`` until end of archive.

    Metadata records (GNU long names, PAX headers) are folded into the member
    they describe and never yielded themselves, so a member's ``next_offset``
    is always a safe resume point.
    """
    pos = start
    long_name: Optional[str] = None
    pax_path: Optional[str] = None
    while True:
        block = read_at(pos, BLOCK_SIZE)
        if not block:
            return
        if len(block) < BLOCK_SIZE:
            if is_zero_block(block):
                return
            raise MalformedFormat("Truncated tar header", context={"offset": pos})
        if is_zero_block(block):
            # end-of-archive marker; the second zero block is not required
            return
        header = parse_header(block, pos)
        data_offset = pos + BLOCK_SIZE
        if header.typeflag in ("L", "x", "g"):
            if header.size > MAX_META_BYTES:
                raise MalformedFormat(
                    "Tar metadata record too large", context={"offset": pos, "size": header.size}
                )
            meta = read_at(data_offset, header.size)
            if len(meta) < header.size:
                raise MalformedFormat("Truncated tar metadata record", context={"offset": pos})
            if header.typeflag == "L":
                long_name = _cstr(meta)
            elif header.typeflag == "x":
                pax_path = parse_pax(meta).get("path", pax_path)
            pos = data_offset + padded_size(header.size)
            continue

        name = pax_path or long_name or header.name
        long_name = None
        pax_path = None
        member = TarMember(
            name=name,
            size=header.size if header.typeflag not in ("1", "2", "5") else 0,
            header_offset=pos,
            data_offset=data_offset,
            is_dir=header.typeflag == "5" or name.endswith("/"),
        )
        yield member
        pos = data_offset + padded_size(header.size if header.typeflag not in ("1", "2") else 0)


class ForwardReader:
    """``read_at`` over a forward-only stream factory.

    Reads at or past the current position skip forward; reading behind it
    reopens the stream from the start.
    """

    def __init__(self, opener: Callable[[], "object"], chunk: int = 1 << 16) -> None:
        self._opener = opener
        self._chunk = chunk
        self._stream = None
        self._pos = 0
        self.reopens = 0

    def _reset(self) -> None:
        self.close()
        self._stream = self._opener()
        self._pos = 0
        self.reopens += 1

    def read_at(self, offset: int, length: int) -> bytes:
        if self._stream is None or offset < self._pos:
            self._reset()
        stream = self._stream
        while self._pos < offset:
            skipped = stream.read(min(self._chunk, offset - self._pos))
            if not skipped:
                return b""
            self._pos += len(skipped)
        parts = []
        remaining = length
        while remaining > 0:
            part = stream.read(remaining)
            if not part:
                break
            parts.append(part)
            remaining -= len(part)
        data = b"".join(parts)
        self._pos += len(data)
        return data

    def close(self) -> None:
        if self._stream is not None:
            close = getattr(self._stream, "close", None)
            if close is not None:
                close()
            self._stream = None
