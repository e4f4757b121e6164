"""ZIP and TAR archives read over HTTP range requests.

ZIP: one suffix-range read of the tail locates the end-of-central-directory
record (ZIP64 aware); a second read fetches the central directory, unless it
already sits inside the tail. An entry is opened by reading its local header
and then exactly ``compressed_size`` bytes, inflated when the method is
deflate.

TAR: there is no index, so 512-byte headers are scanned forward through a
read-ahead window; payloads are skipped, never downloaded. Each entry's data
offset is recorded so it can be opened with one ranged read.
"""

from __future__ import annotations

import logging
import struct
import zlib
from typing import List, Optional, Tuple

from ...errors import MalformedFormat, UnsupportedFeature
from ..fetcher import ByteRangeFetcher
from ..models import ArchiveEntry, ScanCursor
from ..tar_headers import iter_members

logger = logging.getLogger(__name__)

EOCD_SIG = b"PK\x05\x06"
EOCD_SIZE = 22
ZIP64_LOCATOR_SIG = 0x07064B50
ZIP64_LOCATOR_SIZE = 20
ZIP64_EOCD_SIG = 0x06064B50
ZIP64_EOCD_SIZE = 56
CENTRAL_SIG = 0x02014B50
CENTRAL_SIZE = 46
LOCAL_SIG = 0x04034B50
LOCAL_SIZE = 30
ZIP64_EXTRA_ID = 0x0001

METHOD_NAMES = {
    0: "stored",
    8: "deflate",
    9: "deflate64",
    12: "bzip2",
    14: "lzma",
    93: "zstd",
    95: "xz",
    99: "aes",
}
_SUPPORTED_METHODS = ("stored", "deflate")


def find_eocd(tail: bytes) -> int:
    """Offset of the EOCD record in ``tail`` or -1.

    The signature may occur inside the archive comment or compressed data, so
    a candidate only counts when its comment length reaches exactly to the end.
    """
    pos = tail.rfind(EOCD_SIG)
    while pos >= 0:
        if pos + EOCD_SIZE <= len(tail):
            (comment_len,) = struct.unpack_from("<H", tail, pos + 20)
            if pos + EOCD_SIZE + comment_len == len(tail):
                return pos
        pos = tail.rfind(EOCD_SIG, 0, pos)
    return -1


def _zip64_extra(extra: bytes, usize: int, csize: int, offset: int) -> Tuple[int, int, int]:
    pos = 0
    while pos + 4 <= len(extra):
        header_id, size = struct.unpack_from("<HH", extra, pos)
        body = extra[pos + 4: pos + 4 + size]
        if header_id == ZIP64_EXTRA_ID:
            cursor = 0
            if usize == 0xFFFFFFFF and cursor + 8 <= len(body):
                (usize,) = struct.unpack_from("<Q", body, cursor)
                cursor += 8
            if csize == 0xFFFFFFFF and cursor + 8 <= len(body):
                (csize,) = struct.unpack_from("<Q", body, cursor)
                cursor += 8
            if offset == 0xFFFFFFFF and cursor + 8 <= len(body):
                (offset,) = struct.unpack_from("<Q", body, cursor)
            break
        pos += 4 + size
    return usize, csize, offset


def parse_central_directory(data: bytes, expected: Optional[int] = None, base_offset: int = 0) -> List[ArchiveEntry]:
    entries: List[ArchiveEntry] = []
    pos = 0
    while pos + CENTRAL_SIZE <= len(data):
        (
            sig, _made_by, _needed, flags, method, _time, _date,
            crc, csize, usize, name_len, extra_len, comment_len,
            _disk, _iattr, _eattr, local_offset,
        ) = struct.unpack_from("<IHHHHHHIIIHHHHHII", data, pos)
        if sig != CENTRAL_SIG:
            break
        end = pos + CENTRAL_SIZE + name_len + extra_len + comment_len
        if end > len(data):
            raise MalformedFormat(
                "Central directory entry runs past directory end",
                context={"offset": base_offset + pos, "entry": len(entries)},
            )
        raw_name = data[pos + CENTRAL_SIZE: pos + CENTRAL_SIZE + name_len]
        extra = data[pos + CENTRAL_SIZE + name_len: pos + CENTRAL_SIZE + name_len + extra_len]
        name = raw_name.decode("utf-8" if flags & 0x800 else "cp437", errors="replace")
        if 0xFFFFFFFF in (usize, csize, local_offset):
            usize, csize, local_offset = _zip64_extra(extra, usize, csize, local_offset)
        entries.append(
            ArchiveEntry(
                name=name,
                compressed_size=csize,
                uncompressed_size=usize,
                method=METHOD_NAMES.get(method, f"method-{method}"),
                is_dir=name.endswith("/"),
                offset=local_offset,
                encrypted=bool(flags & 0x1),
                crc32=crc,
            )
        )
        pos = end
    if expected is not None and len(entries) != expected:
        raise MalformedFormat(
            "Central directory entry count mismatch",
            context={"expected": expected, "parsed": len(entries), "offset": base_offset + pos},
        )
    return entries


class RemoteZip:
    def __init__(self, fetcher: ByteRangeFetcher, url: str, tail_bytes: int) -> None:
        self.fetcher = fetcher
        self.url = url
        self.tail_bytes = tail_bytes
        self._entries: Optional[List[ArchiveEntry]] = None

    def entries(self) -> List[ArchiveEntry]:
        if self._entries is None:
            self._entries = self._read_directory()
            logger.info("Read ZIP central directory of %s: %d entries", self.url, len(self._entries))
        return self._entries

    def _read_directory(self) -> List[ArchiveEntry]:
        tail_start, tail = self.fetcher.read_tail(self.url, self.tail_bytes)
        eocd = find_eocd(tail)
        if eocd < 0:
            raise MalformedFormat("End of central directory not found", context={"url": self.url})
        total_entries, cd_size, cd_offset = struct.unpack_from("<HII", tail, eocd + 10)

        if total_entries == 0xFFFF or cd_size == 0xFFFFFFFF or cd_offset == 0xFFFFFFFF:
            total_entries, cd_size, cd_offset = self._zip64_record(tail_start, tail, eocd)

        if cd_offset >= tail_start and cd_offset + cd_size <= tail_start + len(tail):
            rel = cd_offset - tail_start
            directory = tail[rel: rel + cd_size]
        else:
            directory = self.fetcher.read_exact(self.url, cd_offset, cd_size, what="central directory")
        return parse_central_directory(directory, expected=total_entries, base_offset=cd_offset)

    def _zip64_record(self, tail_start: int, tail: bytes, eocd: int) -> Tuple[int, int, int]:
        loc = eocd - ZIP64_LOCATOR_SIZE
        if loc < 0:
            raise MalformedFormat("ZIP64 locator outside the tail window", context={"url": self.url})
        sig, _disk, record_offset, _disks = struct.unpack_from("<IIQI", tail, loc)
        if sig != ZIP64_LOCATOR_SIG:
            raise MalformedFormat("ZIP64 locator signature mismatch", context={"offset": tail_start + loc})
        rel = record_offset - tail_start
        if 0 <= rel and rel + ZIP64_EOCD_SIZE <= len(tail):
            record = tail[rel: rel + ZIP64_EOCD_SIZE]
        else:
            record = self.fetcher.read_exact(self.url, record_offset, ZIP64_EOCD_SIZE, what="ZIP64 record")
        (sig,) = struct.unpack_from("<I", record, 0)
        if sig != ZIP64_EOCD_SIG:
            raise MalformedFormat("ZIP64 record signature mismatch", context={"offset": record_offset})
        total_entries, cd_size, cd_offset = struct.unpack_from("<QQQ", record, 32)
        return total_entries, cd_size, cd_offset

    def _data_offset(self, entry: ArchiveEntry) -> int:
        header = self.fetcher.read_exact(self.url, entry.offset, LOCAL_SIZE, what="local file header")
        sig, = struct.unpack_from("<I", header, 0)
        if sig != LOCAL_SIG:
            raise MalformedFormat(
                "Local file header signature mismatch", context={"entry": entry.name, "offset": entry.offset}
            )
        name_len, extra_len = struct.unpack_from("<HH", header, 26)
        return entry.offset + LOCAL_SIZE + name_len + extra_len

    def read_entry(self, entry: ArchiveEntry, limit: Optional[int] = None) -> bytes:
        if entry.encrypted:
            raise UnsupportedFeature("Encrypted ZIP entry", context={"entry": entry.name})
        if entry.method not in _SUPPORTED_METHODS:
            raise UnsupportedFeature(
                "Unsupported ZIP compression method", context={"entry": entry.name, "method": entry.method}
            )
        data_offset = self._data_offset(entry)

        if limit is not None and limit < entry.uncompressed_size:
            if entry.method == "stored":
                return self.fetcher.read_exact(self.url, data_offset, limit, what="entry data")
            # a deflate prefix inflates to at least the bytes it encodes
            want = min(entry.compressed_size, limit + 1024)
            comp = self.fetcher.read_exact(self.url, data_offset, want, what="entry data")
            try:
                return zlib.decompressobj(-15).decompress(comp, limit)
            except zlib.error as exc:
                raise MalformedFormat("Corrupt deflate stream", context={"entry": entry.name}) from exc

        comp = self.fetcher.read_exact(self.url, data_offset, entry.compressed_size, what="entry data")
        if entry.method == "stored":
            out = comp
        else:
            try:
                inflater = zlib.decompressobj(-15)
                out = inflater.decompress(comp) + inflater.flush()
            except zlib.error as exc:
                raise MalformedFormat("Corrupt deflate stream", context={"entry": entry.name}) from exc
        if len(out) != entry.uncompressed_size:
            raise MalformedFormat(
                "Entry size mismatch after decompression",
                context={"entry": entry.name, "expected": entry.uncompressed_size, "got": len(out)},
            )
        if entry.crc32 is not None and zlib.crc32(out) & 0xFFFFFFFF != entry.crc32:
            raise MalformedFormat("Entry CRC mismatch", context={"entry": entry.name})
        return out


class _WindowReader:
    """``read_at`` over ranged GETs with a forward read-ahead window."""

    def __init__(self, fetcher: ByteRangeFetcher, url: str, window: int) -> None:
        self.fetcher = fetcher
        self.url = url
        self.window = window
        self._start = 0
        self._buf = b""

    def read_at(self, offset: int, length: int) -> bytes:
        rel = offset - self._start
        if 0 <= rel and rel + length <= len(self._buf):
            return self._buf[rel: rel + length]
        self._start = offset
        self._buf = self.fetcher.read(self.url, offset, max(length, self.window))
        return self._buf[:length]


class RemoteTar:
    def __init__(self, fetcher: ByteRangeFetcher, url: str, window: int, max_entries: int) -> None:
        self.fetcher = fetcher
        self.url = url
        self.window = window
        self.max_entries = max_entries

    def scan(
        self,
        shard_id: str,
        *,
        start: Optional[ScanCursor],
        offset: int,
        length: int,
        on_cursor=None,
    ) -> Tuple[List[ArchiveEntry], Optional[ScanCursor], Optional[int], int]:
        """Entries ``[offset, offset + length)``; same return shape as sample grouping."""
        end = offset + length
        index = start.index if start else 0
        position = start.position if start else 0
        reader = _WindowReader(self.fetcher, self.url, self.window)
        found: List[ArchiveEntry] = []
        cursor: Optional[ScanCursor] = None
        for member in iter_members(reader.read_at, position):
            if member.is_dir:
                continue
            if index >= self.max_entries:
                raise UnsupportedFeature(
                    "TAR archive exceeds the entry scan limit", context={"limit": self.max_entries}
                )
            if offset <= index:
                found.append(
                    ArchiveEntry(
                        name=member.name,
                        compressed_size=member.size,
                        uncompressed_size=member.size,
                        method="stored",
                        is_dir=False,
                        offset=member.header_offset,
                        data_offset=member.data_offset,
                    )
                )
            index += 1
            snapshot = ScanCursor(shard=shard_id, position=member.next_offset, index=index)
            if on_cursor is not None and index in (offset, end):
                on_cursor(snapshot)
            if index == end:
                cursor = snapshot
                return found, cursor, None, index
        return found, None, index, index

    def read_entry(self, entry: ArchiveEntry, limit: Optional[int] = None) -> bytes:
        size = entry.uncompressed_size if limit is None else min(limit, entry.uncompressed_size)
        offset = entry.data_offset if entry.data_offset is not None else entry.offset + 512
        return self.fetcher.read_exact(self.url, offset, size, what="tar entry")
