"""
Tests for ranged HTTP reads and ZIP/TAR archives browsed over them.
"""

import shutil
import tempfile
import zipfile
import zlib
from pathlib import Path

import httpx
import pytest

from dataset_builders import RangeServer, sample_members, tar_bytes, zip_bytes

HOST = "https://files.example.org"

TEXT = b"The quick brown fox jumps over the lazy dog.\n" * 200


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    if temp_dir.exists():
        shutil.rmtree(temp_dir)


def _fetcher(server):
    from dsinspect.data.fetcher import ByteRangeFetcher

    return ByteRangeFetcher(transport=server.transport())


def test_ranged_read_and_size():
    """Reads send a single byte range and learn the size from Content-Range."""
    server = RangeServer()
    server.files["/blob.bin"] = bytes(range(256)) * 10
    fetcher = _fetcher(server)

    assert fetcher.read(f"{HOST}/blob.bin", 10, 5) == bytes(range(10, 15))
    assert server.ranged("/blob.bin") == ["bytes=10-14"]
    assert fetcher.size(f"{HOST}/blob.bin") == 2560
    assert fetcher.remote_reads == 1
    assert fetcher.supports_range(f"{HOST}/blob.bin")


def test_tail_and_past_end_reads():
    """Suffix ranges return the tail; ranges past the end return nothing."""
    server = RangeServer()
    server.files["/blob.bin"] = b"0123456789"
    fetcher = _fetcher(server)

    start, data = fetcher.read_tail(f"{HOST}/blob.bin", 4)
    assert (start, data) == (6, b"6789")
    assert server.ranged("/blob.bin") == ["bytes=-4"]
    assert fetcher.read(f"{HOST}/blob.bin", 50, 10) == b""


def test_server_ignoring_ranges_fails_fast():
    """A 200 answer to a ranged request raises instead of downloading the body."""
    from dsinspect.errors import RangeUnsupported

    server = RangeServer(honor_ranges=False)
    server.files["/big.zip"] = b"x" * 4096
    fetcher = _fetcher(server)

    with pytest.raises(RangeUnsupported):
        fetcher.read(f"{HOST}/big.zip", 0, 10)
    assert not fetcher.supports_range(f"{HOST}/big.zip")


def test_archives_fail_fast_without_ranges():
    """ZIP directories and TAR scans stop after the first unranged answer."""
    from dsinspect.data.adapters.remote_archive import RemoteTar, RemoteZip
    from dsinspect.errors import RangeUnsupported

    server = RangeServer(honor_ranges=False)
    server.files["/data.zip"] = zip_bytes([("a.txt", b"alpha", zipfile.ZIP_STORED)])
    server.files["/samples.tar"] = tar_bytes(sample_members(3))

    fetcher = _fetcher(server)
    with pytest.raises(RangeUnsupported):
        RemoteZip(fetcher, f"{HOST}/data.zip", 1024).entries()
    assert fetcher.remote_reads == 1

    fetcher = _fetcher(server)
    with pytest.raises(RangeUnsupported):
        RemoteTar(fetcher, f"{HOST}/samples.tar", 4096, 100).scan("s", start=None, offset=0, length=5)
    assert fetcher.remote_reads == 1
    assert len(server.requests) == 2


def test_single_file_record_fails_fast_without_ranges(temp_dir):
    """Sizing a plain file URL needs ranges; one request is enough to tell."""
    from dsinspect.data.adapters.base import AdapterContext
    from dsinspect.data.audio.pipeline import AudioPipeline
    from dsinspect.data.chunk_cache import ChunkCache
    from dsinspect.data.router import create_adapter, detect_source
    from dsinspect.data.scan_cache import ScanCursorCache
    from dsinspect.data.settings import EngineConfig
    from dsinspect.data.temp_files import TempFileStore
    from dsinspect.errors import RangeUnsupported

    server = RangeServer(honor_ranges=False)
    server.files["/take.flac"] = b"fLaC" + b"\x00" * 4096
    fetcher = _fetcher(server)
    store = TempFileStore(temp_dir / "tmp")
    ctx = AdapterContext(
        config=EngineConfig(),
        fetcher=fetcher,
        chunk_cache=ChunkCache(cache_dir=temp_dir / "cache"),
        scan_cache=ScanCursorCache(),
        temp_store=store,
        audio=AudioPipeline(store),
    )
    adapter = create_adapter(detect_source(f"{HOST}/take.flac"), ctx)

    with pytest.raises(RangeUnsupported):
        adapter.load_manifest()
    assert fetcher.remote_reads == 1
    assert server.requests == [("/take.flac", "bytes=0-0")]


def test_http_errors_are_typed():
    """Missing resources and transport failures map to engine errors."""
    from dsinspect.data.fetcher import ByteRangeFetcher
    from dsinspect.errors import NetworkError, NotFound, RequestTimeout

    fetcher = _fetcher(RangeServer())
    with pytest.raises(NotFound):
        fetcher.read(f"{HOST}/missing", 0, 10)

    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(RequestTimeout):
        ByteRangeFetcher(transport=httpx.MockTransport(timeout)).read(f"{HOST}/x", 0, 1)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NetworkError) as excinfo:
        ByteRangeFetcher(transport=httpx.MockTransport(refused)).read(f"{HOST}/x", 0, 1)
    assert excinfo.value.kind == "transport"


def test_find_eocd_skips_signature_in_comment():
    """Only a record whose comment reaches the end of data is the real EOCD."""
    from dsinspect.data.adapters.remote_archive import find_eocd

    data = zip_bytes([("a.txt", b"abc", zipfile.ZIP_STORED)])
    eocd = data.rfind(b"PK\x05\x06")
    assert find_eocd(data) == eocd

    # a fake record inside the comment whose own comment length does not fit
    fake = b"PK\x05\x06" + b"\x00" * 16 + (5).to_bytes(2, "little")
    comment = fake + b"zz"
    commented = data[:-2] + len(comment).to_bytes(2, "little") + comment
    assert find_eocd(commented) == eocd
    assert find_eocd(b"no zip here") == -1


def test_zip_directory_in_one_read():
    """A small archive's central directory arrives with the tail read."""
    from dsinspect.data.adapters.remote_archive import RemoteZip
    from dsinspect.data.settings import ZIP_TAIL_BYTES

    server = RangeServer()
    server.files["/a.zip"] = zip_bytes(
        [("docs/readme.txt", TEXT, zipfile.ZIP_DEFLATED), ("raw.bin", b"\x00\x01" * 50, zipfile.ZIP_STORED)],
        directories=["docs/"],
    )
    fetcher = _fetcher(server)
    archive = RemoteZip(fetcher, f"{HOST}/a.zip", ZIP_TAIL_BYTES)

    entries = archive.entries()
    assert [e.name for e in entries] == ["docs/", "docs/readme.txt", "raw.bin"]
    assert entries[0].is_dir
    assert entries[1].method == "deflate"
    assert entries[1].uncompressed_size == len(TEXT)
    assert entries[2].method == "stored"
    assert fetcher.remote_reads == 1

    archive.entries()
    assert fetcher.remote_reads == 1


def test_zip_directory_outside_tail():
    """When the tail misses the directory it costs exactly one more read."""
    from dsinspect.data.adapters.remote_archive import RemoteZip

    server = RangeServer()
    server.files["/a.zip"] = zip_bytes([("x.txt", b"x" * 100, zipfile.ZIP_STORED), ("y.txt", b"y", zipfile.ZIP_STORED)])
    fetcher = _fetcher(server)

    entries = RemoteZip(fetcher, f"{HOST}/a.zip", 22).entries()
    assert [e.name for e in entries] == ["x.txt", "y.txt"]
    assert fetcher.remote_reads == 2


def test_zip_entries_are_read_and_verified():
    """Stored and deflated entries come back intact; prefixes inflate partially."""
    from dsinspect.data.adapters.remote_archive import RemoteZip
    from dsinspect.data.settings import ZIP_TAIL_BYTES

    server = RangeServer()
    server.files["/a.zip"] = zip_bytes(
        [("readme.txt", TEXT, zipfile.ZIP_DEFLATED), ("raw.bin", b"\x00\x01" * 50, zipfile.ZIP_STORED)]
    )
    archive = RemoteZip(_fetcher(server), f"{HOST}/a.zip", ZIP_TAIL_BYTES)
    readme, raw = archive.entries()

    assert archive.read_entry(readme) == TEXT
    assert archive.read_entry(raw) == b"\x00\x01" * 50
    assert archive.read_entry(readme, limit=20) == TEXT[:20]
    assert archive.read_entry(raw, limit=3) == b"\x00\x01\x00"


def test_zip_crc_mismatch_is_detected():
    """A corrupted stored payload fails the CRC check."""
    from dsinspect.data.adapters.remote_archive import RemoteZip
    from dsinspect.data.settings import ZIP_TAIL_BYTES
    from dsinspect.errors import MalformedFormat

    data = bytearray(zip_bytes([("a.txt", b"hello world", zipfile.ZIP_STORED)]))
    at = data.find(b"hello world")
    data[at] = ord("j")
    server = RangeServer()
    server.files["/bad.zip"] = bytes(data)

    archive = RemoteZip(_fetcher(server), f"{HOST}/bad.zip", ZIP_TAIL_BYTES)
    (entry,) = archive.entries()
    assert entry.crc32 == zlib.crc32(b"hello world")
    with pytest.raises(MalformedFormat):
        archive.read_entry(entry)


def test_unsupported_zip_method():
    """Methods other than stored and deflate are refused."""
    from dsinspect.data.adapters.remote_archive import RemoteZip
    from dsinspect.data.settings import ZIP_TAIL_BYTES
    from dsinspect.errors import UnsupportedFeature

    server = RangeServer()
    server.files["/bz.zip"] = zip_bytes([("a.txt", TEXT, zipfile.ZIP_BZIP2)])
    archive = RemoteZip(_fetcher(server), f"{HOST}/bz.zip", ZIP_TAIL_BYTES)
    (entry,) = archive.entries()

    assert entry.method == "bzip2"
    with pytest.raises(UnsupportedFeature):
        archive.read_entry(entry)


def test_remote_tar_scan_and_resume():
    """TAR entries are listed by header scanning and resumed from a cursor."""
    from dsinspect.data.adapters.remote_archive import RemoteTar

    members = sample_members(4)
    server = RangeServer()
    server.files["/d.tar"] = tar_bytes(members)
    archive = RemoteTar(_fetcher(server), f"{HOST}/d.tar", window=2048, max_entries=1000)

    first, cursor, total, known = archive.scan("d", start=None, offset=0, length=5)
    assert [e.name for e in first] == [name for name, _ in members[:5]]
    assert total is None and cursor.index == 5 and known == 5

    rest, cursor, total, known = archive.scan("d", start=cursor, offset=5, length=100)
    assert [e.name for e in rest] == [name for name, _ in members[5:]]
    assert cursor is None and total == len(members)

    entry = rest[0]
    assert archive.read_entry(entry) == members[5][1]
    assert archive.read_entry(entry, limit=2) == members[5][1][:2]


def test_remote_tar_entry_limit():
    """Archives with more entries than the scan limit are refused."""
    from dsinspect.data.adapters.remote_archive import RemoteTar
    from dsinspect.errors import UnsupportedFeature

    server = RangeServer()
    server.files["/d.tar"] = tar_bytes(sample_members(3))
    archive = RemoteTar(_fetcher(server), f"{HOST}/d.tar", window=4096, max_entries=4)

    with pytest.raises(UnsupportedFeature):
        archive.scan("d", start=None, offset=0, length=100)
