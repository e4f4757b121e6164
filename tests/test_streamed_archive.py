"""
Tests for tar header scanning and WebDataset-style sample grouping.
"""

import io
import shutil
import tarfile
import tempfile
from pathlib import Path

import pytest

from dataset_builders import sample_members, tar_bytes


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    if temp_dir.exists():
        shutil.rmtree(temp_dir)


def _reader(data: bytes):
    def read_at(offset, length):
        return data[offset: offset + length]

    return read_at


def _engine(temp_dir, **overrides):
    from dsinspect.data.chunk_cache import ChunkCache
    from dsinspect.data.engine import Engine
    from dsinspect.data.settings import EngineConfig
    from dsinspect.data.temp_files import TempFileStore

    return Engine(
        EngineConfig(**overrides),
        chunk_cache=ChunkCache(cache_dir=temp_dir / "cache"),
        temp_store=TempFileStore(temp_dir / "tmp"),
    )


def test_split_sample_key():
    """Keys stop at the first dot of the last path component."""
    from dsinspect.data.adapters.streamed import split_sample_key

    assert split_sample_key("000001.jpg") == ("000001", "jpg")
    assert split_sample_key("train/abc.seg.PNG") == ("train/abc", "seg.png")
    assert split_sample_key("dir.v2/abc.txt") == ("dir.v2/abc", "txt")
    assert split_sample_key("README") == ("README", "bin")
    assert split_sample_key(".hidden") == (".hidden", "bin")
    assert split_sample_key("./000002.jpg") == ("000002", "jpg")
    assert split_sample_key("././train/b.json") == ("train/b", "json")
    assert split_sample_key("/abs/x.txt") == ("abs/x", "txt")
    assert split_sample_key("win\\dir\\c.cls") == ("win/dir/c", "cls")


def test_dot_slash_members_share_keys():
    """Shards packed from ``.`` group members under their bare keys."""
    from dsinspect.data.adapters.streamed import group_samples

    data = tar_bytes(sample_members(2, prefix="./") + [("000001.txt", b"late")])
    items, _, total, _ = group_samples(_reader(data), "s", start=None, offset=0, length=10, compute_total=True)

    assert total == 2
    assert [i.key for i in items] == ["000000", "000001"]
    assert [f.name for f in items[1].fields] == ["cls", "jpg", "json", "txt"]


def test_long_names_are_folded():
    """GNU long-name and PAX path records describe the member that follows them."""
    from dsinspect.data.tar_headers import iter_members

    long_name = "deep/" * 30 + "sample.txt"
    for fmt in (tarfile.GNU_FORMAT, tarfile.PAX_FORMAT):
        data = tar_bytes([(long_name, b"hello"), ("short.txt", b"world!")], fmt=fmt)
        members = list(iter_members(_reader(data)))

        assert [m.name for m in members] == [long_name, "short.txt"]
        assert data[members[0].data_offset: members[0].data_offset + 5] == b"hello"
        assert members[1].header_offset == members[0].next_offset


def test_corrupt_header_checksum():
    """A damaged header fails with its offset."""
    from dsinspect.data.tar_headers import iter_members
    from dsinspect.errors import MalformedFormat

    data = bytearray(tar_bytes([("a.txt", b"x"), ("b.txt", b"y")]))
    data[512 * 2] ^= 0xFF  # first byte of the second header's name

    with pytest.raises(MalformedFormat) as excinfo:
        list(iter_members(_reader(bytes(data))))
    assert excinfo.value.context["offset"] == 1024


def test_grouping_is_deterministic():
    """Fields of a sample are ordered by name whatever the member order."""
    from dsinspect.data.adapters.streamed import group_samples

    data = tar_bytes([("k1.txt", b"t"), ("k1.cls", b"1"), ("k1.jpg", b"\xff\xd8\xff"), ("k2.cls", b"2")])
    items, cursor, total, known = group_samples(
        _reader(data), "shard", start=None, offset=0, length=10, compute_total=True
    )

    assert total == 2 and known == 2
    assert cursor is None
    assert [f.name for f in items[0].fields] == ["cls", "jpg", "txt"]
    assert [f.index for f in items[0].fields] == [0, 1, 2]
    assert items[0].key == "k1"
    assert items[0].total_bytes == 5


def test_cursor_resume_matches_full_scan():
    """Scanning page by page from cursors yields exactly the full-scan samples."""
    from dsinspect.data.adapters.streamed import group_samples

    data = tar_bytes(sample_members(9))
    full, _, total, _ = group_samples(_reader(data), "s", start=None, offset=0, length=100, compute_total=True)
    assert total == 9

    paged = []
    cursor = None
    for offset in range(0, 9, 4):
        items, cursor, page_total, known = group_samples(
            _reader(data), "s", start=cursor, offset=offset, length=4
        )
        paged.extend(items)
        if offset + 4 < 9:
            assert page_total is None
            assert cursor.index == offset + 4
            assert known >= offset + 4
        else:
            assert page_total == 9

    assert [(i.index, i.key, [(f.name, f.size, f.offset) for f in i.fields]) for i in paged] == [
        (i.index, i.key, [(f.name, f.size, f.offset) for f in i.fields]) for i in full
    ]


def test_cursor_token_round_trip():
    """Cursors serialise to an opaque token and back."""
    from dsinspect.data.adapters.streamed import group_samples
    from dsinspect.data.models import ScanCursor

    data = tar_bytes(sample_members(3))
    _, cursor, _, _ = group_samples(_reader(data), "s", start=None, offset=0, length=1)

    assert ScanCursor.from_token(cursor.to_token()) == cursor


def test_paged_listing_through_engine(temp_dir):
    """Pages are idempotent, resumable, and the total appears after a full scan."""
    import asyncio

    shard = temp_dir / "wds" / "shard-000000.tar"
    shard.parent.mkdir()
    shard.write_bytes(tar_bytes(sample_members(7)))

    async def run():
        engine = _engine(temp_dir)
        try:
            source = (await engine.load(str(shard.parent))).value
            first = (await engine.list_items_page(source, 0, 0, 3)).value
            again = (await engine.list_items_page(source, 0, 0, 3)).value
            middle = (await engine.list_items_page(source, 0, 3, 3)).value
            last = (await engine.list_items_page(source, 0, 6, 3)).value
            past = (await engine.list_items_page(source, 0, 9, 3)).value
            peek = (await engine.peek_field(source, "shard-000000.tar", 4, "json")).value
            return first, again, middle, last, past, peek
        finally:
            await engine.close()

    first, again, middle, last, past, peek = asyncio.run(run())

    assert [i.key for i in first.items] == ["000000", "000001", "000002"]
    assert first.partial and first.known_count >= 3
    assert [i.key for i in again.items] == [i.key for i in first.items]
    assert [i.index for i in middle.items] == [3, 4, 5]
    assert [i.index for i in last.items] == [6]
    assert last.total == 7
    assert past.items == [] and past.total == 7
    assert peek.text == '{"id": 4}'
    assert peek.guessed_ext == "json"


def test_compute_total_scans_to_end(temp_dir):
    """Asking for the total finishes the scan even for an early page."""
    import asyncio

    shard = temp_dir / "one.tar"
    shard.write_bytes(tar_bytes(sample_members(5)))

    async def run():
        engine = _engine(temp_dir)
        try:
            source = (await engine.load(str(shard))).value
            page = (await engine.list_items_page(source, 0, 0, 2, compute_total=True)).value
            shards = (await engine.load_manifest(source)).value
            return page, shards
        finally:
            await engine.close()

    page, shards = asyncio.run(run())
    assert len(page.items) == 2
    assert page.total == 5
    assert shards[0].item_count == 5


def test_compressed_shard(temp_dir):
    """Gzip-compressed shards are scanned through a forward-only stream."""
    import asyncio

    root = temp_dir / "gz"
    root.mkdir()
    (root / "part-0.tar.gz").write_bytes(tar_bytes(sample_members(4), mode="w:gz"))

    async def run():
        engine = _engine(temp_dir)
        try:
            source = (await engine.load(str(root))).value
            shards = (await engine.load_manifest(source)).value
            page = (await engine.list_items_page(source, 0, 1, 2)).value
            image = (await engine.peek_field(source, 0, 2, "jpg")).value
            label = (await engine.peek_field(source, 0, 2, "cls")).value
            return shards, page, image, label
        finally:
            await engine.close()

    shards, page, image, label = asyncio.run(run())
    assert shards[0].compression == "gzip"
    assert [i.key for i in page.items] == ["000001", "000002"]
    assert image.guessed_ext == "jpg"
    assert image.size == 16
    assert label.text == "2"


def test_forward_reader_reopens_on_backward_seek():
    """Reading behind the stream position restarts it."""
    from dsinspect.data.tar_headers import ForwardReader

    payload = bytes(range(256)) * 4
    reader = ForwardReader(lambda: io.BytesIO(payload), chunk=64)

    assert reader.read_at(100, 4) == payload[100:104]
    assert reader.read_at(500, 2) == payload[500:502]
    assert reader.reopens == 1
    assert reader.read_at(10, 3) == payload[10:13]
    assert reader.reopens == 2
    assert reader.read_at(5000, 3) == b""
    reader.close()


def test_concurrent_pages_and_peeks(temp_dir):
    """Pages and peeks on several shards can run in worker threads at once."""
    import asyncio

    root = temp_dir / "wds"
    root.mkdir()
    for n in range(3):
        (root / f"shard-{n:06d}.tar").write_bytes(tar_bytes(sample_members(6, prefix=f"s{n}-")))

    async def run():
        engine = _engine(temp_dir)
        try:
            source = (await engine.load(str(root))).value
            await engine.load_manifest(source)
            pages = [engine.list_items_page(source, n, offset, 2) for n in range(3) for offset in (0, 2, 4)]
            peeks = [engine.peek_field(source, n, i, "json") for n in range(3) for i in range(6)]
            results = await asyncio.gather(*pages, *peeks)
            return results[:9], results[9:]
        finally:
            await engine.close()

    pages, peeks = asyncio.run(run())
    assert [[i.key for i in page.value.items] for page in pages[:3]] == [
        ["s0-000000", "s0-000001"],
        ["s0-000002", "s0-000003"],
        ["s0-000004", "s0-000005"],
    ]
    assert [p.value.text for p in peeks] == [f'{{"id": {i}}}' for _ in range(3) for i in range(6)]
