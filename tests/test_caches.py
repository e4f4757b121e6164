"""
Tests for the shared-work primitives: single-flight execution, scan cursor
cache and reference-counted temp files.
"""

import asyncio
import os
import shutil
import tempfile
import time
from pathlib import Path

import pytest


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    if temp_dir.exists():
        shutil.rmtree(temp_dir)


def test_single_flight_shares_one_computation():
    """Concurrent callers with the same key get one computation's result."""
    from dsinspect.data.single_flight import SingleFlight

    flight = SingleFlight()
    started = []

    async def slow(value):
        started.append(value)
        await asyncio.sleep(0.05)
        return value * 2

    async def run():
        same = await asyncio.gather(*(flight.run("k", lambda: slow(21)) for _ in range(5)))
        other = await flight.run("other", lambda: slow(1))
        return same, other

    same, other = asyncio.run(run())

    assert same == [42] * 5
    assert other == 2
    assert flight.computations == 2
    assert started == [21, 1]
    assert not flight.in_flight("k")


def test_single_flight_propagates_errors_to_all_waiters():
    """Every joined caller sees the failure and the key is freed afterwards."""
    from dsinspect.data.single_flight import SingleFlight

    flight = SingleFlight()

    async def boom():
        await asyncio.sleep(0.01)
        raise ValueError("bad shard")

    async def ok():
        return "fine"

    async def run():
        results = await asyncio.gather(*(flight.run("k", boom) for _ in range(3)), return_exceptions=True)
        retry = await flight.run("k", ok)
        return results, retry

    results, retry = asyncio.run(run())

    assert all(isinstance(r, ValueError) for r in results)
    assert retry == "fine"
    assert flight.computations == 2


def test_scan_cache_nearest_cursor():
    """The latest cursor at or before an index is returned."""
    from dsinspect.data.models import ScanCursor
    from dsinspect.data.scan_cache import ScanCursorCache

    cache = ScanCursorCache()
    for index, position in ((4, 4096), (8, 8192), (12, 12288)):
        cache.put("src", ScanCursor(shard="a.tar", position=position, index=index))

    assert cache.nearest("src", "a.tar", 3) is None
    assert cache.nearest("src", "a.tar", 4).position == 4096
    assert cache.nearest("src", "a.tar", 11).index == 8
    assert cache.nearest("src", "a.tar", 100).index == 12
    assert cache.nearest("src", "b.tar", 100) is None
    assert len(cache) == 3


def test_scan_cache_bounds_and_invalidation():
    """Per-shard cursors keep the earliest ones; sources invalidate as a unit."""
    from dsinspect.data.models import ScanCursor
    from dsinspect.data.scan_cache import ScanCursorCache

    cache = ScanCursorCache(max_shards=2, max_cursors_per_shard=2)
    for index in (1, 2, 3):
        cache.put("src", ScanCursor(shard="a.tar", position=index * 512, index=index))
    assert cache.nearest("src", "a.tar", 3).index == 2

    cache.set_total("src", "a.tar", 9)
    cache.put("src", ScanCursor(shard="b.tar", position=0, index=1))
    cache.put("other", ScanCursor(shard="c.tar", position=0, index=1))
    # a.tar was least recently used and is evicted
    assert cache.get_total("src", "a.tar") is None

    cache.set_total("src", "b.tar", 4)
    assert cache.get_total("src", "b.tar") == 4
    assert cache.invalidate_source("src") == 1
    assert cache.nearest("src", "b.tar", 5) is None
    assert cache.nearest("other", "c.tar", 5) is not None


def test_temp_files_are_shared_between_requests(temp_dir):
    """A file stays on disk until every request holding it is released."""
    from dsinspect.data.temp_files import TempFileStore

    store = TempFileStore(temp_dir)
    path = store.write("shard-0 item:1", "png", b"\x89PNG", request_id=1)

    assert path.parent == temp_dir
    assert ":" not in path.name and path.suffix == ".png"
    assert store.get("shard-0 item:1", "png", request_id=2) == path
    assert store.get("never-written", "png", request_id=2) is None
    assert store.refcount(path) == 2

    assert store.release(1) == 0
    assert path.exists()
    assert store.release(2) == 1
    assert not path.exists()
    assert store.refcount(path) == 0


def test_temp_files_stale_cleanup_and_stats(temp_dir):
    """Old unreferenced files are removed; held files are never touched."""
    from dsinspect.data.temp_files import TempFileStore

    store = TempFileStore(temp_dir, max_age_hours=1)
    held = store.write("held", "bin", b"abc", request_id=7)
    orphan = temp_dir / "orphan.bin"
    orphan.write_bytes(b"12345")
    fresh = temp_dir / "fresh.bin"
    fresh.write_bytes(b"1")
    old = time.time() - 2 * 3600
    os.utime(held, (old, old))
    os.utime(orphan, (old, old))

    stats = store.stats()
    assert stats["files"] == 3 and stats["held"] == 1
    assert stats["size_bytes"] == 9

    assert store.cleanup_stale() == 1
    assert held.exists() and fresh.exists()
    assert not orphan.exists()
