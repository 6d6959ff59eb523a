"""Tests for TieredCache / TileCache."""

from __future__ import annotations

import asyncio
import os
import time
from datetime import timedelta

import pytest

from domain.errors import FetchError, TileBatchError
from domain.models import CacheOptions, TileCoordinate
from tiles.cache import TileCache
from tiles.fetcher import OsmTileFetcher

DAY = 86400


def _set_times(path, *, age_s=0.0, atime_age_s=None):
    now = time.time()
    mtime = now - age_s
    atime = now - (atime_age_s if atime_age_s is not None else age_s)
    os.utime(path, (atime, mtime))


@pytest.fixture
def options(tmp_path):
    return CacheOptions(cache_directory=tmp_path / 'tiles')


@pytest.fixture
def build_cache(fast_source, make_session, options):
    """Factory: TileCache over a fake session."""

    def _build(responses, opts=None):
        session = make_session(responses)
        cache = TileCache(OsmTileFetcher(fast_source, session=session), opts or options)
        return cache, session

    return _build


class TestTileCacheGet:
    """Tests for single tile resolution."""

    @pytest.mark.asyncio
    async def test_miss_downloads_and_persists(self, build_cache, make_response, options):
        """A miss is fetched, written under zoom/x/y.png and kept in memory."""
        cache, session = build_cache([make_response(200, b'png-bytes')])

        tile = await cache.get_tile(100, 200, 15)
        again = await cache.get_tile(100, 200, 15)

        path = options.cache_directory / '15' / '100' / '200.png'
        assert tile.data == b'png-bytes'
        assert again is tile
        assert path.read_bytes() == b'png-bytes'
        assert session.request.await_count == 1
        assert cache.memory_size == 1

    @pytest.mark.asyncio
    async def test_disk_round_trip(self, build_cache, make_response):
        """A second cache instance serves the tile from disk byte-identically."""
        payload = bytes(range(256)) * 4
        first, _ = build_cache([make_response(200, payload)])
        await first.get_tile(3, 4, 5)

        second, session = build_cache([])
        tile = await second.get_tile(3, 4, 5)

        assert tile.data == payload
        session.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_absent_tile_not_written(self, build_cache, make_response, options):
        """404 yields an empty tile that is cached in memory only."""
        cache, session = build_cache([make_response(404)])

        tile = await cache.get_tile(1, 1, 2)
        again = await cache.get_tile(1, 1, 2)

        assert tile.is_empty
        assert again.is_empty
        assert session.request.await_count == 1
        assert not (options.cache_directory / '2' / '1' / '1.png').exists()

    @pytest.mark.asyncio
    async def test_concurrent_requests_download_once(self, build_cache, make_response):
        """Concurrent callers for the same tile share one download."""

        async def handler(*args, **kwargs):
            await asyncio.sleep(0.02)
            return make_response(200, b'shared')

        cache, session = build_cache(handler)

        tiles = await asyncio.gather(*(cache.get_tile(7, 7, 4) for _ in range(5)))

        assert {t.data for t in tiles} == {b'shared'}
        assert session.request.await_count == 1

    @pytest.mark.asyncio
    async def test_corrupt_disk_file_refetched(self, build_cache, make_response, options):
        """A zero-byte file is treated as a miss and replaced."""
        path = options.cache_directory / '4' / '1' / '2.png'
        path.parent.mkdir(parents=True)
        path.write_bytes(b'')
        cache, session = build_cache([make_response(200, b'fresh')])

        tile = await cache.get_tile(1, 2, 4)

        assert tile.data == b'fresh'
        assert path.read_bytes() == b'fresh'
        assert session.request.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_copy_refreshed(self, build_cache, make_response, options):
        """A disk copy older than max_tile_age is downloaded again."""
        path = options.cache_directory / '4' / '1' / '2.png'
        path.parent.mkdir(parents=True)
        path.write_bytes(b'old')
        _set_times(path, age_s=40 * DAY)
        cache, _ = build_cache([make_response(200, b'new')])

        tile = await cache.get_tile(1, 2, 4)

        assert tile.data == b'new'
        assert path.read_bytes() == b'new'

    @pytest.mark.asyncio
    async def test_stale_copy_served_on_failure(self, build_cache, make_response, options):
        """When the refresh fails the expired copy is served."""
        path = options.cache_directory / '4' / '1' / '2.png'
        path.parent.mkdir(parents=True)
        path.write_bytes(b'old')
        _set_times(path, age_s=40 * DAY)
        cache, _ = build_cache(lambda *a, **kw: make_response(503))

        tile = await cache.get_tile(1, 2, 4)

        assert tile.data == b'old'

    @pytest.mark.asyncio
    async def test_stale_disabled_raises(self, build_cache, make_response, tmp_path):
        """With use_stale_on_error off the fetch error propagates."""
        opts = CacheOptions(cache_directory=tmp_path / 'tiles', use_stale_on_error=False)
        path = opts.cache_directory / '4' / '1' / '2.png'
        path.parent.mkdir(parents=True)
        path.write_bytes(b'old')
        _set_times(path, age_s=40 * DAY)
        cache, _ = build_cache(lambda *a, **kw: make_response(503), opts)

        with pytest.raises(FetchError):
            await cache.get_tile(1, 2, 4)

    @pytest.mark.asyncio
    async def test_disk_error_propagates(self, build_cache, make_response, tmp_path):
        """An unusable cache directory is a fatal OSError."""
        blocker = tmp_path / 'not-a-dir'
        blocker.write_bytes(b'x')
        cache, _ = build_cache([make_response(200, b'png')], CacheOptions(cache_directory=blocker))

        with pytest.raises(OSError):
            await cache.get_tile(0, 0, 0)

    @pytest.mark.asyncio
    async def test_cancelled_download_leaves_no_files(self, build_cache, make_response, options):
        """Cancelling a download writes nothing to disk."""
        started = asyncio.Event()

        async def handler(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        cache, _ = build_cache(handler)
        task = asyncio.create_task(cache.get_tile(0, 0, 0))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert not options.cache_directory.exists() or not any(options.cache_directory.rglob('*.*'))
        assert cache.memory_size == 0

    @pytest.mark.asyncio
    async def test_cancelling_one_caller_keeps_shared_download(self, build_cache, make_response, options):
        """A second caller waiting on the same tile still gets it when the first is cancelled."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(*args, **kwargs):
            started.set()
            await release.wait()
            return make_response(200, b'shared')

        cache, session = build_cache(handler)
        first = asyncio.create_task(cache.get_tile(0, 0, 0))
        await started.wait()
        second = asyncio.create_task(cache.get_tile(0, 0, 0))
        await asyncio.sleep(0.01)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        release.set()
        tile = await second

        assert tile.data == b'shared'
        assert session.request.await_count == 1
        assert (options.cache_directory / '0' / '0' / '0.png').read_bytes() == b'shared'
        assert cache.memory_size == 1

    @pytest.mark.asyncio
    async def test_last_waiter_cancel_stops_download(self, build_cache):
        """When every caller of a tile is cancelled the download is cancelled too."""
        started = asyncio.Event()
        stopped = asyncio.Event()

        async def handler(*args, **kwargs):
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                stopped.set()
                raise

        cache, _ = build_cache(handler)
        task = asyncio.create_task(cache.get_tile(0, 0, 0))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(stopped.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_file_removed_after_read_still_served(self, build_cache, options, monkeypatch):
        """A tile deleted by a concurrent clear right after reading is still returned."""
        path = options.cache_directory / '0' / '0' / '0.png'
        path.parent.mkdir(parents=True)
        path.write_bytes(b'on-disk')
        cache, session = build_cache([])
        read_disk = cache._read_disk

        def read_then_delete(p):
            result = read_disk(p)
            p.unlink()
            return result

        monkeypatch.setattr(cache, '_read_disk', read_then_delete)

        tile = await cache.get_tile(0, 0, 0)

        assert tile.data == b'on-disk'
        assert not path.exists()
        session.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_copy_gone_upstream_removed(self, build_cache, make_response, options):
        """An expired copy whose tile is now 404 is dropped from disk."""
        path = options.cache_directory / '4' / '1' / '2.png'
        path.parent.mkdir(parents=True)
        path.write_bytes(b'old')
        _set_times(path, age_s=40 * DAY)
        cache, _ = build_cache([make_response(404)])

        tile = await cache.get_tile(1, 2, 4)

        assert tile.is_empty
        assert not path.exists()
        assert cache.get_cache_size_bytes() == 0

    @pytest.mark.asyncio
    async def test_invalid_coordinate(self, build_cache):
        """Invalid coordinates raise ValueError without network."""
        cache, session = build_cache([])

        with pytest.raises(ValueError):
            await cache.get_tile(0, 0, 19)
        session.request.assert_not_awaited()


class TestTileCacheBatch:
    """Tests for get_tiles / get_tiles_for."""

    @pytest.mark.asyncio
    async def test_get_tiles_counts_cache_hits(self, build_cache, make_response):
        """Progress distinguishes downloads from cache hits."""
        cache, _ = build_cache(lambda method, url, **kw: make_response(200, url.encode()))
        await cache.get_tile(0, 0, 1)
        reports = []

        async def on_progress(p):
            reports.append(p)

        result = await cache.get_tiles(-80, 80, -170, 170, 1, on_progress=on_progress)

        assert len(result.tiles) == 4
        assert [(t.x, t.y) for t in result.tiles] == [(0, 0), (0, 1), (1, 0), (1, 1)]
        assert reports[-1].from_cache == 1
        assert reports[-1].downloaded == 3

    @pytest.mark.asyncio
    async def test_everything_fails(self, build_cache, make_response):
        """All tiles exhausting retries: no tiles, one error per coordinate."""
        cache, _ = build_cache(lambda *a, **kw: make_response(503))
        coords = [(0, 0), (0, 1), (1, 0), (1, 1)]

        result = await cache.get_tiles_for(coords, 1)

        assert result.tiles == []
        assert sorted((e.x, e.y) for e in result.errors) == coords
        with pytest.raises(TileBatchError) as exc_info:
            result.raise_for_total_failure()
        assert len(exc_info.value.errors) == 4

    @pytest.mark.asyncio
    async def test_partial_failure_not_total(self, build_cache, make_response):
        """Some tiles present means no hard failure."""

        def handler(method, url, **kwargs):
            return make_response(503 if url.endswith('/0/0.png') else 200, b'ok')

        cache, _ = build_cache(handler)

        result = await cache.get_tiles_for([(0, 0), (1, 1)], 1)

        assert result.raise_for_total_failure() is result
        assert result.failed_coordinates == [TileCoordinate(0, 0, 1)]


class TestMaintenance:
    """Tests for size, cleanup and clear."""

    def _populate(self, root, count, size=100, suffix='.png'):
        paths = []
        for i in range(count):
            p = root / '10' / str(i) / f'0{suffix}'
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(b'x' * size)
            paths.append(p)
        return paths

    def test_size_counts_own_suffix_only(self, build_cache, options):
        """Foreign files in a shared root are ignored."""
        cache, _ = build_cache([])
        self._populate(options.cache_directory, 3)
        (options.cache_directory / 'N45W122.hgt').write_bytes(b'y' * 1000)

        assert cache.get_cache_size_bytes() == 300

    def test_size_of_missing_directory(self, build_cache):
        """A cache that never wrote anything is empty."""
        cache, _ = build_cache([])
        assert cache.get_cache_size_bytes() == 0

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired(self, build_cache, options):
        """Files older than max_tile_age are deleted."""
        cache, _ = build_cache([])
        paths = self._populate(options.cache_directory, 4)
        _set_times(paths[0], age_s=31 * DAY)
        _set_times(paths[1], age_s=100 * DAY)

        report = await cache.cleanup_cache()

        assert report.expired_files == 2
        assert report.expired_bytes == 200
        assert report.evicted_files == 0
        assert not paths[0].exists()
        assert paths[2].exists()
        assert not paths[0].parent.exists()

    @pytest.mark.asyncio
    async def test_cleanup_enforces_size_lru(self, build_cache, tmp_path):
        """Over budget, least recently used files go first."""
        opts = CacheOptions(cache_directory=tmp_path / 'tiles', max_cache_size_bytes=250)
        cache, _ = build_cache([], opts)
        paths = self._populate(opts.cache_directory, 5)
        for age, p in zip([50, 10, 40, 20, 30], paths, strict=True):
            _set_times(p, age_s=age)

        report = await cache.cleanup_cache()

        assert report.evicted_files == 3
        assert cache.get_cache_size_bytes() <= 250
        assert [p.exists() for p in paths] == [False, True, False, True, False]

    @pytest.mark.asyncio
    async def test_cleanup_invalidates_memory(self, build_cache, make_response, options):
        """Deleted files drop out of the memory map."""
        cache, session = build_cache(lambda *a, **kw: make_response(200, b'png'))
        await cache.get_tile(1, 1, 3)
        _set_times(options.cache_directory / '3' / '1' / '1.png', age_s=60 * DAY)

        await cache.cleanup_cache()
        await cache.get_tile(1, 1, 3)

        assert session.request.await_count == 2

    @pytest.mark.asyncio
    async def test_after_cleanup_size_and_age(self, build_cache, tmp_path):
        """After cleanup size fits the budget and nothing is older than max age."""
        opts = CacheOptions(
            cache_directory=tmp_path / 'tiles',
            max_cache_size_bytes=500,
            max_tile_age=timedelta(days=7),
        )
        cache, _ = build_cache([], opts)
        paths = self._populate(opts.cache_directory, 10)
        for i, p in enumerate(paths):
            _set_times(p, age_s=i * DAY)

        await cache.cleanup_cache()

        assert cache.get_cache_size_bytes() <= 500
        now = time.time()
        for p in opts.cache_directory.rglob('*.png'):
            assert now - p.stat().st_mtime <= 7 * DAY

    @pytest.mark.asyncio
    async def test_clear_cache(self, build_cache, make_response, options):
        """clear_cache removes own files and memory, keeps root and foreign files."""
        cache, _ = build_cache([make_response(200, b'png')])
        await cache.get_tile(0, 0, 0)
        foreign = options.cache_directory / 'N45W122.hgt'
        foreign.write_bytes(b'hgt')

        deleted = await cache.clear_cache()

        assert deleted == 1
        assert cache.memory_size == 0
        assert options.cache_directory.exists()
        assert foreign.exists()
        assert not (options.cache_directory / '0').exists()

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, build_cache, make_response):
        """Leaving the context drops memory entries."""
        cache, _ = build_cache([make_response(200, b'png')])
        async with cache:
            await cache.get_tile(0, 0, 0)
            assert cache.memory_size == 1
        assert cache.memory_size == 0
