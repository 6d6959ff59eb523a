"""Two-tier (memory + disk) cache in front of a resilient remote source.

This module provides:
- TieredCache: generic memory/disk/network resolution with in-flight
  de-duplication, atomic writes and age/size based cleanup
- TileCache: raster tile specialization ({zoom}/{x}/{y}.png layout)
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from domain.errors import FetchError
from domain.models import TileCoordinate, TileData
from shared.constants import TMP_FILE_SUFFIX
from tiles.coverage import calculate_tile_coordinates
from tiles.fetcher import OsmTileFetcher, run_tile_batch

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path
    from types import TracebackType

    import aiohttp

    from domain.models import CacheOptions, SourceSettings, TileFetchResult
    from infrastructure.http.fetcher import ResilientFetcher
    from tiles.fetcher import ProgressCallback

logger = logging.getLogger(__name__)

K = TypeVar('K')
V = TypeVar('V')


@dataclass
class CleanupReport:
    """What cleanup_cache() removed, per phase."""

    expired_files: int = 0
    expired_bytes: int = 0
    evicted_files: int = 0
    evicted_bytes: int = 0
    remaining_bytes: int = 0

    @property
    def files_deleted(self) -> int:
        return self.expired_files + self.evicted_files

    @property
    def bytes_freed(self) -> int:
        return self.expired_bytes + self.evicted_bytes


@dataclass
class _PendingLoad:
    task: asyncio.Task
    waiters: int = 0


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent,
        prefix=f'{path.name}.',
        suffix=TMP_FILE_SUFFIX,
    )
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class TieredCache(ABC, Generic[K, V]):
    """Memory map -> disk file -> network, for one kind of keyed payload.

    Subclasses describe the key space (memory key, disk path, URL) and how raw
    bytes become a value. Memory holds decoded values, disk holds raw payloads.
    Legitimately absent resources are remembered in memory only.

    Usage:
        async with SomeCache(fetcher, options) as cache:
            value = await cache.get(key)
    """

    def __init__(self, fetcher: ResilientFetcher, options: CacheOptions) -> None:
        self.fetcher = fetcher
        self.options = options
        self.cache_dir = options.cache_directory
        self._memory: dict[str, V | None] = {}
        self._memory_paths: dict[Path, str] = {}
        self._in_flight: dict[str, _PendingLoad] = {}
        self._maintenance_lock = asyncio.Lock()
        logger.info(
            '%s initialized at %s (max age %s, max size %.1f MB)',
            type(self).__name__,
            self.cache_dir,
            options.max_tile_age,
            options.max_cache_size_bytes / 1024 / 1024,
        )

    @abstractmethod
    def _key(self, k: K) -> str: ...

    @abstractmethod
    def _path(self, k: K) -> Path: ...

    @abstractmethod
    def _url(self, k: K) -> str: ...

    @abstractmethod
    def _decode(self, k: K, raw: bytes) -> V | None:
        """Raw payload -> value; None when the payload is not usable."""

    @abstractmethod
    def _absent(self, k: K) -> V | None:
        """Value that stands for a resource the source does not have."""

    def _label(self, k: K) -> str:
        return self._key(k)

    @property
    def memory_size(self) -> int:
        return len(self._memory)

    async def get(self, k: K) -> V | None:
        value, _ = await self._resolve(k)
        return value

    async def _resolve(self, k: K) -> tuple[V | None, bool]:
        """Value for k plus whether it was served without a download.

        One load task runs per key and every caller awaits it through a shield,
        so cancelling one caller leaves the others alone. The load itself is
        cancelled only when its last waiter goes away.
        """
        key = self._key(k)
        if key in self._memory:
            return self._memory[key], True

        pending = self._in_flight.get(key)
        joined = pending is not None
        if pending is None:
            pending = _PendingLoad(asyncio.ensure_future(self._load(k, key)))
            self._in_flight[key] = pending
            pending.task.add_done_callback(functools.partial(self._load_done, key, pending))

        pending.waiters += 1
        try:
            value, from_cache = await asyncio.shield(pending.task)
        except asyncio.CancelledError:
            if not pending.task.done() and pending.waiters == 1:
                pending.task.cancel()
            raise
        finally:
            pending.waiters -= 1
        return value, from_cache or joined

    def _load_done(self, key: str, pending: _PendingLoad, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is pending:
            del self._in_flight[key]

    def _remember(self, key: str, path: Path, value: V | None) -> None:
        self._memory[key] = value
        self._memory_paths[path] = key

    def _read_disk(self, path: Path) -> tuple[bytes, bool] | None:
        try:
            st = path.stat()
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        fresh = time.time() - st.st_mtime <= self.options.max_tile_age.total_seconds()
        return raw, fresh

    @staticmethod
    def _touch(path: Path) -> None:
        # atime используется для LRU-порядка при очистке;
        # файл мог удалить параллельный clear/cleanup
        with contextlib.suppress(FileNotFoundError):
            st = path.stat()
            os.utime(path, (time.time(), st.st_mtime))

    async def _load(self, k: K, key: str) -> tuple[V | None, bool]:
        path = self._path(k)
        label = self._label(k)
        stale: V | None = None

        disk = await asyncio.to_thread(self._read_disk, path)
        if disk is not None:
            raw, fresh = disk
            value = self._decode(k, raw)
            if value is None:
                logger.warning('Corrupt cache file removed: %s', path)
                await asyncio.to_thread(path.unlink, missing_ok=True)
            elif fresh:
                await asyncio.to_thread(self._touch, path)
                self._remember(key, path, value)
                logger.debug('Disk cache hit: %s', label)
                return value, True
            else:
                stale = value

        url = self._url(k)
        try:
            raw = await self.fetcher.fetch(url, label=label)
        except FetchError as e:
            if stale is not None and self.options.use_stale_on_error:
                logger.warning('Serving stale %s after fetch failure: %s', label, e)
                self._remember(key, path, stale)
                return stale, True
            raise

        value = None if raw is None else self._decode(k, raw)
        if value is None:
            if raw is not None:
                logger.warning('Unusable payload for %s (%d bytes), treating as absent', label, len(raw))
            if raw is None and stale is not None:
                logger.info('Expired %s no longer available upstream, removing %s', label, path)
                await asyncio.to_thread(path.unlink, missing_ok=True)
            value = self._absent(k)
            self._memory[key] = value
            return value, False

        await asyncio.to_thread(_write_atomic, path, raw)
        self._remember(key, path, value)
        return value, False

    def _iter_files(self) -> list[Path]:
        if not self.cache_dir.exists():
            return []
        return [p for p in self.cache_dir.rglob(f'*{self.options.file_suffix}') if p.is_file()]

    def get_cache_size_bytes(self) -> int:
        """Total size of this cache's files on disk."""
        total = 0
        for p in self._iter_files():
            try:
                total += p.stat().st_size
            except FileNotFoundError:
                continue
        return total

    def _prune_empty_dirs(self) -> None:
        if not self.cache_dir.exists():
            return
        for dirpath, _dirnames, _filenames in os.walk(self.cache_dir, topdown=False):
            if os.path.samefile(dirpath, self.cache_dir):
                continue
            if not os.listdir(dirpath):
                os.rmdir(dirpath)

    def _forget(self, paths: Iterable[Path]) -> None:
        for p in paths:
            key = self._memory_paths.pop(p, None)
            if key is not None:
                self._memory.pop(key, None)

    def _clear_files(self) -> int:
        count = 0
        for p in self._iter_files():
            p.unlink(missing_ok=True)
            count += 1
        self._prune_empty_dirs()
        return count

    async def clear_cache(self) -> int:
        """Delete every file of this cache and empty the memory map.

        Returns:
            Number of files deleted.
        """
        async with self._maintenance_lock:
            count = await asyncio.to_thread(self._clear_files)
            self._memory.clear()
            self._memory_paths.clear()
        logger.info('Cache cleared at %s: %d files deleted', self.cache_dir, count)
        return count

    def _cleanup_files(self) -> tuple[CleanupReport, list[Path]]:
        report = CleanupReport()
        deleted: list[Path] = []
        now = time.time()
        max_age_s = self.options.max_tile_age.total_seconds()

        # Фаза 1: удаление устаревших файлов
        survivors: list[tuple[float, int, Path]] = []
        for p in self._iter_files():
            try:
                st = p.stat()
            except FileNotFoundError:
                continue
            if now - st.st_mtime > max_age_s:
                p.unlink(missing_ok=True)
                deleted.append(p)
                report.expired_files += 1
                report.expired_bytes += st.st_size
            else:
                survivors.append((max(st.st_atime, st.st_mtime), st.st_size, p))

        # Фаза 2: LRU-вытеснение до бюджета
        total = sum(size for _, size, _ in survivors)
        budget = self.options.max_cache_size_bytes
        if total > budget:
            survivors.sort(key=lambda t: t[0])
            for _, size, p in survivors:
                if total <= budget:
                    break
                p.unlink(missing_ok=True)
                deleted.append(p)
                total -= size
                report.evicted_files += 1
                report.evicted_bytes += size

        report.remaining_bytes = total
        self._prune_empty_dirs()
        return report, deleted

    async def cleanup_cache(self) -> CleanupReport:
        """Remove expired files, then least recently used ones until under budget."""
        async with self._maintenance_lock:
            report, deleted = await asyncio.to_thread(self._cleanup_files)
            self._forget(deleted)
        logger.info(
            'Cache cleanup at %s: expired %d files (%.1f MB), evicted %d files (%.1f MB), '
            '%.1f MB remaining',
            self.cache_dir,
            report.expired_files,
            report.expired_bytes / 1024 / 1024,
            report.evicted_files,
            report.evicted_bytes / 1024 / 1024,
            report.remaining_bytes / 1024 / 1024,
        )
        return report

    async def close(self) -> None:
        tasks = [p.task for p in self._in_flight.values()]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        await self.fetcher.close()
        self._memory.clear()
        self._memory_paths.clear()

    async def __aenter__(self) -> TieredCache[K, V]:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


class TileCache(TieredCache[TileCoordinate, TileData]):
    """Raster tile cache: {cache_dir}/{zoom}/{x}/{y}.png.

    Usage:
        async with TileCache.create(settings.tiles, settings.tile_cache) as cache:
            result = await cache.get_tiles(55.7, 55.8, 37.5, 37.7, zoom=14)
    """

    def __init__(self, fetcher: OsmTileFetcher, options: CacheOptions) -> None:
        super().__init__(fetcher.http, options)
        self.tile_fetcher = fetcher

    @classmethod
    def create(
        cls,
        source: SourceSettings,
        options: CacheOptions,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> TileCache:
        return cls(OsmTileFetcher(source, session=session), options)

    def _key(self, k: TileCoordinate) -> str:
        return k.key

    def _path(self, k: TileCoordinate) -> Path:
        return self.cache_dir / str(k.zoom) / str(k.x) / f'{k.y}{self.options.file_suffix}'

    def _url(self, k: TileCoordinate) -> str:
        return self.tile_fetcher.tile_url(k.x, k.y, k.zoom)

    def _label(self, k: TileCoordinate) -> str:
        return f'tile {k.key}'

    def _decode(self, k: TileCoordinate, raw: bytes) -> TileData | None:
        # пустой файл тайла считается повреждённым
        if not raw:
            return None
        return TileData(x=k.x, y=k.y, zoom=k.zoom, data=raw)

    def _absent(self, k: TileCoordinate) -> TileData:
        return TileData(x=k.x, y=k.y, zoom=k.zoom, data=b'')

    async def _get_entry(self, x: int, y: int, zoom: int) -> tuple[TileData, bool]:
        tile, cached = await self._resolve(TileCoordinate(x, y, zoom))
        if tile is None:
            tile = self._absent(TileCoordinate(x, y, zoom))
        return tile, cached

    async def get_tile(self, x: int, y: int, zoom: int) -> TileData:
        TileCoordinate(x, y, zoom).validate()
        tile, _ = await self._get_entry(x, y, zoom)
        return tile

    async def get_tiles(
        self,
        min_lat: float,
        max_lat: float,
        min_lon: float,
        max_lon: float,
        zoom: int,
        on_progress: ProgressCallback | None = None,
    ) -> TileFetchResult:
        coords = calculate_tile_coordinates(min_lat, max_lat, min_lon, max_lon, zoom)
        return await self.get_tiles_for(coords, zoom, on_progress=on_progress)

    async def get_tiles_for(
        self,
        coords: Iterable[tuple[int, int]],
        zoom: int,
        on_progress: ProgressCallback | None = None,
    ) -> TileFetchResult:
        return await run_tile_batch(coords, zoom, self._get_entry, on_progress=on_progress)
