from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from domain.errors import FetchError
from domain.models import (
    TileCoordinate,
    TileData,
    TileDownloadProgress,
    TileFetchError,
    TileFetchResult,
    validate_zoom,
)
from infrastructure.http.fetcher import ResilientFetcher
from shared.constants import LOG_MEMORY_EVERY_TILES
from shared.diagnostics import log_memory_usage

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable
    from types import TracebackType

    import aiohttp

    from domain.models import SourceSettings

    ProgressCallback = Callable[[TileDownloadProgress], Awaitable[None]]
    TileGetter = Callable[[int, int, int], Awaitable[tuple[TileData, bool]]]

logger = logging.getLogger(__name__)


async def run_tile_batch(
    coords: Iterable[tuple[int, int]],
    zoom: int,
    get_one: TileGetter,
    *,
    on_progress: ProgressCallback | None = None,
) -> TileFetchResult:
    """
    Fetch a batch of tiles concurrently.

    get_one returns (tile, from_cache). FetchError of a single tile is recorded
    in the result; any other exception cancels the remaining tiles and is re-raised.
    Result lists keep the order of coords.
    """
    validate_zoom(zoom)
    coords = [(x, y) for x, y in coords]
    for x, y in coords:
        TileCoordinate(x, y, zoom).validate()

    total = len(coords)
    slots: list[TileData | TileFetchError | None] = [None] * total
    counters = {'downloaded': 0, 'from_cache': 0, 'failed': 0}

    async def _report() -> None:
        if on_progress is None:
            return
        try:
            await on_progress(TileDownloadProgress(total=total, **counters))
        except Exception as e:  # noqa: BLE001
            logger.debug('Progress callback failed: %s', e, exc_info=True)

    async def _worker(idx: int, x: int, y: int) -> None:
        try:
            tile, cached = await get_one(x, y, zoom)
        except FetchError as e:
            logger.warning('Tile %d/%d/%d failed: %s', zoom, x, y, e)
            slots[idx] = TileFetchError(x=x, y=y, zoom=zoom, message=str(e))
            counters['failed'] += 1
        else:
            slots[idx] = tile
            counters['from_cache' if cached else 'downloaded'] += 1

        done = sum(counters.values())
        if done % LOG_MEMORY_EVERY_TILES == 0:
            log_memory_usage(f'after {done}/{total} tiles')
        await _report()

    logger.info('Fetching %d tiles at zoom %d', total, zoom)
    await _report()

    tasks = [asyncio.create_task(_worker(i, x, y)) for i, (x, y) in enumerate(coords)]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    result = TileFetchResult(
        tiles=[s for s in slots if isinstance(s, TileData)],
        errors=[s for s in slots if isinstance(s, TileFetchError)],
    )
    logger.info(
        'Tile batch done: downloaded=%d, from_cache=%d, failed=%d, total=%d',
        counters['downloaded'],
        counters['from_cache'],
        counters['failed'],
        total,
    )
    return result


class OsmTileFetcher:
    """Raster tile source: URL templating on top of the shared resilient fetcher.

    A server-side 404 is a legitimately absent tile and comes back as an empty TileData.
    """

    def __init__(
        self,
        settings: SourceSettings,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.settings = settings
        self.http = ResilientFetcher(settings, session=session, name='tiles')

    def tile_url(self, x: int, y: int, zoom: int) -> str:
        return self.settings.url.format(z=zoom, x=x, y=y)

    async def fetch_tile(self, x: int, y: int, zoom: int) -> TileData:
        coord = TileCoordinate(x, y, zoom).validate()
        data = await self.http.fetch(self.tile_url(x, y, zoom), label=f'tile {coord.key}')
        return TileData(x=x, y=y, zoom=zoom, data=data or b'')

    async def fetch_many(
        self,
        coords: Iterable[tuple[int, int]],
        zoom: int,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> TileFetchResult:
        """Uncached batch download."""

        async def _get(x: int, y: int, z: int) -> tuple[TileData, bool]:
            return await self.fetch_tile(x, y, z), False

        return await run_tile_batch(coords, zoom, _get, on_progress=on_progress)

    async def close(self) -> None:
        await self.http.close()

    async def __aenter__(self) -> OsmTileFetcher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
