"""SRTM elevation source backed by the tiered cache.

Tiles are 1x1 degree .hgt files named after their south-west corner
(N45W122.hgt). The default mirror serves them gzip-compressed from S3, which
answers 403 rather than 404 for ocean and polar tiles.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import TYPE_CHECKING

from domain.errors import FetchError
from elevation.tile import ElevationFetchError, ElevationGrid, ElevationTile, parse_hgt
from infrastructure.http.fetcher import ResilientFetcher
from shared.constants import HTTP_FORBIDDEN, HTTP_NOT_FOUND, WORLD_LAT_LIMIT_DEG, WORLD_LNG_HALF_SPAN_DEG
from tiles.cache import TieredCache

if TYPE_CHECKING:
    from pathlib import Path

    import aiohttp

    from domain.models import CacheOptions, SourceSettings

logger = logging.getLogger(__name__)

TileKey = tuple[int, int]

SRTM_ABSENT_STATUSES = frozenset({HTTP_FORBIDDEN, HTTP_NOT_FOUND})


def srtm_is_absent(status: int) -> bool:
    return status in SRTM_ABSENT_STATUSES


def validate_coordinates(lat: float, lon: float) -> None:
    if not -WORLD_LAT_LIMIT_DEG <= lat <= WORLD_LAT_LIMIT_DEG:
        msg = f'Latitude must be between -90 and 90, got {lat}'
        raise ValueError(msg)
    if not -WORLD_LNG_HALF_SPAN_DEG <= lon <= WORLD_LNG_HALF_SPAN_DEG:
        msg = f'Longitude must be between -180 and 180, got {lon}'
        raise ValueError(msg)


class SrtmElevationSource(TieredCache[TileKey, ElevationTile]):
    """Elevation lookups over cached SRTM tiles.

    Usage:
        async with SrtmElevationSource(settings.elevation, settings.elevation_cache) as srtm:
            h = await srtm.get_elevation(45.5, -121.7)
    """

    def __init__(
        self,
        settings: SourceSettings,
        options: CacheOptions,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        fetcher = ResilientFetcher(settings, is_absent=srtm_is_absent, session=session, name='srtm')
        super().__init__(fetcher, options)
        self.settings = settings

    @staticmethod
    def tile_key(lat: float, lon: float) -> TileKey:
        return math.floor(lat), math.floor(lon)

    @staticmethod
    def tile_name(lat: float, lon: float) -> str:
        """SRTM name of the tile containing (lat, lon), e.g. N45W122."""
        tile_lat, tile_lon = math.floor(lat), math.floor(lon)
        ns = 'N' if tile_lat >= 0 else 'S'
        ew = 'E' if tile_lon >= 0 else 'W'
        return f'{ns}{abs(tile_lat):02d}{ew}{abs(tile_lon):03d}'

    def tile_url(self, tile_lat: int, tile_lon: int) -> str:
        return self.settings.url.format(
            ns='N' if tile_lat >= 0 else 'S',
            lat=abs(tile_lat),
            ew='E' if tile_lon >= 0 else 'W',
            lon=abs(tile_lon),
        )

    def _key(self, k: TileKey) -> str:
        return self.tile_name(*k)

    def _path(self, k: TileKey) -> Path:
        return self.cache_dir / f'{self.tile_name(*k)}{self.options.file_suffix}'

    def _url(self, k: TileKey) -> str:
        return self.tile_url(*k)

    def _label(self, k: TileKey) -> str:
        return f'SRTM {self.tile_name(*k)}'

    def _decode(self, k: TileKey, raw: bytes) -> ElevationTile | None:
        return parse_hgt(raw, k[0], k[1])

    def _absent(self, k: TileKey) -> None:
        return None

    async def get_tile_for(self, lat: float, lon: float) -> ElevationTile | None:
        validate_coordinates(lat, lon)
        return await self.get(self.tile_key(lat, lon))

    async def get_elevation(
        self,
        lat: float,
        lon: float,
        interpolate: bool = True,
    ) -> float | None:
        """Elevation in metres, or None where SRTM has no data."""
        tile = await self.get_tile_for(lat, lon)
        if tile is None:
            return None
        if interpolate:
            return tile.get_elevation_interpolated(lat, lon)
        return tile.get_elevation(lat, lon)

    async def _prefetch(
        self,
        keys: list[TileKey],
    ) -> tuple[dict[TileKey, ElevationTile | None], list[ElevationFetchError]]:
        tiles: dict[TileKey, ElevationTile | None] = {}
        errors: list[ElevationFetchError] = []

        async def _one(key: TileKey) -> None:
            try:
                tiles[key] = await self.get(key)
            except FetchError as e:
                logger.warning('Elevation tile %s unavailable: %s', self.tile_name(*key), e)
                tiles[key] = None
                errors.append(ElevationFetchError(latitude=key[0], longitude=key[1], message=str(e)))

        tasks = [asyncio.create_task(_one(k)) for k in keys]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        errors.sort(key=lambda e: (e.latitude, e.longitude))
        return tiles, errors

    async def get_elevation_grid(
        self,
        min_lat: float,
        max_lat: float,
        min_lon: float,
        max_lon: float,
        rows: int,
        cols: int,
    ) -> ElevationGrid:
        """Sample a rows x cols grid, north to south and west to east.

        Tiles that fail to download leave None cells and are listed in grid.errors.
        """
        validate_coordinates(min_lat, min_lon)
        validate_coordinates(max_lat, max_lon)
        if min_lat >= max_lat:
            msg = 'min_lat must be less than max_lat'
            raise ValueError(msg)
        if min_lon >= max_lon:
            msg = 'min_lon must be less than max_lon'
            raise ValueError(msg)
        if rows < 2 or cols < 2:
            msg = 'Grid must have at least 2 rows and 2 columns'
            raise ValueError(msg)

        keys = [
            (lat, lon)
            for lat in range(math.floor(min_lat), math.floor(max_lat) + 1)
            for lon in range(math.floor(min_lon), math.floor(max_lon) + 1)
        ]
        logger.info('Elevation grid %dx%d over %d SRTM tiles', rows, cols, len(keys))
        tiles, errors = await self._prefetch(keys)

        lat_step = (max_lat - min_lat) / (rows - 1)
        lon_step = (max_lon - min_lon) / (cols - 1)
        values: list[list[float | None]] = []
        for r in range(rows):
            lat = min_lat if r == rows - 1 else max_lat - r * lat_step
            row: list[float | None] = []
            for c in range(cols):
                lon = max_lon if c == cols - 1 else min_lon + c * lon_step
                tile = tiles.get(self.tile_key(lat, lon))
                row.append(None if tile is None else tile.get_elevation_interpolated(lat, lon))
            values.append(row)

        return ElevationGrid(
            min_lat=min_lat,
            max_lat=max_lat,
            min_lon=min_lon,
            max_lon=max_lon,
            rows=rows,
            cols=cols,
            values=values,
            errors=errors,
        )
