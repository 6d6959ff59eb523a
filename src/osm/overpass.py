"""Overpass API client for OSM vector features.

Queries go through the same resilient fetcher as raster and elevation
downloads, with a stricter request pacing. Failures after retries are
reported in the result instead of being raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from domain.errors import FetchError
from infrastructure.http.fetcher import ResilientFetcher
from shared.constants import WORLD_LAT_LIMIT_DEG, WORLD_LNG_HALF_SPAN_DEG

if TYPE_CHECKING:
    from types import TracebackType

    import aiohttp

    from domain.models import SourceSettings

logger = logging.getLogger(__name__)

ALL_FEATURE_STATEMENTS = (
    'way["highway"]',
    'way["building"]',
    'way["waterway"]',
    'way["natural"]',
    'way["landuse"]',
    'relation["natural"="water"]',
    'relation["landuse"]',
)


class OverpassResponse(BaseModel):
    """Top level of an Overpass JSON answer; elements are passed through as dicts."""

    model_config = {
        'extra': 'ignore',
    }

    version: float = 0.0
    generator: str = ''
    elements: list[dict[str, Any]] = Field(default_factory=list)


@dataclass(frozen=True)
class OverpassQueryResult:
    response: OverpassResponse | None
    success: bool
    error_message: str | None = None


def never_absent(status: int) -> bool:
    return False


def validate_bbox(min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> None:
    if not (-WORLD_LAT_LIMIT_DEG <= min_lat <= WORLD_LAT_LIMIT_DEG) or not (
        -WORLD_LAT_LIMIT_DEG <= max_lat <= WORLD_LAT_LIMIT_DEG
    ):
        msg = 'Latitude must be between -90 and 90'
        raise ValueError(msg)
    if not (-WORLD_LNG_HALF_SPAN_DEG <= min_lon <= WORLD_LNG_HALF_SPAN_DEG) or not (
        -WORLD_LNG_HALF_SPAN_DEG <= max_lon <= WORLD_LNG_HALF_SPAN_DEG
    ):
        msg = 'Longitude must be between -180 and 180'
        raise ValueError(msg)
    if min_lat >= max_lat:
        msg = 'min_lat must be less than max_lat'
        raise ValueError(msg)
    if min_lon >= max_lon:
        msg = 'min_lon must be less than max_lon'
        raise ValueError(msg)


class OverpassClient:
    """
    Usage:
        async with OverpassClient(settings.overpass) as client:
            result = await client.query_roads(55.70, 55.80, 37.50, 37.70)
            if result.success:
                ways = result.response.elements
    """

    def __init__(
        self,
        settings: SourceSettings,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.settings = settings
        self.http = ResilientFetcher(
            settings,
            is_absent=never_absent,
            session=session,
            name='overpass',
        )

    def _wrap(self, statements: list[str], min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> str:
        validate_bbox(min_lat, max_lat, min_lon, max_lon)
        bbox = f'{min_lat},{min_lon},{max_lat},{max_lon}'
        body = '\n'.join(f'  {s}({bbox});' for s in statements)
        return (
            f'[out:json][timeout:{int(self.settings.timeout_s)}];\n'
            f'(\n{body}\n);\n'
            'out body;\n'
            '>;\n'
            'out skel qt;'
        )

    def build_query(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float, tag: str) -> str:
        """Overpass QL for all ways carrying tag inside the bbox."""
        return self._wrap([f'way["{tag}"]'], min_lat, max_lat, min_lon, max_lon)

    def build_all_features_query(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> str:
        return self._wrap(list(ALL_FEATURE_STATEMENTS), min_lat, max_lat, min_lon, max_lon)

    async def execute_query(self, query: str) -> OverpassQueryResult:
        """Run raw Overpass QL. Never raises for remote failures; cancellation propagates."""
        try:
            raw = await self.http.fetch(
                self.settings.url,
                method='POST',
                data={'data': query},
                label='overpass query',
            )
        except FetchError as e:
            logger.warning('Overpass query failed: %s', e)
            return OverpassQueryResult(response=None, success=False, error_message=str(e))

        if raw is None:
            return OverpassQueryResult(response=None, success=False, error_message='Empty response')
        try:
            response = OverpassResponse.model_validate_json(raw)
        except ValidationError as e:
            logger.warning('Overpass response could not be parsed: %s', e)
            return OverpassQueryResult(response=None, success=False, error_message=str(e))

        logger.info('Overpass query returned %d elements', len(response.elements))
        return OverpassQueryResult(response=response, success=True)

    async def _query_tag(self, tag: str, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> OverpassQueryResult:
        return await self.execute_query(self.build_query(min_lat, max_lat, min_lon, max_lon, tag))

    async def query_roads(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> OverpassQueryResult:
        return await self._query_tag('highway', min_lat, max_lat, min_lon, max_lon)

    async def query_buildings(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> OverpassQueryResult:
        return await self._query_tag('building', min_lat, max_lat, min_lon, max_lon)

    async def query_waterways(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> OverpassQueryResult:
        return await self._query_tag('waterway', min_lat, max_lat, min_lon, max_lon)

    async def query_natural_features(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> OverpassQueryResult:
        return await self._query_tag('natural', min_lat, max_lat, min_lon, max_lon)

    async def query_contours(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> OverpassQueryResult:
        return await self._query_tag('contour', min_lat, max_lat, min_lon, max_lon)

    async def query_landuse(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> OverpassQueryResult:
        return await self._query_tag('landuse', min_lat, max_lat, min_lon, max_lon)

    async def query_all_features(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> OverpassQueryResult:
        return await self.execute_query(self.build_all_features_query(min_lat, max_lat, min_lon, max_lon))

    async def close(self) -> None:
        await self.http.close()

    async def __aenter__(self) -> OverpassClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
