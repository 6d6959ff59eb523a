"""Bounding box -> XYZ tile coverage."""

from __future__ import annotations

import math

from domain.models import validate_zoom
from shared.constants import (
    WEB_MERCATOR_MAX_LAT,
    WORLD_LAT_LIMIT_DEG,
    WORLD_LNG_HALF_SPAN_DEG,
    WORLD_LNG_SPAN_DEG,
)


def _clamp_tile(value: float, zoom: int) -> int:
    n = 1 << zoom
    return min(max(int(math.floor(value)), 0), n - 1)


def lon_to_tile_x(lon: float, zoom: int) -> int:
    """Номер тайла по X для долготы (с обрезкой к [0, 2^z - 1])."""
    n = 1 << zoom
    return _clamp_tile((lon + WORLD_LNG_HALF_SPAN_DEG) / WORLD_LNG_SPAN_DEG * n, zoom)


def lat_to_tile_y(lat: float, zoom: int) -> int:
    """Номер тайла по Y для широты; Y растёт к югу."""
    n = 1 << zoom
    siny = math.sin(math.radians(lat))
    y = (0.5 - math.log((1 + siny) / (1 - siny)) / (4 * math.pi)) * n
    return _clamp_tile(y, zoom)


def tile_bounds(x: int, y: int, zoom: int) -> tuple[float, float, float, float]:
    """Geographic box of one tile as (min_lat, max_lat, min_lon, max_lon)."""
    n = 1 << zoom

    def _lat(tile_y: int) -> float:
        merc_y = 0.5 - tile_y / n
        return (
            WORLD_LAT_LIMIT_DEG
            - WORLD_LNG_SPAN_DEG * math.atan(math.exp(-merc_y * 2 * math.pi)) / math.pi
        )

    min_lon = x / n * WORLD_LNG_SPAN_DEG - WORLD_LNG_HALF_SPAN_DEG
    max_lon = (x + 1) / n * WORLD_LNG_SPAN_DEG - WORLD_LNG_HALF_SPAN_DEG
    return _lat(y + 1), _lat(y), min_lon, max_lon


def validate_bbox(min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> None:
    for name, lat in (('min_lat', min_lat), ('max_lat', max_lat)):
        if not -WEB_MERCATOR_MAX_LAT <= lat <= WEB_MERCATOR_MAX_LAT:
            msg = (
                f'{name} must be between {-WEB_MERCATOR_MAX_LAT} and '
                f'{WEB_MERCATOR_MAX_LAT}, got {lat}'
            )
            raise ValueError(msg)
    for name, lon in (('min_lon', min_lon), ('max_lon', max_lon)):
        if not -WORLD_LNG_HALF_SPAN_DEG <= lon <= WORLD_LNG_HALF_SPAN_DEG:
            msg = (
                f'{name} must be between {-WORLD_LNG_HALF_SPAN_DEG} and '
                f'{WORLD_LNG_HALF_SPAN_DEG}, got {lon}'
            )
            raise ValueError(msg)
    if min_lat >= max_lat:
        msg = f'min_lat ({min_lat}) must be less than max_lat ({max_lat})'
        raise ValueError(msg)
    if min_lon >= max_lon:
        msg = f'min_lon ({min_lon}) must be less than max_lon ({max_lon})'
        raise ValueError(msg)


def calculate_tile_coordinates(
    min_lat: float,
    max_lat: float,
    min_lon: float,
    max_lon: float,
    zoom: int,
) -> list[tuple[int, int]]:
    """
    Все тайлы (x, y), покрывающие прямоугольник, в порядке столбцов (x), затем строк (y).

    Результат всегда полный прямоугольник в пространстве тайлов.
    """
    validate_bbox(min_lat, max_lat, min_lon, max_lon)
    validate_zoom(zoom)

    min_x = lon_to_tile_x(min_lon, zoom)
    max_x = lon_to_tile_x(max_lon, zoom)
    # Y инвертирован: север сверху
    min_y = lat_to_tile_y(max_lat, zoom)
    max_y = lat_to_tile_y(min_lat, zoom)

    return [(x, y) for x in range(min_x, max_x + 1) for y in range(min_y, max_y + 1)]
