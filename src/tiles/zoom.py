"""Print scale <-> raster zoom level conversion (Web Mercator)."""

from __future__ import annotations

import math

from domain.models import ZoomResult, validate_zoom
from shared.constants import (
    DEFAULT_DPI,
    EARTH_RADIUS_M,
    MAX_ZOOM,
    METERS_PER_INCH,
    MIN_ZOOM,
    SCALE_APPROXIMATION_TOLERANCE,
    TILE_SIZE,
    WORLD_LAT_LIMIT_DEG,
)


def _validate_latitude(latitude: float) -> None:
    if not -WORLD_LAT_LIMIT_DEG < latitude < WORLD_LAT_LIMIT_DEG:
        msg = (
            f'Latitude must be strictly between {-WORLD_LAT_LIMIT_DEG} and '
            f'{WORLD_LAT_LIMIT_DEG}, got {latitude}'
        )
        raise ValueError(msg)


def get_meters_per_pixel(zoom: int, latitude: float = 0.0) -> float:
    """Возвращает метров на пиксель в проекции Mercator на заданной широте и зуме."""
    validate_zoom(zoom)
    lat_rad = math.radians(latitude)
    return (math.cos(lat_rad) * 2 * math.pi * EARTH_RADIUS_M) / (TILE_SIZE * (2**zoom))


def calculate_actual_scale(meters_per_pixel: float, dpi: int) -> float:
    """Scale denominator achieved when one pixel covers meters_per_pixel at dpi."""
    return meters_per_pixel * dpi / METERS_PER_INCH


def calculate_zoom(scale: float, dpi: int, latitude: float = 0.0) -> ZoomResult:
    """
    Pick the zoom level whose ground resolution best matches a print scale.

    Args:
        scale: Scale denominator, e.g. 25000 for 1:25000
        dpi: Output resolution in dots per inch
        latitude: Latitude the map is centred on, degrees

    Raises:
        ValueError: on non-positive scale/dpi or latitude outside (-90, 90)

    """
    if scale <= 0:
        msg = f'Scale must be positive, got {scale}'
        raise ValueError(msg)
    if dpi <= 0:
        msg = f'DPI must be positive, got {dpi}'
        raise ValueError(msg)
    _validate_latitude(latitude)

    target_mpp = scale * METERS_PER_INCH / dpi

    best_zoom = MIN_ZOOM
    best_mpp = get_meters_per_pixel(MIN_ZOOM, latitude)
    smallest_diff = abs(best_mpp - target_mpp)
    for z in range(MIN_ZOOM + 1, MAX_ZOOM + 1):
        mpp = get_meters_per_pixel(z, latitude)
        diff = abs(mpp - target_mpp)
        if diff < smallest_diff:
            smallest_diff = diff
            best_zoom = z
            best_mpp = mpp

    warning = None
    finest_mpp = get_meters_per_pixel(MAX_ZOOM, latitude)
    if target_mpp < finest_mpp:
        best_zoom = MAX_ZOOM
        best_mpp = finest_mpp
        warning = (
            f'Requested scale 1:{scale:.0f} at {dpi} DPI requires higher resolution '
            f'than available. Maximum zoom level {MAX_ZOOM} provides approximately '
            f'1:{calculate_actual_scale(finest_mpp, dpi):.0f} scale.'
        )

    actual_scale = calculate_actual_scale(best_mpp, dpi)
    is_approximate = abs(actual_scale - scale) / scale > SCALE_APPROXIMATION_TOLERANCE

    return ZoomResult(
        zoom=best_zoom,
        meters_per_pixel=best_mpp,
        actual_scale=actual_scale,
        is_approximate=is_approximate,
        warning=warning,
    )


def recommend_zoom(scale: float, dpi: int = DEFAULT_DPI, latitude: float = 0.0) -> int:
    return calculate_zoom(scale, dpi, latitude).zoom


def get_resolution_table(latitude: float = 0.0) -> list[float]:
    """Metres per pixel for every supported zoom level, index == zoom."""
    return [get_meters_per_pixel(z, latitude) for z in range(MIN_ZOOM, MAX_ZOOM + 1)]
