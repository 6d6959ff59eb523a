"""Raster tile acquisition.

This module provides:
- zoom: print scale <-> zoom level conversion
- coverage: bounding box -> tile coordinates
- OsmTileFetcher: raster source on top of the shared resilient fetcher
- TieredCache / TileCache: memory + disk cache with cleanup
"""

from tiles.cache import CleanupReport, TieredCache, TileCache
from tiles.coverage import calculate_tile_coordinates, lat_to_tile_y, lon_to_tile_x, tile_bounds
from tiles.fetcher import OsmTileFetcher, run_tile_batch
from tiles.zoom import (
    calculate_actual_scale,
    calculate_zoom,
    get_meters_per_pixel,
    get_resolution_table,
    recommend_zoom,
)

__all__ = [
    'CleanupReport',
    'OsmTileFetcher',
    'TieredCache',
    'TileCache',
    'calculate_actual_scale',
    'calculate_tile_coordinates',
    'calculate_zoom',
    'get_meters_per_pixel',
    'get_resolution_table',
    'lat_to_tile_y',
    'lon_to_tile_x',
    'recommend_zoom',
    'run_tile_batch',
    'tile_bounds',
]
