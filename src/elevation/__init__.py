"""Elevation module - SRTM tiles and the cached elevation source."""

from elevation.source import SrtmElevationSource, srtm_is_absent
from elevation.tile import ElevationFetchError, ElevationGrid, ElevationTile, parse_hgt

__all__ = [
    'ElevationFetchError',
    'ElevationGrid',
    'ElevationTile',
    'SrtmElevationSource',
    'parse_hgt',
    'srtm_is_absent',
]
