"""SRTM elevation tiles: HGT decoding, point sampling and regular grids."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import numpy as np

from shared.constants import SRTM1_RESOLUTION, SRTM3_RESOLUTION, SRTM_VOID_VALUE

logger = logging.getLogger(__name__)

_HGT_SIZES = {
    SRTM1_RESOLUTION * SRTM1_RESOLUTION * 2: SRTM1_RESOLUTION,
    SRTM3_RESOLUTION * SRTM3_RESOLUTION * 2: SRTM3_RESOLUTION,
}


class ElevationTile:
    """One 1x1 degree patch anchored at its south-west corner.

    Samples are stored north to south, west to east; SRTM_VOID_VALUE marks no data.
    """

    def __init__(self, latitude: int, longitude: int, resolution: int, samples: np.ndarray):
        if resolution <= 0:
            msg = f'Resolution must be positive, got {resolution}'
            raise ValueError(msg)
        samples = np.asarray(samples, dtype=np.int16)
        if samples.size != resolution * resolution:
            msg = f'Elevation data must have {resolution * resolution} samples, got {samples.size}'
            raise ValueError(msg)
        self.latitude = latitude
        self.longitude = longitude
        self.resolution = resolution
        self.samples = samples.reshape(resolution, resolution)

    def __repr__(self) -> str:
        return (
            f'ElevationTile(latitude={self.latitude}, longitude={self.longitude}, '
            f'resolution={self.resolution})'
        )

    def contains(self, lat: float, lon: float) -> bool:
        return (
            self.latitude <= lat <= self.latitude + 1
            and self.longitude <= lon <= self.longitude + 1
        )

    def _sample(self, row: int, col: int) -> int:
        return int(self.samples[row, col])

    def get_elevation(self, lat: float, lon: float) -> float | None:
        """Nearest-sample elevation in metres, None outside the tile or on void."""
        if not self.contains(lat, lon):
            return None
        last = self.resolution - 1
        row = int((1.0 - (lat - self.latitude)) * last)
        col = int((lon - self.longitude) * last)
        row = min(max(row, 0), last)
        col = min(max(col, 0), last)
        value = self._sample(row, col)
        if value == SRTM_VOID_VALUE:
            return None
        return float(value)

    def get_elevation_interpolated(self, lat: float, lon: float) -> float | None:
        """Bilinear elevation; falls back to nearest sample when a corner is void."""
        if not self.contains(lat, lon):
            return None
        last = self.resolution - 1
        row_f = (1.0 - (lat - self.latitude)) * last
        col_f = (lon - self.longitude) * last
        row0 = min(int(row_f), last)
        col0 = min(int(col_f), last)
        row1 = min(row0 + 1, last)
        col1 = min(col0 + 1, last)
        row_frac = row_f - row0
        col_frac = col_f - col0

        v00 = self._sample(row0, col0)
        v01 = self._sample(row0, col1)
        v10 = self._sample(row1, col0)
        v11 = self._sample(row1, col1)
        if SRTM_VOID_VALUE in (v00, v01, v10, v11):
            return self.get_elevation(lat, lon)

        top = v00 + (v01 - v00) * col_frac
        bottom = v10 + (v11 - v10) * col_frac
        return top + (bottom - top) * row_frac


def parse_hgt(data: bytes, latitude: int, longitude: int) -> ElevationTile | None:
    """Decode a raw .hgt payload (big-endian int16, row-major, north first).

    Returns None for payloads of unrecognised size.
    """
    resolution = _HGT_SIZES.get(len(data))
    if resolution is None:
        logger.debug(
            'Unrecognised HGT size %d bytes for %d,%d',
            len(data),
            latitude,
            longitude,
        )
        return None
    samples = np.frombuffer(data, dtype='>i2').astype(np.int16).reshape(resolution, resolution)
    return ElevationTile(latitude, longitude, resolution, samples)


@dataclass(frozen=True)
class ElevationFetchError:
    """A 1x1 degree tile that could not be downloaded for a grid."""

    latitude: int
    longitude: int
    message: str


@dataclass
class ElevationGrid:
    """Regular lat/lon grid; row 0 is the northern edge, column 0 the western edge."""

    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float
    rows: int
    cols: int
    values: list[list[float | None]]
    errors: list[ElevationFetchError] = field(default_factory=list)

    @property
    def lat_step(self) -> float:
        return (self.max_lat - self.min_lat) / (self.rows - 1)

    @property
    def lon_step(self) -> float:
        return (self.max_lon - self.min_lon) / (self.cols - 1)

    def to_array(self) -> np.ndarray:
        """Float array of shape (rows, cols) with NaN for missing values."""
        return np.array(
            [[math.nan if v is None else v for v in row] for row in self.values],
            dtype=np.float64,
        )
