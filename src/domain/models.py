from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from domain.errors import TileBatchError
from shared.constants import (
    DEFAULT_USER_AGENT,
    ELEVATION_CACHE_DIR,
    ELEVATION_CACHE_MAX_AGE_DAYS,
    ELEVATION_CACHE_MAX_SIZE_BYTES,
    ELEVATION_FILE_SUFFIX,
    ELEVATION_MAX_CONCURRENCY,
    ELEVATION_MAX_RETRIES,
    ELEVATION_TIMEOUT_S,
    MAX_ZOOM,
    MIN_ZOOM,
    OSM_TILE_URL,
    OVERPASS_API_URL,
    OVERPASS_INITIAL_RETRY_DELAY_S,
    OVERPASS_MAX_CONCURRENCY,
    OVERPASS_MAX_RETRIES,
    OVERPASS_MAX_RETRY_DELAY_S,
    OVERPASS_MIN_REQUEST_INTERVAL_S,
    OVERPASS_TIMEOUT_S,
    SRTM_TILE_URL,
    TILE_CACHE_DIR,
    TILE_CACHE_MAX_AGE_DAYS,
    TILE_CACHE_MAX_SIZE_BYTES,
    TILE_FILE_SUFFIX,
    TILE_INITIAL_RETRY_DELAY_S,
    TILE_MAX_CONCURRENCY,
    TILE_MAX_RETRIES,
    TILE_MAX_RETRY_DELAY_S,
    TILE_MIN_REQUEST_INTERVAL_S,
    TILE_TIMEOUT_S,
    USE_STALE_ON_ERROR,
)
from shared.portable import resolve_data_path


def validate_zoom(zoom: int) -> None:
    if not MIN_ZOOM <= zoom <= MAX_ZOOM:
        msg = f'Zoom must be between {MIN_ZOOM} and {MAX_ZOOM}, got {zoom}'
        raise ValueError(msg)


@dataclass(frozen=True)
class TileCoordinate:
    """Integer tile indices in the power-of-two XYZ scheme."""

    x: int
    y: int
    zoom: int

    @property
    def key(self) -> str:
        return f'{self.zoom}/{self.x}/{self.y}'

    def validate(self) -> TileCoordinate:
        validate_zoom(self.zoom)
        max_tile = (1 << self.zoom) - 1
        if not 0 <= self.x <= max_tile:
            msg = f'X must be between 0 and {max_tile} for zoom {self.zoom}, got {self.x}'
            raise ValueError(msg)
        if not 0 <= self.y <= max_tile:
            msg = f'Y must be between 0 and {max_tile} for zoom {self.zoom}, got {self.y}'
            raise ValueError(msg)
        return self


@dataclass(frozen=True)
class TileData:
    """Fetched raster payload. An empty payload marks a tile the server does not have."""

    x: int
    y: int
    zoom: int
    data: bytes

    @property
    def is_empty(self) -> bool:
        return not self.data

    @property
    def coordinate(self) -> TileCoordinate:
        return TileCoordinate(self.x, self.y, self.zoom)


@dataclass(frozen=True)
class TileFetchError:
    """One coordinate of a batch that could not be fetched."""

    x: int
    y: int
    zoom: int
    message: str


@dataclass
class TileFetchResult:
    """Outcome of a batch request.

    Every requested coordinate ends up in exactly one of the two lists.
    """

    tiles: list[TileData] = field(default_factory=list)
    errors: list[TileFetchError] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.tiles) + len(self.errors)

    @property
    def is_total_failure(self) -> bool:
        return not self.tiles and bool(self.errors)

    @property
    def failed_coordinates(self) -> list[TileCoordinate]:
        return [TileCoordinate(e.x, e.y, e.zoom) for e in self.errors]

    def raise_for_total_failure(self) -> TileFetchResult:
        """Raise TileBatchError when not a single tile could be obtained."""
        if self.is_total_failure:
            first = self.errors[0]
            msg = (
                f'All {len(self.errors)} tiles failed to download '
                f'(first error at z/x/y={first.zoom}/{first.x}/{first.y}: {first.message})'
            )
            raise TileBatchError(msg, self.errors)
        return self


@dataclass(frozen=True)
class TileDownloadProgress:
    """Snapshot of batch progress passed to on_progress callbacks."""

    downloaded: int
    from_cache: int
    failed: int
    total: int

    @property
    def done(self) -> int:
        return self.downloaded + self.from_cache + self.failed

    @property
    def fraction(self) -> float:
        return self.done / self.total if self.total > 0 else 0.0


@dataclass(frozen=True)
class ZoomResult:
    """Result of zoom level calculation."""

    zoom: int
    meters_per_pixel: float
    actual_scale: float
    is_approximate: bool
    warning: str | None = None


class SourceSettings(BaseModel):
    """Network policy for one remote data source."""

    model_config = {
        'frozen': True,
        'extra': 'ignore',
    }

    url: str
    user_agent: str = DEFAULT_USER_AGENT
    timeout_s: float = TILE_TIMEOUT_S
    max_concurrency: int = TILE_MAX_CONCURRENCY
    max_retries: int = TILE_MAX_RETRIES
    initial_retry_delay_s: float = TILE_INITIAL_RETRY_DELAY_S
    max_retry_delay_s: float = TILE_MAX_RETRY_DELAY_S
    min_request_interval_s: float = TILE_MIN_REQUEST_INTERVAL_S

    @field_validator('user_agent')
    @classmethod
    def validate_user_agent(cls, v: str) -> str:
        v = v.strip()
        if not v:
            msg = 'User-Agent must not be empty: tile servers reject anonymous clients'
            raise ValueError(msg)
        return v

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(('http://', 'https://')):
            msg = f'Source URL must be http(s), got {v!r}'
            raise ValueError(msg)
        return v

    @field_validator('timeout_s')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            msg = 'Timeout must be positive'
            raise ValueError(msg)
        return v

    @field_validator('max_concurrency')
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            msg = 'max_concurrency must be at least 1'
            raise ValueError(msg)
        return v

    @field_validator(
        'max_retries',
        'initial_retry_delay_s',
        'max_retry_delay_s',
        'min_request_interval_s',
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            msg = 'Value must not be negative'
            raise ValueError(msg)
        return v

    @model_validator(mode='after')
    def validate_delay_bounds(self) -> SourceSettings:
        if self.max_retry_delay_s < self.initial_retry_delay_s:
            msg = 'max_retry_delay_s must be >= initial_retry_delay_s'
            raise ValueError(msg)
        return self


class CacheOptions(BaseModel):
    """Disk cache location and eviction policy.

    Age and size are soft ceilings: they are enforced by cleanup, not on write.
    """

    model_config = {
        'frozen': True,
        'extra': 'ignore',
    }

    cache_directory: Path
    max_tile_age: timedelta = timedelta(days=TILE_CACHE_MAX_AGE_DAYS)
    max_cache_size_bytes: int = TILE_CACHE_MAX_SIZE_BYTES
    use_stale_on_error: bool = USE_STALE_ON_ERROR
    file_suffix: str = TILE_FILE_SUFFIX

    @model_validator(mode='before')
    @classmethod
    def convert_age_days(cls, data: Any) -> Any:
        # TOML profiles express the age in days
        if isinstance(data, dict) and 'max_tile_age_days' in data:
            data = dict(data)
            days = data.pop('max_tile_age_days')
            data.setdefault('max_tile_age', timedelta(days=float(days)))
        return data

    @field_validator('cache_directory')
    @classmethod
    def resolve_directory(cls, v: Path) -> Path:
        return resolve_data_path(Path(v).expanduser())

    @field_validator('max_tile_age')
    @classmethod
    def validate_age(cls, v: timedelta) -> timedelta:
        if v.total_seconds() <= 0:
            msg = 'max_tile_age must be positive'
            raise ValueError(msg)
        return v

    @field_validator('max_cache_size_bytes')
    @classmethod
    def validate_size(cls, v: int) -> int:
        if v < 0:
            msg = 'max_cache_size_bytes must not be negative'
            raise ValueError(msg)
        return v

    @field_validator('file_suffix')
    @classmethod
    def validate_suffix(cls, v: str) -> str:
        if not v.startswith('.') or len(v) < 2:
            msg = f'file_suffix must look like ".ext", got {v!r}'
            raise ValueError(msg)
        return v


def _default_tile_source() -> SourceSettings:
    return SourceSettings(url=OSM_TILE_URL)


def _default_tile_cache() -> CacheOptions:
    return CacheOptions(cache_directory=Path(TILE_CACHE_DIR))


def _default_elevation_source() -> SourceSettings:
    return SourceSettings(
        url=SRTM_TILE_URL,
        timeout_s=ELEVATION_TIMEOUT_S,
        max_concurrency=ELEVATION_MAX_CONCURRENCY,
        max_retries=ELEVATION_MAX_RETRIES,
    )


def _default_elevation_cache() -> CacheOptions:
    return CacheOptions(
        cache_directory=Path(ELEVATION_CACHE_DIR),
        max_tile_age=timedelta(days=ELEVATION_CACHE_MAX_AGE_DAYS),
        max_cache_size_bytes=ELEVATION_CACHE_MAX_SIZE_BYTES,
        file_suffix=ELEVATION_FILE_SUFFIX,
    )


def _default_overpass_source() -> SourceSettings:
    return SourceSettings(
        url=OVERPASS_API_URL,
        timeout_s=OVERPASS_TIMEOUT_S,
        max_concurrency=OVERPASS_MAX_CONCURRENCY,
        max_retries=OVERPASS_MAX_RETRIES,
        initial_retry_delay_s=OVERPASS_INITIAL_RETRY_DELAY_S,
        max_retry_delay_s=OVERPASS_MAX_RETRY_DELAY_S,
        min_request_interval_s=OVERPASS_MIN_REQUEST_INTERVAL_S,
    )


class AppSettings(BaseModel):
    """All configurable knobs, grouped by data source."""

    model_config = {
        'extra': 'ignore',  # игнорировать лишние секции профиля
    }

    tiles: SourceSettings = Field(default_factory=_default_tile_source)
    tile_cache: CacheOptions = Field(default_factory=_default_tile_cache)
    elevation: SourceSettings = Field(default_factory=_default_elevation_source)
    elevation_cache: CacheOptions = Field(default_factory=_default_elevation_cache)
    overpass: SourceSettings = Field(default_factory=_default_overpass_source)

    @model_validator(mode='before')
    @classmethod
    def merge_section_defaults(cls, data: Any) -> Any:
        # A partial TOML section only overrides the keys it names
        if not isinstance(data, dict):
            return data
        defaults = {
            'tiles': _default_tile_source,
            'tile_cache': _default_tile_cache,
            'elevation': _default_elevation_source,
            'elevation_cache': _default_elevation_cache,
            'overpass': _default_overpass_source,
        }
        merged = dict(data)
        for name, factory in defaults.items():
            section = merged.get(name)
            if isinstance(section, dict):
                base = factory().model_dump()
                if 'max_tile_age_days' in section:
                    base.pop('max_tile_age', None)
                base.update(section)
                merged[name] = base
        return merged

    @classmethod
    def default(cls) -> AppSettings:
        return cls()
