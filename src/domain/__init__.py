"""Domain layer - value types, settings and profiles."""
from domain.errors import FetchError, TileBatchError
from domain.models import (
    AppSettings,
    CacheOptions,
    SourceSettings,
    TileCoordinate,
    TileData,
    TileDownloadProgress,
    TileFetchError,
    TileFetchResult,
    ZoomResult,
)
from domain.profiles import (
    delete_profile,
    ensure_profiles_dir,
    list_profiles,
    load_profile,
    load_settings,
    save_profile,
)

__all__ = [
    'AppSettings',
    'CacheOptions',
    'FetchError',
    'SourceSettings',
    'TileBatchError',
    'TileCoordinate',
    'TileData',
    'TileDownloadProgress',
    'TileFetchError',
    'TileFetchResult',
    'ZoomResult',
    'delete_profile',
    'ensure_profiles_dir',
    'list_profiles',
    'load_profile',
    'load_settings',
    'save_profile',
]
