"""Command line entry point for geotile: zoom math, prefetch and cache maintenance."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from domain.errors import FetchError, TileBatchError
from domain.models import AppSettings
from domain.profiles import load_profile
from elevation.source import SrtmElevationSource
from shared.constants import APP_DIR_NAME, DEFAULT_DPI
from shared.diagnostics import log_memory_usage, log_thread_status
from shared.portable import user_data_dir
from tiles.cache import TileCache
from tiles.zoom import calculate_zoom

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO) -> Path:
    """Configure logging to stdout and to <user data dir>/log/geotile.log.

    Returns:
        Path of the log file.
    """
    log_dir = user_data_dir() / 'log'
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f'{APP_DIR_NAME}.log'

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(str(log_file), encoding='utf-8'),
        ],
    )
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='geotile',
        description='Загрузка и кэширование картографических тайлов и высот SRTM',
    )
    parser.add_argument('--profile', help='Имя профиля или путь к TOML файлу')
    parser.add_argument('-v', '--verbose', action='store_true', help='Подробный лог (DEBUG)')
    sub = parser.add_subparsers(dest='command', required=True)

    p_zoom = sub.add_parser('zoom', help='Подбор уровня зума для масштаба печати')
    p_zoom.add_argument('scale', type=float, help='Знаменатель масштаба, например 25000')
    p_zoom.add_argument('--dpi', type=int, default=DEFAULT_DPI)
    p_zoom.add_argument('--lat', type=float, default=0.0, help='Широта центра карты')

    p_tiles = sub.add_parser('tiles', help='Предзагрузка тайлов для области')
    for name in ('min_lat', 'max_lat', 'min_lon', 'max_lon'):
        p_tiles.add_argument(name, type=float)
    group = p_tiles.add_mutually_exclusive_group(required=True)
    group.add_argument('--zoom', type=int)
    group.add_argument('--scale', type=float)
    p_tiles.add_argument('--dpi', type=int, default=DEFAULT_DPI)

    p_elev = sub.add_parser('elevation', help='Высота точки по SRTM')
    p_elev.add_argument('lat', type=float)
    p_elev.add_argument('lon', type=float)
    p_elev.add_argument('--nearest', action='store_true', help='Без билинейной интерполяции')

    p_cache = sub.add_parser('cache', help='Обслуживание дискового кэша')
    p_cache.add_argument('action', choices=['size', 'cleanup', 'clear'])
    p_cache.add_argument('--elevation', action='store_true', help='Кэш высот вместо тайлов')
    return parser


def load_app_settings(profile: str | None) -> AppSettings:
    if profile:
        return load_profile(profile)
    return AppSettings.default()


def cmd_zoom(args: argparse.Namespace) -> int:
    result = calculate_zoom(args.scale, args.dpi, args.lat)
    print(
        f'zoom={result.zoom} meters_per_pixel={result.meters_per_pixel:.3f} '
        f'actual_scale=1:{result.actual_scale:.0f} approximate={result.is_approximate}'
    )
    if result.warning:
        print(f'warning: {result.warning}')
    return 0


async def cmd_tiles(args: argparse.Namespace, settings: AppSettings) -> int:
    if args.zoom is not None:
        zoom = args.zoom
    else:
        center_lat = (args.min_lat + args.max_lat) / 2
        zoom = calculate_zoom(args.scale, args.dpi, center_lat).zoom

    log_memory_usage('before tile prefetch')
    async with TileCache.create(settings.tiles, settings.tile_cache) as cache:
        result = await cache.get_tiles(args.min_lat, args.max_lat, args.min_lon, args.max_lon, zoom)
    log_memory_usage('after tile prefetch')
    log_thread_status('after tile prefetch')

    empty = sum(1 for t in result.tiles if t.is_empty)
    print(
        f'zoom={zoom} tiles={len(result.tiles)} (absent {empty}) failed={len(result.errors)} '
        f'total={result.total}'
    )
    try:
        result.raise_for_total_failure()
    except TileBatchError as e:
        logger.error('%s', e)
        return 1
    return 0


async def cmd_elevation(args: argparse.Namespace, settings: AppSettings) -> int:
    async with SrtmElevationSource(settings.elevation, settings.elevation_cache) as srtm:
        value = await srtm.get_elevation(args.lat, args.lon, interpolate=not args.nearest)
    if value is None:
        print('elevation=none')
    else:
        print(f'elevation={value:.1f}')
    return 0


async def cmd_cache(args: argparse.Namespace, settings: AppSettings) -> int:
    if args.elevation:
        cache = SrtmElevationSource(settings.elevation, settings.elevation_cache)
    else:
        cache = TileCache.create(settings.tiles, settings.tile_cache)
    async with cache:
        if args.action == 'size':
            size = cache.get_cache_size_bytes()
            print(f'{cache.cache_dir}: {size} bytes ({size / 1024 / 1024:.1f} MB)')
        elif args.action == 'cleanup':
            report = await cache.cleanup_cache()
            print(
                f'deleted={report.files_deleted} freed={report.bytes_freed} bytes '
                f'remaining={report.remaining_bytes} bytes'
            )
        else:
            count = await cache.clear_cache()
            print(f'deleted={count}')
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger.info('Starting geotile %s', args.command)

    try:
        if args.command == 'zoom':
            return cmd_zoom(args)
        settings = load_app_settings(args.profile)
        if args.command == 'tiles':
            return asyncio.run(cmd_tiles(args, settings))
        if args.command == 'elevation':
            return asyncio.run(cmd_elevation(args, settings))
        return asyncio.run(cmd_cache(args, settings))
    except (ValueError, FileNotFoundError) as e:
        logger.error('%s', e)
        return 2
    except FetchError as e:
        logger.error('%s', e)
        return 1
    except KeyboardInterrupt:
        logger.warning('Interrupted')
        return 130


def run() -> None:
    sys.exit(main())


if __name__ == '__main__':
    run()
