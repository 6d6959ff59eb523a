"""Resolution of per-user and portable data directories."""

import os
import sys
from pathlib import Path

from shared.constants import APP_DIR_NAME


def is_portable_mode() -> bool:
    """
    Определяет, запущено ли приложение в portable режиме.

    Portable режим активируется, если имя исполняемого файла содержит '_portable'
    (например, geotile_portable.exe). Тогда кэш и профили лежат рядом с ним.
    """
    exe_name = Path(sys.argv[0]).name.lower()
    return '_portable' in exe_name


def get_app_dir() -> Path:
    """Директория, в которой находится исполняемый файл."""
    return Path(sys.argv[0]).resolve().parent


def user_data_dir() -> Path:
    """
    Root directory for caches, profiles and logs.

    Portable mode keeps everything next to the executable. Otherwise
    %LOCALAPPDATA%/geotile is used when set, falling back to ~/.geotile_cache.
    """
    if is_portable_mode():
        return get_app_dir()
    local = os.getenv('LOCALAPPDATA')
    if local:
        return (Path(local) / APP_DIR_NAME).resolve()
    return (Path.home() / f'.{APP_DIR_NAME}_cache').resolve()


def resolve_data_path(subdir: str | Path) -> Path:
    """Absolute paths pass through; relative ones are placed under user_data_dir()."""
    raw = Path(subdir)
    if raw.is_absolute():
        return raw
    return user_data_dir() / raw
