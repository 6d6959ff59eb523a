import logging
from datetime import timedelta
from pathlib import Path
from typing import Any

import tomlkit

from domain.models import AppSettings
from shared.constants import PROFILES_DIR
from shared.portable import user_data_dir

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def _user_profiles_dir() -> Path:
    """
    Determine profiles directory.

    1) If <project_root>/configs/profiles exists, use it (run-from-repo setups).
    2) Otherwise fall back to <user data dir>/configs/profiles.
    """
    project_root = Path(__file__).resolve().parent.parent.parent
    local_profiles = project_root / PROFILES_DIR
    if local_profiles.exists():
        return local_profiles
    return user_data_dir() / PROFILES_DIR


def ensure_profiles_dir() -> Path:
    profiles_dir = _user_profiles_dir()
    profiles_dir.mkdir(parents=True, exist_ok=True)
    return profiles_dir


def list_profiles() -> list[str]:
    """Список имён профилей без расширения."""
    folder = ensure_profiles_dir()
    return sorted(p.stem for p in folder.glob('*.toml') if p.is_file())


def profile_path(name: str) -> Path:
    """Путь к файлу профиля по имени."""
    return ensure_profiles_dir() / f'{name}.toml'


def _read_settings(path: Path) -> AppSettings:
    text = path.read_text(encoding='utf-8')
    data = tomlkit.parse(text).unwrap()
    settings = AppSettings.model_validate(data)
    logger.info(
        'Profile loaded from %s: tiles=%s, tile cache=%s',
        path,
        settings.tiles.url,
        settings.tile_cache.cache_directory,
    )
    return settings


def load_profile(name_or_path: str) -> AppSettings:
    """
    Загрузка и валидация профиля TOML -> AppSettings.

    Поддерживает как имя профиля (без .toml) из каталога profiles,
    так и абсолютный/относительный путь до TOML файла.
    """
    p = Path(name_or_path)
    path = p if p.suffix.lower() == '.toml' and p.exists() else profile_path(name_or_path)
    if not path.exists():
        msg = f'Профиль не найден: {path}'
        raise FileNotFoundError(msg)
    return _read_settings(path)


def load_settings(path: str | Path | None = None) -> AppSettings:
    """Settings from a TOML file, or built-in defaults when no file is given."""
    if path is None:
        return AppSettings.default()
    path = Path(path)
    if not path.exists():
        msg = f'Settings file not found: {path}'
        raise FileNotFoundError(msg)
    return _read_settings(path)


def _to_toml_value(key: str, value: Any) -> tuple[str, Any]:
    # В TOML длительности хранятся в днях, пути как строки
    if isinstance(value, timedelta):
        days = value.total_seconds() / SECONDS_PER_DAY
        return f'{key}_days', int(days) if days.is_integer() else days
    if isinstance(value, Path):
        return key, str(value)
    return key, value


def settings_to_toml(settings: AppSettings) -> str:
    doc = tomlkit.document()
    for section_name, section in settings.model_dump().items():
        table = tomlkit.table()
        for key, value in section.items():
            toml_key, toml_value = _to_toml_value(key, value)
            table.add(toml_key, toml_value)
        doc.add(section_name, table)
    return tomlkit.dumps(doc)


def save_profile(name: str, settings: AppSettings) -> Path:
    """Сохранение профиля в TOML (без атомарности и бэкапов)."""
    path = profile_path(name)
    path.write_text(settings_to_toml(settings), encoding='utf-8')
    logger.info('Profile saved: %s', path)
    return path


def delete_profile(name: str) -> None:
    """Удаление файла профиля, если он существует."""
    path = profile_path(name)
    if path.exists():
        path.unlink()
        logger.info('Profile deleted: %s', path)
