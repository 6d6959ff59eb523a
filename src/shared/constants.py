# --- Web Mercator / XYZ-тайлы

# Радиус Земли для Web Mercator (метры)
EARTH_RADIUS_M = 6378137.0

# Базовый размер тайла Web Mercator (пикселей)
TILE_SIZE = 256

# Допустимый диапазон уровней приближения
MIN_ZOOM = 0
MAX_ZOOM = 18

# Предельная широта, представимая в Web Mercator (градусы)
WEB_MERCATOR_MAX_LAT = 85.0511

# Полуширина и полный охват мира по долготе (градусы)
WORLD_LNG_HALF_SPAN_DEG = 180.0
WORLD_LNG_SPAN_DEG = 360.0
WORLD_LAT_LIMIT_DEG = 90.0

# --- Масштаб печати

# Метров в одном дюйме
METERS_PER_INCH = 0.0254

# Допустимое отклонение фактического масштаба от запрошенного (доля)
SCALE_APPROXIMATION_TOLERANCE = 0.05

# DPI по умолчанию для рекомендаций уровня приближения
DEFAULT_DPI = 300

# --- Источники данных

# Шаблон URL растровых тайлов OSM ({z}/{x}/{y})
OSM_TILE_URL = 'https://tile.openstreetmap.org/{z}/{x}/{y}.png'

# Шаблон URL тайлов SRTM (полушария и координаты с ведущими нулями)
SRTM_TILE_URL = (
    'https://elevation-tiles-prod.s3.amazonaws.com/skadi/'
    '{ns}{lat:02d}/{ns}{lat:02d}{ew}{lon:03d}.hgt.gz'
)

# Точка доступа Overpass API
OVERPASS_API_URL = 'https://overpass-api.de/api/interpreter'

# User-Agent обязателен: сервисы OSM отклоняют анонимных клиентов
DEFAULT_USER_AGENT = 'geotile-fetch/1.0 (+https://github.com/geotile/geotile-fetch)'

# --- Сетевые параметры по умолчанию (секунды)

# Параллелизм загрузки: политика OSM допускает не более 2 потоков
TILE_MAX_CONCURRENCY = 2
ELEVATION_MAX_CONCURRENCY = 2
OVERPASS_MAX_CONCURRENCY = 1

TILE_TIMEOUT_S = 30.0
ELEVATION_TIMEOUT_S = 60.0
OVERPASS_TIMEOUT_S = 180.0

TILE_MAX_RETRIES = 5
ELEVATION_MAX_RETRIES = 3
OVERPASS_MAX_RETRIES = 3

# Экспоненциальная задержка: начальная и предельная
TILE_INITIAL_RETRY_DELAY_S = 1.5
TILE_MAX_RETRY_DELAY_S = 30.0
OVERPASS_INITIAL_RETRY_DELAY_S = 1.0
OVERPASS_MAX_RETRY_DELAY_S = 30.0

# Минимальный интервал между запросами к одному источнику
TILE_MIN_REQUEST_INTERVAL_S = 0.0
OVERPASS_MIN_REQUEST_INTERVAL_S = 1.0

# HTTP коды
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_REQUEST_TIMEOUT = 408
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVICE_UNAVAILABLE = 503

# HTTP диапазоны ошибок сервера
HTTP_5XX_MIN = 500
HTTP_5XX_MAX = 600

# Сигнатура gzip-потока
GZIP_MAGIC = b'\x1f\x8b'

# --- Кэш тайлов

# Каталоги кэша (относительно корня данных пользователя)
TILE_CACHE_DIR = '.cache/tiles'
ELEVATION_CACHE_DIR = '.cache/elevation'

# Максимальный возраст тайла до обновления (дни)
TILE_CACHE_MAX_AGE_DAYS = 30
# Данные SRTM не меняются, поэтому срок жизни большой
ELEVATION_CACHE_MAX_AGE_DAYS = 3650

# Предельный размер кэша на диске (байты)
TILE_CACHE_MAX_SIZE_BYTES = 500 * 1024 * 1024
ELEVATION_CACHE_MAX_SIZE_BYTES = 4 * 1024 * 1024 * 1024

# Отдавать устаревший тайл с диска, если обновление не удалось
USE_STALE_ON_ERROR = True

# Расширения файлов в кэше
TILE_FILE_SUFFIX = '.png'
ELEVATION_FILE_SUFFIX = '.hgt'

# Суффикс временного файла при атомарной записи
TMP_FILE_SUFFIX = '.part'

# --- SRTM

# Разрешение тайлов: SRTM1 (1 угл. сек) и SRTM3 (3 угл. сек)
SRTM1_RESOLUTION = 3601
SRTM3_RESOLUTION = 1201

# Значение «нет данных» в HGT
SRTM_VOID_VALUE = -32768

# --- Диагностика

# Логировать память каждые N тайлов пакета
LOG_MEMORY_EVERY_TILES = 50

# Каталог профилей настроек
PROFILES_DIR = 'configs/profiles'

# Имя приложения для пользовательских каталогов
APP_DIR_NAME = 'geotile'
