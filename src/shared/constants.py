from enum import Enum

# Half of the Web Mercator world span (metres), pi * 6378137
WEB_MERCATOR_HALF_SPAN_M = 20037508.342789244

# Latitude limit of the square Web Mercator world (degrees)
MERCATOR_MAX_LAT_DEG = 85.0511287798

# Longitude limit (degrees)
WORLD_LNG_HALF_SPAN_DEG = 180.0

# Deepest zoom level accepted in requests
MAX_ZOOM = 24

# Raster tile file extension inside the cache tree
TILE_FILE_SUFFIX = '.png'

# Suffix of an in-progress download, renamed on completion
TILE_PART_SUFFIX = '.part'


class TileScheme(str, Enum):
    """Row numbering convention of a tile grid."""

    XYZ = 'xyz'  # origin top-left, y grows southward
    TMS = 'tms'  # origin bottom-left, y grows northward


class TaskStatus(str, Enum):
    """Status carried by every progress snapshot."""

    RUNNING = 'Running'
    COMPLETED = 'Completed'
    ERROR = 'Error'
    CANCELLED = 'Cancelled'


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.CANCELLED},
)


class PipelineStatus(str, Enum):
    """Coarse status of a pipeline instance as reported to the host."""

    IDLE = 'Idle'
    DOWNLOADING = 'Downloading'
    CONVERTING = 'Converting'


# --- Download

# Tiles dispatched together in one bulk-synchronous batch
DOWNLOAD_BATCH_SIZE = 100

# Attempts per tile within one round
DOWNLOAD_MAX_ATTEMPTS = 3

# Delay before attempt n (n >= 1); the last value repeats
DOWNLOAD_RETRY_DELAYS_S = (1.0, 3.0, 5.0)

# Global retry rounds over tiles that failed a whole round
DOWNLOAD_RETRY_ROUNDS = 2

# Cooldown between global retry rounds
DOWNLOAD_ROUND_COOLDOWN_S = 5.0

# Pause between batches of one round
DOWNLOAD_BATCH_PAUSE_S = 0.05

# --- HTTP

# Connect / read / write timeout of a single request (seconds)
HTTP_TIMEOUT_S = 30.0

# Connection pool limits
HTTP_MAX_CONNECTIONS = 50
HTTP_MAX_CONNECTIONS_PER_HOST = 10

# User-Agent sent with every tile request
HTTP_USER_AGENT = 'Mozilla/5.0'

# Optional response cache (aiohttp-client-cache) in front of the tile server
HTTP_CACHE_ENABLED = False
HTTP_CACHE_FILENAME = 'http_cache.sqlite'
HTTP_CACHE_EXPIRE_HOURS = 168

HTTP_2XX_MIN = 200
HTTP_2XX_MAX = 300

# --- Tile store (MBTiles)

# Tiles inserted per transaction
CONVERT_BATCH_SIZE = 50

# Log memory usage every N committed batches
CONVERT_LOG_MEMORY_EVERY_BATCHES = 20

STORE_EXTENSION = 'mbtiles'
STORE_URI_SCHEME = 'mbtiles'
STORE_TYPE = 'baselayer'
STORE_VERSION = '1.0'
STORE_FORMAT = 'png'

# Side files SQLite may leave next to the store
SQLITE_SIDE_SUFFIXES = ('-wal', '-shm', '-journal')

# --- Progress

# Snapshots buffered per subscriber before the oldest are dropped
PROGRESS_QUEUE_SIZE = 256

# --- Storage

# Environment variable overriding the storage root
STORAGE_ROOT_ENV = 'TILEPACK_HOME'

APP_DIR_NAME = 'tilepack'
PROFILES_SUBDIR = 'profiles'
LOG_SUBDIR = 'log'
LOG_FILENAME = 'tilepack.log'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Granularity of cancellation checks inside long waits (seconds)
CANCEL_POLL_INTERVAL_S = 0.1
