from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from shared.constants import (
    CONVERT_BATCH_SIZE,
    DOWNLOAD_BATCH_PAUSE_S,
    DOWNLOAD_BATCH_SIZE,
    DOWNLOAD_MAX_ATTEMPTS,
    DOWNLOAD_RETRY_DELAYS_S,
    DOWNLOAD_RETRY_ROUNDS,
    DOWNLOAD_ROUND_COOLDOWN_S,
    HTTP_CACHE_ENABLED,
    HTTP_CACHE_EXPIRE_HOURS,
    HTTP_MAX_CONNECTIONS,
    HTTP_MAX_CONNECTIONS_PER_HOST,
    HTTP_TIMEOUT_S,
    HTTP_USER_AGENT,
    MAX_ZOOM,
    PROGRESS_QUEUE_SIZE,
    STORE_EXTENSION,
    TERMINAL_STATUSES,
    TaskStatus,
    TileScheme,
)

URL_PLACEHOLDERS = ('{z}', '{x}', '{y}')


@dataclass(frozen=True, order=True)
class TileCoordinate:
    """Tile address in the xyz grid unless stated otherwise."""

    zoom: int
    x: int
    y: int

    def __post_init__(self) -> None:
        if self.zoom < 0:
            msg = f'Zoom must be non-negative, got {self.zoom}'
            raise ValueError(msg)
        limit = (1 << self.zoom) - 1
        if not (0 <= self.x <= limit and 0 <= self.y <= limit):
            msg = f'Tile {self.zoom}/{self.x}/{self.y} outside [0, {limit}]'
            raise ValueError(msg)

    def flip_y(self) -> TileCoordinate:
        """Same tile in the opposite row convention (xyz <-> tms)."""
        return TileCoordinate(self.zoom, self.x, (1 << self.zoom) - 1 - self.y)

    def __str__(self) -> str:
        return f'{self.zoom}/{self.x}/{self.y}'


@dataclass(frozen=True)
class BoundingBox:
    """Geographic bounding box in WGS-84 degrees."""

    min_lng: float
    min_lat: float
    max_lng: float
    max_lat: float

    def as_metadata(self) -> str:
        """MBTiles ``bounds`` value: left,bottom,right,top."""
        return f'{self.min_lng},{self.min_lat},{self.max_lng},{self.max_lat}'


class Region(BaseModel):
    """Area of interest as rings of (longitude, latitude) pairs."""

    model_config = ConfigDict(frozen=True)

    rings: tuple[tuple[tuple[float, float], ...], ...]

    @field_validator('rings')
    @classmethod
    def validate_rings(
        cls, v: tuple[tuple[tuple[float, float], ...], ...]
    ) -> tuple[tuple[tuple[float, float], ...], ...]:
        if not v or not any(v):
            msg = 'Region needs at least one ring with at least one point'
            raise ValueError(msg)
        for ring in v:
            for lng, lat in ring:
                if not (-180.0 <= lng <= 180.0):
                    msg = f'Longitude out of range: {lng}'
                    raise ValueError(msg)
                if not (-90.0 <= lat <= 90.0):
                    msg = f'Latitude out of range: {lat}'
                    raise ValueError(msg)
        return v

    @classmethod
    def from_coordinates(cls, coordinates: list) -> Region:
        """Build from GeoJSON-like nested lists ``[[[lng, lat], ...], ...]``."""
        return cls.model_validate({'rings': coordinates})

    def bounding_box(self) -> BoundingBox:
        points = [point for ring in self.rings for point in ring]
        lngs = [p[0] for p in points]
        lats = [p[1] for p in points]
        return BoundingBox(
            min_lng=min(lngs),
            min_lat=min(lats),
            max_lng=max(lngs),
            max_lat=max(lats),
        )


@dataclass
class TileTask:
    """One tile to fetch; ``retry_count`` is updated by the fetcher."""

    coordinate: TileCoordinate
    url: str
    local_path: Path
    retry_count: int = 0


@dataclass(frozen=True)
class DownloadProgress:
    """Snapshot of the download phase."""

    total_tiles: int
    completed_tiles: int
    failed_tiles: int
    retrying_tiles: int
    current: TileCoordinate | None
    status: TaskStatus
    failed_coordinates: tuple[TileCoordinate, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ConversionProgress:
    """Snapshot of the store-writing phase."""

    total_tiles: int
    processed_tiles: int
    current: TileCoordinate | None
    status: TaskStatus

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class DownloadResult:
    status: TaskStatus
    cache_dir: Path
    total_tiles: int = 0
    completed_tiles: int = 0
    failed_coordinates: tuple[TileCoordinate, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class ConversionResult:
    status: TaskStatus
    output_path: Path
    tiles_written: int = 0
    tiles_skipped: int = 0
    error: str | None = None


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of a download followed by a conversion."""

    status: TaskStatus
    download: DownloadResult
    conversion: ConversionResult | None = None
    store_path: Path | None = None
    errors: list[str] = field(default_factory=list)


class DownloadRequest(BaseModel):
    """Validated input of one download invocation."""

    region: Region
    url_template: str
    min_zoom: int
    max_zoom: int
    scheme: TileScheme = TileScheme.XYZ
    cache_dir: Path

    @field_validator('url_template')
    @classmethod
    def validate_url_template(cls, v: str) -> str:
        missing = [p for p in URL_PLACEHOLDERS if p not in v]
        if missing:
            msg = f'URL template lacks placeholders: {", ".join(missing)}'
            raise ValueError(msg)
        return v

    @field_validator('min_zoom', 'max_zoom')
    @classmethod
    def validate_zoom(cls, v: int) -> int:
        if not (0 <= v <= MAX_ZOOM):
            msg = f'Zoom must be within [0, {MAX_ZOOM}]'
            raise ValueError(msg)
        return v

    @model_validator(mode='after')
    def validate_zoom_range(self) -> DownloadRequest:
        if self.min_zoom > self.max_zoom:
            msg = 'min_zoom must not exceed max_zoom'
            raise ValueError(msg)
        return self


class PipelineSettings(BaseModel):
    """Tunables of the download and conversion phases."""

    model_config = {
        'extra': 'ignore',  # unknown keys from older profiles
    }

    # Download
    batch_size: int = DOWNLOAD_BATCH_SIZE
    max_attempts: int = DOWNLOAD_MAX_ATTEMPTS
    retry_delays_s: tuple[float, ...] = DOWNLOAD_RETRY_DELAYS_S
    retry_rounds: int = DOWNLOAD_RETRY_ROUNDS
    round_cooldown_s: float = DOWNLOAD_ROUND_COOLDOWN_S
    batch_pause_s: float = DOWNLOAD_BATCH_PAUSE_S

    # HTTP
    http_timeout_s: float = HTTP_TIMEOUT_S
    max_connections: int = HTTP_MAX_CONNECTIONS
    max_connections_per_host: int = HTTP_MAX_CONNECTIONS_PER_HOST
    user_agent: str = HTTP_USER_AGENT
    http_cache_enabled: bool = HTTP_CACHE_ENABLED
    http_cache_expire_hours: int = HTTP_CACHE_EXPIRE_HOURS

    # Store
    convert_batch_size: int = CONVERT_BATCH_SIZE
    store_extension: str = STORE_EXTENSION

    # Progress
    progress_queue_size: int = PROGRESS_QUEUE_SIZE

    # Base directory for destinations; None resolves from the environment
    storage_root: Path | None = None

    @field_validator(
        'batch_size',
        'max_attempts',
        'max_connections',
        'max_connections_per_host',
        'convert_batch_size',
        'progress_queue_size',
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            msg = 'Value must be at least 1'
            raise ValueError(msg)
        return v

    @field_validator(
        'retry_rounds',
        'round_cooldown_s',
        'batch_pause_s',
        'http_cache_expire_hours',
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            msg = 'Value must not be negative'
            raise ValueError(msg)
        return v

    @field_validator('http_timeout_s')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            msg = 'Timeout must be positive'
            raise ValueError(msg)
        return v

    @field_validator('retry_delays_s')
    @classmethod
    def validate_retry_delays(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if not v:
            msg = 'retry_delays_s needs at least one value'
            raise ValueError(msg)
        if any(d < 0 for d in v):
            msg = 'Retry delays must not be negative'
            raise ValueError(msg)
        return v

    @property
    def attempt_budget(self) -> int:
        """Attempts a tile may spend across the primary pass and all retry rounds."""
        return self.max_attempts * (self.retry_rounds + 1)

    def retry_delay(self, attempt: int) -> float:
        """Delay before ``attempt`` (0-based); the last value repeats."""
        if attempt <= 0:
            return 0.0
        return self.retry_delays_s[min(attempt - 1, len(self.retry_delays_s) - 1)]
