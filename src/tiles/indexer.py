"""
Tile indexing: geographic extents to integer tile coordinates.

All arithmetic happens in xyz space (origin top-left). The tms convention is
applied afterwards, only to the row substituted into a URL; the cache tree
always stores xyz rows.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from domain.models import TileCoordinate, TileTask
from shared.constants import (
    MERCATOR_MAX_LAT_DEG,
    TILE_FILE_SUFFIX,
    WEB_MERCATOR_HALF_SPAN_M,
    WORLD_LNG_HALF_SPAN_DEG,
    TileScheme,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    from domain.models import BoundingBox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TileRange:
    """Inclusive rectangle of xyz tiles at one zoom level."""

    zoom: int
    min_x: int
    max_x: int
    min_y: int
    max_y: int

    @property
    def count(self) -> int:
        if self.max_x < self.min_x or self.max_y < self.min_y:
            return 0
        return (self.max_x - self.min_x + 1) * (self.max_y - self.min_y + 1)

    def __iter__(self) -> Iterator[TileCoordinate]:
        for x in range(self.min_x, self.max_x + 1):
            for y in range(self.min_y, self.max_y + 1):
                yield TileCoordinate(self.zoom, x, y)

    def __len__(self) -> int:
        return self.count


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def lnglat_to_mercator(lng: float, lat: float) -> tuple[float, float]:
    """Spherical Web Mercator metres of a WGS-84 point (clamped to the world)."""
    lng = _clamp(lng, -WORLD_LNG_HALF_SPAN_DEG, WORLD_LNG_HALF_SPAN_DEG)
    lat = _clamp(lat, -MERCATOR_MAX_LAT_DEG, MERCATOR_MAX_LAT_DEG)
    mx = lng * WEB_MERCATOR_HALF_SPAN_M / 180.0
    my = (
        WEB_MERCATOR_HALF_SPAN_M
        * math.log(math.tan(math.pi * (90.0 + lat) / 360.0))
        / math.pi
    )
    return mx, my


def _tile_scale(zoom: int) -> float:
    return (1 << zoom) / (2.0 * WEB_MERCATOR_HALF_SPAN_M)


def flip_y(y: int, zoom: int) -> int:
    """Convert a row between xyz and tms numbering (an involution)."""
    return (1 << zoom) - 1 - y


def tile_range(bbox: BoundingBox, zoom: int) -> TileRange:
    """Smallest rectangle of xyz tiles covering ``bbox`` at ``zoom``."""
    span = WEB_MERCATOR_HALF_SPAN_M
    scale = _tile_scale(zoom)
    merc_min_x, merc_min_y = lnglat_to_mercator(bbox.min_lng, bbox.min_lat)
    merc_max_x, merc_max_y = lnglat_to_mercator(bbox.max_lng, bbox.max_lat)

    # Mercator y grows northward while tile rows grow southward
    tile_min_x = math.floor((merc_min_x + span) * scale)
    tile_max_x = math.floor((merc_max_x + span) * scale)
    tile_min_y = math.floor((span - merc_max_y) * scale)
    tile_max_y = math.floor((span - merc_min_y) * scale)

    limit = (1 << zoom) - 1
    rng = TileRange(
        zoom=zoom,
        min_x=max(0, tile_min_x),
        max_x=min(limit, tile_max_x),
        min_y=max(0, tile_min_y),
        max_y=min(limit, tile_max_y),
    )
    logger.debug(
        'Tile range for zoom %d: X[%d-%d], Y[%d-%d]',
        zoom,
        rng.min_x,
        rng.max_x,
        rng.min_y,
        rng.max_y,
    )
    return rng


def tile_for_lnglat(
    lng: float,
    lat: float,
    zoom: int,
    scheme: TileScheme = TileScheme.XYZ,
) -> TileCoordinate:
    """Tile containing a point, numbered in ``scheme``."""
    span = WEB_MERCATOR_HALF_SPAN_M
    scale = _tile_scale(zoom)
    mx, my = lnglat_to_mercator(lng, lat)
    limit = (1 << zoom) - 1
    x = min(limit, max(0, math.floor((mx + span) * scale)))
    y = min(limit, max(0, math.floor((span - my) * scale)))
    coord = TileCoordinate(zoom, x, y)
    return coord.flip_y() if scheme == TileScheme.TMS else coord


def build_tile_url(
    template: str,
    coord: TileCoordinate,
    scheme: TileScheme = TileScheme.XYZ,
) -> str:
    """Substitute ``{z}``, ``{x}``, ``{y}``; the rest of the template is kept."""
    y = flip_y(coord.y, coord.zoom) if scheme == TileScheme.TMS else coord.y
    return (
        template.replace('{z}', str(coord.zoom))
        .replace('{x}', str(coord.x))
        .replace('{y}', str(y))
    )


def tile_path(root: Path, coord: TileCoordinate) -> Path:
    """Cache tree location ``<root>/<zoom>/<x>/<y>.png`` (xyz row)."""
    return Path(root) / str(coord.zoom) / str(coord.x) / f'{coord.y}{TILE_FILE_SUFFIX}'


def is_cached(path: Path) -> bool:
    """True for a complete tile file from an earlier run."""
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def collect_tasks(
    bbox: BoundingBox,
    zoom: int,
    url_template: str,
    scheme: TileScheme,
    cache_root: Path,
) -> list[TileTask]:
    """Fetch tasks for every tile of ``bbox`` at ``zoom`` not yet in the cache."""
    tasks: list[TileTask] = []
    skipped = 0
    for coord in tile_range(bbox, zoom):
        path = tile_path(cache_root, coord)
        if is_cached(path):
            skipped += 1
            continue
        tasks.append(
            TileTask(
                coordinate=coord,
                url=build_tile_url(url_template, coord, scheme),
                local_path=path,
            ),
        )
    if skipped:
        logger.info('Zoom %d: %d tiles already cached, skipped', zoom, skipped)
    return tasks
