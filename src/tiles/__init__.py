"""Tile acquisition and packaging.

This module provides:
- Tile indexing: bounding box -> tile coordinates, URLs and cache paths
- TileFetcher: bounded-concurrency HTTP fetcher with per-tile retry
- TileDownloader: batched download with global retry rounds
- MBTilesWriter: cache tree -> single MBTiles file
"""

from tiles.downloader import TileDownloader
from tiles.fetcher import BatchResult, DownloadCounters, FetchOutcome, TileFetcher
from tiles.indexer import (
    TileRange,
    build_tile_url,
    collect_tasks,
    flip_y,
    tile_for_lnglat,
    tile_path,
    tile_range,
)
from tiles.mbtiles import MBTilesWriter, load_tile, read_metadata

__all__ = [
    'BatchResult',
    'DownloadCounters',
    'FetchOutcome',
    'MBTilesWriter',
    'TileDownloader',
    'TileFetcher',
    'TileRange',
    'build_tile_url',
    'collect_tasks',
    'flip_y',
    'load_tile',
    'read_metadata',
    'tile_for_lnglat',
    'tile_path',
    'tile_range',
]
