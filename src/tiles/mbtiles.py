"""
MBTiles store writer.

Converts a cache tree ``<root>/<zoom>/<x>/<y>.png`` (xyz rows) into a single
MBTiles file. Every run recreates the file from scratch. Tiles are decoded
with Pillow before insertion and silently skipped when they do not decode;
rows are stored with the TMS ``tile_row`` the format prescribes.
"""

from __future__ import annotations

import asyncio
import contextlib
import gc
import logging
import sqlite3
import struct
from io import BytesIO
from pathlib import Path
from typing import TYPE_CHECKING

from PIL import Image

from domain.models import (
    ConversionProgress,
    ConversionResult,
    PipelineSettings,
    TileCoordinate,
)
from shared.constants import (
    CONVERT_LOG_MEMORY_EVERY_BATCHES,
    SQLITE_SIDE_SUFFIXES,
    STORE_FORMAT,
    STORE_TYPE,
    STORE_VERSION,
    TILE_FILE_SUFFIX,
    TaskStatus,
)
from shared.diagnostics import log_memory_usage
from shared.progress import CancelledError, CancelToken, ProgressChannel
from tiles.indexer import flip_y

if TYPE_CHECKING:
    from collections.abc import Iterator

    from domain.models import BoundingBox

logger = logging.getLogger(__name__)

_SCHEMA = '''
    CREATE TABLE IF NOT EXISTS tiles (
        zoom_level INTEGER NOT NULL,
        tile_column INTEGER NOT NULL,
        tile_row INTEGER NOT NULL,
        tile_data BLOB,
        PRIMARY KEY (zoom_level, tile_column, tile_row)
    );

    CREATE TABLE IF NOT EXISTS metadata (
        name TEXT NOT NULL,
        value TEXT,
        PRIMARY KEY (name)
    );
'''

_INSERT_TILE = (
    'INSERT OR REPLACE INTO tiles (zoom_level, tile_column, tile_row, tile_data) '
    'VALUES (?, ?, ?, ?)'
)
_INSERT_METADATA = 'INSERT OR REPLACE INTO metadata (name, value) VALUES (?, ?)'


def _numeric_children(directory: Path, *, dirs: bool) -> list[tuple[int, Path]]:
    out: list[tuple[int, Path]] = []
    for child in directory.iterdir():
        if dirs and child.is_dir() and child.name.isdigit():
            out.append((int(child.name), child))
        elif (
            not dirs
            and child.is_file()
            and child.suffix == TILE_FILE_SUFFIX
            and child.stem.isdigit()
        ):
            out.append((int(child.stem), child))
    out.sort(key=lambda item: item[0])
    return out


def iter_zoom_dirs(root: Path) -> Iterator[tuple[int, Path]]:
    yield from _numeric_children(root, dirs=True)


def iter_x_dirs(zoom_dir: Path) -> Iterator[tuple[int, Path]]:
    yield from _numeric_children(zoom_dir, dirs=True)


def iter_tile_files(x_dir: Path) -> Iterator[tuple[int, Path]]:
    yield from _numeric_children(x_dir, dirs=False)


def count_tiles(root: Path) -> int:
    """Number of leaf tile files below ``root``."""
    total = 0
    for _, zoom_dir in iter_zoom_dirs(root):
        for _, x_dir in iter_x_dirs(zoom_dir):
            total += len(_numeric_children(x_dir, dirs=False))
    return total


def is_valid_image(data: bytes) -> bool:
    """True if ``data`` decodes completely as a raster image."""
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
        # verify() leaves the image unusable; decode a fresh copy
        with Image.open(BytesIO(data)) as img:
            img.load()
    except (
        OSError,
        SyntaxError,
        ValueError,
        struct.error,
        Image.DecompressionBombError,
    ):
        return False
    return True


def remove_store(path: Path) -> None:
    """Delete a store file and any SQLite side files next to it."""
    path.unlink(missing_ok=True)
    for suffix in SQLITE_SIDE_SUFFIXES:
        Path(f'{path}{suffix}').unlink(missing_ok=True)


def open_store(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path))
    conn.execute('PRAGMA journal_mode=WAL')
    conn.execute('PRAGMA synchronous=NORMAL')
    conn.executescript(_SCHEMA)
    conn.commit()
    return conn


def read_metadata(path: Path) -> dict[str, str]:
    """All metadata rows of a store."""
    conn = sqlite3.connect(f'file:{path}?mode=ro', uri=True)
    try:
        return dict(conn.execute('SELECT name, value FROM metadata'))
    finally:
        conn.close()


def load_tile(path: Path, coord: TileCoordinate) -> bytes | None:
    """Payload of an xyz-addressed tile, or None if the store lacks it."""
    conn = sqlite3.connect(f'file:{path}?mode=ro', uri=True)
    try:
        row = conn.execute(
            'SELECT tile_data FROM tiles '
            'WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?',
            (coord.zoom, coord.x, flip_y(coord.y, coord.zoom)),
        ).fetchone()
    finally:
        conn.close()
    return None if row is None else row[0]


class MBTilesWriter:
    """
    Converts a cache tree into an MBTiles file.

    Features:
    - Delete-then-recreate output on every run
    - Pillow decode validation, invalid tiles skipped
    - Fixed-size transactional batches with a reclaim point per batch
    - Cooperative cancellation; a cancelled or failed run leaves no file

    Usage:
        writer = MBTilesWriter()
        result = await writer.convert(cache_root, cache_root / 'area.mbtiles')
    """

    def __init__(self, settings: PipelineSettings | None = None) -> None:
        self.settings = settings or PipelineSettings()
        self.progress: ProgressChannel[ConversionProgress] = ProgressChannel(
            self.settings.progress_queue_size,
        )
        self._task: asyncio.Task[ConversionResult] | None = None
        self._cancel_token: CancelToken | None = None
        self._running = False
        self._state: TaskStatus | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> str:
        return 'Idle' if self._state is None else self._state.value

    async def start(
        self,
        cache_root: Path,
        output_path: Path,
        **kwargs: object,
    ) -> asyncio.Task[ConversionResult]:
        """Cancel any running conversion, then schedule a new one."""
        await self.stop()
        token = CancelToken()
        self._cancel_token = token
        self._task = asyncio.create_task(
            self.convert(cache_root, output_path, cancel_token=token, **kwargs),
        )
        return self._task

    def cancel(self) -> None:
        if self._cancel_token is not None:
            self._cancel_token.cancel()
            logger.info('Conversion cancel requested')

    async def stop(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        self.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _publish(
        self,
        total: int,
        processed: int,
        current: TileCoordinate | None,
        status: TaskStatus,
    ) -> None:
        self._state = status
        self.progress.publish(
            ConversionProgress(
                total_tiles=max(total, processed),
                processed_tiles=processed,
                current=current,
                status=status,
            ),
        )

    def _write_metadata(
        self,
        conn: sqlite3.Connection,
        name: str,
        bounds: BoundingBox | None,
    ) -> None:
        rows = [
            ('name', name),
            ('type', STORE_TYPE),
            ('version', STORE_VERSION),
            ('format', STORE_FORMAT),
        ]
        if bounds is not None:
            rows.append(('bounds', bounds.as_metadata()))
        conn.executemany(_INSERT_METADATA, rows)
        conn.commit()

    @staticmethod
    def _read_tile(tile_file: Path) -> bytes | None:
        try:
            data = tile_file.read_bytes()
        except OSError as e:
            logger.error('Error reading tile %s: %s', tile_file, e)
            return None
        if not is_valid_image(data):
            logger.warning('Skipping invalid image file: %s', tile_file)
            return None
        return data

    @staticmethod
    def _close(conn: sqlite3.Connection | None) -> None:
        if conn is None:
            return
        try:
            # Closing without commit rolls back any open transaction
            conn.close()
        except sqlite3.Error as e:
            logger.error('Failed to close store: %s', e)

    async def convert(
        self,
        cache_root: Path,
        output_path: Path,
        *,
        name: str | None = None,
        bounds: BoundingBox | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ConversionResult:
        """
        Build ``output_path`` from every valid tile below ``cache_root``.

        Args:
            cache_root: Root of the ``<zoom>/<x>/<y>.png`` tree.
            output_path: Store file to (re)create.
            name: ``name`` metadata value. Defaults to the output file stem.
            bounds: Optional ``bounds`` metadata.
            cancel_token: Checked per zoom dir, x dir and tile.

        Returns:
            ConversionResult; on anything but success the output is deleted.

        """
        if self._running:
            msg = 'A conversion is already running on this instance'
            raise RuntimeError(msg)

        token = cancel_token or CancelToken()
        self._cancel_token = token
        cache_root = Path(cache_root)
        output_path = Path(output_path)
        batch_size = self.settings.convert_batch_size
        total = processed = written = skipped = 0
        conn: sqlite3.Connection | None = None
        self._running = True

        try:
            try:
                if not cache_root.is_dir():
                    msg = f'Tile directory not found: {cache_root}'
                    raise FileNotFoundError(msg)
                output_path.parent.mkdir(parents=True, exist_ok=True)
                remove_store(output_path)
                conn = open_store(output_path)
            except (OSError, sqlite3.Error) as e:
                logger.error('Cannot create store %s: %s', output_path, e)
                self._close(conn)
                conn = None
                with contextlib.suppress(OSError):
                    remove_store(output_path)
                self._publish(0, 0, None, TaskStatus.ERROR)
                return ConversionResult(
                    status=TaskStatus.ERROR,
                    output_path=output_path,
                    error=str(e),
                )

            self._write_metadata(conn, name or output_path.stem, bounds)

            total = count_tiles(cache_root)
            logger.info('Total tiles: %d', total)
            self._publish(total, 0, None, TaskStatus.RUNNING)

            in_batch = 0
            batches = 0
            zooms: set[int] = set()

            for zoom, zoom_dir in iter_zoom_dirs(cache_root):
                token.raise_if_cancelled()
                for x, x_dir in iter_x_dirs(zoom_dir):
                    token.raise_if_cancelled()
                    for y, tile_file in iter_tile_files(x_dir):
                        token.raise_if_cancelled()
                        try:
                            coord = TileCoordinate(zoom, x, y)
                        except ValueError:
                            logger.warning('Skipping out-of-grid tile: %s', tile_file)
                            coord = None
                        data = None if coord is None else self._read_tile(tile_file)

                        if data is None:
                            skipped += 1
                        else:
                            conn.execute(
                                _INSERT_TILE,
                                (zoom, x, flip_y(y, zoom), sqlite3.Binary(data)),
                            )
                            del data
                            written += 1
                            in_batch += 1
                            zooms.add(zoom)

                        processed += 1
                        self._publish(total, processed, coord, TaskStatus.RUNNING)

                        if in_batch >= batch_size:
                            conn.commit()
                            in_batch = 0
                            batches += 1
                            gc.collect()
                            if batches % CONVERT_LOG_MEMORY_EVERY_BATCHES == 0:
                                log_memory_usage(f'after {written} tiles')

                        # Skipped tiles count too, so an all-invalid tree still yields
                        if processed % batch_size == 0:
                            await asyncio.sleep(0)

            if zooms:
                conn.executemany(
                    _INSERT_METADATA,
                    [('minzoom', str(min(zooms))), ('maxzoom', str(max(zooms)))],
                )
            conn.commit()

            # Fold the WAL into the main file so the store stands alone
            conn.execute('PRAGMA wal_checkpoint(TRUNCATE)')
            conn.execute('PRAGMA journal_mode=DELETE')
            conn.close()
            conn = None

            logger.info(
                'Conversion finished: %d tiles written, %d skipped -> %s',
                written,
                skipped,
                output_path,
            )
            self._publish(total, processed, None, TaskStatus.COMPLETED)
            return ConversionResult(
                status=TaskStatus.COMPLETED,
                output_path=output_path,
                tiles_written=written,
                tiles_skipped=skipped,
            )
        except CancelledError:
            logger.info('Conversion cancelled')
            self._discard(conn, output_path)
            conn = None
            self._publish(total, processed, None, TaskStatus.CANCELLED)
            return ConversionResult(
                status=TaskStatus.CANCELLED,
                output_path=output_path,
                tiles_written=written,
                tiles_skipped=skipped,
            )
        except asyncio.CancelledError:
            logger.info('Conversion cancelled by host')
            self._discard(conn, output_path)
            conn = None
            self._publish(total, processed, None, TaskStatus.CANCELLED)
            raise
        except Exception as e:
            logger.exception('Conversion failed')
            self._discard(conn, output_path)
            conn = None
            self._publish(total, processed, None, TaskStatus.ERROR)
            return ConversionResult(
                status=TaskStatus.ERROR,
                output_path=output_path,
                tiles_written=written,
                tiles_skipped=skipped,
                error=str(e),
            )
        finally:
            self._close(conn)
            self._running = False

    def _discard(self, conn: sqlite3.Connection | None, output_path: Path) -> None:
        self._close(conn)
        try:
            remove_store(output_path)
        except OSError as e:
            logger.error('Failed to clean up files: %s', e)
