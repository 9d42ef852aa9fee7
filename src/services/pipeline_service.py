"""Host-facing pipeline: download a region, then package it as one store."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from domain.models import (
    DownloadRequest,
    PipelineResult,
    PipelineSettings,
    Region,
    TileCoordinate,
)
from infrastructure.http.client import make_http_session
from shared.constants import STORE_URI_SCHEME, PipelineStatus, TaskStatus, TileScheme
from shared.diagnostics import ResourceMonitor
from shared.progress import CancelToken
from shared.storage import resolve_destination
from tiles.downloader import TileDownloader
from tiles.indexer import tile_for_lnglat
from tiles.mbtiles import MBTilesWriter

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence
    from pathlib import Path

    from domain.models import ConversionProgress, DownloadProgress
    from shared.progress import ProgressChannel
    from tiles.downloader import SessionFactory

logger = logging.getLogger(__name__)


class TilePipeline:
    """
    Download followed by conversion, one run at a time.

    The store is written to ``<dir>/<dir name>.mbtiles`` where ``<dir>`` is
    the resolved destination; conversion only runs after a completed
    download.

    Usage:
        pipeline = TilePipeline()
        result = await pipeline.run(rings, 'https://t.example/{z}/{x}/{y}.png',
                                    'area', min_zoom=0, max_zoom=12)
        uri = pipeline.store_uri(result.store_path)
    """

    def __init__(
        self,
        settings: PipelineSettings | None = None,
        *,
        session_factory: SessionFactory = make_http_session,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or PipelineSettings()
        self.downloader = TileDownloader(
            self.settings,
            session_factory=session_factory,
            sleep=sleep,
        )
        self.writer = MBTilesWriter(self.settings)
        self._phase = PipelineStatus.IDLE
        self._task: asyncio.Task[PipelineResult] | None = None
        self._download_token: CancelToken | None = None
        self._convert_token: CancelToken | None = None

    @property
    def download_progress(self) -> ProgressChannel[DownloadProgress]:
        return self.downloader.progress

    @property
    def conversion_progress(self) -> ProgressChannel[ConversionProgress]:
        return self.writer.progress

    @property
    def is_busy(self) -> bool:
        return self._phase is not PipelineStatus.IDLE

    @property
    def status(self) -> str:
        """``Idle``, ``Downloading`` or ``Converting``."""
        return self._phase.value

    def store_path_for(self, destination: str) -> Path:
        directory = resolve_destination(destination, self.settings.storage_root)
        return directory / f'{directory.name}.{self.settings.store_extension}'

    @staticmethod
    def store_uri(path: Path) -> str:
        """Locator the rendering layer opens the store with."""
        return f'{STORE_URI_SCHEME}://{path.resolve().as_posix()}'

    @staticmethod
    def tile_for_location(
        lat: float,
        lng: float,
        zoom: int,
        scheme: TileScheme = TileScheme.XYZ,
    ) -> TileCoordinate:
        return tile_for_lnglat(lng, lat, zoom, scheme)

    def _build_request(
        self,
        region: Region | Sequence,
        url_template: str,
        destination: str,
        min_zoom: int,
        max_zoom: int,
        scheme: TileScheme,
    ) -> DownloadRequest:
        if not isinstance(region, Region):
            region = Region.from_coordinates(list(region))
        return DownloadRequest(
            region=region,
            url_template=url_template,
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            scheme=scheme,
            cache_dir=resolve_destination(destination, self.settings.storage_root),
        )

    async def run(
        self,
        region: Region | Sequence,
        url_template: str,
        destination: str,
        min_zoom: int,
        max_zoom: int,
        scheme: TileScheme = TileScheme.XYZ,
        *,
        download_token: CancelToken | None = None,
        convert_token: CancelToken | None = None,
    ) -> PipelineResult:
        """
        Download ``region`` into ``destination`` and convert it to a store.

        Args:
            region: ``Region`` or GeoJSON-like rings of ``[lng, lat]``.
            url_template: Tile URL with ``{z}``, ``{x}``, ``{y}``.
            destination: Absolute directory or a name under the storage root.
            min_zoom: First zoom level, inclusive.
            max_zoom: Last zoom level, inclusive.
            scheme: Row numbering the server expects.
            download_token: Token for the download phase, created when omitted.
            convert_token: Token for the conversion phase, created when omitted.

        Returns:
            PipelineResult; ``store_path`` is set only on success.

        Raises:
            pydantic.ValidationError: invalid region, template or zoom range.
            ValueError: invalid destination name.
            RuntimeError: the pipeline is already busy.

        """
        if self.is_busy:
            msg = 'Pipeline is already running'
            raise RuntimeError(msg)

        request = self._build_request(
            region, url_template, destination, min_zoom, max_zoom, scheme
        )
        directory = request.cache_dir
        store_path = directory / f'{directory.name}.{self.settings.store_extension}'
        self._download_token = download_token or CancelToken()
        self._convert_token = convert_token or CancelToken()

        try:
            self._phase = PipelineStatus.DOWNLOADING
            logger.info(
                'Pipeline started: zoom %d-%d, scheme %s -> %s',
                min_zoom,
                max_zoom,
                request.scheme.value,
                directory,
            )
            with ResourceMonitor('tile download'):
                download = await self.downloader.download(
                    request,
                    self._download_token,
                )
            if download.status is not TaskStatus.COMPLETED:
                logger.warning('Download ended with %s, skipping conversion', download.status.value)
                return PipelineResult(
                    status=download.status,
                    download=download,
                    errors=[download.error] if download.error else [],
                )

            errors: list[str] = []
            if download.failed_coordinates:
                errors.append(
                    f'{len(download.failed_coordinates)} tiles failed to download',
                )

            self._phase = PipelineStatus.CONVERTING
            with ResourceMonitor('store conversion'):
                conversion = await self.writer.convert(
                    directory,
                    store_path,
                    name=directory.name,
                    bounds=request.region.bounding_box(),
                    cancel_token=self._convert_token,
                )
            if conversion.error:
                errors.append(conversion.error)
            ok = conversion.status is TaskStatus.COMPLETED
            if ok:
                logger.info('Store ready: %s', self.store_uri(store_path))
            return PipelineResult(
                status=conversion.status,
                download=download,
                conversion=conversion,
                store_path=store_path if ok else None,
                errors=errors,
            )
        finally:
            self._phase = PipelineStatus.IDLE

    async def start(self, *args: object, **kwargs: object) -> asyncio.Task[PipelineResult]:
        """Stop any running pipeline, then schedule ``run`` as a task."""
        await self.stop()
        # Tokens exist before the task runs so stop_all right after start is honoured
        self._download_token = CancelToken()
        self._convert_token = CancelToken()
        self._task = asyncio.create_task(
            self.run(
                *args,
                download_token=self._download_token,
                convert_token=self._convert_token,
                **kwargs,
            ),
        )
        return self._task

    def stop_download(self) -> None:
        if self._download_token is not None:
            self._download_token.cancel()
            logger.info('Stop download requested')

    def stop_conversion(self) -> None:
        if self._convert_token is not None:
            self._convert_token.cancel()
            logger.info('Stop conversion requested')

    def stop_all(self) -> None:
        self.stop_download()
        self.stop_conversion()

    async def stop(self) -> None:
        """Stop both phases and wait for the running task to settle."""
        task = self._task
        if task is None or task.done():
            return
        self.stop_all()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def build_tile_store(
    region: Region | Sequence,
    url_template: str,
    destination: str,
    min_zoom: int,
    max_zoom: int,
    scheme: TileScheme = TileScheme.XYZ,
    settings: PipelineSettings | None = None,
) -> PipelineResult:
    """Convenience wrapper running one pipeline to completion."""
    pipeline = TilePipeline(settings)
    return await pipeline.run(
        region,
        url_template,
        destination,
        min_zoom=min_zoom,
        max_zoom=max_zoom,
        scheme=scheme,
    )
