"""
Download orchestration.

``TileDownloader`` indexes every zoom level of a request, pushes the tasks
through a ``TileFetcher`` in bulk-synchronous batches (a batch must settle
before the next one starts), then runs bounded global retry rounds over the
tiles that failed a whole round. Progress goes out on ``self.progress``;
cancellation is a ``CancelToken`` checked between batches and inside waits.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sqlite3
from typing import TYPE_CHECKING

from domain.models import DownloadProgress, DownloadResult, PipelineSettings
from infrastructure.http.client import cleanup_sqlite_cache, make_http_session
from shared.constants import TaskStatus
from shared.diagnostics import (
    ensure_writable_dir,
    log_memory_usage,
    log_thread_status,
)
from shared.progress import (
    CancelledError,
    CancelToken,
    ProgressChannel,
    sleep_cancellable,
)
from tiles.fetcher import DownloadCounters, FetchOutcome, TileFetcher
from tiles.indexer import collect_tasks

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    import aiohttp

    from domain.models import DownloadRequest, TileCoordinate, TileTask

    SessionFactory = Callable[[PipelineSettings, Path | None], aiohttp.ClientSession]

logger = logging.getLogger(__name__)

HTTP_CACHE_SUBDIR = '.http'


class TileDownloader:
    """
    Drives one download at a time for a pipeline instance.

    Usage:
        downloader = TileDownloader()
        task = await downloader.start(request)
        result = await task
    """

    def __init__(
        self,
        settings: PipelineSettings | None = None,
        *,
        session_factory: SessionFactory = make_http_session,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or PipelineSettings()
        self.progress: ProgressChannel[DownloadProgress] = ProgressChannel(
            self.settings.progress_queue_size,
        )
        self.counters = DownloadCounters()
        self._session_factory = session_factory
        self._sleep = sleep
        self._task: asyncio.Task[DownloadResult] | None = None
        self._cancel_token: CancelToken | None = None
        self._running = False
        self._state: TaskStatus | None = None
        self._total = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> str:
        """``Idle`` before the first run, otherwise the last status."""
        return 'Idle' if self._state is None else self._state.value

    async def start(self, request: DownloadRequest) -> asyncio.Task[DownloadResult]:
        """Cancel any in-flight run, then schedule a new one."""
        await self.stop()
        token = CancelToken()
        self._cancel_token = token
        self._task = asyncio.create_task(self.download(request, token))
        return self._task

    def cancel(self) -> None:
        """Ask the current run to stop at its next yield point."""
        if self._cancel_token is not None:
            self._cancel_token.cancel()
            logger.info('Download cancel requested')

    async def stop(self) -> None:
        """Cancel the current run and wait until it has settled."""
        task = self._task
        if task is None or task.done():
            return
        self.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _publish(
        self,
        status: TaskStatus,
        current: TileCoordinate | None = None,
        failed_coordinates: tuple[TileCoordinate, ...] = (),
        *,
        total: int | None = None,
    ) -> DownloadProgress:
        completed, failed, retrying = self.counters.snapshot()
        snapshot = DownloadProgress(
            total_tiles=self._total if total is None else total,
            completed_tiles=completed,
            failed_tiles=failed,
            retrying_tiles=retrying,
            current=current,
            status=status,
            failed_coordinates=failed_coordinates,
        )
        self._state = status
        self.progress.publish(snapshot)
        return snapshot

    def _on_settled(self, task: TileTask, outcome: FetchOutcome) -> None:
        if outcome is FetchOutcome.SUCCEEDED:
            self.counters.mark_completed()
        elif outcome is FetchOutcome.FAILED:
            self.counters.mark_failed()
        else:
            return
        self._publish(TaskStatus.RUNNING, task.coordinate)

    async def _index(
        self,
        request: DownloadRequest,
        token: CancelToken,
    ) -> list[TileTask]:
        bbox = request.region.bounding_box()
        logger.info(
            'Bounding box: [%s,%s,%s,%s]',
            bbox.min_lng,
            bbox.min_lat,
            bbox.max_lng,
            bbox.max_lat,
        )
        tasks: list[TileTask] = []
        for zoom in range(request.min_zoom, request.max_zoom + 1):
            token.raise_if_cancelled()
            tasks.extend(
                collect_tasks(
                    bbox,
                    zoom,
                    request.url_template,
                    request.scheme,
                    request.cache_dir,
                ),
            )
            self._total = len(tasks)
            self._publish(TaskStatus.RUNNING)
            logger.info(
                'Zoom level %d collection complete, current total tiles: %d',
                zoom,
                len(tasks),
            )
            await asyncio.sleep(0)
        return tasks

    async def _run_rounds(
        self,
        fetcher: TileFetcher,
        tasks: list[TileTask],
        token: CancelToken,
    ) -> list[TileTask]:
        """Primary pass plus global retry rounds; returns permanently failed tasks."""
        settings = self.settings
        budget = settings.attempt_budget
        pending = tasks
        permanently_failed: list[TileTask] = []
        round_no = 0

        while pending:
            failed: list[TileTask] = []
            for start in range(0, len(pending), settings.batch_size):
                token.raise_if_cancelled()
                batch = pending[start : start + settings.batch_size]
                result = await fetcher.fetch_batch(batch, self._on_settled)
                failed.extend(result.failed)
                if result.cancelled:
                    token.raise_if_cancelled()
                if start + settings.batch_size < len(pending) and settings.batch_pause_s:
                    await self._sleep(settings.batch_pause_s)

            retriable = [t for t in failed if t.retry_count < budget]
            exhausted = [t for t in failed if t.retry_count >= budget]
            permanently_failed.extend(exhausted)

            if not retriable:
                break
            if round_no >= settings.retry_rounds:
                permanently_failed.extend(retriable)
                break

            round_no += 1
            logger.info(
                'Retry round %d/%d: %d tiles after %.1fs cooldown',
                round_no,
                settings.retry_rounds,
                len(retriable),
                settings.round_cooldown_s,
            )
            self.counters.clear_failed(len(retriable))
            waited = await sleep_cancellable(
                settings.round_cooldown_s,
                token,
                sleep=self._sleep,
            )
            if not waited:
                token.raise_if_cancelled()
            pending = retriable

        if permanently_failed:
            logger.warning(
                'All retry attempts completed, %d tiles failed to download',
                len(permanently_failed),
            )
        return permanently_failed

    async def download(
        self,
        request: DownloadRequest,
        cancel_token: CancelToken | None = None,
    ) -> DownloadResult:
        """
        Run one download to a terminal state.

        Per-tile errors end up in the counters; structural and unexpected
        errors produce an ``Error`` result. Never raises except for
        ``asyncio.CancelledError`` when the surrounding task is cancelled.
        """
        if self._running:
            msg = 'A download is already running on this instance'
            raise RuntimeError(msg)

        token = cancel_token or CancelToken()
        self._cancel_token = token
        self._running = True
        self._total = 0
        self.counters.reset()
        cache_dir = request.cache_dir

        try:
            try:
                ensure_writable_dir(cache_dir)
            except RuntimeError as e:
                logger.error('Cannot prepare cache directory: %s', e)
                self._publish(TaskStatus.ERROR, total=0)
                return DownloadResult(
                    status=TaskStatus.ERROR,
                    cache_dir=cache_dir,
                    error=str(e),
                )

            self._publish(TaskStatus.RUNNING)
            tasks = await self._index(request, token)
            logger.info('Total tiles to download: %d', len(tasks))

            failed: list[TileTask] = []
            if tasks:
                log_memory_usage('before tile download')
                log_thread_status('before tile download')
                async with self._session_factory(
                    self.settings,
                    cache_dir / HTTP_CACHE_SUBDIR,
                ) as session:
                    fetcher = TileFetcher(
                        session,
                        self.settings,
                        counters=self.counters,
                        cancel_token=token,
                        sleep=self._sleep,
                    )
                    failed = await self._run_rounds(fetcher, tasks, token)
                if self.settings.http_cache_enabled:
                    self._cleanup_http_cache(cache_dir / HTTP_CACHE_SUBDIR)
            log_memory_usage('download finished')

            failed_coords = tuple(sorted(t.coordinate for t in failed))
            self._publish(TaskStatus.COMPLETED, failed_coordinates=failed_coords)
            completed, _, _ = self.counters.snapshot()
            return DownloadResult(
                status=TaskStatus.COMPLETED,
                cache_dir=cache_dir,
                total_tiles=self._total,
                completed_tiles=completed,
                failed_coordinates=failed_coords,
            )
        except CancelledError:
            logger.info('Download task cancelled')
            return self._cancelled_result(cache_dir)
        except asyncio.CancelledError:
            logger.info('Download task cancelled by host')
            self._cancelled_result(cache_dir)
            raise
        except Exception as e:
            logger.exception('Error during download')
            self._publish(TaskStatus.ERROR)
            completed, _, _ = self.counters.snapshot()
            return DownloadResult(
                status=TaskStatus.ERROR,
                cache_dir=cache_dir,
                total_tiles=self._total,
                completed_tiles=completed,
                error=str(e),
            )
        finally:
            self._running = False

    def _cancelled_result(self, cache_dir: Path) -> DownloadResult:
        self._publish(TaskStatus.CANCELLED)
        completed, _, _ = self.counters.snapshot()
        return DownloadResult(
            status=TaskStatus.CANCELLED,
            cache_dir=cache_dir,
            total_tiles=self._total,
            completed_tiles=completed,
        )

    @staticmethod
    def _cleanup_http_cache(http_cache_dir: Path) -> None:
        try:
            cleanup_sqlite_cache(http_cache_dir)
        except sqlite3.Error:
            logger.debug('Error during HTTP cache cleanup', exc_info=True)
