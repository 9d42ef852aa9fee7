"""
Fetch worker pool.

``TileFetcher`` downloads tiles through one shared ``aiohttp`` session with a
semaphore capping in-flight requests. Each tile gets a fixed number of
attempts per call with an escalating backoff; transient failures never
escape as exceptions, they come back as ``FetchOutcome.FAILED``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import aiohttp

from shared.constants import HTTP_2XX_MAX, HTTP_2XX_MIN, TILE_PART_SUFFIX
from shared.progress import sleep_cancellable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence
    from pathlib import Path

    from domain.models import PipelineSettings, TileTask
    from shared.progress import CancelToken

logger = logging.getLogger(__name__)


class FetchOutcome(str, Enum):
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class TileFetchError(Exception):
    """A single fetch attempt produced no usable payload."""


class TileHttpError(TileFetchError):
    def __init__(self, status: int, url: str) -> None:
        super().__init__(f'HTTP {status} for {url}')
        self.status = status


def redact_url(url: str) -> str:
    """URL without its query string, so tokens never reach the log."""
    return url.split('?', 1)[0]


def write_tile_atomically(path: Path, data: bytes) -> None:
    """Write ``data`` next to ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    part = path.with_name(path.name + TILE_PART_SUFFIX)
    try:
        part.write_bytes(data)
        os.replace(part, path)
    except OSError:
        with contextlib.suppress(OSError):
            part.unlink(missing_ok=True)
        raise


class DownloadCounters:
    """Progress counters owned by one download; safe to read from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.completed = 0
        self.failed = 0
        self.retrying = 0

    def reset(self) -> None:
        with self._lock:
            self.completed = 0
            self.failed = 0
            self.retrying = 0

    def mark_completed(self) -> None:
        with self._lock:
            self.completed += 1

    def mark_failed(self) -> None:
        with self._lock:
            self.failed += 1

    def clear_failed(self, n: int) -> None:
        """Tasks re-entering a retry round are no longer counted as failed."""
        with self._lock:
            self.failed = max(0, self.failed - n)

    def retry_started(self) -> None:
        with self._lock:
            self.retrying += 1

    def retry_settled(self) -> None:
        with self._lock:
            self.retrying = max(0, self.retrying - 1)

    def snapshot(self) -> tuple[int, int, int]:
        """(completed, failed, retrying) read under one lock."""
        with self._lock:
            return self.completed, self.failed, self.retrying


@dataclass
class BatchResult:
    succeeded: list[TileTask] = field(default_factory=list)
    failed: list[TileTask] = field(default_factory=list)
    cancelled: list[TileTask] = field(default_factory=list)


class TileFetcher:
    """Bounded-concurrency tile downloader with per-tile retry."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        settings: PipelineSettings,
        *,
        counters: DownloadCounters | None = None,
        cancel_token: CancelToken | None = None,
        concurrency: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session = session
        self.settings = settings
        self.counters = counters or DownloadCounters()
        self.cancel_token = cancel_token
        self.semaphore = asyncio.Semaphore(concurrency or settings.max_connections)
        self._sleep = sleep

    def _cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.is_cancelled

    async def _download(self, task: TileTask) -> None:
        async with self.session.get(task.url) as resp:
            if not (HTTP_2XX_MIN <= resp.status < HTTP_2XX_MAX):
                raise TileHttpError(resp.status, redact_url(task.url))
            data = await resp.read()
        if not data:
            msg = f'Empty response body for {redact_url(task.url)}'
            raise TileFetchError(msg)
        write_tile_atomically(task.local_path, data)

    async def fetch_tile(self, task: TileTask) -> FetchOutcome:
        """
        Download one tile with up to ``max_attempts`` attempts.

        Returns:
            SUCCEEDED once the file is in place, FAILED after the last
            attempt, CANCELLED if the token was set before completion.

        """
        attempts = self.settings.max_attempts
        retrying = False
        try:
            for attempt in range(attempts):
                if self._cancelled():
                    return FetchOutcome.CANCELLED
                if attempt > 0:
                    if not retrying:
                        self.counters.retry_started()
                        retrying = True
                    waited = await sleep_cancellable(
                        self.settings.retry_delay(attempt),
                        self.cancel_token,
                        sleep=self._sleep,
                    )
                    if not waited:
                        return FetchOutcome.CANCELLED
                try:
                    async with self.semaphore:
                        if self._cancelled():
                            return FetchOutcome.CANCELLED
                        await self._download(task)
                except (aiohttp.ClientError, TimeoutError, OSError, TileFetchError) as e:
                    task.retry_count += 1
                    logger.warning(
                        'Download tile %s failed (attempt %d/%d): %s, Error: %s',
                        task.coordinate,
                        attempt + 1,
                        attempts,
                        redact_url(task.url),
                        e,
                    )
                    continue
                return FetchOutcome.SUCCEEDED
            return FetchOutcome.FAILED
        finally:
            if retrying:
                self.counters.retry_settled()

    async def fetch_batch(
        self,
        tasks: Sequence[TileTask],
        on_settled: Callable[[TileTask, FetchOutcome], None] | None = None,
    ) -> BatchResult:
        """Run every task of the batch concurrently and wait for all of them."""
        result = BatchResult()

        async def _worker(task: TileTask) -> None:
            outcome = await self.fetch_tile(task)
            if outcome is FetchOutcome.SUCCEEDED:
                result.succeeded.append(task)
            elif outcome is FetchOutcome.FAILED:
                result.failed.append(task)
            else:
                result.cancelled.append(task)
            if on_settled is not None:
                on_settled(task, outcome)

        settled = await asyncio.gather(
            *(_worker(t) for t in tasks),
            return_exceptions=True,
        )
        for item in settled:
            if isinstance(item, BaseException):
                raise item
        return result
