"""
Progress reporting and cooperative cancellation.

``ProgressChannel`` broadcasts typed snapshots to any number of observers:
async subscribers drain a bounded queue each, synchronous listeners are
called inline. A slow subscriber loses the oldest snapshots rather than
slowing the producer, so observers must treat snapshots as eventually
consistent state.

``CancelToken`` is the flag passed through every call boundary of a run and
checked at its yield points.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Generic, Protocol, TypeVar

from shared.constants import CANCEL_POLL_INTERVAL_S, PROGRESS_QUEUE_SIZE

logger = logging.getLogger(__name__)


class CancelledError(Exception):
    """Raised at a yield point once the run's cancel token is set."""


class CancelToken:
    """Shared cancellation flag, safe to set from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            msg = 'Operation cancelled'
            raise CancelledError(msg)


def check_cancelled(token: CancelToken | None) -> None:
    """Raise CancelledError if ``token`` is set; ``None`` never cancels."""
    if token is not None:
        token.raise_if_cancelled()


async def sleep_cancellable(
    delay: float,
    token: CancelToken | None,
    *,
    step: float = CANCEL_POLL_INTERVAL_S,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """
    Sleep ``delay`` seconds in slices, returning early once ``token`` is set.

    Returns:
        True if the full delay elapsed, False if cancelled.

    """
    remaining = delay
    while remaining > 0:
        if token is not None and token.is_cancelled:
            return False
        chunk = min(step, remaining)
        await sleep(chunk)
        remaining -= chunk
    return not (token is not None and token.is_cancelled)


class Snapshot(Protocol):
    @property
    def is_terminal(self) -> bool: ...


SnapshotT = TypeVar('SnapshotT', bound=Snapshot)


class ProgressSubscription(Generic[SnapshotT]):
    """One observer's bounded view of a ProgressChannel."""

    def __init__(
        self,
        channel: ProgressChannel[SnapshotT],
        maxsize: int,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[SnapshotT] = asyncio.Queue(maxsize=maxsize)
        self._loop = loop
        self.dropped = 0

    def _offer(self, snapshot: SnapshotT) -> None:
        # Runs on the subscriber's loop
        while True:
            try:
                self._queue.put_nowait(snapshot)
            except asyncio.QueueFull:
                with contextlib.suppress(asyncio.QueueEmpty):
                    self._queue.get_nowait()
                    self.dropped += 1
            else:
                return

    def deliver(self, snapshot: SnapshotT) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._offer(snapshot)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._offer, snapshot)

    async def get(self) -> SnapshotT:
        return await self._queue.get()

    def get_nowait(self) -> SnapshotT:
        return self._queue.get_nowait()

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __enter__(self) -> ProgressSubscription[SnapshotT]:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def __aiter__(self) -> AsyncIterator[SnapshotT]:
        """Yield snapshots until (and including) a terminal one."""
        while True:
            snapshot = await self._queue.get()
            yield snapshot
            if snapshot.is_terminal:
                return


class ProgressChannel(Generic[SnapshotT]):
    """Broadcast channel of progress snapshots."""

    def __init__(self, maxsize: int = PROGRESS_QUEUE_SIZE) -> None:
        self._maxsize = maxsize
        self._lock = threading.Lock()
        self._subscriptions: list[ProgressSubscription[SnapshotT]] = []
        self._listeners: list[Callable[[SnapshotT], None]] = []
        self._latest: SnapshotT | None = None

    @property
    def latest(self) -> SnapshotT | None:
        """Most recently published snapshot."""
        return self._latest

    def subscribe(
        self, maxsize: int | None = None
    ) -> ProgressSubscription[SnapshotT]:
        """Create a subscription bound to the running event loop."""
        loop = asyncio.get_running_loop()
        sub = ProgressSubscription(self, maxsize or self._maxsize, loop)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: ProgressSubscription[SnapshotT]) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def add_listener(self, listener: Callable[[SnapshotT], None]) -> None:
        """Register a synchronous observer called on every publish."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[SnapshotT], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, snapshot: SnapshotT) -> None:
        with self._lock:
            self._latest = snapshot
            subscriptions = list(self._subscriptions)
            listeners = list(self._listeners)

        for sub in subscriptions:
            sub.deliver(snapshot)

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception(
                    'Error notifying progress listener %r',
                    listener,
                )
