from __future__ import annotations

import contextlib
import logging
import sqlite3
import ssl
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import aiohttp
import certifi
from aiohttp_client_cache import CachedSession, SQLiteBackend

from shared.constants import HTTP_CACHE_FILENAME

if TYPE_CHECKING:
    from domain.models import PipelineSettings

logger = logging.getLogger(__name__)


def make_timeout(timeout_s: float) -> aiohttp.ClientTimeout:
    """Per-request connect/read timeouts; no cap on the whole transfer."""
    return aiohttp.ClientTimeout(
        total=None,
        connect=timeout_s,
        sock_connect=timeout_s,
        sock_read=timeout_s,
    )


def make_connector(settings: PipelineSettings) -> aiohttp.TCPConnector:
    # SSL context with certifi's CA bundle
    ssl_context = ssl.create_default_context(cafile=certifi.where())
    return aiohttp.TCPConnector(
        ssl=ssl_context,
        limit=settings.max_connections,
        limit_per_host=settings.max_connections_per_host,
    )


def make_http_session(
    settings: PipelineSettings,
    cache_dir: Path | None = None,
) -> aiohttp.ClientSession:
    """
    Shared session for all fetches of one download.

    With ``http_cache_enabled`` and a ``cache_dir`` the session is an
    aiohttp-client-cache ``CachedSession`` backed by SQLite, so re-running a
    download against the same server can be served from disk.
    """
    connector = make_connector(settings)
    timeout = make_timeout(settings.http_timeout_s)
    headers = {'User-Agent': settings.user_agent}

    if settings.http_cache_enabled and cache_dir is not None:
        cache_dir.mkdir(parents=True, exist_ok=True)
        cache_path = cache_dir / HTTP_CACHE_FILENAME
        with contextlib.suppress(sqlite3.Error):
            if not cache_path.exists():
                with sqlite3.connect(cache_path) as _conn:
                    _conn.execute('PRAGMA journal_mode=WAL;')
        expire_td = timedelta(hours=max(0, int(settings.http_cache_expire_hours)))
        backend = SQLiteBackend(str(cache_path), expire_after=expire_td)
        logger.info('HTTP response cache enabled at %s', cache_path)
        return CachedSession(
            cache=backend,
            connector=connector,
            timeout=timeout,
            headers=headers,
        )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=timeout,
        headers=headers,
    )


def cleanup_sqlite_cache(cache_dir: Path) -> None:
    """Fold the HTTP cache's WAL back into its database file."""
    cache_file = cache_dir / HTTP_CACHE_FILENAME
    if cache_file.exists():
        conn = sqlite3.connect(cache_file)
        try:
            conn.execute('PRAGMA wal_checkpoint(TRUNCATE);')
        finally:
            conn.close()
