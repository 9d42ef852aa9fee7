"""HTTP client infrastructure."""
from infrastructure.http.client import (
    cleanup_sqlite_cache,
    make_connector,
    make_http_session,
    make_timeout,
)

__all__ = [
    'cleanup_sqlite_cache',
    'make_connector',
    'make_http_session',
    'make_timeout',
]
