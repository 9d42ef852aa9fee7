"""Shared utilities and helpers."""
from shared.diagnostics import (
    ResourceMonitor,
    ensure_writable_dir,
    log_memory_usage,
    log_thread_status,
)
from shared.progress import (
    CancelledError,
    CancelToken,
    ProgressChannel,
    ProgressSubscription,
    check_cancelled,
)

__all__ = [
    'CancelToken',
    'CancelledError',
    'ProgressChannel',
    'ProgressSubscription',
    'ResourceMonitor',
    'check_cancelled',
    'ensure_writable_dir',
    'log_memory_usage',
    'log_thread_status',
]
