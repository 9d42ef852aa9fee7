"""
Diagnostic utilities.

Memory and file-handle snapshots used around the long-running download and
conversion phases, plus the writable-directory check both phases run before
touching the network or the store.
"""

import logging
import threading
import time
import types
from pathlib import Path
from typing import Any

import psutil

logger = logging.getLogger(__name__)


def get_memory_info() -> dict[str, Any]:
    """Get process and system memory usage."""
    try:
        process = psutil.Process()
        memory_info = process.memory_info()
        system_memory = psutil.virtual_memory()

        return {
            'process_rss_mb': round(memory_info.rss / 1024 / 1024, 2),
            'process_vms_mb': round(memory_info.vms / 1024 / 1024, 2),
            'system_total_mb': round(system_memory.total / 1024 / 1024, 2),
            'system_available_mb': round(
                system_memory.available / 1024 / 1024,
                2,
            ),
            'system_used_percent': system_memory.percent,
        }
    except Exception as e:
        return {'error': f'Failed to get memory info: {e}'}


def log_memory_usage(context: str = '') -> None:
    """Quick memory usage logging."""
    memory_info = get_memory_info()
    context_label = f' ({context})' if context else ''
    logger.info(
        'Memory usage%s: RSS=%sMB, Available=%sMB',
        context_label,
        memory_info.get('process_rss_mb', 'N/A'),
        memory_info.get('system_available_mb', 'N/A'),
    )


def log_thread_status(context: str = '') -> None:
    """Quick thread status logging."""
    context_label = f' ({context})' if context else ''
    logger.info(
        'Thread status%s: Active=%s',
        context_label,
        threading.active_count(),
    )


def ensure_writable_dir(path: Path) -> None:
    """
    Create ``path`` if needed and prove it accepts writes.

    Raises:
        RuntimeError: directory cannot be created or written.

    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        test_file = path / '.write_test.tmp'
        test_file.write_text('ok', encoding='utf-8')
        test_file.unlink(missing_ok=True)
    except OSError as e:
        msg = f'Directory is not writable: {path}'
        raise RuntimeError(msg) from e


class ResourceMonitor:
    """Context manager logging duration and memory around an operation."""

    def __init__(self, operation_name: str) -> None:
        self.operation_name = operation_name
        self.start_time: float | None = None
        self.start_rss_mb: float | None = None

    def __enter__(self) -> 'ResourceMonitor':
        self.start_time = time.monotonic()
        self.start_rss_mb = get_memory_info().get('process_rss_mb')
        log_memory_usage(f'{self.operation_name} - start')
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        _ = exc_tb
        if self.start_time is None:
            msg = 'Unexpected missing start_time in ResourceMonitor'
            raise RuntimeError(msg)
        duration = time.monotonic() - self.start_time
        end_rss_mb = get_memory_info().get('process_rss_mb')
        logger.info(
            "Operation '%s' finished in %.2f seconds (RSS %s -> %s MB)",
            self.operation_name,
            duration,
            self.start_rss_mb,
            end_rss_mb,
        )
        if exc_type:
            logger.error(
                "Operation '%s' failed with %s: %s",
                self.operation_name,
                exc_type.__name__,
                exc_val,
            )
