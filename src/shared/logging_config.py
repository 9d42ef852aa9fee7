"""Application logging setup for hosts embedding the pipeline."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from shared.constants import LOG_FILENAME, LOG_FORMAT, LOG_SUBDIR
from shared.storage import default_storage_root


def setup_logging(
    log_dir: Path | None = None,
    level: int = logging.INFO,
) -> Path:
    """Configure root logging to stdout and a UTF-8 log file.

    Returns:
        Path of the log file.
    """
    log_dir = Path(log_dir) if log_dir is not None else default_storage_root() / LOG_SUBDIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(str(log_file), encoding='utf-8'),
        ],
        force=True,
    )
    # Connection-level chatter is noise at INFO
    logging.getLogger('aiohttp').setLevel(max(level, logging.WARNING))
    return log_file
