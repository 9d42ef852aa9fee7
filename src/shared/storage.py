"""Resolution of destination identifiers into absolute directories."""

from __future__ import annotations

import os
import re
from pathlib import Path

from shared.constants import APP_DIR_NAME, STORAGE_ROOT_ENV

_DESTINATION_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$')


def default_storage_root() -> Path:
    """
    Base directory for downloaded tiles, stores, profiles and logs.

    1) ``TILEPACK_HOME`` when set.
    2) ``%LOCALAPPDATA%/tilepack`` on hosts that define it.
    3) ``~/.tilepack`` otherwise.
    """
    override = os.getenv(STORAGE_ROOT_ENV)
    if override:
        return Path(override).expanduser().resolve()

    local = os.getenv('LOCALAPPDATA')
    if local:
        return (Path(local) / APP_DIR_NAME).resolve()
    return (Path.home() / f'.{APP_DIR_NAME}').resolve()


def resolve_destination(destination: str, root: Path | None = None) -> Path:
    """
    Absolute directory for a destination identifier.

    An absolute path is taken as is; a plain name becomes a subdirectory of
    the storage root.

    Raises:
        ValueError: the name is empty or contains path separators.

    """
    candidate = Path(destination)
    if candidate.is_absolute():
        return candidate.resolve()
    if not _DESTINATION_RE.fullmatch(destination) or destination in ('.', '..'):
        msg = f'Invalid destination name: {destination!r}'
        raise ValueError(msg)
    base = root if root is not None else default_storage_root()
    return (Path(base) / destination).resolve()
