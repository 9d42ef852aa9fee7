"""TOML settings profiles for the pipeline."""

import logging
from pathlib import Path

import tomlkit

from domain.models import PipelineSettings
from domain.toml_sections import flat_to_sectioned, sectioned_to_flat
from shared.constants import PROFILES_SUBDIR
from shared.storage import default_storage_root

logger = logging.getLogger(__name__)


def _user_profiles_dir() -> Path:
    """Profiles live under the storage root (``TILEPACK_HOME`` aware)."""
    return default_storage_root() / PROFILES_SUBDIR


def ensure_profiles_dir() -> Path:
    profiles_dir = _user_profiles_dir()
    profiles_dir.mkdir(parents=True, exist_ok=True)
    return profiles_dir


def list_profiles() -> list[str]:
    """Profile names without extension."""
    folder = ensure_profiles_dir()
    return sorted(p.stem for p in folder.glob('*.toml') if p.is_file())


def profile_path(name: str) -> Path:
    return ensure_profiles_dir() / f'{name}.toml'


def load_profile(name_or_path: str) -> PipelineSettings:
    """
    Load and validate a TOML profile.

    Accepts either a profile name from the profiles directory or a path to a
    ``.toml`` file. Both sectioned and flat files are understood.
    """
    p = Path(name_or_path)
    path = (
        p if p.suffix.lower() == '.toml' and p.exists() else profile_path(name_or_path)
    )
    if not path.exists():
        msg = f'Profile not found: {path}'
        raise FileNotFoundError(msg)
    data = tomlkit.parse(path.read_text(encoding='utf-8')).unwrap()
    settings = PipelineSettings.model_validate(sectioned_to_flat(data))
    logger.info('Profile loaded: %s', path)
    return settings


def save_profile(name: str, settings: PipelineSettings) -> Path:
    """Write ``settings`` as a sectioned TOML profile (no atomicity, no backups)."""
    path = profile_path(name)
    data = flat_to_sectioned(settings.model_dump(mode='json'))
    path.write_text(tomlkit.dumps(data), encoding='utf-8')
    logger.info('Profile saved: %s', path)
    return path


def delete_profile(name: str) -> None:
    path = profile_path(name)
    if path.exists():
        path.unlink()
