"""Domain layer - pipeline models and settings profiles."""
from domain.models import (
    BoundingBox,
    DownloadRequest,
    PipelineSettings,
    Region,
    TileCoordinate,
)
from domain.profiles import (
    delete_profile,
    ensure_profiles_dir,
    list_profiles,
    load_profile,
    save_profile,
)

__all__ = [
    'BoundingBox',
    'DownloadRequest',
    'PipelineSettings',
    'Region',
    'TileCoordinate',
    'delete_profile',
    'ensure_profiles_dir',
    'list_profiles',
    'load_profile',
    'save_profile',
]
