"""Services package - host-facing tile pipeline."""

from services.pipeline_service import TilePipeline, build_tile_store

__all__ = [
    'TilePipeline',
    'build_tile_store',
]
