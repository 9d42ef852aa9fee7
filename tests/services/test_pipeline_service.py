"""Tests for the host-facing pipeline."""

import sqlite3

import pytest
from pydantic import ValidationError

from domain.models import PipelineSettings, TileCoordinate
from services.pipeline_service import TilePipeline
from shared.constants import TaskStatus, TileScheme
from tiles.mbtiles import read_metadata

SQUARE = [[[0, 0], [0, 1], [1, 1], [1, 0], [0, 0]]]


@pytest.fixture
def pipeline(tmp_path, fast_sleep):
    return TilePipeline(PipelineSettings(storage_root=tmp_path), sleep=fast_sleep)


class TestRun:
    """Download followed by conversion."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, pipeline, tmp_path, tile_server):
        statuses = []
        pipeline.download_progress.add_listener(lambda _s: statuses.append(pipeline.status))
        pipeline.conversion_progress.add_listener(lambda _s: statuses.append(pipeline.status))
        assert pipeline.status == 'Idle'

        async with tile_server() as server:
            result = await pipeline.run(SQUARE, server.url_template, 'area', 2, 2)

        assert result.status is TaskStatus.COMPLETED
        assert result.store_path == (tmp_path / 'area' / 'area.mbtiles').resolve()
        assert result.download.completed_tiles == 2
        assert result.conversion.tiles_written == 2
        assert result.errors == []

        conn = sqlite3.connect(result.store_path)
        try:
            rows = sorted(conn.execute('SELECT zoom_level, tile_column, tile_row FROM tiles'))
        finally:
            conn.close()
        # xyz rows 1 and 2 at zoom 2 are TMS rows 2 and 1
        assert rows == [(2, 2, 1), (2, 2, 2)]
        meta = read_metadata(result.store_path)
        assert meta['name'] == 'area'
        assert meta['format'] == 'png'
        assert meta['bounds'] == '0.0,0.0,1.0,1.0'

        assert 'Downloading' in statuses
        assert 'Converting' in statuses
        assert pipeline.status == 'Idle'
        assert not pipeline.is_busy

    @pytest.mark.asyncio
    async def test_failed_tiles_still_produce_a_store(self, pipeline, tile_server):
        async with tile_server(always_fail={'/2/2/1.png'}) as server:
            result = await pipeline.run(SQUARE, server.url_template, 'partial', 2, 2)

        assert result.status is TaskStatus.COMPLETED
        assert result.download.failed_coordinates == (TileCoordinate(2, 2, 1),)
        assert result.conversion.tiles_written == 1
        assert result.errors == ['1 tiles failed to download']

    @pytest.mark.asyncio
    async def test_tms_scheme(self, pipeline, tmp_path, tile_server):
        async with tile_server() as server:
            result = await pipeline.run(
                SQUARE, server.url_template, 'tms', 2, 2, scheme=TileScheme.TMS
            )
        assert result.status is TaskStatus.COMPLETED
        assert (tmp_path / 'tms' / '2' / '2' / '1.png').exists()

    @pytest.mark.asyncio
    async def test_stop_download_skips_conversion(self, pipeline, tmp_path, tile_server):
        pipeline.download_progress.add_listener(lambda _s: pipeline.stop_download())
        async with tile_server() as server:
            result = await pipeline.run(SQUARE, server.url_template, 'stopped', 2, 2)

        assert result.status is TaskStatus.CANCELLED
        assert result.conversion is None
        assert result.store_path is None
        assert not (tmp_path / 'stopped' / 'stopped.mbtiles').exists()

    @pytest.mark.asyncio
    async def test_stop_conversion_removes_store(self, pipeline, tmp_path, tile_server):
        pipeline.conversion_progress.add_listener(lambda _s: pipeline.stop_conversion())
        async with tile_server() as server:
            result = await pipeline.run(SQUARE, server.url_template, 'conv', 2, 2)

        assert result.status is TaskStatus.CANCELLED
        assert result.download.status is TaskStatus.COMPLETED
        assert result.store_path is None
        assert not (tmp_path / 'conv' / 'conv.mbtiles').exists()
        # Downloaded tiles stay for a later run
        assert (tmp_path / 'conv' / '2' / '2' / '1.png').exists()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, pipeline, tile_server):
        async with tile_server() as server:
            task = await pipeline.start(SQUARE, server.url_template, 'bg', 2, 2)
            result = await task
            await pipeline.stop()
        assert result.status is TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_all_right_after_start(self, pipeline, tmp_path, tile_server):
        """Stopping before the task first runs still cancels both phases."""
        async with tile_server() as server:
            task = await pipeline.start(SQUARE, server.url_template, 'early', 0, 3)
            pipeline.stop_all()
            result = await task
            requests = list(server.requests)

        assert result.status is TaskStatus.CANCELLED
        assert result.conversion is None
        assert result.store_path is None
        assert requests == []
        assert not (tmp_path / 'early' / 'early.mbtiles').exists()


class TestValidation:
    """Invalid input is rejected before any work starts."""

    @pytest.mark.asyncio
    async def test_invalid_destination(self, pipeline):
        with pytest.raises(ValueError):
            await pipeline.run(SQUARE, 'http://h/{z}/{x}/{y}.png', '../escape', 0, 1)
        assert not pipeline.is_busy

    @pytest.mark.asyncio
    async def test_invalid_template(self, pipeline):
        with pytest.raises(ValidationError):
            await pipeline.run(SQUARE, 'http://h/tile.png', 'area', 0, 1)

    @pytest.mark.asyncio
    async def test_invalid_zoom_range(self, pipeline):
        with pytest.raises(ValidationError):
            await pipeline.run(SQUARE, 'http://h/{z}/{x}/{y}.png', 'area', 3, 1)


class TestHelpers:
    """Locator helpers exposed to the host."""

    def test_store_uri(self, tmp_path):
        path = tmp_path / 'a.mbtiles'
        assert TilePipeline.store_uri(path) == f'mbtiles://{path.resolve().as_posix()}'

    def test_store_path_for(self, pipeline, tmp_path):
        assert pipeline.store_path_for('area') == (tmp_path / 'area' / 'area.mbtiles').resolve()

    def test_tile_for_location(self):
        assert TilePipeline.tile_for_location(0.5, 0.5, 2) == TileCoordinate(2, 2, 1)
        assert TilePipeline.tile_for_location(0.5, 0.5, 2, TileScheme.TMS) == TileCoordinate(2, 2, 2)
