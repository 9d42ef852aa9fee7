"""Tests for the download orchestrator."""

import asyncio

import pytest

from domain.models import DownloadRequest, PipelineSettings, Region, TileCoordinate
from shared.constants import TaskStatus, TileScheme
from shared.progress import CancelToken
from tiles.downloader import TileDownloader

SQUARE = [[[0, 0], [0, 1], [1, 1], [1, 0], [0, 0]]]


def _request(template, cache_dir, min_zoom=2, max_zoom=2, scheme=TileScheme.XYZ):
    return DownloadRequest(
        region=Region.from_coordinates(SQUARE),
        url_template=template,
        min_zoom=min_zoom,
        max_zoom=max_zoom,
        scheme=scheme,
        cache_dir=cache_dir,
    )


def _downloader(fast_sleep, **overrides):
    return TileDownloader(PipelineSettings(**overrides), sleep=fast_sleep)


class TestDownload:
    """End-to-end downloads against a stub server."""

    @pytest.mark.asyncio
    async def test_square_region_at_zoom_two(self, tmp_path, tile_server, png_bytes, fast_sleep):
        downloader = _downloader(fast_sleep)
        assert downloader.state == 'Idle'
        async with tile_server() as server:
            result = await downloader.download(_request(server.url_template, tmp_path))

        assert result.status is TaskStatus.COMPLETED
        assert result.total_tiles == 2
        assert result.completed_tiles == 2
        assert result.failed_coordinates == ()
        assert (tmp_path / '2' / '2' / '1.png').read_bytes() == png_bytes
        assert (tmp_path / '2' / '2' / '2.png').read_bytes() == png_bytes
        assert sorted(server.requests) == ['/2/2/1.png', '/2/2/2.png']

        latest = downloader.progress.latest
        assert latest.status is TaskStatus.COMPLETED
        assert latest.is_terminal
        assert (latest.completed_tiles, latest.failed_tiles) == (2, 0)
        assert downloader.state == 'Completed'
        assert not downloader.is_running

    @pytest.mark.asyncio
    async def test_tms_server_rows(self, tmp_path, tile_server, fast_sleep):
        """A tms server is asked for flipped rows while the cache keeps xyz rows."""
        downloader = _downloader(fast_sleep)
        async with tile_server() as server:
            result = await downloader.download(
                _request(server.url_template, tmp_path, scheme=TileScheme.TMS)
            )

        assert result.status is TaskStatus.COMPLETED
        assert sorted(server.requests) == ['/2/2/1.png', '/2/2/2.png']
        assert (tmp_path / '2' / '2' / '1.png').exists()
        assert (tmp_path / '2' / '2' / '2.png').exists()

    @pytest.mark.asyncio
    async def test_resume_skips_cached_tiles(self, tmp_path, tile_server, fast_sleep):
        downloader = _downloader(fast_sleep)
        async with tile_server() as server:
            await downloader.download(_request(server.url_template, tmp_path))
            first = len(server.requests)
            again = await downloader.download(_request(server.url_template, tmp_path))

        assert first == 2
        assert len(server.requests) == 2
        assert again.status is TaskStatus.COMPLETED
        assert again.total_tiles == 0

    @pytest.mark.asyncio
    async def test_zoom_range_snapshots(self, tmp_path, tile_server, fast_sleep):
        downloader = _downloader(fast_sleep)
        seen = []
        downloader.progress.add_listener(seen.append)
        async with tile_server() as server:
            result = await downloader.download(
                _request(server.url_template, tmp_path, min_zoom=0, max_zoom=2)
            )

        assert result.total_tiles == 5
        assert seen[-1].is_terminal
        assert all(not s.is_terminal for s in seen[:-1])
        totals = [s.total_tiles for s in seen]
        assert totals == sorted(totals)
        completed = [s.completed_tiles for s in seen]
        assert completed == sorted(completed)
        assert any(s.current == TileCoordinate(0, 0, 0) for s in seen)


class TestRetryRounds:
    """Global retry rounds over tiles that failed a whole round."""

    @pytest.mark.asyncio
    async def test_permanent_failure_is_reported(self, tmp_path, tile_server, fast_sleep):
        downloader = _downloader(fast_sleep)
        async with tile_server(always_fail={'/2/2/1.png'}) as server:
            result = await downloader.download(_request(server.url_template, tmp_path))
            attempts = server.count('/2/2/1.png')

        # 3 attempts in the primary pass plus 3 in each of 2 retry rounds
        assert attempts == 9
        assert result.status is TaskStatus.COMPLETED
        assert result.failed_coordinates == (TileCoordinate(2, 2, 1),)
        assert result.completed_tiles == 1

        latest = downloader.progress.latest
        assert latest.failed_tiles == 1
        assert latest.retrying_tiles == 0
        assert latest.failed_coordinates == (TileCoordinate(2, 2, 1),)

    @pytest.mark.asyncio
    async def test_recovered_in_retry_round(self, tmp_path, tile_server, fast_sleep):
        downloader = _downloader(fast_sleep)
        async with tile_server(failures={'/2/2/1.png': 4}) as server:
            result = await downloader.download(_request(server.url_template, tmp_path))
            attempts = server.count('/2/2/1.png')

        assert attempts == 5
        assert result.failed_coordinates == ()
        assert result.completed_tiles == 2
        assert downloader.progress.latest.failed_tiles == 0

    @pytest.mark.asyncio
    async def test_no_retry_rounds(self, tmp_path, tile_server, fast_sleep):
        downloader = _downloader(fast_sleep, retry_rounds=0)
        async with tile_server(always_fail={'/2/2/1.png'}) as server:
            result = await downloader.download(_request(server.url_template, tmp_path))
            attempts = server.count('/2/2/1.png')

        assert attempts == 3
        assert result.failed_coordinates == (TileCoordinate(2, 2, 1),)


class TestErrorsAndCancellation:
    """Structural errors and cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_unwritable_cache_dir(self, tmp_path, tile_server, fast_sleep):
        blocker = tmp_path / 'file'
        blocker.write_text('x')
        downloader = _downloader(fast_sleep)
        async with tile_server() as server:
            result = await downloader.download(
                _request(server.url_template, blocker / 'cache')
            )
            requests = list(server.requests)

        assert result.status is TaskStatus.ERROR
        assert result.error
        assert requests == []
        latest = downloader.progress.latest
        assert latest.status is TaskStatus.ERROR
        assert latest.total_tiles == 0

    @pytest.mark.asyncio
    async def test_pre_cancelled(self, tmp_path, tile_server, fast_sleep):
        token = CancelToken()
        token.cancel()
        downloader = _downloader(fast_sleep)
        async with tile_server() as server:
            result = await downloader.download(
                _request(server.url_template, tmp_path), token
            )
            requests = list(server.requests)

        assert result.status is TaskStatus.CANCELLED
        assert requests == []
        assert downloader.progress.latest.status is TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_between_batches(self, tmp_path, tile_server, fast_sleep):
        """Cancelling after the first tile stops before the next batch."""
        downloader = _downloader(fast_sleep, batch_size=1)

        def _cancel_on_first_tile(snapshot):
            if snapshot.completed_tiles >= 1:
                downloader.cancel()

        downloader.progress.add_listener(_cancel_on_first_tile)
        async with tile_server() as server:
            task = await downloader.start(
                _request(server.url_template, tmp_path, min_zoom=0, max_zoom=3)
            )
            result = await task
            requests = len(server.requests)

        assert result.status is TaskStatus.CANCELLED
        assert requests == 1
        assert result.completed_tiles == 1
        assert not list(tmp_path.rglob('*.part'))

    @pytest.mark.asyncio
    async def test_cancel_while_indexing(self, tmp_path, tile_server, fast_sleep):
        """Indexing yields after each zoom, so a cancel stops it early."""
        downloader = _downloader(fast_sleep)
        totals = []
        downloader.progress.add_listener(lambda s: totals.append(s.total_tiles))
        async with tile_server() as server:
            task = await downloader.start(
                _request(server.url_template, tmp_path, min_zoom=0, max_zoom=6)
            )
            await asyncio.sleep(0)
            downloader.cancel()
            result = await task
            requests = list(server.requests)

        assert result.status is TaskStatus.CANCELLED
        assert requests == []
        # Only zoom 0 was indexed
        assert max(totals) == 1

    @pytest.mark.asyncio
    async def test_start_replaces_running_download(self, tmp_path, tile_server, fast_sleep):
        gate = asyncio.Event()

        async def slow_sleep(_delay):
            await gate.wait()

        downloader = TileDownloader(PipelineSettings(), sleep=slow_sleep)
        async with tile_server(always_fail={'/2/2/1.png'}) as server:
            first = await downloader.start(_request(server.url_template, tmp_path / 'a'))
            await asyncio.sleep(0.2)
            assert downloader.is_running

            second_start = asyncio.create_task(
                downloader.start(_request(server.url_template, tmp_path / 'b'))
            )
            await asyncio.sleep(0)
            gate.set()
            second = await second_start
            first_result = await first
            second_result = await second

        assert first_result.status is TaskStatus.CANCELLED
        assert second_result.status is TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrent_download_rejected(self, tmp_path, fast_sleep):
        downloader = _downloader(fast_sleep)
        downloader._running = True
        with pytest.raises(RuntimeError):
            await downloader.download(
                _request('http://h/{z}/{x}/{y}.png', tmp_path)
            )
