"""Pytest configuration and fixtures for tilepack tests."""

import asyncio
import sys
from io import BytesIO
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))


def make_png(color=(30, 120, 200), size=(8, 8)) -> bytes:
    buf = BytesIO()
    Image.new('RGB', size, color).save(buf, format='PNG')
    return buf.getvalue()


class StubTileServer:
    """
    Local tile server for download tests.

    ``failures`` maps a request path to the number of 503 responses it gets
    before succeeding; paths in ``always_fail`` never succeed and paths in
    ``empty`` answer 200 with no body.
    """

    def __init__(self, payload: bytes, failures=None, always_fail=(), empty=()):
        self.payload = payload
        self.failures = dict(failures or {})
        self.always_fail = set(always_fail)
        self.empty = set(empty)
        self.requests: list[str] = []
        app = web.Application()
        app.router.add_get('/{z}/{x}/{y}.png', self._handle)
        self._server = TestServer(app)

    async def _handle(self, request: web.Request) -> web.Response:
        path = request.path
        self.requests.append(str(request.rel_url))
        if path in self.always_fail:
            return web.Response(status=503)
        remaining = self.failures.get(path, 0)
        if remaining > 0:
            self.failures[path] = remaining - 1
            return web.Response(status=503)
        if path in self.empty:
            return web.Response(status=200, body=b'')
        return web.Response(body=self.payload, content_type='image/png')

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.split('?', 1)[0] == path)

    @property
    def url_template(self) -> str:
        return f'http://{self._server.host}:{self._server.port}/{{z}}/{{x}}/{{y}}.png'

    async def __aenter__(self) -> 'StubTileServer':
        await self._server.start_server()
        return self

    async def __aexit__(self, *exc) -> None:
        await self._server.close()


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def png_bytes():
    """A small valid PNG payload."""
    return make_png()


@pytest.fixture
def tile_server(png_bytes):
    """Factory for StubTileServer instances serving ``png_bytes``."""

    def _factory(**kwargs) -> StubTileServer:
        return StubTileServer(png_bytes, **kwargs)

    return _factory


@pytest.fixture
def fast_sleep():
    """Sleep replacement that only yields to the event loop."""
    return no_sleep


@pytest.fixture
def tile_tree(tmp_path, png_bytes):
    """Factory writing ``<root>/<z>/<x>/<y>.png`` files into a cache tree."""
    root = tmp_path / 'cache'

    def _write(coords, data=None):
        for z, x, y in coords:
            path = root / str(z) / str(x) / f'{y}.png'
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(png_bytes if data is None else data)
        return root

    root.mkdir()
    return _write
