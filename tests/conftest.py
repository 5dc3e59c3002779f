"""Shared fixtures: a mock supermarket server and a throwaway store."""

import asyncio
import socket
import threading
from collections.abc import Generator
from contextlib import closing
from pathlib import Path

import pytest
from aiohttp import web

from peru_prices.store import CsvStore
from tests.mock_server import create_app

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def find_free_port() -> int:
    """Find a free port on localhost.

    Returns:
        An available port number.
    """
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("", 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


class AioHttpTestServer:
    """Wrapper to run aiohttp server in a background thread."""

    def __init__(self, app: web.Application, port: int) -> None:
        self.app = app
        self.port = port
        self.host = "127.0.0.1"
        self._loop: asyncio.AbstractEventLoop | None = None
        self._runner: web.AppRunner | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()

    @property
    def url(self) -> str:
        """Get the base URL of the server."""
        return f"http://{self.host}:{self.port}"

    def start(self) -> None:
        """Start the server in a background thread."""
        self._thread = threading.Thread(target=self._run_server, daemon=True)
        self._thread.start()
        self._started.wait(timeout=5.0)

    def _run_server(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        async def start() -> None:
            self._runner = web.AppRunner(self.app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.host, self.port)
            await site.start()

        self._loop.run_until_complete(start())
        self._started.set()
        self._loop.run_forever()

    def stop(self) -> None:
        """Stop the server and clean up resources."""
        if self._loop and self._runner:
            runner = self._runner
            future = asyncio.run_coroutine_threadsafe(
                runner.cleanup(), self._loop
            )
            try:
                future.result(timeout=2.0)
            except Exception:
                pass  # Best effort cleanup

        if self._loop:
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._thread:
            self._thread.join(timeout=2.0)


@pytest.fixture
def shop_server() -> Generator[AioHttpTestServer, None, None]:
    """Start the mock supermarket on a random port.

    Yields:
        AioHttpTestServer instance with the mock supermarket running.
    """
    server = AioHttpTestServer(create_app(), find_free_port())
    server.start()
    yield server
    server.stop()


@pytest.fixture
def server_url(shop_server: AioHttpTestServer) -> str:
    """Base URL of the mock supermarket (e.g. "http://127.0.0.1:8080")."""
    return shop_server.url


@pytest.fixture
def unused_url() -> str:
    """URL of a local port nothing listens on."""
    return f"http://127.0.0.1:{find_free_port()}/metro/arroz"


@pytest.fixture
def store(tmp_path: Path) -> CsvStore:
    return CsvStore(tmp_path / "output")


@pytest.fixture
def metro_html() -> str:
    return (FIXTURES_DIR / "metro_arroz.html").read_text(encoding="utf-8")


@pytest.fixture
def plaza_vea_html() -> str:
    return (FIXTURES_DIR / "plaza_vea_leches.html").read_text(
        encoding="utf-8"
    )

