"""Shared fixtures for the collector tests."""

import asyncio
import socket
import threading
import time
from collections.abc import Generator
from contextlib import closing
from pathlib import Path

import pytest
from aiohttp import web

from cepcollector.common.settings import CollectorSettings
from cepcollector.data_types import AddressRecord
from tests.mock_server import ADDRESSES, create_app


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-browser",
        action="store_true",
        default=False,
        help="Run tests that launch a real Playwright browser.",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if config.getoption("--run-browser"):
        return
    skip_browser = pytest.mark.skip(reason="needs --run-browser")
    for item in items:
        if "browser" in item.keywords:
            item.add_marker(skip_browser)


@pytest.fixture
def sample_records() -> list[AddressRecord]:
    """AddressRecords for every address the mock site knows.

    Returns:
        One record per mock address, in mock order.
    """
    return [
        AddressRecord(
            code=a.code,
            street=a.street,
            neighborhood=a.neighborhood,
            city=a.city,
            region=a.region,
            locality=f"{a.city}/{a.region}",
        )
        for a in ADDRESSES
    ]


@pytest.fixture
def dataset_path(tmp_path: Path) -> Path:
    """Location of a (not yet existing) dataset file in a temp directory."""
    return tmp_path / "public" / "ceps.json"


@pytest.fixture
def fast_settings() -> CollectorSettings:
    """Settings with no politeness delay and short waits."""
    return CollectorSettings(
        politeness_interval=0,
        selector_timeout_ms=2_000,
        result_timeout_ms=500,
        navigation_timeout_ms=5_000,
    )


# =============================================================================
# aiohttp test server fixtures
# =============================================================================


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
        """Run the server in an asyncio event loop."""
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
            future.result(timeout=2.0)

        if self._loop:
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._thread:
            self._thread.join(timeout=2.0)


@pytest.fixture
def correios_server() -> Generator[AioHttpTestServer, None, None]:
    """Create and start an aiohttp server running the mock Correios site.

    Yields:
        AioHttpTestServer instance with the mock site running.
    """
    app = create_app()
    port = find_free_port()
    server = AioHttpTestServer(app, port)
    server.start()
    # Let the listening socket settle before the first browser request
    time.sleep(0.05)
    yield server
    server.stop()


@pytest.fixture
def mock_site_settings(
    correios_server: AioHttpTestServer, fast_settings: CollectorSettings
) -> CollectorSettings:
    """Settings pointing the browser session at the mock site."""
    return fast_settings.model_copy(
        update={
            "postal_code_url": f"{correios_server.url}/app/endereco/index.php",
            "locality_url": (
                f"{correios_server.url}/app/localidade_logradouro/index.php"
            ),
        }
    )
