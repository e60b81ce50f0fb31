import os
import tempfile
from collections.abc import AsyncGenerator

# Configure the process-wide settings before any webanalyzer import reads them
os.environ.setdefault("DB_AUTO_CREATE", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CLEANUP_ENABLED", "false")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBANALYZER_CONFIG_DIR", tempfile.mkdtemp(prefix="webanalyzer-cli-"))

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from webanalyzer.analysis.fetcher import Fetcher
from webanalyzer.config.settings import Settings
from webanalyzer.infra.database import Database, get_database
from webanalyzer.jobs.queue import QueueAdapter
from webanalyzer.jobs.service import JobLifecycleController, get_controller
from webanalyzer.jobs.store import JobStore
from webanalyzer.main import create_app

SAMPLE_HTML = """<!DOCTYPE html>
<html>
<head><title>Example Domain</title></head>
<body>
  <h1>Example</h1>
  <h2>Section</h2>
  <a href="/about">About</a>
  <a href="https://www.example.com/contact">Contact</a>
  <a href="https://other.org/">Elsewhere</a>
  <a href="mailto:hello@example.com">Mail</a>
  <form><input type="password" name="pw"></form>
</body>
</html>
"""


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a file-backed SQLite database with fast timings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/jobs.db",
        debug=False,
        log_level="WARNING",
        storage_retry_base_ms=1,
        queue_poll_interval_ms=10,
        queue_backoff_delay_ms=10,
        fetch_resolve_check=False,
        cleanup_enabled=False,
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Create a fresh schema for each test."""
    db = Database(settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def store(settings, database) -> JobStore:
    return JobStore(settings, database)


@pytest.fixture
def queue(settings, database) -> QueueAdapter:
    return QueueAdapter(settings, database)


def make_fetcher(settings: Settings, handler) -> Fetcher:
    """Fetcher whose HTTP traffic is answered by ``handler``."""
    fetcher = Fetcher(settings, transport=httpx.MockTransport(handler))
    fetcher.retry_base_delay_s = 0
    return fetcher


@pytest.fixture
async def fetcher_for(settings):
    """Factory for fetchers answered by a handler; closed after the test."""
    fetchers: list[Fetcher] = []

    def factory(handler) -> Fetcher:
        fetcher = make_fetcher(settings, handler)
        fetchers.append(fetcher)
        return fetcher

    yield factory

    for fetcher in fetchers:
        await fetcher.aclose()


@pytest.fixture
def sample_html() -> str:
    return SAMPLE_HTML


@pytest.fixture
async def html_fetcher(settings) -> AsyncGenerator[Fetcher, None]:
    fetcher = make_fetcher(
        settings, lambda request: httpx.Response(200, text=SAMPLE_HTML)
    )
    yield fetcher
    await fetcher.aclose()


@pytest.fixture
def controller(settings, store, queue, html_fetcher) -> JobLifecycleController:
    controller = JobLifecycleController(settings, store, queue, fetcher=html_fetcher)
    controller.register(queue)
    return controller


@pytest.fixture
def app(settings, database, controller):
    """Create a test FastAPI application wired to the test database."""
    app = create_app()

    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_controller] = lambda: controller

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
