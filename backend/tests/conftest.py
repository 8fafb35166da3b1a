"""
Sanskriti Setu API — Test Configuration (conftest.py)
======================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Tests build their own pipelines from explicit configs, a fake
       document-store client and an in-process HTTP client, so nothing
       needs a real MongoDB or a running server.

Fixture Hierarchy (all function-scoped):
    ├── clean_env:     removes recognized env vars so defaults are predictable
    ├── make_config:   PipelineConfig factory with temp static directories
    ├── fake_mongo:    AsyncMongoClient stand-in with scriptable ping()
    ├── make_tracker:  DependencyHealthTracker wired to fake_mongo
    ├── make_pipeline: build_pipeline() with the above
    └── make_client:   HTTPX AsyncClient talking to a pipeline over ASGI
"""

import asyncio
from types import SimpleNamespace
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from sanskriti_api.config import PipelineConfig
from sanskriti_api.database import DependencyHealthTracker
from sanskriti_api.pipeline import build_pipeline
from sanskriti_api.routes import RouteTable

RECOGNIZED_ENV = (
    "NODE_ENV",
    "ENVIRONMENT",
    "MONGODB_URI",
    "MONGODB_SERVER_SELECTION_TIMEOUT_MS",
    "MONGODB_SOCKET_TIMEOUT_MS",
    "CORS_ORIGIN",
    "CORS_CREDENTIALS",
    "BODY_LIMIT_BYTES",
    "RATE_LIMIT_WINDOW_MS",
    "RATE_LIMIT_MAX",
    "TRUST_PROXY",
    "UPLOADS_DIR",
    "CLIENT_BUILD_DIR",
    "COMPRESSION_MIN_SIZE",
    "FEATURE_ROUTERS",
    "LOG_LEVEL",
    "HOST",
    "PORT",
)

CLIENT_ADDRESS = ("203.0.113.7", 51000)


@pytest.fixture
def clean_env(monkeypatch):
    for name in RECOGNIZED_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def make_config(tmp_path, clean_env):
    """
    Provides a PipelineConfig factory.

    Static directories point into tmp_path: uploads/ is created empty,
    build/ holds an index.html and one asset for SPA tests.
    """
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    build = tmp_path / "build"
    (build / "static").mkdir(parents=True)
    (build / "index.html").write_text("<!doctype html><div id=\"root\"></div>")
    (build / "static" / "app.js").write_text("console.log('sanskriti');")

    def factory(**overrides) -> PipelineConfig:
        options = {
            "uploads_dir": uploads,
            "client_build_dir": build,
            "log_level": "WARNING",
        }
        options.update(overrides)
        return PipelineConfig(_env_file=None, **options)

    return factory


class FakeMongo:
    """
    Callable standing in for AsyncMongoClient.

    ping_error: exception raised by admin.command("ping")
    ping_gate:  asyncio.Event the ping waits on (simulates a hanging server)
    writable:   what topology_description.has_writable_server() reports
    """

    def __init__(self) -> None:
        self.clients: List[SimpleNamespace] = []
        self.ping_error: Optional[BaseException] = None
        self.ping_gate: Optional[asyncio.Event] = None
        self.writable = True

    def __call__(self, uri, **options):
        client = SimpleNamespace(
            uri=uri,
            options=options,
            admin=SimpleNamespace(command=AsyncMock(side_effect=self._ping)),
            close=AsyncMock(),
            topology_description=SimpleNamespace(
                has_writable_server=lambda: self.writable
            ),
        )
        self.clients.append(client)
        return client

    async def _ping(self, name):
        if self.ping_gate is not None:
            await self.ping_gate.wait()
        if self.ping_error is not None:
            raise self.ping_error
        return {"ok": 1.0}


@pytest.fixture
def fake_mongo():
    return FakeMongo()


@pytest.fixture
def make_tracker(fake_mongo):
    def factory(**kwargs) -> DependencyHealthTracker:
        return DependencyHealthTracker(
            "mongodb://db.test:27017/sanskriti-setu",
            client_factory=fake_mongo,
            **kwargs,
        )

    return factory


@pytest.fixture
def make_pipeline(make_config, make_tracker):
    """build_pipeline() with a temp-dir config, fake tracker and optional routes."""

    def factory(routes: Optional[RouteTable] = None, tracker=None, **config_overrides):
        return build_pipeline(
            make_config(**config_overrides),
            routes if routes is not None else RouteTable(),
            tracker=tracker or make_tracker(),
        )

    return factory


@pytest_asyncio.fixture
async def make_client():
    """
    Provides an async HTTP client factory for a given pipeline.

    raise_app_exceptions=False: Starlette re-raises after the 500 handler
    responds; the test should see the response, like a real server would.
    """
    clients = []

    def factory(pipeline, client=CLIENT_ADDRESS) -> AsyncClient:
        transport = ASGITransport(
            app=pipeline.app, raise_app_exceptions=False, client=client
        )
        ac = AsyncClient(transport=transport, base_url="http://test")
        clients.append(ac)
        return ac

    yield factory

    for ac in clients:
        await ac.aclose()
