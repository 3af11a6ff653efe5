"""Pytest configuration and fixtures for API tests."""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from relay_api.main import create_app
from relay_shared.domain.events import StreamEvent
from relay_shared.domain.registry import ActiveStreamRegistry
from relay_shared.infrastructure.config import Settings
from relay_shared.infrastructure.event_bus import EventBus
from relay_shared.infrastructure.storage import ObjectStore


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Test settings with overrides."""
    return Settings(
        environment="test",
        cors_origins=["http://testserver"],
        s3_endpoint_url="http://minio.test:9000",
        s3_bucket_name="test-streams",
        ingest_public_url="ws://ingest.test:3000",
        hls_output_dir=tmp_path / "hls",
    )


@pytest.fixture
def registry() -> ActiveStreamRegistry:
    return ActiveStreamRegistry()


@pytest.fixture
def store(test_settings) -> ObjectStore:
    return ObjectStore(test_settings)


@pytest.fixture
def app(test_settings, registry, store):
    return create_app(
        test_settings,
        registry=registry,
        bus=EventBus(test_settings, service_name="api-test"),
        store=store,
    )


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app without running its lifespan."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as client:
        yield client


@pytest.fixture
def live_stream(registry) -> str:
    """Registers stream ``abc`` the way a delivered event would."""
    registry.apply(
        StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8", title="Launch")
    )
    return "abc"
