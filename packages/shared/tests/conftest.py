"""Pytest configuration and fixtures for shared package tests."""

import pytest

from relay_shared.infrastructure.config import Settings


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings with fast retries and a temporary output root."""
    return Settings(
        environment="test",
        broker_url="memory://",
        broker_connect_attempts=2,
        broker_retry_delay_seconds=0,
        broker_poll_timeout_seconds=0.05,
        s3_endpoint_url="http://minio.test:9000",
        s3_bucket_name="test-streams",
        storage_init_attempts=2,
        storage_retry_delay_seconds=0,
        hls_output_dir=tmp_path / "hls",
    )
