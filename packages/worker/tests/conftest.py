"""Pytest configuration and fixtures for worker tests."""

from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from relay_shared.infrastructure.config import Settings


class FakeStore:
    """Records uploads instead of talking to S3."""

    def __init__(self):
        self.uploads: List[Tuple[str, str, bytes]] = []
        self.fail_keys: set = set()

    async def upload_file(self, path: Path, key: str, content_type: str) -> Optional[str]:
        if key in self.fail_keys:
            return None
        self.uploads.append((key, content_type, Path(path).read_bytes()))
        return f"http://store.test/streams/{key}"

    @property
    def keys(self) -> List[str]:
        return [key for key, _, _ in self.uploads]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        hls_output_dir=tmp_path / "hls",
        sync_poll_interval_seconds=0.01,
        sync_stability_seconds=0.05,
        sync_stop_grace_seconds=0.1,
    )
