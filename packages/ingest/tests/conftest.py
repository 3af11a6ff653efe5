"""Pytest configuration and fixtures for ingest tests."""

import asyncio
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from relay_ingest.sessions import StreamSessionManager
from relay_ingest.supervisor import EncoderProcess, ExitCallback
from relay_shared.domain.events import StreamEvent, StreamEventType
from relay_shared.domain.exceptions import SpawnError
from relay_shared.infrastructure.config import Settings


class FakeSupervisor:
    """In-memory encoder supervisor.

    With ``exit_on_close`` the fake encoder exits with code 0 as soon as its
    input is closed, from its own task, like a real encoder hitting EOF.
    """

    def __init__(self, *, fail_spawn: bool = False, exit_on_close: bool = True):
        self.fail_spawn = fail_spawn
        self.exit_on_close = exit_on_close
        self.accepting = True
        self.written: Dict[str, bytearray] = defaultdict(bytearray)
        self.spawned: List[str] = []
        self.closed_inputs: List[str] = []
        self.terminated: List[str] = []
        self.processes: Dict[str, EncoderProcess] = {}
        self._on_exit: Dict[str, ExitCallback] = {}
        self._tasks: List[asyncio.Task] = []

    async def spawn(self, stream_key: str, output_dir: Path, on_exit: ExitCallback) -> EncoderProcess:
        if self.fail_spawn:
            raise SpawnError("encoder not installed", stream_key=stream_key)
        process = EncoderProcess(stream_key=stream_key, output_dir=Path(output_dir), pid=4242)
        self.spawned.append(stream_key)
        self.processes[stream_key] = process
        self._on_exit[stream_key] = on_exit
        return process

    def is_accepting_input(self, process: EncoderProcess) -> bool:
        return self.accepting and process.input_open and process.is_running

    async def write(self, process: EncoderProcess, data: bytes) -> bool:
        if not self.is_accepting_input(process):
            return False
        self.written[process.stream_key].extend(data)
        return True

    async def close_input(self, process: EncoderProcess) -> None:
        if not process.input_open:
            return
        process.input_open = False
        self.closed_inputs.append(process.stream_key)
        if self.exit_on_close and process.is_running:
            self._tasks.append(asyncio.create_task(self.exit(process.stream_key, 0)))

    async def terminate(self, process: EncoderProcess) -> None:
        await self.close_input(process)
        self.terminated.append(process.stream_key)
        if process.is_running:
            process.exit_code = -15

    async def exit(self, stream_key: str, exit_code: int) -> None:
        """Simulate the encoder exiting on its own."""
        process = self.processes[stream_key]
        if not process.is_running:
            return
        process.exit_code = exit_code
        process.input_open = False
        await self._on_exit[stream_key](process)


class FakePublisher:
    """Collects published events."""

    def __init__(self):
        self.events: List[StreamEvent] = []

    async def publish(self, event: StreamEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: StreamEventType, stream_key: Optional[str] = None) -> List[StreamEvent]:
        return [
            e for e in self.events
            if e.event_type == event_type and (stream_key is None or e.stream_key == stream_key)
        ]


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        hls_output_dir=tmp_path / "hls",
        encoder_stop_timeout_seconds=0.5,
    )


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def manager(supervisor, publisher, test_settings) -> StreamSessionManager:
    return StreamSessionManager(supervisor, publisher, test_settings)


@pytest.fixture
def make_manager(publisher, test_settings):
    """Build a manager around a differently configured fake supervisor."""

    def _make(**supervisor_options):
        fake = FakeSupervisor(**supervisor_options)
        return StreamSessionManager(fake, publisher, test_settings), fake

    return _make
