"""Bus-driven lifecycle of segment sync watchers."""

import asyncio
from pathlib import Path
from typing import Callable, Dict, Optional

import structlog

from relay_shared.domain.events import StreamEvent, StreamEventType
from relay_shared.infrastructure.config import Settings

from .sync import ArtifactStore, StreamDirectoryWatcher

logger = structlog.get_logger(__name__)

WatcherFactory = Callable[[str, Path], StreamDirectoryWatcher]


class SyncManager:
    """Starts a watcher on STREAM_STARTED and stops it a grace window after STREAM_ENDED.

    Both transitions are idempotent, so duplicate deliveries from the durable
    queue are harmless. A STREAM_STARTED for a key whose stop is still
    pending cancels the stop and keeps the existing watcher.
    """

    def __init__(
        self,
        store: ArtifactStore,
        settings: Settings,
        *,
        watcher_factory: Optional[WatcherFactory] = None,
    ):
        self.store = store
        self.settings = settings
        self._watcher_factory = watcher_factory or self._default_watcher
        self._watchers: Dict[str, StreamDirectoryWatcher] = {}
        self._pending_stops: Dict[str, asyncio.Task] = {}

    def _default_watcher(self, stream_key: str, directory: Path) -> StreamDirectoryWatcher:
        return StreamDirectoryWatcher(
            stream_key,
            directory,
            self.store,
            poll_interval=self.settings.sync_poll_interval_seconds,
            stability_seconds=self.settings.sync_stability_seconds,
        )

    @property
    def watched_streams(self) -> list[str]:
        return list(self._watchers)

    def is_stop_pending(self, stream_key: str) -> bool:
        return stream_key in self._pending_stops

    async def handle_event(self, event: StreamEvent) -> None:
        """Bus handler for the durable stream events queue."""
        if event.event_type == StreamEventType.STREAM_STARTED:
            await self.start_watching(event.stream_key)
        elif event.event_type == StreamEventType.STREAM_ENDED:
            self.schedule_stop(event.stream_key)
        else:
            logger.warning("unknown_event_ignored", event_type=str(event.event_type))

    async def start_watching(self, stream_key: str) -> None:
        pending = self._pending_stops.pop(stream_key, None)
        if pending is not None:
            pending.cancel()
            logger.info("pending_stop_cancelled", stream_key=stream_key)

        if stream_key in self._watchers:
            logger.debug("already_watching", stream_key=stream_key)
            return

        directory = self.settings.stream_output_dir(stream_key)
        directory.mkdir(parents=True, exist_ok=True)
        watcher = self._watcher_factory(stream_key, directory)
        self._watchers[stream_key] = watcher
        await watcher.start()

    def schedule_stop(self, stream_key: str) -> None:
        """Stop watching after the grace window."""
        if stream_key not in self._watchers:
            logger.debug("stop_for_unwatched_stream", stream_key=stream_key)
            return
        if stream_key in self._pending_stops:
            return
        logger.info(
            "stop_scheduled",
            stream_key=stream_key,
            grace_seconds=self.settings.sync_stop_grace_seconds,
        )
        self._pending_stops[stream_key] = asyncio.create_task(
            self._stop_after_grace(stream_key)
        )

    async def _stop_after_grace(self, stream_key: str) -> None:
        await asyncio.sleep(self.settings.sync_stop_grace_seconds)
        self._pending_stops.pop(stream_key, None)
        await self.stop_watching(stream_key)

    async def stop_watching(self, stream_key: str) -> None:
        watcher = self._watchers.pop(stream_key, None)
        if watcher is None:
            return
        await watcher.stop()

    async def close(self) -> None:
        """Stop every watcher now, skipping the grace window."""
        for task in self._pending_stops.values():
            task.cancel()
        self._pending_stops.clear()
        for stream_key in list(self._watchers):
            await self.stop_watching(stream_key)
        logger.info("sync_manager_closed")
