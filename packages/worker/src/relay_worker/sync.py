"""Segment sync watcher.

Polls one stream's output directory and uploads recognised artifacts to the
object store. A file is uploaded only after its size and modification time
have stayed unchanged for the stability interval, so segments still being
written by the encoder are never uploaded half-finished.

Segments are uploaded once. The playlist is uploaded again every time the
encoder rewrites it. Upload failures are logged and not retried.
"""

import asyncio
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import structlog

logger = structlog.get_logger(__name__)


class ArtifactKind(str, Enum):
    """Recognised encoder outputs."""

    PLAYLIST = "playlist"
    SEGMENT = "segment"


ARTIFACT_KINDS = {
    ".m3u8": ArtifactKind.PLAYLIST,
    ".ts": ArtifactKind.SEGMENT,
}

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
}


def classify(name: str) -> Optional[ArtifactKind]:
    """Artifact kind for a file name, or None for files we do not sync."""
    return ARTIFACT_KINDS.get(Path(name).suffix.lower())


@dataclass(frozen=True)
class SegmentFile:
    """A produced artifact as seen on disk."""

    stream_key: str
    relative_name: str
    kind: ArtifactKind
    size_bytes: int
    last_modified: float

    @property
    def object_key(self) -> str:
        return f"{self.stream_key}/{self.relative_name}"

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[Path(self.relative_name).suffix.lower()]


class ArtifactStore(Protocol):
    async def upload_file(self, path: Path, key: str, content_type: str) -> Optional[str]:
        ...


@dataclass
class _TrackedFile:
    signature: Tuple[int, float]
    changed_at: float
    handled: Optional[Tuple[int, float]] = None


class StreamDirectoryWatcher:
    """Watches one stream's output directory until stopped."""

    def __init__(
        self,
        stream_key: str,
        directory: Path,
        store: ArtifactStore,
        *,
        poll_interval: float = 0.1,
        stability_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stream_key = stream_key
        self.directory = Path(directory)
        self.store = store
        self.poll_interval = poll_interval
        self.stability_seconds = stability_seconds
        self._clock = clock
        self._tracked: Dict[str, _TrackedFile] = {}
        self._task: Optional[asyncio.Task] = None
        self.upload_count = 0
        self.failed_uploads = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        logger.info("watch_started", stream_key=self.stream_key, directory=str(self.directory))
        self._task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        """Stop polling, then upload anything changed since the last pass."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.scan_once(force=True)
        logger.info(
            "watch_stopped",
            stream_key=self.stream_key,
            uploads=self.upload_count,
            failed_uploads=self.failed_uploads,
        )

    async def _poll(self) -> None:
        while True:
            try:
                await self.scan_once()
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("watch_scan_failed", stream_key=self.stream_key, error=str(e))
                await asyncio.sleep(self.poll_interval)

    def _list_artifacts(self) -> List[SegmentFile]:
        artifacts = []
        try:
            entries = list(os.scandir(self.directory))
        except FileNotFoundError:
            return artifacts
        for entry in entries:
            kind = classify(entry.name)
            if kind is None:
                continue
            try:
                if not entry.is_file():
                    continue
                stat = entry.stat()
            except FileNotFoundError:
                continue
            artifacts.append(
                SegmentFile(
                    stream_key=self.stream_key,
                    relative_name=entry.name,
                    kind=kind,
                    size_bytes=stat.st_size,
                    last_modified=stat.st_mtime,
                )
            )
        return artifacts

    async def scan_once(
        self, now: Optional[float] = None, *, force: bool = False
    ) -> List[SegmentFile]:
        """Run one observation pass.

        Args:
            now: Clock reading for this pass, defaults to the watcher clock
            force: Upload changed files without waiting for stability

        Returns:
            The artifacts uploaded (or attempted) in this pass
        """
        now = self._clock() if now is None else now
        seen = set()
        due = []

        for artifact in self._list_artifacts():
            seen.add(artifact.relative_name)
            signature = (artifact.size_bytes, artifact.last_modified)
            tracked = self._tracked.get(artifact.relative_name)

            if tracked is None:
                tracked = _TrackedFile(signature=signature, changed_at=now)
                self._tracked[artifact.relative_name] = tracked
            elif tracked.signature != signature:
                tracked.signature = signature
                tracked.changed_at = now

            if tracked.handled == signature:
                continue
            if artifact.kind == ArtifactKind.SEGMENT and tracked.handled is not None:
                continue
            if not force and now - tracked.changed_at < self.stability_seconds:
                continue

            tracked.handled = signature
            due.append(artifact)

        for name in set(self._tracked) - seen:
            del self._tracked[name]

        for artifact in due:
            await self._upload(artifact)
        return due

    async def _upload(self, artifact: SegmentFile) -> None:
        url = await self.store.upload_file(
            self.directory / artifact.relative_name,
            artifact.object_key,
            artifact.content_type,
        )
        if url is None:
            self.failed_uploads += 1
            logger.warning(
                "artifact_upload_failed",
                stream_key=self.stream_key,
                name=artifact.relative_name,
            )
            return
        self.upload_count += 1
        logger.info(
            "artifact_uploaded",
            stream_key=self.stream_key,
            name=artifact.relative_name,
            kind=artifact.kind.value,
            size=artifact.size_bytes,
        )
