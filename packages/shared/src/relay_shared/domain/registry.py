"""Active stream registry.

An event-sourced, per-process cache of which streams are live. It starts
empty, is populated only by applying stream events, and is never persisted.
Reads are advisory: an entry can outlive its encoder by the event
propagation delay.

Which streams exist is decided only by ``apply``. The one other writer is
``adjust_viewers``, called by the query API to keep a viewer count local
to this process. It only touches the counter of an entry that already
exists, so it can never add, remove or revive a stream.

All mutation happens on the owning event loop (the bus adapter dispatches
deliveries there), so the registry needs no locking.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

import structlog

from .events import StreamEvent, StreamEventType

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    """A consumer's local belief about one live stream."""

    stream_key: str
    title: str
    playlist_location: Optional[str]
    started_at: datetime
    viewer_count: int = 0

    def to_dict(self) -> dict:
        return {
            "streamKey": self.stream_key,
            "title": self.title,
            "playlistUrl": self.playlist_location,
            "startedAt": self.started_at.isoformat(),
            "viewers": self.viewer_count,
        }


class ActiveStreamRegistry:
    """Eventually-consistent view of live streams fed by bus events."""

    def __init__(self, default_title: str = "Live Stream"):
        self._entries: dict[str, RegistryEntry] = {}
        self._default_title = default_title

    def apply(self, event: StreamEvent) -> None:
        """Apply one delivered event.

        STREAM_STARTED inserts or overwrites, STREAM_ENDED removes. Both are
        idempotent so redelivery is harmless.
        """
        if event.event_type == StreamEventType.STREAM_STARTED:
            self._entries[event.stream_key] = RegistryEntry(
                stream_key=event.stream_key,
                title=event.title or self._default_title,
                playlist_location=event.playlist_url,
                started_at=event.timestamp,
            )
            logger.info("stream_registered", stream_key=event.stream_key)
        elif event.event_type == StreamEventType.STREAM_ENDED:
            if self._entries.pop(event.stream_key, None) is not None:
                logger.info("stream_removed", stream_key=event.stream_key)
            else:
                logger.debug("stream_end_for_unknown_key", stream_key=event.stream_key)

    def adjust_viewers(self, stream_key: str, delta: int) -> Optional[RegistryEntry]:
        """Change the local viewer count of an existing entry.

        Never creates or removes entries and never goes below zero.
        """
        entry = self._entries.get(stream_key)
        if entry is None:
            return None
        updated = replace(entry, viewer_count=max(0, entry.viewer_count + delta))
        self._entries[stream_key] = updated
        return updated

    def get(self, stream_key: str) -> Optional[RegistryEntry]:
        return self._entries.get(stream_key)

    def list(self) -> list[RegistryEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, stream_key: object) -> bool:
        return stream_key in self._entries

    @property
    def total_viewers(self) -> int:
        return sum(entry.viewer_count for entry in self._entries.values())
