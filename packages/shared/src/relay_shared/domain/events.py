"""Stream lifecycle events broadcast between services.

Events are immutable facts. The wire form uses camelCase keys
(``eventType``, ``streamKey``, ``timestamp`` plus payload keys) so that any
consumer of the fanout exchange can read them without this package.
Consumers must tolerate duplicates and out-of-order delivery.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import MalformedEventError


class StreamEventType(str, Enum):
    """Lifecycle transitions that are broadcast."""

    STREAM_STARTED = "STREAM_STARTED"
    STREAM_ENDED = "STREAM_ENDED"


class EndReason(str, Enum):
    """Why a session ended."""

    STOP_REQUESTED = "stop_requested"
    CONNECTION_CLOSED = "connection_closed"
    ENCODER_EXITED = "encoder_exited"
    SHUTDOWN = "shutdown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StreamEvent(BaseModel):
    """A single lifecycle fact about one stream key."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    event_type: StreamEventType = Field(alias="eventType")
    stream_key: str = Field(alias="streamKey", min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)

    # STREAM_STARTED payload
    playlist_url: Optional[str] = Field(default=None, alias="playlistUrl")
    title: Optional[str] = None

    # STREAM_ENDED payload
    bytes_received: Optional[int] = Field(default=None, alias="bytesReceived")
    dropped_chunks: Optional[int] = Field(default=None, alias="droppedChunks")
    dropped_bytes: Optional[int] = Field(default=None, alias="droppedBytes")
    reason: Optional[EndReason] = None
    exit_code: Optional[int] = Field(default=None, alias="exitCode")

    @classmethod
    def stream_started(
        cls,
        stream_key: str,
        playlist_url: str,
        title: Optional[str] = None,
    ) -> "StreamEvent":
        return cls(
            event_type=StreamEventType.STREAM_STARTED,
            stream_key=stream_key,
            playlist_url=playlist_url,
            title=title,
        )

    @classmethod
    def stream_ended(
        cls,
        stream_key: str,
        bytes_received: int,
        reason: EndReason,
        dropped_chunks: int = 0,
        dropped_bytes: int = 0,
        exit_code: Optional[int] = None,
    ) -> "StreamEvent":
        return cls(
            event_type=StreamEventType.STREAM_ENDED,
            stream_key=stream_key,
            bytes_received=bytes_received,
            dropped_chunks=dropped_chunks,
            dropped_bytes=dropped_bytes,
            reason=reason,
            exit_code=exit_code,
        )

    def to_message(self) -> dict[str, Any]:
        """Serialize to the JSON wire form."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_message(cls, body: Any) -> "StreamEvent":
        """Parse a decoded message body.

        Raises:
            MalformedEventError: If the body is not a valid stream event
        """
        if not isinstance(body, dict):
            raise MalformedEventError(
                f"Expected a JSON object, got {type(body).__name__}", body=body
            )
        try:
            return cls.model_validate(body)
        except ValidationError as e:
            raise MalformedEventError(f"Invalid stream event: {e}", body=body) from e
