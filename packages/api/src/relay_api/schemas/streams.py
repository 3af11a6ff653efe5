"""Stream-related response schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from relay_shared.domain.registry import RegistryEntry


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StreamResponse(_CamelModel):
    """One live stream as this API process sees it."""

    stream_key: str = Field(..., alias="streamKey")
    title: str
    playlist_url: Optional[str] = Field(None, alias="playlistUrl")
    started_at: datetime = Field(..., alias="startedAt")
    viewers: int = 0

    @classmethod
    def from_entry(cls, entry: RegistryEntry) -> "StreamResponse":
        return cls(
            stream_key=entry.stream_key,
            title=entry.title,
            playlist_url=entry.playlist_location,
            started_at=entry.started_at,
            viewers=entry.viewer_count,
        )


class StreamListResponse(BaseModel):
    """Snapshot of the live streams."""

    streams: List[StreamResponse]
    count: int


class WatchResponse(_CamelModel):
    stream_key: str = Field(..., alias="streamKey")
    playlist_url: Optional[str] = Field(None, alias="playlistUrl")
    stream_url: str = Field(..., alias="streamUrl")
    viewers: int


class ViewerCountResponse(_CamelModel):
    stream_key: str = Field(..., alias="streamKey")
    viewers: int


class StreamCreateResponse(_CamelModel):
    """Credentials for a publisher about to go live."""

    stream_key: str = Field(..., alias="streamKey")
    ingest_url: str = Field(..., alias="ingestUrl")
    playlist_url: str = Field(..., alias="playlistUrl")


class StoredFile(_CamelModel):
    name: str
    size: int
    last_modified: datetime = Field(..., alias="lastModified")


class StreamFilesResponse(_CamelModel):
    stream_key: str = Field(..., alias="streamKey")
    files: List[StoredFile]
    count: int
