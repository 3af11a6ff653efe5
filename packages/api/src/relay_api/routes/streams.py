"""Stream query endpoints.

Live streams come from the local registry, which is only ever changed by
bus events; the viewer counters are the one local adjustment and they
never create or remove entries.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from structlog import get_logger

from relay_shared.domain.registry import ActiveStreamRegistry
from relay_shared.infrastructure.config import Settings
from relay_shared.infrastructure.storage import ObjectStore

from ..dependencies import get_registry, get_settings_dep, get_store
from ..schemas.streams import (
    StoredFile,
    StreamCreateResponse,
    StreamFilesResponse,
    StreamListResponse,
    StreamResponse,
    ViewerCountResponse,
    WatchResponse,
)

router = APIRouter()
logger = get_logger()


def _not_found(stream_key: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Stream {stream_key} is not live",
    )


@router.get("", response_model=StreamListResponse)
async def list_streams(registry: ActiveStreamRegistry = Depends(get_registry)):
    """List live streams."""
    entries = registry.list()
    return StreamListResponse(
        streams=[StreamResponse.from_entry(entry) for entry in entries],
        count=len(entries),
    )


@router.post("/create", response_model=StreamCreateResponse)
async def create_stream(settings: Settings = Depends(get_settings_dep)):
    """Hand out a fresh stream key and the ingest URL to publish to.

    Nothing is registered here; the stream shows up once the ingest node
    publishes STREAM_STARTED for it.
    """
    stream_key = str(uuid.uuid4())
    logger.info("stream_key_issued", stream_key=stream_key)
    return StreamCreateResponse(
        stream_key=stream_key,
        ingest_url=settings.ingest_public_url,
        playlist_url=settings.playlist_url(stream_key),
    )


@router.get("/{stream_key}", response_model=StreamResponse)
async def get_stream(stream_key: str, registry: ActiveStreamRegistry = Depends(get_registry)):
    entry = registry.get(stream_key)
    if entry is None:
        raise _not_found(stream_key)
    return StreamResponse.from_entry(entry)


@router.get("/{stream_key}/watch", response_model=WatchResponse)
async def watch_stream(
    stream_key: str,
    registry: ActiveStreamRegistry = Depends(get_registry),
    store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings_dep),
):
    """Register a viewer and return playback locations."""
    entry = registry.adjust_viewers(stream_key, 1)
    if entry is None:
        raise _not_found(stream_key)
    return WatchResponse(
        stream_key=stream_key,
        playlist_url=entry.playlist_location,
        stream_url=store.object_url(f"{stream_key}/{settings.playlist_name}"),
        viewers=entry.viewer_count,
    )


@router.post("/{stream_key}/leave", response_model=ViewerCountResponse)
async def leave_stream(stream_key: str, registry: ActiveStreamRegistry = Depends(get_registry)):
    entry = registry.adjust_viewers(stream_key, -1)
    if entry is None:
        raise _not_found(stream_key)
    return ViewerCountResponse(stream_key=stream_key, viewers=entry.viewer_count)


@router.get("/{stream_key}/files", response_model=StreamFilesResponse)
async def list_stream_files(stream_key: str, store: ObjectStore = Depends(get_store)):
    """List stored artifacts for a stream, live or not."""
    objects = await store.list_objects(prefix=f"{stream_key}/")
    if objects is None:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Object store unavailable",
        )
    files = [StoredFile(**obj) for obj in objects]
    return StreamFilesResponse(stream_key=stream_key, files=files, count=len(files))
