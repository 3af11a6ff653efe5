"""Ingest endpoints: the media WebSocket and a local view of live sessions."""

from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from structlog import get_logger

from relay_shared.domain.exceptions import MalformedControlFrame

from .protocol import ControlMessage, parse_binary_frame, parse_text_frame
from .sessions import StreamSessionManager

logger = get_logger()

router = APIRouter()


async def ingest_socket(websocket: WebSocket):
    """Bind one WebSocket connection to one stream session.

    Text frames are always control frames. Binary frames are control frames
    only when short, JSON and starting with ``{``; everything else is media.
    """
    manager: StreamSessionManager = websocket.app.state.sessions
    max_control_bytes = websocket.app.state.settings.control_frame_max_bytes
    await websocket.accept()

    closed = False

    async def notify(message: Dict[str, Any]) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await websocket.send_json(message)
        await websocket.close()

    session = manager.begin_session(notify=notify)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            try:
                if message.get("bytes") is not None:
                    frame = parse_binary_frame(message["bytes"], max_control_bytes)
                elif message.get("text") is not None:
                    frame = parse_text_frame(message["text"])
                else:
                    continue
            except MalformedControlFrame as e:
                logger.warning(
                    "malformed_control_frame",
                    session_id=session.session_id,
                    error=str(e),
                )
                continue

            if isinstance(frame, ControlMessage):
                ack = await manager.handle_control_message(session, frame)
                if ack is not None and not closed:
                    await websocket.send_json(ack)
            else:
                await manager.handle_payload(session, frame)
    except WebSocketDisconnect:
        pass
    finally:
        closed = True
        await manager.on_connection_closed(session)


router.add_api_websocket_route("/", ingest_socket)
router.add_api_websocket_route("/ws", ingest_socket)


@router.get("/health")
async def health_check(request: Request):
    """Report ingest liveness and eventing state."""
    bus = request.app.state.bus
    if bus is None:
        event_bus = "disabled"
    elif bus.degraded:
        event_bus = "degraded"
    else:
        event_bus = "connected" if bus.connected else "disconnected"
    return {
        "status": "healthy",
        "service": "relay-ingest",
        "activeStreams": len(request.app.state.sessions.active_sessions()),
        "eventBus": event_bus,
    }


@router.get("/api/streams")
async def list_streams(request: Request):
    """Sessions currently live on this ingest node."""
    sessions = request.app.state.sessions.active_sessions()
    return {
        "streams": [s.to_dict() for s in sessions],
        "count": len(sessions),
    }


@router.get("/api/streams/{stream_key}")
async def get_stream(stream_key: str, request: Request):
    session = request.app.state.sessions.get_by_stream_key(stream_key)
    if session is None:
        raise HTTPException(status_code=404, detail="Stream not found")
    return session.to_dict(playlist_url=request.app.state.settings.playlist_url(stream_key))
