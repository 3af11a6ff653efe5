"""Stream session management.

A session binds one inbound connection to one encoder process:

    IDLE -> STARTING -> STREAMING -> STOPPING -> ENDED

Termination has exactly one code path (``_terminate``) no matter whether it
was triggered by a stop request followed by encoder exit, an abrupt
disconnect, an encoder crash or service shutdown. A per-session lock
serialises control messages, disconnects and exit notifications, which keeps
STREAM_STARTED ahead of STREAM_ENDED and makes STREAM_ENDED publish once.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from relay_shared.domain.events import EndReason, StreamEvent
from relay_shared.domain.exceptions import SpawnError
from relay_shared.infrastructure.config import Settings
from relay_shared.infrastructure.event_bus import EventPublisher

from .protocol import ControlMessage, ControlType
from .supervisor import EncoderProcess, ProcessSupervisor

logger = structlog.get_logger(__name__)

MIB = 1024 * 1024

Notifier = Callable[[Dict[str, Any]], Awaitable[None]]


class SessionState(str, Enum):
    """Lifecycle states of an ingest session."""

    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPING = "stopping"
    ENDED = "ended"


_ALLOWED_TRANSITIONS = {
    SessionState.IDLE: {SessionState.STARTING, SessionState.STOPPING},
    SessionState.STARTING: {SessionState.STREAMING, SessionState.IDLE, SessionState.STOPPING},
    SessionState.STREAMING: {SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.ENDED},
    SessionState.ENDED: set(),
}


class InvalidTransition(RuntimeError):
    """Raised on a state change the lifecycle does not allow."""

    pass


@dataclass
class StreamSession:
    """One ingest connection and the stream it carries."""

    session_id: str
    stream_key: Optional[str] = None
    title: Optional[str] = None
    state: SessionState = SessionState.IDLE
    bytes_received: int = 0
    dropped_chunks: int = 0
    dropped_bytes: int = 0
    started_at: Optional[datetime] = None
    process: Optional[EncoderProcess] = None
    end_reason: Optional[EndReason] = None
    transitions: List[SessionState] = field(default_factory=lambda: [SessionState.IDLE])
    started_published: bool = False
    ended_published: bool = False
    notify: Optional[Notifier] = field(default=None, repr=False)
    ended: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug(
            "session_transition",
            session_id=self.session_id,
            stream_key=self.stream_key,
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state
        self.transitions.append(new_state)

    @property
    def is_terminal(self) -> bool:
        return self.state == SessionState.ENDED

    def to_dict(self, playlist_url: Optional[str] = None) -> Dict[str, Any]:
        data = {
            "streamKey": self.stream_key,
            "state": self.state.value,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "bytesReceived": self.bytes_received,
            "droppedChunks": self.dropped_chunks,
        }
        if playlist_url:
            data["playlistUrl"] = playlist_url
        return data


class StreamSessionManager:
    """Owns every ingest session on this node."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        publisher: EventPublisher,
        settings: Settings,
    ):
        self.supervisor = supervisor
        self.publisher = publisher
        self.settings = settings
        self._sessions: Dict[str, StreamSession] = {}
        self._by_stream_key: Dict[str, StreamSession] = {}
        self._background: set[asyncio.Task] = set()

    def begin_session(self, notify: Optional[Notifier] = None) -> StreamSession:
        """Create a session for a freshly opened connection."""
        session = StreamSession(session_id=uuid.uuid4().hex, notify=notify)
        self._sessions[session.session_id] = session
        logger.info("session_opened", session_id=session.session_id)
        return session

    def get_by_stream_key(self, stream_key: str) -> Optional[StreamSession]:
        return self._by_stream_key.get(stream_key)

    def active_sessions(self) -> List[StreamSession]:
        return list(self._by_stream_key.values())

    def __len__(self) -> int:
        return len(self._sessions)

    async def handle_control_message(
        self, session: StreamSession, message: ControlMessage
    ) -> Optional[Dict[str, Any]]:
        """Apply a control frame.

        Returns:
            The acknowledgement to send back, if any
        """
        if message.type == ControlType.START_STREAM:
            return await self._start(session, message)
        if message.type == ControlType.STOP_STREAM:
            await self._stop(session)
        return None

    async def _start(
        self, session: StreamSession, message: ControlMessage
    ) -> Optional[Dict[str, Any]]:
        async with session.lock:
            if session.state != SessionState.IDLE:
                logger.warning(
                    "start_ignored",
                    session_id=session.session_id,
                    state=session.state.value,
                )
                return None

            stream_key = message.stream_key or str(uuid.uuid4())
            if stream_key in self._by_stream_key:
                logger.warning("stream_key_in_use", stream_key=stream_key)
                return None

            session.stream_key = stream_key
            session.title = message.title
            session.transition(SessionState.STARTING)
            self._by_stream_key[stream_key] = session
            logger.info("stream_starting", stream_key=stream_key)

            try:
                process = await self.supervisor.spawn(
                    stream_key,
                    self.settings.stream_output_dir(stream_key),
                    on_exit=lambda p: self._on_encoder_exit(session, p),
                )
            except SpawnError as e:
                logger.error("encoder_spawn_failed", stream_key=stream_key, error=str(e))
                self._by_stream_key.pop(stream_key, None)
                session.stream_key = None
                session.title = None
                session.transition(SessionState.IDLE)
                return None

            session.process = process
            session.started_at = datetime.now(timezone.utc)
            session.transition(SessionState.STREAMING)

            playlist_url = self.settings.playlist_url(stream_key)
            session.started_published = True
            await self.publisher.publish(
                StreamEvent.stream_started(stream_key, playlist_url, title=session.title)
            )
            logger.info("stream_started", stream_key=stream_key, pid=process.pid)
            return {
                "type": "stream_started",
                "streamKey": stream_key,
                "playlistUrl": playlist_url,
            }

    async def _stop(self, session: StreamSession) -> None:
        async with session.lock:
            if session.state != SessionState.STREAMING:
                logger.warning(
                    "stop_ignored",
                    session_id=session.session_id,
                    state=session.state.value,
                )
                return
            logger.info("stream_stopping", stream_key=session.stream_key)
            session.end_reason = EndReason.STOP_REQUESTED
            session.transition(SessionState.STOPPING)
            await self.supervisor.close_input(session.process)

    async def handle_payload(self, session: StreamSession, data: bytes) -> bool:
        """Forward media bytes to the session's encoder.

        Payloads outside STREAMING are discarded. When the encoder cannot
        take input the payload is dropped and counted.

        Returns:
            True if the bytes reached the encoder input
        """
        if session.state != SessionState.STREAMING:
            logger.debug(
                "payload_discarded",
                session_id=session.session_id,
                state=session.state.value,
                size=len(data),
            )
            return False

        previous_mib = session.bytes_received // MIB
        session.bytes_received += len(data)

        written = False
        if self.supervisor.is_accepting_input(session.process):
            written = await self.supervisor.write(session.process, data)
        if not written:
            session.dropped_chunks += 1
            session.dropped_bytes += len(data)
            logger.warning(
                "payload_dropped",
                stream_key=session.stream_key,
                size=len(data),
                dropped_chunks=session.dropped_chunks,
            )

        if session.bytes_received // MIB > previous_mib:
            logger.info(
                "stream_progress",
                stream_key=session.stream_key,
                mib_received=round(session.bytes_received / MIB, 2),
            )
        return written

    async def on_connection_closed(self, session: StreamSession) -> None:
        """Run the termination path for a closed connection."""
        await self._terminate(session, EndReason.CONNECTION_CLOSED)

    async def _on_encoder_exit(self, session: StreamSession, process: EncoderProcess) -> None:
        await self._terminate(session, EndReason.ENCODER_EXITED)

    async def _terminate(self, session: StreamSession, reason: EndReason) -> None:
        async with session.lock:
            if session.is_terminal:
                return
            if session.state != SessionState.STOPPING:
                session.transition(SessionState.STOPPING)
            if session.end_reason is None:
                session.end_reason = reason

            process = session.process
            if process is not None:
                await self.supervisor.close_input(process)

            if session.started_published and not session.ended_published:
                session.ended_published = True
                await self.publisher.publish(
                    StreamEvent.stream_ended(
                        session.stream_key,
                        bytes_received=session.bytes_received,
                        reason=session.end_reason,
                        dropped_chunks=session.dropped_chunks,
                        dropped_bytes=session.dropped_bytes,
                        exit_code=process.exit_code if process else None,
                    )
                )

            session.transition(SessionState.ENDED)
            self._sessions.pop(session.session_id, None)
            if session.stream_key and self._by_stream_key.get(session.stream_key) is session:
                del self._by_stream_key[session.stream_key]
            session.ended.set()

            if process is not None and process.is_running:
                self._run_in_background(self.supervisor.terminate(process))

        logger.info(
            "session_ended",
            session_id=session.session_id,
            stream_key=session.stream_key,
            reason=session.end_reason.value,
            bytes_received=session.bytes_received,
            dropped_chunks=session.dropped_chunks,
        )

        if session.notify is not None and reason != EndReason.CONNECTION_CLOSED:
            try:
                await session.notify(
                    {
                        "type": "stream_ended",
                        "streamKey": session.stream_key,
                        "reason": session.end_reason.value,
                    }
                )
            except Exception as e:
                logger.debug("session_notify_failed", session_id=session.session_id, error=str(e))

    def _run_in_background(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def shutdown(self) -> None:
        """End every session and wait for encoders to exit."""
        sessions = list(self._sessions.values())
        for session in sessions:
            await self._terminate(session, EndReason.SHUTDOWN)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("session_manager_stopped", sessions_ended=len(sessions))
