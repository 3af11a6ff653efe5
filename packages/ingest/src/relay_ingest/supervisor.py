"""Encoder process supervision.

One external encoder per active stream. The encoder reads raw media from
its stdin and writes a segmented playlist into the stream's output
directory. The supervisor owns the process handle, the single-writer input
pipe and the exit watch; every exit, requested or not, is reported through
the ``on_exit`` callback so the owning session can run its termination path.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol

from relay_shared.domain.exceptions import SpawnError
from relay_shared.infrastructure.config import Settings

logger = logging.getLogger(__name__)

STDERR_CHUNK_BYTES = 4096
_LINE_BREAK = re.compile(rb"\r\n|\r|\n")

ExitCallback = Callable[["EncoderProcess"], Awaitable[None]]


@dataclass
class EncoderConfig:
    """Encoder command configuration."""

    executable: str = "ffmpeg"
    playlist_name: str = "playlist.m3u8"
    segment_filename: str = "segment_%03d.ts"
    hls_time: int = 2
    hls_list_size: int = 10
    hls_flags: str = "delete_segments+append_list"
    video_codec: str = "libx264"
    preset: str = "ultrafast"
    tune: str = "zerolatency"
    audio_codec: str = "aac"
    audio_sample_rate: int = 44100
    audio_bitrate: str = "128k"
    max_pending_bytes: int = 4 * 1024 * 1024
    stop_timeout: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EncoderConfig":
        return cls(
            executable=settings.encoder_executable,
            playlist_name=settings.playlist_name,
            segment_filename=settings.segment_filename,
            hls_time=settings.hls_time,
            hls_list_size=settings.hls_list_size,
            hls_flags=settings.hls_flags,
            video_codec=settings.video_codec,
            preset=settings.video_preset,
            tune=settings.video_tune,
            audio_codec=settings.audio_codec,
            audio_sample_rate=settings.audio_sample_rate,
            audio_bitrate=settings.audio_bitrate,
            max_pending_bytes=settings.encoder_max_pending_bytes,
            stop_timeout=settings.encoder_stop_timeout_seconds,
        )


@dataclass
class EncoderProcess:
    """One live encoder instance."""

    stream_key: str
    output_dir: Path
    pid: Optional[int] = None
    input_open: bool = True
    exit_code: Optional[int] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    handle: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    exit_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self.exit_code is None


class ProcessSupervisor(Protocol):
    """The operations a session needs from an encoder supervisor."""

    async def spawn(
        self, stream_key: str, output_dir: Path, on_exit: ExitCallback
    ) -> EncoderProcess:
        ...

    def is_accepting_input(self, process: EncoderProcess) -> bool:
        ...

    async def write(self, process: EncoderProcess, data: bytes) -> bool:
        ...

    async def close_input(self, process: EncoderProcess) -> None:
        ...

    async def terminate(self, process: EncoderProcess) -> None:
        ...


class EncoderSupervisor:
    """Spawns and supervises encoder subprocesses."""

    def __init__(self, config: Optional[EncoderConfig] = None):
        self.config = config or EncoderConfig()

    def build_command(self, output_dir: Path) -> List[str]:
        """Build the encoder command for one stream."""
        return [
            self.config.executable,
            "-hide_banner",
            "-i", "pipe:0",
            "-c:v", self.config.video_codec,
            "-preset", self.config.preset,
            "-tune", self.config.tune,
            "-c:a", self.config.audio_codec,
            "-ar", str(self.config.audio_sample_rate),
            "-b:a", self.config.audio_bitrate,
            "-f", "hls",
            "-hls_time", str(self.config.hls_time),
            "-hls_list_size", str(self.config.hls_list_size),
            "-hls_flags", self.config.hls_flags,
            "-hls_segment_filename", str(output_dir / self.config.segment_filename),
            str(output_dir / self.config.playlist_name),
        ]

    async def spawn(
        self, stream_key: str, output_dir: Path, on_exit: ExitCallback
    ) -> EncoderProcess:
        """Launch an encoder writing into ``output_dir``.

        Raises:
            SpawnError: If the output directory cannot be created or the
                executable cannot be launched
        """
        output_dir = Path(output_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SpawnError(
                f"Could not create encoder output directory {output_dir}: {e}",
                stream_key=stream_key,
            ) from e
        cmd = self.build_command(output_dir)
        logger.info(f"Starting encoder for stream {stream_key}: {' '.join(cmd)}")

        try:
            handle = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(
                f"Could not launch encoder {self.config.executable!r}: {e}",
                stream_key=stream_key,
            ) from e

        process = EncoderProcess(
            stream_key=stream_key,
            output_dir=output_dir,
            pid=handle.pid,
            handle=handle,
        )
        process.exit_task = asyncio.create_task(self._watch_exit(process, on_exit))
        logger.info(f"Encoder for stream {stream_key} running with pid {handle.pid}")
        return process

    def is_accepting_input(self, process: EncoderProcess) -> bool:
        """Whether a write would currently be accepted.

        False once the input is closed, the encoder has exited, or the bytes
        already queued for the encoder exceed the configured bound.
        """
        if not process.input_open or not process.is_running:
            return False
        stdin = process.handle.stdin if process.handle else None
        if stdin is None or stdin.is_closing():
            return False
        return stdin.transport.get_write_buffer_size() < self.config.max_pending_bytes

    async def write(self, process: EncoderProcess, data: bytes) -> bool:
        """Append bytes to the encoder input.

        Safe on a closed pipe: returns False instead of raising.

        Returns:
            True if the bytes were queued, False if they were dropped
        """
        if not self.is_accepting_input(process):
            return False
        try:
            process.handle.stdin.write(data)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Encoder input for stream {process.stream_key} is gone: {e}")
            process.input_open = False
            return False
        return True

    async def close_input(self, process: EncoderProcess) -> None:
        """Half-close the encoder input. Idempotent."""
        if not process.input_open:
            return
        process.input_open = False
        stdin = process.handle.stdin if process.handle else None
        if stdin is None:
            return
        logger.info(f"Closing encoder input for stream {process.stream_key}")
        try:
            stdin.close()
            await asyncio.wait_for(stdin.wait_closed(), timeout=self.config.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Encoder input for stream {process.stream_key} still draining "
                f"after {self.config.stop_timeout}s"
            )
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Encoder input for stream {process.stream_key} already broken: {e}")

    async def terminate(self, process: EncoderProcess) -> None:
        """Close input, then stop the encoder, killing it after the stop timeout."""
        await self.close_input(process)
        if not process.is_running or process.handle is None:
            return
        try:
            await asyncio.wait_for(process.handle.wait(), timeout=self.config.stop_timeout)
            return
        except asyncio.TimeoutError:
            pass
        logger.warning(f"Encoder for stream {process.stream_key} did not exit, terminating")
        process.handle.terminate()
        try:
            await asyncio.wait_for(process.handle.wait(), timeout=self.config.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Encoder for stream {process.stream_key} ignored SIGTERM, killing")
            process.handle.kill()
            await process.handle.wait()

    async def _watch_exit(self, process: EncoderProcess, on_exit: ExitCallback) -> None:
        handle = process.handle
        stderr_task = asyncio.create_task(self._read_encoder_logs(process))
        try:
            exit_code = await handle.wait()
        except asyncio.CancelledError:
            stderr_task.cancel()
            raise
        await asyncio.gather(stderr_task, return_exceptions=True)

        process.exit_code = exit_code
        process.input_open = False
        if exit_code == 0:
            logger.info(f"Encoder for stream {process.stream_key} exited with code 0")
        else:
            logger.error(
                f"Encoder for stream {process.stream_key} exited with code {exit_code}"
            )

        try:
            await on_exit(process)
        except Exception as e:
            logger.exception(f"Exit handler for stream {process.stream_key} failed: {e}")

    async def _read_encoder_logs(self, process: EncoderProcess) -> None:
        """Drain encoder stderr so the pipe never fills.

        Progress lines end in a bare carriage return, so output is read in
        chunks and split on either line terminator.
        """
        stderr = process.handle.stderr
        if stderr is None:
            return
        pending = b""
        try:
            while True:
                chunk = await stderr.read(STDERR_CHUNK_BYTES)
                if not chunk:
                    break
                lines = _LINE_BREAK.split(pending + chunk)
                pending = lines.pop()
                if len(pending) > STDERR_CHUNK_BYTES:
                    lines.append(pending)
                    pending = b""
                for line in lines:
                    self._log_encoder_line(process, line)
            self._log_encoder_line(process, pending)
        except Exception as e:
            logger.error(f"Error reading encoder logs for stream {process.stream_key}: {e}")

    def _log_encoder_line(self, process: EncoderProcess, line: bytes) -> None:
        log_line = line.decode(errors="replace").strip()
        if not log_line:
            return
        lowered = log_line.lower()
        if "error" in lowered:
            logger.error(f"Encoder[{process.stream_key}]: {log_line}")
        elif "warning" in lowered:
            logger.warning(f"Encoder[{process.stream_key}]: {log_line}")
        else:
            logger.debug(f"Encoder[{process.stream_key}]: {log_line}")
