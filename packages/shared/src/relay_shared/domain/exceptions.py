"""Errors shared across the relay services."""

from typing import Any, Optional


class RelayError(Exception):
    """Base exception for relay errors."""

    def __init__(self, message: str, *, stream_key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stream_key = stream_key

    def __str__(self) -> str:
        if self.stream_key:
            return f"{self.message} [stream:{self.stream_key}]"
        return self.message


class SpawnError(RelayError):
    """Raised when the encoder executable cannot be launched."""

    pass


class EventBusError(RelayError):
    """Raised when the broker stays unreachable after bounded retry."""

    pass


class MalformedEventError(RelayError):
    """Raised when a bus message is not a valid stream event."""

    def __init__(self, message: str, *, body: Any = None):
        super().__init__(message)
        self.body = body


class MalformedControlFrame(RelayError):
    """Raised when a control frame is JSON but not a recognised command."""

    def __init__(self, message: str, *, frame: Any = None):
        super().__init__(message)
        self.frame = frame
