"""Domain types shared between services."""

from .events import EndReason, StreamEvent, StreamEventType
from .exceptions import (
    EventBusError,
    MalformedControlFrame,
    MalformedEventError,
    RelayError,
    SpawnError,
)
from .registry import ActiveStreamRegistry, RegistryEntry

__all__ = [
    "ActiveStreamRegistry",
    "EndReason",
    "EventBusError",
    "MalformedControlFrame",
    "MalformedEventError",
    "RegistryEntry",
    "RelayError",
    "SpawnError",
    "StreamEvent",
    "StreamEventType",
]
