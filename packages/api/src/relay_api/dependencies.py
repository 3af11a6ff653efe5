"""FastAPI dependency injection."""

from fastapi import Request

from relay_shared.domain.registry import ActiveStreamRegistry
from relay_shared.infrastructure.config import Settings
from relay_shared.infrastructure.event_bus import EventBus
from relay_shared.infrastructure.storage import ObjectStore


def get_settings_dep(request: Request) -> Settings:
    """Settings the app was created with."""
    return request.app.state.settings


def get_registry(request: Request) -> ActiveStreamRegistry:
    """The process-local active stream registry."""
    return request.app.state.registry


def get_store(request: Request) -> ObjectStore:
    return request.app.state.store


def get_bus(request: Request) -> EventBus:
    return request.app.state.bus
