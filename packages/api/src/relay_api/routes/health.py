"""Health and stats endpoints."""

import time

from fastapi import APIRouter, Depends, Request

from relay_shared.domain.registry import ActiveStreamRegistry
from relay_shared.infrastructure.event_bus import EventBus

from ..dependencies import get_bus, get_registry

router = APIRouter()


def _uptime(request: Request) -> float:
    return round(time.monotonic() - request.app.state.started_at, 3)


@router.get("/health")
async def health_check(
    request: Request,
    registry: ActiveStreamRegistry = Depends(get_registry),
    bus: EventBus = Depends(get_bus),
):
    """Perform basic health check.

    The service stays healthy while the event bus is degraded; the registry
    simply stops receiving updates.
    """
    return {
        "status": "healthy",
        "service": "relay-api",
        "uptimeSeconds": _uptime(request),
        "activeStreams": len(registry),
        "eventBusDegraded": bus.degraded,
    }


@router.get("/api/stats")
async def stats(request: Request, registry: ActiveStreamRegistry = Depends(get_registry)):
    return {
        "activeStreams": len(registry),
        "totalViewers": registry.total_viewers,
        "uptimeSeconds": _uptime(request),
    }
