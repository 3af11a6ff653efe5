"""Main FastAPI application."""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from structlog import get_logger

from relay_shared.domain.registry import ActiveStreamRegistry
from relay_shared.infrastructure.config import Settings, get_settings
from relay_shared.infrastructure.event_bus import EventBus
from relay_shared.infrastructure.logging import configure_logging
from relay_shared.infrastructure.storage import ObjectStore

from .middleware.logging import LoggingMiddleware
from .routes import health, streams

logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Feed the registry from a live fanout subscription while running."""
    bus: EventBus = app.state.bus
    registry: ActiveStreamRegistry = app.state.registry

    await bus.connect()
    bus.subscribe(registry.apply, durable=False)
    await bus.start_consuming()
    logger.info("api_started", degraded=bus.degraded)

    yield

    await bus.close()
    logger.info("api_stopped")


def create_app(
    settings: Optional[Settings] = None,
    *,
    registry: Optional[ActiveStreamRegistry] = None,
    bus: Optional[EventBus] = None,
    store: Optional[ObjectStore] = None,
) -> FastAPI:
    """Create FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Relay Stream API",
        description="Live stream discovery and stored artifact listing",
        version="1.0.0",
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if registry is None:
        registry = ActiveStreamRegistry(settings.default_stream_title)
    app.state.registry = registry
    app.state.bus = bus if bus is not None else EventBus(settings, service_name="api")
    app.state.store = store if store is not None else ObjectStore(settings)
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.include_router(health.router, tags=["health"])
    app.include_router(streams.router, prefix="/api/streams", tags=["streams"])

    return app


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
