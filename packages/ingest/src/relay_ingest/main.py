"""Ingest service application."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from structlog import get_logger

from relay_shared.infrastructure.config import Settings, get_settings
from relay_shared.infrastructure.event_bus import EventBus
from relay_shared.infrastructure.logging import configure_logging

from .routes import router
from .sessions import StreamSessionManager
from .supervisor import EncoderConfig, EncoderSupervisor

logger = get_logger()


def create_app(
    settings: Optional[Settings] = None,
    *,
    manager: Optional[StreamSessionManager] = None,
    bus: Optional[EventBus] = None,
) -> FastAPI:
    """Create the ingest application.

    Without an explicit manager the app owns a real encoder supervisor and
    an event bus connected on startup.
    """
    settings = settings or get_settings()
    if manager is None:
        bus = bus or EventBus(settings, service_name="ingest")
        manager = StreamSessionManager(
            EncoderSupervisor(EncoderConfig.from_settings(settings)), bus, settings
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.hls_output_dir.mkdir(parents=True, exist_ok=True)
        if bus is not None:
            await bus.connect()
        logger.info("ingest_started", port=settings.ingest_port)

        yield

        await manager.shutdown()
        if bus is not None:
            await bus.close()
        logger.info("ingest_stopped")

    app = FastAPI(
        title="Relay Ingest",
        description="Live media ingest over WebSocket",
        version="1.0.0",
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.sessions = manager
    app.state.bus = bus
    app.include_router(router)
    return app


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.ingest_host,
        port=settings.ingest_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
