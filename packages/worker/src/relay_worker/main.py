"""Storage sync worker process."""

import asyncio
import signal
from typing import Optional

from structlog import get_logger

from relay_shared.infrastructure.config import Settings, get_settings
from relay_shared.infrastructure.event_bus import EventBus
from relay_shared.infrastructure.logging import configure_logging
from relay_shared.infrastructure.storage import ObjectStore

from .manager import SyncManager

logger = get_logger()


async def main(settings: Optional[Settings] = None) -> None:
    """Run the worker until SIGINT or SIGTERM."""
    settings = settings or get_settings()
    settings.hls_output_dir.mkdir(parents=True, exist_ok=True)

    store = ObjectStore(settings)
    if not await store.ensure_bucket():
        logger.error("bucket_unavailable", bucket=settings.s3_bucket_name)

    manager = SyncManager(store, settings)
    bus = EventBus(settings, service_name="worker")
    await bus.connect()
    if bus.subscribe(manager.handle_event, durable=True) is None:
        logger.error("worker_running_without_events")
    await bus.start_consuming()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("worker_started", output_dir=str(settings.hls_output_dir))
    await stop.wait()

    logger.info("worker_stopping")
    await bus.close()
    await manager.close()
    logger.info("worker_stopped")


def run() -> None:
    """Console entry point."""
    settings = get_settings()
    configure_logging(settings)
    asyncio.run(main(settings))


if __name__ == "__main__":
    run()
