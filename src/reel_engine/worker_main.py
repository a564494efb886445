"""REEL Engine - standalone pipeline worker process."""

import asyncio
import logging
import signal

from reel_engine.core.config import settings
from reel_engine.core.container import build_pipelines, build_worker, close_services, create_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def run_workers() -> None:
    if settings.STORE_BACKEND == "memory":
        logger.warning("Memory backend is per-process; a standalone worker will never see API submissions")

    services = await create_services(settings)
    pipelines = build_pipelines(settings, services)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    logger.info("Starting %d worker(s) v%s", settings.WORKER_CONCURRENCY, settings.VERSION)
    try:
        await asyncio.gather(*(
            build_worker(services, pipelines, worker_id=i).run(stop_event)
            for i in range(settings.WORKER_CONCURRENCY)
        ))
    finally:
        await close_services(services)
        logger.info("Workers stopped")


def main():
    """Run the worker."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
