"""Standalone worker process entry point.

Run with ``python -m devenv_api.worker``. Any number of worker processes may
run against the same Redis; the queues keep them from duplicating work.
"""

import asyncio
import logging
import signal

from devenv_api.core.config import get_settings
from devenv_api.core.telemetry import configure_tracer_provider
from devenv_api.services.vm_worker import WorkerController

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def run_worker() -> None:
    """Run worker loops until SIGINT or SIGTERM."""
    settings = get_settings()
    configure_tracer_provider(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    controller = WorkerController(settings)
    logger.info(
        f"Starting workers for {settings.provision_queue_name} and "
        f"{settings.control_queue_name} ({settings.queue_backend} backend)"
    )
    await controller.start()

    await stop_event.wait()

    logger.info("Shutdown signal received, stopping workers...")
    await controller.stop()


def main() -> None:
    """Console script entry point."""
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
