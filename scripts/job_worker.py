from __future__ import annotations

import asyncio
import logging
import signal

from tenantbot.core.logging import configure_logging
from tenantbot.registry import build_registry, register_default_handlers, schedule_recurring_jobs


logger = logging.getLogger(__name__)


async def _main() -> None:
    # Boot the worker pools and recurring jobs, then block until SIGTERM/SIGINT.
    configure_logging()
    registry = await build_registry()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)
    try:
        registered = register_default_handlers(registry)
        await registry.orchestrator.start()
        registry.start_background_tasks()
        await schedule_recurring_jobs(registry)
        logger.info("job_worker_ready handlers=%s", ",".join(job_type.value for job_type in registered))
        await stop.wait()
        logger.info("job_worker_stopping")
    finally:
        await registry.aclose()


if __name__ == "__main__":
    asyncio.run(_main())
