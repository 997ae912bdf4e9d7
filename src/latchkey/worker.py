"""Background task worker using SAQ.

Runs the expired token sweep on its cron schedule.
"""

import asyncio
import logging

from saq import Worker

from latchkey.config import settings
from latchkey.logging import setup_logging, setup_sentry
from latchkey.tasks.queue import get_queue_settings

logger = logging.getLogger(__name__)


def build_worker() -> Worker:
    """Build the SAQ worker from the queue settings."""
    queue_settings = get_queue_settings()
    return Worker(
        queue=queue_settings["queue"],
        functions=queue_settings["functions"],
        concurrency=queue_settings.get("concurrency", 10),
        cron_jobs=queue_settings.get("cron_jobs"),
        startup=queue_settings.get("startup"),
        shutdown=queue_settings.get("shutdown"),
    )


def main() -> None:
    """Run the SAQ worker."""
    setup_logging()
    setup_sentry()
    logger.info(f"Starting worker, sweep schedule {settings.sweep_cron!r}")
    asyncio.run(build_worker().start())


if __name__ == "__main__":
    main()
