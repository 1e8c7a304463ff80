"""Dramatiq worker configuration.

This module configures the Dramatiq broker and imports all tasks
so they are registered when the worker starts.

Run with:
    dramatiq itemize.worker
"""

import logging
import threading
import time

from itemize.core.config import settings
from itemize.core.observability import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

# Import tasks to register them (this also configures the broker)
from itemize.core.tasks import broker, reap_stuck_receipts  # noqa: E402,F401

logger.info("Tasks registered: reap_stuck_receipts")


# Optional lightweight cron loop (avoid external scheduler), enabled via REAPER_CRON_ENABLED=true
def _maybe_start_reaper_cron():  # pragma: no cover - simple orchestrator
    if not settings.REAPER_CRON_ENABLED:
        return None
    interval = max(30, int(settings.REAPER_CRON_INTERVAL_SECONDS))

    def loop():
        while True:
            try:
                logger.info("[cron] enqueue reap_stuck_receipts interval=%ss", interval)
                reap_stuck_receipts.send()
            except Exception as e:
                logger.error("[cron] failed to enqueue reaper: %s", e)
            time.sleep(interval)

    t = threading.Thread(target=loop, name="reaper-cron", daemon=True)
    t.start()
    logger.info("Reaper cron loop started (interval=%ss)", interval)
    return t


_maybe_start_reaper_cron()
