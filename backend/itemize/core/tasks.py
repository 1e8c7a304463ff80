"""Dramatiq broker and task definitions for background processing.

The broker carries two kinds of work:

* extraction handoffs when ``EXTRACTION_HANDOFF=queue`` (messages for the
  extraction worker's ``process_receipt`` actor, which lives outside this
  service)
* the stuck-job reaper, ``reap_stuck_receipts``, enqueued by the worker's
  cron loop or by any scheduler

To run the actors defined here start a Dramatiq worker pointed at
:mod:`itemize.worker`::

    dramatiq itemize.worker --processes 1 --threads 4

The broker URL defaults to ``REDIS_URL``; set ``DRAMATIQ_BROKER_URL=stub``
to use the in-memory stub broker (tests, local runs without Redis).
"""

from __future__ import annotations

import asyncio
import logging

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Retries, ShutdownNotifications, TimeLimit
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from itemize.core import database
from itemize.core.config import settings
from itemize.core.observability import sentry_breadcrumb
from itemize.services.audit_service import AuditLogService
from itemize.services.dispatch_service import (
    ExtractionDispatcher,
    ExtractionHandoff,
    HttpExtractionHandoff,
    QueueExtractionHandoff,
)
from itemize.services.reaper_service import StuckJobReaper

logger = logging.getLogger(__name__)


def _has_mw(broker: dramatiq.Broker, mw_cls) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def _build_broker() -> dramatiq.Broker:
    broker_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL
    if broker_url == "stub" or (settings.ENVIRONMENT or "").lower() == "test":
        logger.info("Configuring Dramatiq with StubBroker")
        return StubBroker()
    logger.info("Configuring Dramatiq with Redis broker")
    redis_broker = RedisBroker(url=broker_url)
    if not _has_mw(redis_broker, AgeLimit):
        redis_broker.add_middleware(AgeLimit())
    if not _has_mw(redis_broker, TimeLimit):
        redis_broker.add_middleware(TimeLimit())
    if not _has_mw(redis_broker, ShutdownNotifications):
        redis_broker.add_middleware(ShutdownNotifications())
    if not _has_mw(redis_broker, Retries):
        # Exponential backoff up to ~1m
        redis_broker.add_middleware(Retries(max_retries=3, min_backoff=5000, max_backoff=60000, backoff=2.0))
    return redis_broker


broker = _build_broker()
dramatiq.set_broker(broker)


class HandoffNotConfigured(RuntimeError):
    pass


def build_extraction_handoff() -> ExtractionHandoff:
    """Return the handoff transport selected by ``EXTRACTION_HANDOFF``."""
    mode = (settings.EXTRACTION_HANDOFF or "http").lower()
    if mode == "queue":
        return QueueExtractionHandoff(broker, settings.EXTRACTION_QUEUE_NAME, settings.EXTRACTION_ACTOR_NAME)
    if not settings.INTERNAL_API_SECRET:
        raise HandoffNotConfigured("INTERNAL_API_SECRET is required for the HTTP extraction handoff")
    return HttpExtractionHandoff(
        settings.EXTRACTION_WORKER_URL,
        settings.INTERNAL_API_SECRET,
        timeout=settings.EXTRACTION_TIMEOUT_SECONDS,
    )


async def _reap(threshold_minutes: int | None, limit: int | None):
    # Each asyncio.run gets its own loop, so the worker uses a private engine.
    engine = create_async_engine(database.db_url, pool_pre_ping=True)
    try:
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
        audit = AuditLogService(session_factory)
        dispatcher = ExtractionDispatcher(session_factory, build_extraction_handoff(), audit)
        reaper = StuckJobReaper(session_factory, dispatcher)
        return await reaper.run(threshold_minutes, limit)
    finally:
        await engine.dispose()


@dramatiq.actor(max_retries=0)
def reap_stuck_receipts(threshold_minutes: int | None = None, limit: int | None = None):
    """Re-dispatch receipts stuck in ``pending``.

    Not retried: the next scheduled run picks up whatever is still stale.
    """
    sentry_breadcrumb("reaper", "run.start", data={"threshold_minutes": threshold_minutes, "limit": limit})
    result = asyncio.run(_reap(threshold_minutes, limit))
    logger.info(
        "[reaper] retried=%d succeeded=%d failed=%d", result.retried, result.succeeded, result.failed
    )
    return result.model_dump()
