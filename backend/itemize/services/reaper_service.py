"""Stuck-job reaper.

``pending`` is meant to be transient.  Receipts whose handoff was lost
(worker restart, dropped message) stay there until this sweep finds
them and dispatches them again.  Each run selects a bounded batch of the
oldest stale receipts across all tenants, re-dispatches them
concurrently and reports how many handoffs were accepted.  A run never
retries on its own; it is meant to be invoked on a schedule.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from itemize.core.clock import Clock, system_clock
from itemize.core.config import settings
from itemize.core.observability import sentry_breadcrumb
from itemize.models.enums import ReceiptStatus
from itemize.models.schemas import EmailProvenance, HandoffPayload, ReapResult
from itemize.models.tables import Receipt
from itemize.services.dispatch_service import ExtractionDispatcher
from itemize.utils.file_signatures import content_type_from_key

logger = logging.getLogger(__name__)

NO_STUCK_RECEIPTS = "No stuck receipts found"


def _clamp(value: Any, default: int, maximum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if number <= 0:
        return default
    return min(number, maximum)


def clamp_reap_params(threshold_minutes: Any = None, limit: Any = None) -> Tuple[int, int]:
    """Return ``(threshold_minutes, limit)`` within configured bounds.

    Missing, non-numeric and non-positive values fall back to the
    defaults; large ones are capped at the maxima.
    """
    return (
        _clamp(threshold_minutes, settings.REAPER_DEFAULT_THRESHOLD_MINUTES, settings.REAPER_MAX_THRESHOLD_MINUTES),
        _clamp(limit, settings.REAPER_DEFAULT_LIMIT, settings.REAPER_MAX_LIMIT),
    )


def _payload_for(receipt: Receipt) -> HandoffPayload:
    email = None
    if receipt.email_message_id or receipt.email_from or receipt.email_subject:
        email = EmailProvenance(
            message_id=receipt.email_message_id,
            sender=receipt.email_from,
            subject=receipt.email_subject,
            received_at=receipt.email_received_at,
        )
    return HandoffPayload(
        record_id=receipt.id,
        owner_id=receipt.owner_id,
        storage_key=receipt.storage_key,
        content_type=receipt.content_type or content_type_from_key(receipt.storage_key),
        email_provenance=email,
    )


class StuckJobReaper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: ExtractionDispatcher,
        clock: Clock = system_clock,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._clock = clock

    async def find_stuck(self, threshold_minutes: int, limit: int) -> List[Receipt]:
        cutoff: dt.datetime = self._clock.now() - dt.timedelta(minutes=threshold_minutes)
        q = (
            select(Receipt)
            .where(Receipt.status == ReceiptStatus.PENDING, Receipt.created_at < cutoff)
            .order_by(Receipt.created_at.asc(), Receipt.id.asc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(q)
            return list(result.scalars().all())

    async def run(self, threshold_minutes: Optional[Any] = None, limit: Optional[Any] = None) -> ReapResult:
        threshold_minutes, limit = clamp_reap_params(threshold_minutes, limit)
        stuck = await self.find_stuck(threshold_minutes, limit)
        if not stuck:
            logger.info("Reaper: no stuck receipts (threshold=%dm)", threshold_minutes)
            return ReapResult(retried=0, message=NO_STUCK_RECEIPTS)

        logger.info("Reaper: re-dispatching %d receipts (threshold=%dm limit=%d)", len(stuck), threshold_minutes, limit)
        results = await asyncio.gather(
            *(self._dispatcher.dispatch(_payload_for(r), r.tenant_id) for r in stuck),
            return_exceptions=True,
        )

        succeeded = 0
        failed = 0
        for receipt, result in zip(stuck, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.error("Reaper: dispatch raised receipt=%s: %s", receipt.id, result)
            elif result.accepted:
                succeeded += 1
            else:
                failed += 1
                logger.error("Reaper: redispatch failed receipt=%s: %s", receipt.id, result.error)

        sentry_breadcrumb(
            "reaper",
            "run complete",
            data={"retried": len(stuck), "succeeded": succeeded, "failed": failed},
        )
        logger.info("Reaper: retried=%d succeeded=%d failed=%d", len(stuck), succeeded, failed)
        return ReapResult(retried=len(stuck), succeeded=succeeded, failed=failed)
