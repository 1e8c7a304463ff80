"""Extraction dispatch.

A pending receipt is handed to the extraction worker with a single
call whose only job is to get the work *accepted*; the worker advances
the receipt later on its own.  When the handoff is not accepted the
receipt is moved to ``in_review`` with ``needs_review`` set and a zero
confidence score so that a person sees it instead of it sitting in
``pending`` forever.

Two transports are available:

* :class:`HttpExtractionHandoff` posts the payload to the worker's HTTP
  endpoint with the shared internal secret; any 2xx is acceptance.
* :class:`QueueExtractionHandoff` enqueues a dramatiq message for the
  worker's actor; the broker taking the message is acceptance.

Dispatch is at-least-once: the same receipt may be handed off more than
once (the reaper does exactly that) and the worker ignores receipts
that already left ``pending``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import dramatiq
import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from itemize.core.clock import Clock, system_clock
from itemize.core.observability import sentry_breadcrumb
from itemize.models.enums import AuditEntityType, AuditEventType, ReceiptStatus
from itemize.models.schemas import HandoffPayload
from itemize.models.tables import Receipt
from itemize.services.audit_service import AuditLogService

logger = logging.getLogger(__name__)


class HandoffRejected(Exception):
    """The extraction worker answered but did not accept the receipt."""


class ExtractionHandoff(Protocol):
    async def submit(self, payload: HandoffPayload) -> None:
        """Return once the worker has accepted ``payload``; raise otherwise."""
        ...


class HttpExtractionHandoff:
    def __init__(
        self,
        url: str,
        secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._secret = secret
        self._timeout = timeout
        self._transport = transport

    async def submit(self, payload: HandoffPayload) -> None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(
                self.url,
                json=payload.to_wire(),
                headers={"Authorization": f"Bearer {self._secret}"},
            )
        if not resp.is_success:
            raise HandoffRejected(f"HTTP {resp.status_code}: {resp.text[:200]}")


class QueueExtractionHandoff:
    def __init__(self, broker: dramatiq.Broker, queue_name: str, actor_name: str) -> None:
        self._broker = broker
        self.queue_name = queue_name
        self.actor_name = actor_name
        broker.declare_queue(queue_name)

    async def submit(self, payload: HandoffPayload) -> None:
        message = dramatiq.Message(
            queue_name=self.queue_name,
            actor_name=self.actor_name,
            args=(),
            kwargs=payload.to_wire(),
            options={},
        )
        # Broker enqueue blocks on the network; keep it off the event loop.
        await asyncio.to_thread(self._broker.enqueue, message)


@dataclass(frozen=True)
class DispatchOutcome:
    record_id: int
    accepted: bool
    error: Optional[str] = None


class ExtractionDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handoff: ExtractionHandoff,
        audit: AuditLogService,
        clock: Clock = system_clock,
    ) -> None:
        self._session_factory = session_factory
        self._handoff = handoff
        self._audit = audit
        self._clock = clock

    async def dispatch(self, payload: HandoffPayload, tenant_id: int) -> DispatchOutcome:
        """Hand ``payload`` to the extraction worker.

        Handoff failures never raise: the receipt is moved to review and
        the outcome says so.  Errors from the store itself propagate.
        """
        try:
            await self._handoff.submit(payload)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning(
                "Extraction handoff failed receipt=%s tenant=%s: %s",
                payload.record_id,
                tenant_id,
                error,
            )
            sentry_breadcrumb(
                "extraction",
                "handoff failed",
                level="warning",
                data={"receipt_id": payload.record_id, "error": error[:200]},
            )
            await self._mark_for_review(payload.record_id, tenant_id, error)
            return DispatchOutcome(record_id=payload.record_id, accepted=False, error=error)
        logger.info("Extraction handoff accepted receipt=%s", payload.record_id)
        return DispatchOutcome(record_id=payload.record_id, accepted=True)

    async def _mark_for_review(self, receipt_id: int, tenant_id: int, error: str) -> None:
        # Guarded on pending: a receipt the worker already advanced stays put.
        stmt = (
            update(Receipt)
            .where(
                Receipt.id == receipt_id,
                Receipt.tenant_id == tenant_id,
                Receipt.status == ReceiptStatus.PENDING,
            )
            .values(
                status=ReceiptStatus.IN_REVIEW,
                needs_review=True,
                confidence_score=0.0,
                updated_at=self._clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if not result.rowcount:
            return
        await self._audit.record(
            tenant_id=tenant_id,
            entity_type=AuditEntityType.RECEIPT,
            entity_id=receipt_id,
            event_type=AuditEventType.EXTRACTION_HANDOFF_FAILED,
            before={"status": ReceiptStatus.PENDING.value},
            after={
                "status": ReceiptStatus.IN_REVIEW.value,
                "needs_review": True,
                "confidence_score": 0.0,
            },
            metadata={"error": error[:500]},
        )
