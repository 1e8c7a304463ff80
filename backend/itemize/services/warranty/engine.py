"""Warranty resolution engine.

Per line item the lookup state moves ``unknown -> in_progress ->
{found | not_found | error}``; ``force`` lets a caller re-enter
``in_progress`` from a terminal state.

A check runs in these steps:

1. load the item scoped by tenant and receipt
2. require a purchase date on the receipt (otherwise a terminal
   ``error`` is stored and :class:`PurchaseDateMissing` raised)
3. serve ``found``/``not_found`` results younger than the cache TTL
   without calling any resolver
4. claim the item by compare-and-swap into ``in_progress``; a second
   caller gets :class:`WarrantyLookupInProgress` until the claim is
   released or older than the claim TTL
5. walk the resolvers until one matches
6. persist: upsert the :class:`Warranty` row on a match, record the
   outcome on the item and release the claim
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from itemize.core.clock import Clock, system_clock
from itemize.models.enums import AuditEntityType, AuditEventType, WarrantyLookupStatus
from itemize.models.tables import Receipt, ReceiptItem, Warranty
from itemize.services.audit_service import AuditLogService
from itemize.services.warranty.resolvers import (
    ResolverOutcome,
    ResolverStatus,
    WarrantyContext,
    WarrantyResolver,
)

logger = logging.getLogger(__name__)

MISSING_PURCHASE_DATE = "Missing purchase date on receipt"

CACHEABLE_STATUSES = (WarrantyLookupStatus.FOUND, WarrantyLookupStatus.NOT_FOUND)
PENDING_STATUSES = (
    WarrantyLookupStatus.UNKNOWN,
    WarrantyLookupStatus.ERROR,
    WarrantyLookupStatus.NOT_FOUND,
    WarrantyLookupStatus.IN_PROGRESS,
)


class WarrantyItemNotFound(Exception):
    pass


class PurchaseDateMissing(Exception):
    def __init__(self, item: ReceiptItem) -> None:
        super().__init__("Purchase date required before warranty check")
        self.item = item


class WarrantyLookupInProgress(Exception):
    pass


@dataclass
class WarrantyCheckResult:
    item: ReceiptItem
    cached: bool
    warranty_found: bool


def _item_state(item: ReceiptItem) -> Dict[str, Any]:
    status = item.warranty_lookup_status
    return {
        "warranty_lookup_status": status.value if status else None,
        "warranty_end_date": item.warranty_end_date.isoformat() if item.warranty_end_date else None,
        "warranty_lookup_confidence": item.warranty_lookup_confidence,
    }


class WarrantyResolutionEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolvers: Sequence[WarrantyResolver],
        audit: AuditLogService,
        clock: Clock = system_clock,
        cache_ttl: dt.timedelta = dt.timedelta(days=30),
        claim_ttl: dt.timedelta = dt.timedelta(minutes=5),
    ) -> None:
        self._session_factory = session_factory
        self._resolvers = list(resolvers)
        self._audit = audit
        self._clock = clock
        self.cache_ttl = cache_ttl
        self.claim_ttl = claim_ttl

    def is_cached(self, item: ReceiptItem, now: dt.datetime) -> bool:
        if item.warranty_lookup_status not in CACHEABLE_STATUSES:
            return False
        if item.warranty_checked_at is None:
            return False
        return now - item.warranty_checked_at < self.cache_ttl

    async def _load(self, session: AsyncSession, tenant_id: int, receipt_id: int, item_id: int):
        q = (
            select(ReceiptItem, Receipt)
            .join(Receipt, Receipt.id == ReceiptItem.receipt_id)
            .where(
                ReceiptItem.id == item_id,
                ReceiptItem.receipt_id == receipt_id,
                ReceiptItem.tenant_id == tenant_id,
                Receipt.tenant_id == tenant_id,
            )
        )
        row = (await session.execute(q)).first()
        if row is None:
            raise WarrantyItemNotFound(f"Item {item_id} not found on receipt {receipt_id}")
        return row[0], row[1]

    async def check(
        self,
        tenant_id: int,
        receipt_id: int,
        item_id: int,
        force: bool = False,
        actor_id: Optional[str] = None,
    ) -> WarrantyCheckResult:
        now = self._clock.now()
        async with self._session_factory() as session:
            item, receipt = await self._load(session, tenant_id, receipt_id, item_id)
            purchase_date = receipt.purchase_date
            merchant = receipt.merchant

            if purchase_date is None:
                before = _item_state(item)
                item.track_warranty = True
                item.warranty_eligible = True
                item.warranty_lookup_status = WarrantyLookupStatus.ERROR
                item.warranty_lookup_error = MISSING_PURCHASE_DATE
                item.warranty_checked_at = now
                await session.commit()
                await session.refresh(item)
                await self._audit.record(
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    entity_type=AuditEntityType.ITEM,
                    entity_id=item.id,
                    event_type=AuditEventType.WARRANTY_CHECK_FAILED,
                    before=before,
                    after=_item_state(item),
                    metadata={"error": MISSING_PURCHASE_DATE},
                )
                raise PurchaseDateMissing(item)

            if not force and self.is_cached(item, now):
                return WarrantyCheckResult(
                    item=item,
                    cached=True,
                    warranty_found=item.warranty_lookup_status is WarrantyLookupStatus.FOUND,
                )

            before = _item_state(item)
            ctx = WarrantyContext(
                item_name=item.name,
                description=item.description,
                merchant=merchant,
                purchase_date=purchase_date,
                total_price_cents=item.total_price_cents,
            )

            claim = (
                update(ReceiptItem)
                .where(
                    ReceiptItem.id == item_id,
                    ReceiptItem.tenant_id == tenant_id,
                    or_(
                        ReceiptItem.warranty_lookup_status != WarrantyLookupStatus.IN_PROGRESS,
                        ReceiptItem.warranty_claimed_at.is_(None),
                        ReceiptItem.warranty_claimed_at < now - self.claim_ttl,
                    ),
                )
                .values(
                    warranty_lookup_status=WarrantyLookupStatus.IN_PROGRESS,
                    warranty_claimed_at=now,
                    warranty_lookup_error=None,
                    track_warranty=True,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(claim)
            await session.commit()
            if not result.rowcount:
                raise WarrantyLookupInProgress(f"Warranty lookup already in progress for item {item_id}")

        outcome, errors, metadata, reason = await self._resolve(ctx)

        checked_at = self._clock.now()
        async with self._session_factory() as session:
            item, _ = await self._load(session, tenant_id, receipt_id, item_id)
            item.track_warranty = True
            item.warranty_checked_at = checked_at
            item.warranty_claimed_at = None
            item.warranty_lookup_metadata = metadata
            if reason is not None:
                item.warranty_eligibility_reason = reason

            if outcome is not None:
                await self._upsert_warranty(session, tenant_id, receipt_id, item_id, outcome)
                item.warranty_eligible = True
                item.warranty_lookup_status = WarrantyLookupStatus.FOUND
                item.warranty_end_date = outcome.end_date
                item.warranty_lookup_confidence = outcome.confidence
                item.warranty_lookup_source = outcome.source
                item.warranty_lookup_error = None
            else:
                item.warranty_lookup_status = (
                    WarrantyLookupStatus.ERROR if errors else WarrantyLookupStatus.NOT_FOUND
                )
                item.warranty_end_date = None
                item.warranty_lookup_confidence = None
                item.warranty_lookup_source = None
                item.warranty_lookup_error = "; ".join(errors) if errors else None
                if reason is not None and not errors:
                    item.warranty_eligible = False
            await session.commit()
            await session.refresh(item)

        found = outcome is not None
        logger.info(
            "Warranty check tenant=%s item=%s status=%s source=%s",
            tenant_id,
            item_id,
            item.warranty_lookup_status.value,
            outcome.source.value if found and outcome.source else None,
        )
        await self._audit.record(
            tenant_id=tenant_id,
            actor_id=actor_id,
            entity_type=AuditEntityType.ITEM,
            entity_id=item_id,
            event_type=AuditEventType.WARRANTY_CHECKED,
            before=before,
            after=_item_state(item),
            metadata={"force": force, "errors": errors, "reason": reason},
        )
        return WarrantyCheckResult(item=item, cached=False, warranty_found=found)

    async def _resolve(self, ctx: WarrantyContext):
        """Walk the resolvers; return (match, errors, metadata, eligibility reason)."""
        errors: List[str] = []
        metadata: Optional[Dict[str, Any]] = None
        reason: Optional[str] = None
        for resolver in self._resolvers:
            try:
                outcome = await resolver.resolve(ctx)
            except Exception as exc:
                logger.exception("Warranty resolver %s raised", resolver.name)
                outcome = ResolverOutcome.failed(str(exc) or exc.__class__.__name__)
            if outcome.metadata is not None:
                metadata = outcome.metadata
            if outcome.eligibility_reason is not None:
                reason = outcome.eligibility_reason
            if outcome.status is ResolverStatus.ERROR and outcome.error:
                errors.append(outcome.error)
            if outcome.matched:
                # A later tier recovering clears the earlier tier's error.
                return outcome, [], metadata, reason
        return None, errors, metadata, reason

    async def _upsert_warranty(
        self,
        session: AsyncSession,
        tenant_id: int,
        receipt_id: int,
        item_id: int,
        outcome: ResolverOutcome,
    ) -> Warranty:
        q = select(Warranty).where(
            and_(
                Warranty.tenant_id == tenant_id,
                Warranty.receipt_id == receipt_id,
                Warranty.item_id == item_id,
            )
        )
        warranty = (await session.execute(q)).scalars().first()
        if warranty is None:
            warranty = Warranty(tenant_id=tenant_id, receipt_id=receipt_id, item_id=item_id)
            session.add(warranty)
        warranty.start_date = outcome.start_date
        warranty.end_date = outcome.end_date
        warranty.category = outcome.category
        warranty.manufacturer = outcome.manufacturer
        warranty.confidence = outcome.confidence
        return warranty

    async def list_pending_items(self, tenant_id: int, limit: int = 200) -> List[ReceiptItem]:
        """Items tracked or eligible for a warranty that still lack a result."""
        q = (
            select(ReceiptItem)
            .where(
                ReceiptItem.tenant_id == tenant_id,
                or_(ReceiptItem.warranty_eligible.is_(True), ReceiptItem.track_warranty.is_(True)),
                ReceiptItem.warranty_lookup_status.in_(PENDING_STATUSES),
            )
            .order_by(ReceiptItem.updated_at.desc(), ReceiptItem.id.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(q)
            return list(result.scalars().all())
