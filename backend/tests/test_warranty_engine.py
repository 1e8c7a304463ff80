from __future__ import annotations

import asyncio
import datetime as dt

import pytest

from itemize.models.enums import AuditEventType, WarrantyLookupStatus, WarrantySource
from itemize.models.tables import ReceiptItem, Warranty
from itemize.services.warranty.ai_client import WarrantyLookupResult
from itemize.services.warranty.engine import (
    MISSING_PURCHASE_DATE,
    PurchaseDateMissing,
    WarrantyItemNotFound,
    WarrantyLookupInProgress,
    WarrantyResolutionEngine,
)
from itemize.services.warranty.resolvers import AiWarrantyResolver, HeuristicWarrantyResolver

PURCHASED = dt.date(2024, 3, 10)


class FakeLookupClient:
    provider = "fake-ai"

    def __init__(self, result: WarrantyLookupResult | None = None, error: Exception | None = None) -> None:
        self.result = result or WarrantyLookupResult(has_warranty=False)
        self.error = error
        self.queries = []

    async def lookup(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.result


def _engine(session_factory, audit, clock, client=None):
    return WarrantyResolutionEngine(
        session_factory,
        [AiWarrantyResolver(client), HeuristicWarrantyResolver(default_months=12)],
        audit,
        clock=clock,
        cache_ttl=dt.timedelta(days=30),
        claim_ttl=dt.timedelta(minutes=5),
    )


async def _seed(db, name, merchant, price_cents=None, purchase_date=PURCHASED, **item_fields):
    tenant_id = await db.add_tenant()
    receipt = await db.add_receipt(tenant_id, merchant=merchant, purchase_date=purchase_date)
    item = await db.add_item(tenant_id, receipt.id, name, total_price_cents=price_cents, **item_fields)
    return tenant_id, receipt, item


@pytest.mark.asyncio
async def test_durable_item_resolved_from_receipt_heuristics(session_factory, db, audit, clock):
    tenant_id, receipt, item = await _seed(db, "Cordless Drill", "Home Depot", 12999)
    engine = _engine(session_factory, audit, clock)

    result = await engine.check(tenant_id, receipt.id, item.id, actor_id="user-1")

    assert result.cached is False
    assert result.warranty_found is True
    checked = result.item
    assert checked.warranty_lookup_status is WarrantyLookupStatus.FOUND
    assert checked.warranty_lookup_source is WarrantySource.RECEIPT
    assert checked.warranty_end_date == dt.date(2025, 3, 10)
    assert checked.warranty_eligible is True
    assert checked.warranty_eligibility_reason == "durable_keyword"
    assert checked.warranty_claimed_at is None
    assert checked.warranty_checked_at == clock.now()

    warranty = (await _warranties(session_factory))[0]
    assert warranty.start_date == PURCHASED
    assert warranty.end_date == dt.date(2025, 3, 10)
    assert warranty.category == "tools"

    events = await db.audit_events(AuditEventType.WARRANTY_CHECKED.value)
    assert len(events) == 1
    assert events[0].before_state["warranty_lookup_status"] == "unknown"
    assert events[0].after_state["warranty_lookup_status"] == "found"


@pytest.mark.asyncio
async def test_food_item_is_not_eligible(session_factory, db, audit, clock):
    tenant_id, receipt, item = await _seed(db, "Latte", "Starbucks", 575)
    engine = _engine(session_factory, audit, clock)

    result = await engine.check(tenant_id, receipt.id, item.id)

    assert result.warranty_found is False
    assert result.item.warranty_lookup_status is WarrantyLookupStatus.NOT_FOUND
    assert result.item.warranty_eligible is False
    assert result.item.warranty_eligibility_reason == "food_or_dining"
    assert result.item.warranty_end_date is None
    assert await _warranties(session_factory) == []


@pytest.mark.asyncio
async def test_ai_result_takes_precedence(session_factory, db, audit, clock):
    tenant_id, receipt, item = await _seed(db, "DCD771C2 Drill Kit", "Home Depot", 9900)
    client = FakeLookupClient(
        WarrantyLookupResult(
            has_warranty=True,
            manufacturer="DeWalt",
            warranty_months=36,
            confidence=0.92,
            rationale="3 year limited warranty",
            source_urls=["https://www.dewalt.com/warranty"],
        )
    )
    engine = _engine(session_factory, audit, clock, client)

    result = await engine.check(tenant_id, receipt.id, item.id)

    assert result.warranty_found is True
    assert result.item.warranty_lookup_source is WarrantySource.AI_LOOKUP
    assert result.item.warranty_end_date == dt.date(2027, 3, 10)
    assert result.item.warranty_lookup_confidence == 0.92
    assert result.item.warranty_lookup_metadata["provider"] == "fake-ai"
    assert result.item.warranty_lookup_metadata["source_urls"] == ["https://www.dewalt.com/warranty"]
    assert client.queries[0].merchant == "Home Depot"
    warranty = (await _warranties(session_factory))[0]
    assert warranty.manufacturer == "DeWalt"
    assert warranty.category == "tools"


@pytest.mark.asyncio
async def test_ai_failure_falls_back_to_heuristics(session_factory, db, audit, clock):
    tenant_id, receipt, item = await _seed(db, "Laptop", "Best Buy", 149900)
    engine = _engine(session_factory, audit, clock, FakeLookupClient(error=TimeoutError("provider timed out")))

    result = await engine.check(tenant_id, receipt.id, item.id)

    assert result.warranty_found is True
    assert result.item.warranty_lookup_source is WarrantySource.RECEIPT
    assert result.item.warranty_lookup_error is None


@pytest.mark.asyncio
async def test_ai_failure_without_fallback_match_records_error(session_factory, db, audit, clock):
    tenant_id, receipt, item = await _seed(db, "Gift card", "Corner Shop", 2500)
    engine = _engine(session_factory, audit, clock, FakeLookupClient(error=RuntimeError("rate limited")))

    result = await engine.check(tenant_id, receipt.id, item.id)

    assert result.warranty_found is False
    assert result.item.warranty_lookup_status is WarrantyLookupStatus.ERROR
    assert "rate limited" in result.item.warranty_lookup_error


@pytest.mark.asyncio
async def test_missing_purchase_date_is_terminal_error(session_factory, db, audit, clock):
    tenant_id, receipt, item = await _seed(db, "Cordless Drill", "Home Depot", 12999, purchase_date=None)
    engine = _engine(session_factory, audit, clock)

    with pytest.raises(PurchaseDateMissing) as excinfo:
        await engine.check(tenant_id, receipt.id, item.id)

    failed = excinfo.value.item
    assert failed.warranty_lookup_status is WarrantyLookupStatus.ERROR
    assert failed.warranty_lookup_error == MISSING_PURCHASE_DATE
    assert failed.track_warranty is True
    events = await db.audit_events(AuditEventType.WARRANTY_CHECK_FAILED.value)
    assert len(events) == 1


@pytest.mark.asyncio
async def test_fresh_result_is_served_from_cache_until_ttl(session_factory, db, audit, clock):
    tenant_id, receipt, item = await _seed(db, "Espresso Machine", "Williams Sonoma", 69900)
    client = FakeLookupClient(WarrantyLookupResult(has_warranty=True, manufacturer="Breville", warranty_months=24))
    engine = _engine(session_factory, audit, clock, client)

    await engine.check(tenant_id, receipt.id, item.id)
    clock.advance(days=10)
    cached = await engine.check(tenant_id, receipt.id, item.id)

    assert cached.cached is True
    assert cached.warranty_found is True
    assert len(client.queries) == 1

    forced = await engine.check(tenant_id, receipt.id, item.id, force=True)
    assert forced.cached is False
    assert len(client.queries) == 2

    clock.advance(days=31)
    expired = await engine.check(tenant_id, receipt.id, item.id)
    assert expired.cached is False
    assert len(client.queries) == 3
    # Re-checks update the single warranty row in place
    assert len(await _warranties(session_factory)) == 1


@pytest.mark.asyncio
async def test_concurrent_claim_is_refused_until_claim_expires(session_factory, db, audit, clock):
    tenant_id, receipt, item = await _seed(
        db,
        "Cordless Drill",
        "Home Depot",
        12999,
        warranty_lookup_status=WarrantyLookupStatus.IN_PROGRESS,
        warranty_claimed_at=clock.now() - dt.timedelta(minutes=1),
    )
    engine = _engine(session_factory, audit, clock)

    with pytest.raises(WarrantyLookupInProgress):
        await engine.check(tenant_id, receipt.id, item.id)

    clock.advance(minutes=10)
    result = await engine.check(tenant_id, receipt.id, item.id)
    assert result.item.warranty_lookup_status is WarrantyLookupStatus.FOUND


class SlowLookupClient(FakeLookupClient):
    async def lookup(self, query):
        await asyncio.sleep(0.05)
        return await super().lookup(query)


@pytest.mark.asyncio
async def test_simultaneous_checks_run_one_lookup_and_clamp_confidence(session_factory, db, audit, clock):
    tenant_id, receipt, item = await _seed(db, "DCD771C2 Drill Kit", "Home Depot", 9900)
    client = SlowLookupClient(
        WarrantyLookupResult(has_warranty=True, manufacturer="DeWalt", warranty_months=36, confidence=7.5)
    )
    engine = _engine(session_factory, audit, clock, client)

    results = await asyncio.gather(
        engine.check(tenant_id, receipt.id, item.id),
        engine.check(tenant_id, receipt.id, item.id),
        return_exceptions=True,
    )

    assert len(client.queries) == 1
    refused = [r for r in results if isinstance(r, WarrantyLookupInProgress)]
    done = [r for r in results if not isinstance(r, Exception)]
    assert len(refused) == 1
    assert len(done) == 1
    assert done[0].item.warranty_lookup_status is WarrantyLookupStatus.FOUND
    assert done[0].item.warranty_lookup_confidence == 1.0
    warranties = await _warranties(session_factory)
    assert len(warranties) == 1
    assert warranties[0].confidence == 1.0


@pytest.mark.asyncio
async def test_check_is_scoped_to_tenant(session_factory, db, audit, clock):
    _, receipt, item = await _seed(db, "Cordless Drill", "Home Depot", 12999)
    intruder = await db.add_tenant(name="Intruder")
    engine = _engine(session_factory, audit, clock)

    with pytest.raises(WarrantyItemNotFound):
        await engine.check(intruder, receipt.id, item.id)
    stored = await db.get(ReceiptItem, item.id)
    assert stored.warranty_lookup_status is WarrantyLookupStatus.UNKNOWN


@pytest.mark.asyncio
async def test_list_pending_items(session_factory, db, audit, clock):
    tenant_id = await db.add_tenant()
    receipt = await db.add_receipt(tenant_id, merchant="Best Buy", purchase_date=PURCHASED)
    pending = await db.add_item(tenant_id, receipt.id, "Monitor", warranty_eligible=True)
    errored = await db.add_item(
        tenant_id, receipt.id, "Speaker", track_warranty=True, warranty_lookup_status=WarrantyLookupStatus.ERROR
    )
    await db.add_item(
        tenant_id, receipt.id, "Tablet", warranty_eligible=True, warranty_lookup_status=WarrantyLookupStatus.FOUND
    )
    await db.add_item(tenant_id, receipt.id, "HDMI cable")
    other_tenant = await db.add_tenant(name="Other")
    other_receipt = await db.add_receipt(other_tenant)
    await db.add_item(other_tenant, other_receipt.id, "Phone", warranty_eligible=True)

    items = await _engine(session_factory, audit, clock).list_pending_items(tenant_id)

    assert {i.id for i in items} == {pending.id, errored.id}


async def _warranties(session_factory):
    from sqlalchemy import select

    async with session_factory() as session:
        return list((await session.execute(select(Warranty))).scalars().all())
