from __future__ import annotations

import pytest

from itemize.models.enums import AuditEventType, ReceiptStatus
from itemize.models.schemas import EmailProvenance
from itemize.models.tables import Receipt
from itemize.services.dispatch_service import ExtractionDispatcher
from itemize.services.ingest_service import IngestGateway, IngestRejected

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PDF = b"%PDF-1.7\n" + b"1 0 obj << >> endobj\n" * 4


@pytest.fixture
def gateway(session_factory, storage, handoff, audit, clock):
    dispatcher = ExtractionDispatcher(session_factory, handoff, audit, clock)
    return IngestGateway(session_factory, storage, dispatcher, audit, clock=clock, max_upload_size=1024)


@pytest.mark.asyncio
async def test_ingest_stores_creates_pending_and_dispatches(gateway, db, storage, handoff):
    tenant_id = await db.add_tenant()

    receipt = await gateway.ingest(
        data=PNG, declared_type="image/png", tenant_id=tenant_id, actor_id="user-1", filename="r.png"
    )

    assert receipt.status is ReceiptStatus.PENDING
    assert receipt.needs_review is False
    assert receipt.storage_key.startswith(f"receipts/{tenant_id}/2024-06/")
    assert receipt.storage_key.endswith(".png")
    assert storage.objects[receipt.storage_key] == PNG

    assert len(handoff.submitted) == 1
    wire = handoff.submitted[0].to_wire()
    assert wire == {
        "recordId": receipt.id,
        "ownerId": "user-1",
        "storageKey": receipt.storage_key,
        "contentType": "image/png",
    }

    events = await db.audit_events(AuditEventType.RECEIPT_CREATED.value)
    assert len(events) == 1
    assert events[0].entity_id == receipt.id
    assert events[0].actor_id == "user-1"
    assert events[0].event_metadata["file_size"] == len(PNG)


@pytest.mark.asyncio
async def test_ingest_forwards_email_provenance(gateway, db, handoff):
    tenant_id = await db.add_tenant()
    email = EmailProvenance(message_id="<m1@mail>", sender="store@example.com", subject="Your receipt")

    receipt = await gateway.ingest(data=PDF, declared_type=None, tenant_id=tenant_id, actor_id="user-1", email=email)

    assert receipt.email_message_id == "<m1@mail>"
    wire = handoff.submitted[0].to_wire()
    assert wire["contentType"] == "application/pdf"
    assert wire["emailProvenance"] == {
        "message_id": "<m1@mail>",
        "sender": "store@example.com",
        "subject": "Your receipt",
    }


@pytest.mark.asyncio
async def test_duplicate_upload_is_rejected_before_storage(gateway, db, storage, handoff):
    tenant_id = await db.add_tenant()
    first = await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_id, actor_id="user-1")

    with pytest.raises(IngestRejected) as excinfo:
        await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_id, actor_id="user-2")

    err = excinfo.value
    assert err.code == "duplicate"
    assert err.status_code == 409
    assert err.details["duplicate_of"]["id"] == first.id
    assert err.details["duplicate_of"]["status"] == "pending"
    assert len(storage.objects) == 1
    assert len(handoff.submitted) == 1
    assert await db.count(Receipt, tenant_id=tenant_id) == 1


@pytest.mark.asyncio
async def test_same_bytes_in_another_tenant_is_not_a_duplicate(gateway, db):
    tenant_a = await db.add_tenant(name="A")
    tenant_b = await db.add_tenant(name="B")
    a = await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_a, actor_id="user-a")
    b = await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_b, actor_id="user-b")
    assert a.id != b.id
    assert a.content_fingerprint == b.content_fingerprint


@pytest.mark.asyncio
async def test_oversize_upload_rejected(gateway, db, storage):
    tenant_id = await db.add_tenant()
    data = PNG + b"\x00" * 2048
    with pytest.raises(IngestRejected) as excinfo:
        await gateway.ingest(data=data, declared_type="image/png", tenant_id=tenant_id, actor_id="user-1")
    assert excinfo.value.code == "too_large"
    assert excinfo.value.status_code == 413
    assert excinfo.value.details == {"max_bytes": 1024, "size": len(data)}
    assert storage.objects == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data, declared",
    [
        (b"", "image/png"),
        (b"name,price\nlatte,4.50\n", "text/csv"),
        (PNG, "image/jpeg"),
    ],
)
async def test_unsupported_content_rejected(gateway, db, storage, data, declared):
    tenant_id = await db.add_tenant()
    with pytest.raises(IngestRejected) as excinfo:
        await gateway.ingest(data=data, declared_type=declared, tenant_id=tenant_id, actor_id="user-1")
    assert excinfo.value.code == "unsupported_type"
    assert excinfo.value.status_code == 400
    assert storage.objects == {}


@pytest.mark.asyncio
async def test_quota_exhausted_rejects_without_side_effects(gateway, db, storage):
    tenant_id = await db.add_tenant(uploads_per_month=1)
    await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_id, actor_id="user-1")

    with pytest.raises(IngestRejected) as excinfo:
        await gateway.ingest(data=PDF, declared_type="application/pdf", tenant_id=tenant_id, actor_id="user-1")

    assert excinfo.value.code == "plan_limit_reached"
    assert excinfo.value.status_code == 403
    assert excinfo.value.details == {"used": 1, "limit": 1}
    assert len(storage.objects) == 1


@pytest.mark.asyncio
async def test_unknown_tenant_hits_plan_limit(gateway):
    with pytest.raises(IngestRejected) as excinfo:
        await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=404, actor_id="user-1")
    assert excinfo.value.code == "plan_limit_reached"


@pytest.mark.asyncio
async def test_storage_failure_creates_no_record(gateway, db, storage, handoff):
    tenant_id = await db.add_tenant()
    storage.fail_put = True
    with pytest.raises(IngestRejected) as excinfo:
        await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_id, actor_id="user-1")
    assert excinfo.value.code == "storage_failed"
    assert excinfo.value.status_code == 500
    assert await db.count(Receipt) == 0
    assert handoff.submitted == []


@pytest.mark.asyncio
async def test_failed_handoff_still_accepts_upload_into_review(gateway, db, handoff):
    tenant_id = await db.add_tenant()
    handoff.error = ConnectionError("connection refused")

    receipt = await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_id, actor_id="user-1")

    assert receipt.status is ReceiptStatus.IN_REVIEW
    assert receipt.needs_review is True
    assert receipt.confidence_score == 0.0
    events = await db.audit_events(AuditEventType.EXTRACTION_HANDOFF_FAILED.value)
    assert [e.entity_id for e in events] == [receipt.id]
    assert "connection refused" in events[0].event_metadata["error"]


def _factory_with_failing_commit(session_factory):
    def make():
        session = session_factory()

        async def commit():
            raise RuntimeError("database is locked")

        session.commit = commit
        return session

    return make


@pytest.mark.asyncio
async def test_record_create_failure_releases_stored_blob(session_factory, db, storage, handoff, audit, clock):
    tenant_id = await db.add_tenant()
    dispatcher = ExtractionDispatcher(session_factory, handoff, audit, clock)
    gateway = IngestGateway(
        _factory_with_failing_commit(session_factory), storage, dispatcher, audit, clock=clock, max_upload_size=1024
    )

    with pytest.raises(IngestRejected) as excinfo:
        await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_id, actor_id="user-1")

    assert excinfo.value.code == "internal_error"
    assert excinfo.value.status_code == 500
    assert storage.objects == {}
    assert len(storage.deleted) == 1
    assert storage.deleted[0].startswith(f"receipts/{tenant_id}/2024-06/")
    assert await db.count(Receipt) == 0
    assert handoff.submitted == []
    assert await db.audit_events(AuditEventType.RECEIPT_CREATED.value) == []


@pytest.mark.asyncio
async def test_concurrent_insert_of_same_bytes_reports_duplicate(gateway, db, storage, handoff, monkeypatch):
    from itemize.services import ingest_service

    tenant_id = await db.add_tenant()
    first = await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_id, actor_id="user-1")

    real_find_duplicate = ingest_service.find_duplicate
    calls = []

    async def find_after_race(session, tenant, fingerprint):
        calls.append(fingerprint)
        if len(calls) == 1:
            # The other upload commits between the check and the insert.
            return None
        return await real_find_duplicate(session, tenant, fingerprint)

    monkeypatch.setattr(ingest_service, "find_duplicate", find_after_race)

    with pytest.raises(IngestRejected) as excinfo:
        await gateway.ingest(data=PNG, declared_type="image/png", tenant_id=tenant_id, actor_id="user-2")

    err = excinfo.value
    assert err.code == "duplicate"
    assert err.status_code == 409
    assert err.details["duplicate_of"]["id"] == first.id
    assert len(calls) == 2
    assert list(storage.objects) == [first.storage_key]
    assert len(storage.deleted) == 1
    assert await db.count(Receipt, tenant_id=tenant_id) == 1
    assert len(handoff.submitted) == 1
