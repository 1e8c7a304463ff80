"""Ingest gateway for uploaded receipt documents.

The order of side effects matters:

1. validation (size, signature, declared type) - nothing touched yet
2. quota gate
3. fingerprint + duplicate check, before the storage write
4. storage write
5. receipt row in ``pending``; if this fails the blob is deleted again
6. ``receipt_created`` audit event
7. extraction dispatch; a failed handoff leaves the receipt in review
   but the upload itself still succeeds

Rejections raise :class:`IngestRejected` with a machine readable code
that the API layer turns into a JSON error.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from itemize.core.clock import Clock, system_clock
from itemize.core.observability import sentry_breadcrumb, sentry_capture
from itemize.models.enums import AuditEntityType, AuditEventType, ReceiptStatus
from itemize.models.schemas import DuplicateReference, EmailProvenance, HandoffPayload
from itemize.models.tables import Receipt
from itemize.services.audit_service import AuditLogService
from itemize.services.billing_service import BillingService
from itemize.services.dispatch_service import ExtractionDispatcher
from itemize.services.duplicate_service import find_duplicate
from itemize.services.storage_service import StorageService, build_storage_key
from itemize.utils.file_signatures import (
    ALLOWED_CONTENT_TYPES,
    EXTENSIONS,
    declared_type_matches,
    detect_content_type,
)
from itemize.utils.fingerprint import compute_fingerprint

logger = logging.getLogger(__name__)


class IngestRejected(Exception):
    """An upload was refused.  ``code`` is stable; ``message`` is for humans."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}


def _duplicate_error(existing: Receipt) -> IngestRejected:
    ref = DuplicateReference.model_validate(existing)
    return IngestRejected(
        "duplicate",
        "This receipt has already been uploaded",
        409,
        {"duplicate_of": ref.model_dump(mode="json")},
    )


class IngestGateway:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: StorageService,
        dispatcher: ExtractionDispatcher,
        audit: AuditLogService,
        billing: Optional[BillingService] = None,
        clock: Clock = system_clock,
        max_upload_size: int = 20 * 1024 * 1024,
    ) -> None:
        self._session_factory = session_factory
        self._storage = storage
        self._dispatcher = dispatcher
        self._audit = audit
        self._billing = billing or BillingService()
        self._clock = clock
        self.max_upload_size = max_upload_size

    def validate(self, data: bytes, declared_type: Optional[str]) -> str:
        """Return the detected content type or raise ``IngestRejected``."""
        if not data:
            raise IngestRejected("unsupported_type", "File is empty", 400)
        if len(data) > self.max_upload_size:
            limit_mb = self.max_upload_size // (1024 * 1024)
            raise IngestRejected(
                "too_large",
                f"File exceeds the {limit_mb}MB limit",
                413,
                {"max_bytes": self.max_upload_size, "size": len(data)},
            )
        detected = detect_content_type(data)
        if detected is None or detected not in ALLOWED_CONTENT_TYPES:
            raise IngestRejected("unsupported_type", "File content is not a supported image or PDF", 400)
        if not declared_type_matches(declared_type, detected):
            raise IngestRejected(
                "unsupported_type",
                "Declared content type does not match file content",
                400,
                {"declared": declared_type, "detected": detected},
            )
        return detected

    async def ingest(
        self,
        *,
        data: bytes,
        declared_type: Optional[str],
        tenant_id: int,
        actor_id: str,
        filename: Optional[str] = None,
        email: Optional[EmailProvenance] = None,
    ) -> Receipt:
        content_type = self.validate(data, declared_type)
        now = self._clock.now()

        async with self._session_factory() as session:
            quota = await self._billing.check_upload_quota(session, tenant_id, now)
            if not quota.allowed:
                sentry_breadcrumb(
                    "quota", "upload denied", level="info", data={"used": quota.used, "limit": quota.limit}
                )
                raise IngestRejected(
                    "plan_limit_reached",
                    "Monthly upload limit reached for your plan",
                    403,
                    {"used": quota.used, "limit": quota.limit},
                )

            fingerprint = compute_fingerprint(data)
            existing = await find_duplicate(session, tenant_id, fingerprint)
            if existing is not None:
                logger.info("Duplicate upload tenant=%s original=%s", tenant_id, existing.id)
                raise _duplicate_error(existing)

            storage_key = build_storage_key(tenant_id, EXTENSIONS[content_type], now)
            try:
                await self._storage.put(storage_key, data, content_type)
            except Exception as exc:
                logger.error("Storage write failed key=%s: %s", storage_key, exc)
                sentry_capture(exc)
                raise IngestRejected("storage_failed", "Failed to store file", 500) from exc

            receipt = Receipt(
                tenant_id=tenant_id,
                owner_id=actor_id,
                content_fingerprint=fingerprint,
                storage_key=storage_key,
                content_type=content_type,
                filename=filename,
                status=ReceiptStatus.PENDING,
                needs_review=False,
                email_message_id=email.message_id if email else None,
                email_from=email.sender if email else None,
                email_subject=email.subject if email else None,
                email_received_at=email.received_at if email else None,
                created_at=now,
                updated_at=now,
            )
            session.add(receipt)
            try:
                await session.commit()
            except IntegrityError as exc:
                # Lost a race against a concurrent upload of the same bytes.
                await session.rollback()
                await self._release_blob(storage_key)
                existing = await find_duplicate(session, tenant_id, fingerprint)
                if existing is not None:
                    raise _duplicate_error(existing) from exc
                raise IngestRejected("internal_error", "Failed to create receipt record", 500) from exc
            except Exception as exc:
                await session.rollback()
                await self._release_blob(storage_key)
                logger.error("Receipt insert failed tenant=%s: %s", tenant_id, exc)
                sentry_capture(exc)
                raise IngestRejected("internal_error", "Failed to create receipt record", 500) from exc
            await session.refresh(receipt)

        await self._audit.record(
            tenant_id=tenant_id,
            actor_id=actor_id,
            entity_type=AuditEntityType.RECEIPT,
            entity_id=receipt.id,
            event_type=AuditEventType.RECEIPT_CREATED,
            after={"storage_key": storage_key, "content_fingerprint": fingerprint},
            metadata={"source": "email" if email else "upload", "content_type": content_type, "file_size": len(data)},
        )

        payload = HandoffPayload(
            record_id=receipt.id,
            owner_id=actor_id,
            storage_key=storage_key,
            content_type=content_type,
            email_provenance=email,
        )
        try:
            outcome = await self._dispatcher.dispatch(payload, tenant_id)
        except Exception as exc:
            # The upload is stored; the reaper will pick the receipt up again.
            logger.exception("Dispatch bookkeeping failed receipt=%s", receipt.id)
            sentry_capture(exc)
            return receipt
        if not outcome.accepted:
            async with self._session_factory() as session:
                refreshed = await session.get(Receipt, receipt.id)
            return refreshed or receipt
        return receipt

    async def _release_blob(self, key: str) -> None:
        try:
            await self._storage.delete(key)
        except Exception:
            logger.error("Failed to delete orphaned blob key=%s", key, exc_info=True)
