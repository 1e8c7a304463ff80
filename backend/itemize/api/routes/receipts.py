"""API routes for receipt upload, retrieval and deletion."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from itemize.api.dependencies import (
    get_audit_service,
    get_db_session,
    get_ingest_gateway,
    get_storage,
    upload_rate_limit,
)
from itemize.core.config import settings
from itemize.core.observability import sentry_set_tags
from itemize.core.security import AuthContext, get_auth_context
from itemize.models.enums import AuditEntityType, AuditEventType
from itemize.models.schemas import EmailProvenance, ReceiptCreated, ReceiptCreatedResponse, ReceiptRead
from itemize.models.tables import Receipt, ReceiptItem, Warranty
from itemize.services.audit_service import AuditLogService
from itemize.services.ingest_service import IngestGateway
from itemize.services.storage_service import StorageError, StorageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=ReceiptCreatedResponse,
    dependencies=[Depends(upload_rate_limit)],
)
async def upload_receipt(
    file: UploadFile = File(...),
    email_message_id: Optional[str] = Form(None),
    email_from: Optional[str] = Form(None),
    email_subject: Optional[str] = Form(None),
    email_received_at: Optional[datetime] = Form(None),
    auth: AuthContext = Depends(get_auth_context),
    gateway: IngestGateway = Depends(get_ingest_gateway),
):
    """Upload a receipt image or PDF and queue it for extraction."""
    sentry_set_tags({"tenant_id": auth.tenant_id})
    # Read one byte past the limit so oversize files are detectable without
    # buffering arbitrarily large bodies.
    data = await file.read(settings.MAX_UPLOAD_SIZE + 1)
    email = None
    if email_message_id or email_from or email_subject:
        email = EmailProvenance(
            message_id=email_message_id,
            sender=email_from,
            subject=email_subject,
            received_at=email_received_at,
        )
    receipt = await gateway.ingest(
        data=data,
        declared_type=file.content_type,
        tenant_id=auth.tenant_id,
        actor_id=auth.actor_id,
        filename=file.filename,
        email=email,
    )
    return ReceiptCreatedResponse(receipt=ReceiptCreated.model_validate(receipt))


async def _get_tenant_receipt(db: AsyncSession, tenant_id: int, receipt_id: int) -> Receipt:
    result = await db.execute(
        select(Receipt).where(Receipt.id == receipt_id, Receipt.tenant_id == tenant_id)
    )
    receipt = result.scalar_one_or_none()
    if receipt is None:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return receipt


@router.get("/{receipt_id}", response_model=ReceiptRead)
async def get_receipt(
    receipt_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    storage: StorageService = Depends(get_storage),
):
    receipt = await _get_tenant_receipt(db, auth.tenant_id, receipt_id)
    read = ReceiptRead.model_validate(receipt)
    try:
        read.file_url = await storage.signed_url(receipt.storage_key)
    except Exception as exc:
        # Detail is still useful without the file link.
        logger.warning("Signed URL failed receipt=%s: %s", receipt.id, exc)
    return read


@router.delete("/{receipt_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_receipt(
    receipt_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    storage: StorageService = Depends(get_storage),
    audit: AuditLogService = Depends(get_audit_service),
):
    """Delete a receipt, its items and warranties, and release the stored file."""
    receipt = await _get_tenant_receipt(db, auth.tenant_id, receipt_id)
    # Rollback expires the instance, so keep plain values for the error path.
    storage_key = receipt.storage_key
    before = {
        "status": receipt.status.value,
        "storage_key": storage_key,
        "content_fingerprint": receipt.content_fingerprint,
    }
    await db.execute(delete(Warranty).where(Warranty.receipt_id == receipt_id, Warranty.tenant_id == auth.tenant_id))
    await db.execute(
        delete(ReceiptItem).where(ReceiptItem.receipt_id == receipt_id, ReceiptItem.tenant_id == auth.tenant_id)
    )
    await db.execute(delete(Receipt).where(Receipt.id == receipt_id, Receipt.tenant_id == auth.tenant_id))
    # Commit only once the blob is gone so a failed delete leaves the row intact.
    try:
        await storage.delete(storage_key)
    except StorageError as exc:
        await db.rollback()
        logger.error("Blob delete failed receipt=%s key=%s: %s", receipt_id, storage_key, exc)
        raise HTTPException(status_code=500, detail="Failed to delete stored file") from exc
    await db.commit()
    await audit.record(
        tenant_id=auth.tenant_id,
        actor_id=auth.actor_id,
        entity_type=AuditEntityType.RECEIPT,
        entity_id=receipt_id,
        event_type=AuditEventType.RECEIPT_DELETED,
        before=before,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
