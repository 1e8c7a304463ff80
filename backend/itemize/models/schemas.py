"""Pydantic schemas for request and response models.

Pydantic models validate and serialise data that crosses the boundary
of the API or leaves the process (the extraction handoff payload).
They are intentionally separate from the SQLAlchemy models so that the
shape exposed through the API can differ from what is stored.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import ReceiptStatus, WarrantyLookupStatus, WarrantySource


# ---------------------------------------------------------------------------
# Ingestion


class EmailProvenance(BaseModel):
    """Origin of a receipt that arrived by email forwarding."""

    message_id: Optional[str] = None
    sender: Optional[str] = None
    subject: Optional[str] = None
    received_at: Optional[datetime] = None


class ReceiptCreated(BaseModel):
    id: int
    status: ReceiptStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReceiptCreatedResponse(BaseModel):
    receipt: ReceiptCreated


class DuplicateReference(BaseModel):
    """Existing receipt an upload collided with."""

    id: int
    status: ReceiptStatus
    created_at: datetime
    merchant: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ReceiptRead(BaseModel):
    id: int
    status: ReceiptStatus
    filename: Optional[str] = None
    content_type: Optional[str] = None
    merchant: Optional[str] = None
    purchase_date: Optional[date] = None
    total_cents: Optional[int] = None
    confidence_score: Optional[float] = None
    needs_review: bool = False
    created_at: datetime
    reviewed_at: Optional[datetime] = None
    exported_at: Optional[datetime] = None
    file_url: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class HandoffPayload(BaseModel):
    """Body sent to the extraction worker.

    Serialised with camelCase keys (``model_dump(by_alias=True)``), which
    is what the worker expects.
    """

    record_id: int = Field(alias="recordId")
    owner_id: str = Field(alias="ownerId")
    storage_key: str = Field(alias="storageKey")
    content_type: str = Field(alias="contentType")
    email_provenance: Optional[EmailProvenance] = Field(default=None, alias="emailProvenance")

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Reaper


class ReapResult(BaseModel):
    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Warranty enrichment


class WarrantyCheckRequest(BaseModel):
    force: bool = False


class LineItemRead(BaseModel):
    id: int
    receipt_id: int
    name: str
    description: Optional[str] = None
    total_price_cents: Optional[int] = None
    warranty_eligible: bool = False
    warranty_eligibility_reason: Optional[str] = None
    track_warranty: bool = False
    warranty_lookup_status: WarrantyLookupStatus
    warranty_end_date: Optional[date] = None
    warranty_checked_at: Optional[datetime] = None
    warranty_lookup_confidence: Optional[float] = None
    warranty_lookup_source: Optional[WarrantySource] = None
    warranty_lookup_error: Optional[str] = None
    warranty_lookup_metadata: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class WarrantyCheckResponse(BaseModel):
    item: LineItemRead
    cached: bool
    warranty_found: bool


class PendingWarrantyItemsResponse(BaseModel):
    items: List[LineItemRead]
