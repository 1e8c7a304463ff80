"""SQLAlchemy ORM models for the ingestion API.

These models define the relational schema used by the application.
Enumerated fields are stored as strings using SQLAlchemy's native Enum
type and JSON columns use the built-in JSON type.  All timestamps are
naive UTC.

Call the ``init_db`` helper during development to create the tables.
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from itemize.core.database import Base
from .enums import (
    AuditEntityType,
    PlanType,
    ReceiptStatus,
    WarrantyLookupStatus,
    WarrantySource,
)


class Tenant(Base):
    """Business or workspace; the isolation boundary for every record."""

    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    plan = Column(Enum(PlanType), nullable=False, default=PlanType.FREE)
    # Overrides the plan's monthly upload allowance when set
    uploads_per_month = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)

    receipts = relationship("Receipt", back_populates="tenant")


class Receipt(Base):
    """One uploaded receipt document."""

    __tablename__ = "receipts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "content_fingerprint", name="uq_receipts_tenant_fingerprint"),
        Index("ix_receipts_status_created_at", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    owner_id = Column(String, nullable=False)
    content_fingerprint = Column(String(64), nullable=False)
    storage_key = Column(String, nullable=False)
    content_type = Column(String, nullable=True)
    filename = Column(String, nullable=True)
    status = Column(Enum(ReceiptStatus), default=ReceiptStatus.PENDING, nullable=False)

    merchant = Column(String, nullable=True)
    purchase_date = Column(Date, nullable=True)
    total_cents = Column(Integer, nullable=True)

    confidence_score = Column(Float, nullable=True)
    needs_review = Column(Boolean, default=False, nullable=False)

    # Provenance when the receipt arrived by email forwarding
    email_message_id = Column(String, nullable=True)
    email_from = Column(String, nullable=True)
    email_subject = Column(String, nullable=True)
    email_received_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False)
    reviewed_at = Column(DateTime, nullable=True)
    exported_at = Column(DateTime, nullable=True)

    tenant = relationship("Tenant", back_populates="receipts")
    items = relationship("ReceiptItem", back_populates="receipt", cascade="all, delete-orphan")


class ReceiptItem(Base):
    """Line item on a receipt together with its warranty enrichment state."""

    __tablename__ = "receipt_items"

    id = Column(Integer, primary_key=True, index=True)
    receipt_id = Column(Integer, ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    total_price_cents = Column(Integer, nullable=True)

    warranty_eligible = Column(Boolean, default=False, nullable=False)
    warranty_eligibility_reason = Column(String, nullable=True)
    track_warranty = Column(Boolean, default=False, nullable=False)
    warranty_lookup_status = Column(
        Enum(WarrantyLookupStatus), default=WarrantyLookupStatus.UNKNOWN, nullable=False
    )
    warranty_end_date = Column(Date, nullable=True)
    warranty_checked_at = Column(DateTime, nullable=True)
    # Set while a lookup holds the in_progress claim
    warranty_claimed_at = Column(DateTime, nullable=True)
    warranty_lookup_confidence = Column(Float, nullable=True)
    warranty_lookup_source = Column(Enum(WarrantySource), nullable=True)
    warranty_lookup_error = Column(Text, nullable=True)
    warranty_lookup_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False)

    receipt = relationship("Receipt", back_populates="items")


class Warranty(Base):
    """Resolved warranty coverage, at most one per (tenant, receipt, item)."""

    __tablename__ = "warranties"
    __table_args__ = (
        UniqueConstraint("tenant_id", "receipt_id", "item_id", name="uq_warranties_tenant_receipt_item"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    receipt_id = Column(Integer, ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(Integer, ForeignKey("receipt_items.id", ondelete="CASCADE"), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    category = Column(String, nullable=True)
    manufacturer = Column(String, nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False)


class AuditEvent(Base):
    """Append-only audit trail entry."""

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    actor_id = Column(String, nullable=True)
    entity_type = Column(Enum(AuditEntityType), nullable=False)
    entity_id = Column(Integer, nullable=False)
    event_type = Column(String, nullable=False, index=True)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)
