"""Enumeration types used throughout the ingestion API.

Enumerations constrain the values that can be stored in the database
or passed through the API.  When modifying these enums you should
update any corresponding database columns or Pydantic validators so
that new values are accepted where appropriate.
"""

from enum import Enum


class PlanType(str, Enum):
    """Subscription tier for a tenant."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class ReceiptStatus(str, Enum):
    """Lifecycle states for a receipt.

    ``PENDING`` is transient: the extraction worker advances it, or the
    dispatcher forces ``IN_REVIEW`` when the handoff is not accepted.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    IN_REVIEW = "in_review"
    COMPLETE = "complete"
    EXPORTED = "exported"
    ARCHIVED = "archived"


class WarrantyLookupStatus(str, Enum):
    """Per-item warranty enrichment state."""

    UNKNOWN = "unknown"
    IN_PROGRESS = "in_progress"
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"
    NOT_ELIGIBLE = "not_eligible"


class WarrantySource(str, Enum):
    RECEIPT = "receipt"
    AI_LOOKUP = "ai_lookup"


class AuditEntityType(str, Enum):
    RECEIPT = "receipt"
    ITEM = "item"


class AuditEventType(str, Enum):
    """Event names written to the audit log."""

    RECEIPT_CREATED = "receipt_created"
    RECEIPT_DELETED = "receipt_deleted"
    EXTRACTION_HANDOFF_FAILED = "extraction_handoff_failed"
    WARRANTY_CHECKED = "warranty_checked"
    WARRANTY_CHECK_FAILED = "warranty_check_failed"
