"""Tenant-scoped duplicate lookup by content fingerprint."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from itemize.models.tables import Receipt


async def find_duplicate(db: AsyncSession, tenant_id: int, fingerprint: str) -> Optional[Receipt]:
    """Return the most recent receipt in ``tenant_id`` with ``fingerprint``.

    Receipts of other tenants never match, even for identical bytes.
    """
    q = (
        select(Receipt)
        .where(Receipt.tenant_id == tenant_id, Receipt.content_fingerprint == fingerprint)
        .order_by(Receipt.created_at.desc(), Receipt.id.desc())
        .limit(1)
    )
    result = await db.execute(q)
    return result.scalars().first()
