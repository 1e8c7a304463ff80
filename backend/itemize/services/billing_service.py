"""Billing service providing plan limits & upload quota enforcement.

This module centralises plan enforcement logic so API route handlers
and the ingest gateway remain thin.  It does NOT talk to a payment
provider; plans are read from the tenant row.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from itemize.models.enums import PlanType
from itemize.models.tables import Receipt, Tenant
from itemize.utils.helpers import month_bounds


@dataclass(frozen=True)
class PlanLimits:
    plan: PlanType
    uploads_per_month: int


PLAN_LIMIT_MATRIX: Dict[PlanType, PlanLimits] = {
    PlanType.FREE: PlanLimits(plan=PlanType.FREE, uploads_per_month=5),
    PlanType.STARTER: PlanLimits(plan=PlanType.STARTER, uploads_per_month=50),
    PlanType.PRO: PlanLimits(plan=PlanType.PRO, uploads_per_month=300),
    PlanType.ENTERPRISE: PlanLimits(plan=PlanType.ENTERPRISE, uploads_per_month=1000),
}


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    used: int
    limit: int


class BillingService:
    """Encapsulates plan limit queries & quota enforcement."""

    def get_limits(self, plan: PlanType | None) -> PlanLimits:
        return PLAN_LIMIT_MATRIX.get(plan or PlanType.FREE, PLAN_LIMIT_MATRIX[PlanType.FREE])

    def get_upload_limit(self, tenant: Tenant) -> int:
        if tenant.uploads_per_month is not None:
            return int(tenant.uploads_per_month)
        return self.get_limits(tenant.plan).uploads_per_month

    async def get_monthly_usage(self, db: AsyncSession, tenant_id: int, when: dt.datetime) -> int:
        start, end = month_bounds(when)
        q = select(func.count(Receipt.id)).where(
            Receipt.tenant_id == tenant_id,
            Receipt.created_at >= start,
            Receipt.created_at < end,
        )
        result = await db.execute(q)
        return int(result.scalar() or 0)

    async def check_upload_quota(
        self, db: AsyncSession, tenant_id: int, when: Optional[dt.datetime] = None
    ) -> QuotaDecision:
        """Whether ``tenant_id`` may upload one more receipt this month.

        An unknown tenant is never allowed and reports ``0/0``.
        """
        tenant = await db.get(Tenant, tenant_id)
        if tenant is None:
            return QuotaDecision(allowed=False, used=0, limit=0)
        limit = self.get_upload_limit(tenant)
        used = await self.get_monthly_usage(db, tenant_id, when or dt.datetime.utcnow())
        return QuotaDecision(allowed=used < limit, used=used, limit=limit)


__all__ = [
    "BillingService",
    "PlanLimits",
    "PLAN_LIMIT_MATRIX",
    "QuotaDecision",
]
