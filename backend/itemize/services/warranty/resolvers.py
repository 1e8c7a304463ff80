"""Warranty resolver strategies.

The engine walks an ordered list of resolvers and stops at the first
``matched`` outcome.  Each resolver reports one of three tagged
outcomes:

* ``matched`` - coverage dates were produced
* ``no_match`` - the resolver ran (or was skipped) and found nothing
* ``error`` - the resolver failed; the message is kept for diagnostics
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from itemize.models.enums import WarrantySource
from itemize.services.warranty.ai_client import WarrantyLookupClient, WarrantyLookupQuery
from itemize.services.warranty.heuristics import assess_eligibility, detect_category
from itemize.utils.helpers import add_months, clamp_confidence

logger = logging.getLogger(__name__)

AI_DEFAULT_CONFIDENCE = 0.7


class ResolverStatus(str, Enum):
    MATCHED = "matched"
    NO_MATCH = "no_match"
    ERROR = "error"


@dataclass
class WarrantyContext:
    item_name: str
    purchase_date: dt.date
    description: Optional[str] = None
    merchant: Optional[str] = None
    total_price_cents: Optional[int] = None


@dataclass
class ResolverOutcome:
    status: ResolverStatus
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    category: Optional[str] = None
    manufacturer: Optional[str] = None
    confidence: Optional[float] = None
    source: Optional[WarrantySource] = None
    eligibility_reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.status is ResolverStatus.MATCHED

    @classmethod
    def no_match(cls, **kwargs: Any) -> "ResolverOutcome":
        return cls(status=ResolverStatus.NO_MATCH, **kwargs)

    @classmethod
    def failed(cls, error: str, **kwargs: Any) -> "ResolverOutcome":
        return cls(status=ResolverStatus.ERROR, error=error, **kwargs)


class WarrantyResolver(Protocol):
    name: str

    async def resolve(self, ctx: WarrantyContext) -> ResolverOutcome: ...


class AiWarrantyResolver:
    """Tier 1: ask the AI provider.  Skipped when no client is configured."""

    name = "ai_lookup"

    def __init__(self, client: Optional[WarrantyLookupClient]) -> None:
        self._client = client

    async def resolve(self, ctx: WarrantyContext) -> ResolverOutcome:
        if self._client is None:
            return ResolverOutcome.no_match()
        try:
            result = await self._client.lookup(
                WarrantyLookupQuery(
                    item_name=ctx.item_name,
                    description=ctx.description,
                    merchant=ctx.merchant,
                    purchase_date=ctx.purchase_date,
                    total_price_cents=ctx.total_price_cents,
                )
            )
        except Exception as exc:
            logger.warning("AI warranty lookup failed item=%r: %s", ctx.item_name, exc)
            return ResolverOutcome.failed(str(exc) or exc.__class__.__name__)

        metadata = {
            "provider": self._client.provider,
            "rationale": result.rationale,
            "source_urls": result.source_urls,
            "raw": result.raw_content,
        }
        if not (result.has_warranty and result.warranty_months):
            return ResolverOutcome.no_match(metadata=metadata)

        confidence = result.confidence if result.confidence is not None else AI_DEFAULT_CONFIDENCE
        return ResolverOutcome(
            status=ResolverStatus.MATCHED,
            start_date=ctx.purchase_date,
            end_date=add_months(ctx.purchase_date, result.warranty_months),
            category=detect_category(result.manufacturer or ctx.item_name, ctx.merchant),
            manufacturer=result.manufacturer,
            confidence=clamp_confidence(confidence),
            source=WarrantySource.AI_LOOKUP,
            metadata=metadata,
        )


@dataclass
class HeuristicWarrantyResolver:
    """Tier 2: keyword, merchant and price signals from the receipt itself."""

    default_months: int = 12
    name: str = field(default="heuristic", init=False)

    async def resolve(self, ctx: WarrantyContext) -> ResolverOutcome:
        verdict = assess_eligibility(
            ctx.item_name,
            description=ctx.description,
            merchant=ctx.merchant,
            total_price_cents=ctx.total_price_cents,
        )
        if not verdict.eligible:
            return ResolverOutcome.no_match(eligibility_reason=verdict.reason)
        return ResolverOutcome(
            status=ResolverStatus.MATCHED,
            start_date=ctx.purchase_date,
            end_date=add_months(ctx.purchase_date, self.default_months),
            category=verdict.category,
            confidence=clamp_confidence(verdict.confidence),
            source=WarrantySource.RECEIPT,
            eligibility_reason=verdict.reason,
        )
