"""Common dependencies for FastAPI routes.

This module wires the service layer together for request handlers:
database session access, the blob store, the extraction handoff,
rate limiting and the service builders.  Tests override these with
``app.dependency_overrides``.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import AsyncGenerator, Optional

from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from itemize.core import database
from itemize.core.clock import Clock, system_clock
from itemize.core.config import settings
from itemize.core.security import AuthContext, get_auth_context
from itemize.core.tasks import HandoffNotConfigured, build_extraction_handoff
from itemize.services.audit_service import AuditLogService
from itemize.services.billing_service import BillingService
from itemize.services.dispatch_service import ExtractionDispatcher, ExtractionHandoff
from itemize.services.ingest_service import IngestGateway
from itemize.services.rate_limiter import (
    InMemoryRateLimiter,
    RateLimiter,
    RateLimiterUnavailable,
    RedisRateLimiter,
)
from itemize.services.reaper_service import StuckJobReaper
from itemize.services.storage_service import StorageService
from itemize.services.warranty.ai_client import PerplexityWarrantyClient, WarrantyLookupClient
from itemize.services.warranty.engine import WarrantyResolutionEngine
from itemize.services.warranty.resolvers import AiWarrantyResolver, HeuristicWarrantyResolver

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Shared resources

_storage: Optional[StorageService] = None
_rate_limiter: Optional[RateLimiter] = None
_warranty_client: Optional[WarrantyLookupClient] = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Alias for `get_db` to be imported in routers."""
    async for session in database.get_db():
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return database.AsyncSessionLocal


def get_clock() -> Clock:
    return system_clock


def get_storage() -> StorageService:
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage


def get_extraction_handoff() -> ExtractionHandoff:
    try:
        return build_extraction_handoff()
    except HandoffNotConfigured as exc:
        logger.error("Extraction handoff not configured: %s", exc)
        raise HTTPException(status_code=500, detail="Server misconfigured") from exc


def get_rate_limiter(clock: Clock = Depends(get_clock)) -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        if (settings.RATE_LIMIT_BACKEND or "memory").lower() == "redis":
            _rate_limiter = RedisRateLimiter.from_url(settings.REDIS_URL)
        else:
            _rate_limiter = InMemoryRateLimiter(clock)
    return _rate_limiter


def get_warranty_client() -> Optional[WarrantyLookupClient]:
    """Perplexity client when ``PERPLEXITY_API_KEY`` is set, else ``None``."""
    global _warranty_client
    if _warranty_client is None and settings.PERPLEXITY_API_KEY:
        _warranty_client = PerplexityWarrantyClient(
            settings.PERPLEXITY_API_KEY,
            base_url=settings.PERPLEXITY_BASE_URL,
            model=settings.PERPLEXITY_MODEL,
            timeout=settings.WARRANTY_AI_TIMEOUT_SECONDS,
        )
    return _warranty_client


# -----------------------------------------------------------------------------
# Rate limiting helpers

async def enforce_rate_limit(limiter: RateLimiter, key: str, limit: int, window_seconds: int = 60, cost: int = 1):
    """Raise 429 with ``Retry-After`` once ``key`` exceeds ``limit`` per window."""
    try:
        result = await limiter.hit(key, limit, window_seconds, cost)
    except RateLimiterUnavailable as exc:
        raise HTTPException(status_code=503, detail="Rate limiter unavailable") from exc
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(max(1, result.retry_after))},
        )


async def upload_rate_limit(
    auth: AuthContext = Depends(get_auth_context),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    await enforce_rate_limit(limiter, f"upload:{auth.tenant_id}:{auth.actor_id}", settings.UPLOAD_RATE_LIMIT_PER_MIN)


async def warranty_check_rate_limit(
    auth: AuthContext = Depends(get_auth_context),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    await enforce_rate_limit(
        limiter, f"warranty_check:{auth.tenant_id}:{auth.actor_id}", settings.WARRANTY_CHECK_RATE_LIMIT_PER_MIN
    )


# -----------------------------------------------------------------------------
# Service builders

def get_audit_service(session_factory=Depends(get_session_factory)) -> AuditLogService:
    return AuditLogService(session_factory)


def get_dispatcher(
    session_factory=Depends(get_session_factory),
    handoff: ExtractionHandoff = Depends(get_extraction_handoff),
    audit: AuditLogService = Depends(get_audit_service),
    clock: Clock = Depends(get_clock),
) -> ExtractionDispatcher:
    return ExtractionDispatcher(session_factory, handoff, audit, clock)


def get_ingest_gateway(
    session_factory=Depends(get_session_factory),
    storage: StorageService = Depends(get_storage),
    dispatcher: ExtractionDispatcher = Depends(get_dispatcher),
    audit: AuditLogService = Depends(get_audit_service),
    clock: Clock = Depends(get_clock),
) -> IngestGateway:
    return IngestGateway(
        session_factory,
        storage,
        dispatcher,
        audit,
        billing=BillingService(),
        clock=clock,
        max_upload_size=settings.MAX_UPLOAD_SIZE,
    )


def get_reaper(
    session_factory=Depends(get_session_factory),
    dispatcher: ExtractionDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
) -> StuckJobReaper:
    return StuckJobReaper(session_factory, dispatcher, clock)


def get_warranty_engine(
    session_factory=Depends(get_session_factory),
    client: Optional[WarrantyLookupClient] = Depends(get_warranty_client),
    audit: AuditLogService = Depends(get_audit_service),
    clock: Clock = Depends(get_clock),
) -> WarrantyResolutionEngine:
    return WarrantyResolutionEngine(
        session_factory,
        [AiWarrantyResolver(client), HeuristicWarrantyResolver(default_months=settings.WARRANTY_DEFAULT_MONTHS)],
        audit,
        clock=clock,
        cache_ttl=dt.timedelta(days=settings.WARRANTY_CACHE_TTL_DAYS),
        claim_ttl=dt.timedelta(seconds=settings.WARRANTY_CLAIM_TTL_SECONDS),
    )
