"""Internal endpoints called by schedulers and workers, not end users.

Every route here requires ``Authorization: Bearer <INTERNAL_API_SECRET>``.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from itemize.api.dependencies import get_reaper
from itemize.core.security import verify_internal_secret
from itemize.services.reaper_service import StuckJobReaper

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(verify_internal_secret)])


@router.post("/retry-stuck-receipts")
async def retry_stuck_receipts(
    # Raw strings: bad values fall back to defaults instead of failing validation.
    threshold_minutes: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    reaper: StuckJobReaper = Depends(get_reaper),
):
    """Re-dispatch receipts stuck in ``pending`` longer than the threshold."""
    result = await reaper.run(threshold_minutes, limit)
    return result.model_dump(exclude_none=True)
