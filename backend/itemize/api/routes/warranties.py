"""API routes for per-item warranty enrichment."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from itemize.api.dependencies import get_warranty_engine, warranty_check_rate_limit
from itemize.core.config import settings
from itemize.core.security import AuthContext, get_auth_context
from itemize.models.schemas import (
    LineItemRead,
    PendingWarrantyItemsResponse,
    WarrantyCheckRequest,
    WarrantyCheckResponse,
)
from itemize.services.warranty.engine import (
    PurchaseDateMissing,
    WarrantyItemNotFound,
    WarrantyLookupInProgress,
    WarrantyResolutionEngine,
)

router = APIRouter(tags=["warranties"])


@router.post(
    "/receipts/{receipt_id}/items/{item_id}/warranty-check",
    response_model=WarrantyCheckResponse,
    dependencies=[Depends(warranty_check_rate_limit)],
)
async def check_item_warranty(
    receipt_id: int,
    item_id: int,
    body: Optional[WarrantyCheckRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    engine: WarrantyResolutionEngine = Depends(get_warranty_engine),
):
    force = body.force if body else False
    try:
        result = await engine.check(auth.tenant_id, receipt_id, item_id, force=force, actor_id=auth.actor_id)
    except WarrantyItemNotFound as exc:
        raise HTTPException(status_code=404, detail="Item not found") from exc
    except WarrantyLookupInProgress as exc:
        raise HTTPException(status_code=409, detail="Warranty lookup already in progress") from exc
    except PurchaseDateMissing as exc:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Purchase date required before warranty check",
                "code": "purchase_date_missing",
                "item": jsonable_encoder(LineItemRead.model_validate(exc.item)),
            },
        )
    return WarrantyCheckResponse(
        item=LineItemRead.model_validate(result.item),
        cached=result.cached,
        warranty_found=result.warranty_found,
    )


@router.get("/warranties/pending-items", response_model=PendingWarrantyItemsResponse)
async def list_pending_warranty_items(
    auth: AuthContext = Depends(get_auth_context),
    engine: WarrantyResolutionEngine = Depends(get_warranty_engine),
):
    """Items marked for warranty tracking that still need a lookup."""
    items = await engine.list_pending_items(auth.tenant_id, limit=settings.WARRANTY_PENDING_ITEMS_LIMIT)
    return PendingWarrantyItemsResponse(items=[LineItemRead.model_validate(i) for i in items])
