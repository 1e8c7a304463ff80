"""Serves filesystem-backed receipt files behind signed URLs.

Only used with ``STORAGE_BACKEND=filesystem``; MinIO hands out its own
presigned URLs.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from itemize.api.dependencies import get_storage
from itemize.services.storage_service import StorageError, StorageService, verify_signed_path
from itemize.utils.file_signatures import content_type_from_key

router = APIRouter(tags=["files"])


@router.get("/files/{key:path}")
async def get_signed_file(
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: StorageService = Depends(get_storage),
):
    if storage.backend != "filesystem":
        raise HTTPException(status_code=404, detail="Not found")
    if not verify_signed_path(key, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired signature")
    try:
        data = await storage.load(key)
    except StorageError as exc:
        raise HTTPException(status_code=404, detail="File not found") from exc
    return Response(content=data, media_type=content_type_from_key(key))
