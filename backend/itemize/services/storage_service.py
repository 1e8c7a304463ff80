"""Storage service abstraction.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): Uses the MinIO S3-compatible object storage.
2. **filesystem**: Stores files under ``settings.STORAGE_DIRECTORY`` on disk.

Objects are addressed by a *key* that is persisted on the receipt row
(``receipts/{tenant_id}/{YYYY-MM}/{uuid}.{ext}``).  Read access is
granted through signed, expiring URLs: presigned GETs for MinIO, and an
HMAC-signed ``/files/{key}`` path served by the API for the filesystem.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import logging
import time
import uuid
from io import BytesIO
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from minio import Minio
from minio.error import S3Error

from itemize.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the blob store rejects a read, write or delete."""


def build_storage_key(tenant_id: int, extension: str, when: Optional[dt.datetime] = None) -> str:
    when = when or dt.datetime.utcnow()
    prefix = settings.STORAGE_KEY_PREFIX.strip("/")
    return f"{prefix}/{tenant_id}/{when:%Y-%m}/{uuid.uuid4()}.{extension}"


def _sign(key: str, expires: int) -> str:
    message = f"{key}:{expires}".encode()
    return hmac.new(settings.SECRET_KEY.encode(), message, hashlib.sha256).hexdigest()


def verify_signed_path(key: str, expires: int, signature: str, now: Optional[float] = None) -> bool:
    """Check a filesystem signed URL issued by :meth:`StorageService.signed_url`."""
    if expires < (now if now is not None else time.time()):
        return False
    return hmac.compare_digest(_sign(key, expires), signature)


class StorageService:
    """Unified storage service (MinIO or filesystem)."""

    def __init__(self, backend: str | None = None, base_dir: str | None = None) -> None:
        self.backend = (backend or settings.STORAGE_BACKEND or "minio").lower()
        if self.backend == "minio":
            self._client = Minio(
                settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=bool(settings.MINIO_USE_SSL),
            )
            self.bucket = settings.MINIO_BUCKET_NAME
            # Ensure bucket exists (idempotent)
            try:
                if not self._client.bucket_exists(self.bucket):
                    self._client.make_bucket(self.bucket)
            except S3Error as e:  # pragma: no cover - startup path
                logger.warning("MinIO bucket ensure failed: %s", e)
        else:
            self.backend = "filesystem"
            base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
            if not base_path.is_absolute():
                repo_root = Path(__file__).resolve().parents[3]
                base_path = (repo_root / base_path).resolve()
            self.base_dir = base_path.resolve()
            self.base_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Filesystem storage base_dir: %s", self.base_dir)

    def _path_for(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        """Write ``data`` under ``key``; raises :class:`StorageError` on failure."""
        if self.backend == "minio":
            try:
                self._client.put_object(
                    self.bucket,
                    key,
                    BytesIO(data),
                    len(data),
                    content_type=content_type or "application/octet-stream",
                )
            except Exception as e:
                raise StorageError(f"MinIO upload failed: {e}") from e
            logger.debug("MinIO object put: %s size=%d", key, len(data))
            return
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Filesystem write failed: {e}") from e
        logger.debug("FS saved: %s bytes=%d", path, len(data))

    async def delete(self, key: str) -> None:
        """Remove the object at ``key``.  Missing objects are not an error."""
        if self.backend == "minio":
            try:
                self._client.remove_object(self.bucket, key)
            except Exception as e:
                raise StorageError(f"MinIO delete failed: {e}") from e
            return
        try:
            self._path_for(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Filesystem delete failed: {e}") from e

    async def load(self, key: str) -> bytes:
        if self.backend == "minio":
            try:
                resp = self._client.get_object(self.bucket, key)
            except S3Error as e:
                raise StorageError(f"File not found: {key}") from e
            try:
                return resp.read()
            finally:
                resp.close()
                resp.release_conn()
        try:
            return self._path_for(key).read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"File not found: {key}") from e

    async def signed_url(self, key: str, expires_in: Optional[int] = None) -> str:
        """Return a time-limited read URL for ``key``."""
        seconds = int(expires_in or settings.SIGNED_URL_EXPIRY_SECONDS)
        if self.backend == "minio":
            return self._client.presigned_get_object(
                self.bucket, key, expires=dt.timedelta(seconds=seconds)
            )
        expires = int(time.time()) + seconds
        return f"/files/{quote(key)}?expires={expires}&signature={_sign(key, expires)}"
