"""Content fingerprinting for duplicate detection."""

from __future__ import annotations

import hashlib


def compute_fingerprint(data: bytes) -> str:
    """Return the SHA-256 hex digest of ``data``.

    Only the bytes matter; filename and declared type play no part.
    """
    return hashlib.sha256(data).hexdigest()
