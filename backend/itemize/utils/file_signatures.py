"""Content type detection from file signatures (magic bytes).

Uploads are classified by what their leading bytes say they are, not by
the label the client attached.
"""

from __future__ import annotations

from typing import Optional

ALLOWED_CONTENT_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/heic",
        "image/heif",
        "application/pdf",
    }
)

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
    "application/pdf": "pdf",
}

CONTENT_TYPES_BY_EXTENSION = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "heic": "image/heic",
    "heif": "image/heif",
    "pdf": "application/pdf",
}

# Declared labels that are accepted for a detected type
_ALIASES = {
    "image/jpeg": {"image/jpeg", "image/jpg", "image/pjpeg"},
    "image/heic": {"image/heic", "image/heif"},
    "image/heif": {"image/heic", "image/heif"},
}

_MIN_SIGNATURE_BYTES = 12


def detect_content_type(data: bytes) -> Optional[str]:
    """Return the MIME type indicated by the leading bytes of ``data``.

    ``None`` when the buffer is too short or the signature is not one of
    the supported receipt formats.
    """
    if len(data) < _MIN_SIGNATURE_BYTES:
        return None
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"GIF8":
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:4] == b"%PDF":
        return "application/pdf"
    if data[4:8] == b"ftyp":
        brand = data[8:12]
        if brand in (b"mif1", b"msf1", b"heif"):
            return "image/heif"
        return "image/heic"
    return None


def declared_type_matches(declared: Optional[str], detected: str) -> bool:
    """Whether the client's declared content type agrees with ``detected``.

    A missing or generic ``application/octet-stream`` label defers to
    the detected type.
    """
    if not declared:
        return True
    label = declared.split(";", 1)[0].strip().lower()
    if label in ("", "application/octet-stream"):
        return True
    return label in _ALIASES.get(detected, {detected})


def content_type_from_key(storage_key: str) -> str:
    """Infer a content type from a storage key's extension."""
    ext = storage_key.rsplit(".", 1)[-1].lower() if "." in storage_key else ""
    return CONTENT_TYPES_BY_EXTENSION.get(ext, "application/octet-stream")
