from __future__ import annotations

from typing import Dict

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES: Dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "tif": "image/tiff",
    "tiff": "image/tiff",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "ico": "image/x-icon",
    "pdf": "application/pdf",
    "heic": "image/heic",
}


def resolve_content_type(extension: str) -> str:
    """Map a file extension (with or without leading dot) to a MIME type."""
    return CONTENT_TYPES.get(extension.lstrip(".").lower(), DEFAULT_CONTENT_TYPE)
