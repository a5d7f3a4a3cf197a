from __future__ import annotations
import mimetypes
from pathlib import PurePosixPath

import filetype

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Types the platform tables get wrong or omit.
EXTRA_TYPES = {
    ".md": "text/markdown",
    ".webp": "image/webp",
    ".woff2": "font/woff2",
    ".zst": "application/zstd",
    ".7z": "application/x-7z-compressed",
}


def detect_content_type(path: str, body: bytes | None = None) -> str:
    """Extension table first, then magic bytes of ``body``, then ``application/octet-stream``."""
    suffix = PurePosixPath(path).suffix.lower()
    if suffix in EXTRA_TYPES:
        return EXTRA_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path, strict=False)
    if guessed:
        return guessed
    if body:
        sniffed = filetype.guess_mime(body)
        if sniffed:
            return sniffed
    return DEFAULT_CONTENT_TYPE
