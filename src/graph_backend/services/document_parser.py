"""Extract plain text from uploaded documents."""

from __future__ import annotations

import logging
import re

import kreuzberg

logger = logging.getLogger(__name__)


ALLOWED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "text/html",
        "text/plain",
        "text/markdown",
        "text/csv",
        "application/json",
    }
)

# Decoded directly instead of going through an extractor.
_PLAIN_TEXT_TYPES = frozenset({"application/json"})

_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_HORIZONTAL_WHITESPACE = re.compile(r"[ \t]+")


class DocumentParseError(Exception):
    """Raised when a document cannot be converted to text."""


class UnsupportedDocumentType(DocumentParseError):
    """Raised for MIME types outside the allowlist."""


def is_allowed_mime_type(mime_type: str) -> bool:
    mime = mime_type.lower()
    return mime.startswith("text/") or mime in ALLOWED_MIME_TYPES


def normalize_text(text: str) -> str:
    """Collapse blank-line runs and horizontal whitespace, then trim."""

    text = _EXCESS_NEWLINES.sub("\n\n", text)
    text = _HORIZONTAL_WHITESPACE.sub(" ", text)
    return text.strip()


async def parse_document(data: bytes, mime_type: str) -> str:
    """Return normalized text for ``data`` interpreted as ``mime_type``."""

    mime = (mime_type or "application/octet-stream").lower()
    if not is_allowed_mime_type(mime):
        raise UnsupportedDocumentType(f"Unsupported MIME type: {mime_type}")

    if mime in _PLAIN_TEXT_TYPES or (mime.startswith("text/") and mime != "text/html"):
        return normalize_text(data.decode("utf-8", errors="replace"))

    try:
        result = await kreuzberg.extract_bytes(data, mime)
    except Exception as exc:
        raise DocumentParseError(f"Failed to parse document: {exc}") from exc

    content = getattr(result, "content", None)
    if not isinstance(content, str):
        raise DocumentParseError("Failed to parse document: extractor returned no text")
    return normalize_text(content)


__all__ = [
    "ALLOWED_MIME_TYPES",
    "DocumentParseError",
    "UnsupportedDocumentType",
    "is_allowed_mime_type",
    "normalize_text",
    "parse_document",
]
