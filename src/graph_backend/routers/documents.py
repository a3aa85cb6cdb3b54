"""Document text-extraction routes."""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, UploadFile
from pydantic import BaseModel, ConfigDict, Field

from ..config import Settings, get_settings
from ..services.document_parser import (
    DocumentParseError,
    is_allowed_mime_type,
    parse_document,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/document", tags=["documents"])


class DocumentMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    size: int


class ParsedDocument(BaseModel):
    text: str
    metadata: DocumentMetadata


@router.post("/parse", response_model=ParsedDocument, response_model_by_alias=True)
async def parse_uploaded_document(
    file: Optional[UploadFile] = File(default=None),
    settings: Settings = Depends(get_settings),
    x_client_id: str | None = Header(default=None),
) -> ParsedDocument:
    """Extract normalized text from an uploaded document."""

    if file is None:
        raise HTTPException(status_code=400, detail="No file provided")

    data = await file.read()
    size = len(data)
    max_bytes = settings.document_max_bytes
    if size > max_bytes:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "File too large",
                "details": f"Maximum file size is {max_bytes // (1024 * 1024)}MB",
            },
        )

    mime_type = (file.content_type or "application/octet-stream").lower()
    if not is_allowed_mime_type(mime_type):
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Unsupported file type",
                "details": f"MIME type {file.content_type} is not allowed",
            },
        )

    started = time.perf_counter()
    try:
        text = await parse_document(data, mime_type)
    except DocumentParseError as exc:
        logger.warning(
            "document_parsed client=%s filename=%s mimeType=%s fileSize=%d "
            "duration_ms=%.1f success=False error=%s",
            x_client_id or "anonymous",
            file.filename,
            mime_type,
            size,
            (time.perf_counter() - started) * 1000,
            exc,
        )
        raise HTTPException(
            status_code=400,
            detail={"error": "Failed to parse document", "details": str(exc)},
        ) from exc

    logger.info(
        "document_parsed client=%s filename=%s mimeType=%s fileSize=%d "
        "textLength=%d duration_ms=%.1f success=True",
        x_client_id or "anonymous",
        file.filename,
        mime_type,
        size,
        len(text),
        (time.perf_counter() - started) * 1000,
    )
    return ParsedDocument(
        text=text,
        metadata=DocumentMetadata(
            filename=file.filename, mime_type=file.content_type, size=size
        ),
    )


__all__ = ["router"]
