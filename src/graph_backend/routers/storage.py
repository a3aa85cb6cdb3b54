"""Image storage routes."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile
from pydantic import BaseModel

from ..services.storage import (
    ImageStorage,
    ImageTooLarge,
    StorageError,
    StorageUnavailable,
    UnsupportedImageType,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/storage", tags=["storage"])


class UploadResponse(BaseModel):
    success: bool
    url: str
    filename: str


def get_image_storage(request: Request) -> ImageStorage:
    storage = getattr(request.app.state, "image_storage", None)
    if storage is None:
        raise HTTPException(status_code=500, detail="Image storage unavailable")
    return storage


@router.post("/upload", response_model=UploadResponse)
async def upload_image(
    file: Optional[UploadFile] = File(default=None),
    storage: ImageStorage = Depends(get_image_storage),
) -> UploadResponse:
    if file is None:
        raise HTTPException(status_code=400, detail="No file provided")

    try:
        # size is known from the multipart parser before the body is read
        if file.size is not None:
            storage.validate(file.content_type, file.size)
        data = await file.read()
        result = await storage.upload_image(
            data, file.content_type, len(data), file.filename
        )
    except (UnsupportedImageType, ImageTooLarge) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageUnavailable as exc:
        logger.error("Image upload failed: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except StorageError as exc:
        logger.error("Image upload failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return UploadResponse(success=True, url=result["url"], filename=result["key"])


@router.delete("/{key:path}", status_code=204)
async def delete_image(
    key: str,
    storage: ImageStorage = Depends(get_image_storage),
) -> Response:
    if not key.startswith("images/"):
        raise HTTPException(status_code=400, detail="Invalid image key")
    try:
        await storage.delete_image(key)
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except StorageError as exc:
        logger.error("Image delete failed for %s: %s", key, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return Response(status_code=204)


__all__ = ["get_image_storage", "router"]
