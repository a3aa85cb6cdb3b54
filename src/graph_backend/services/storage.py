"""Image storage on Google Cloud Storage."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from pathlib import Path
from typing import Any

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage
from google.oauth2 import service_account

from ..config import PROJECT_ROOT, Settings

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")


class StorageError(Exception):
    """Base class for storage failures."""


class StorageUnavailable(StorageError):
    """Raised when no usable GCS credentials are configured."""


class UnsupportedImageType(StorageError):
    """Raised when an upload is not an accepted image type."""


class ImageTooLarge(StorageError):
    """Raised when an upload exceeds the size limit."""


def _load_credentials(credentials_path: Path | None) -> service_account.Credentials | None:
    if credentials_path is None:
        return None

    resolved_path = Path(credentials_path).expanduser()
    if not resolved_path.is_absolute():
        resolved_path = PROJECT_ROOT / resolved_path
    try:
        if not resolved_path.exists():
            return None
        return service_account.Credentials.from_service_account_file(str(resolved_path))
    except (FileNotFoundError, OSError, ValueError) as exc:
        logger.debug("Could not load GCS credentials from %s: %s", credentials_path, exc)
        return None


def build_object_key(data: bytes, original_name: str | None, *, now_ms: int | None = None) -> str:
    """Return ``images/<ms-timestamp>-<sha256 prefix>.<ext>`` for an upload."""

    digest = hashlib.sha256(data).hexdigest()[:16]
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    ext = "jpg"
    if original_name and "." in original_name:
        candidate = original_name.rsplit(".", 1)[-1].strip()
        if candidate:
            ext = candidate
    return f"images/{timestamp}-{digest}.{ext}"


class ImageStorage:
    """Upload, sign and delete chat images in the configured bucket."""

    def __init__(self, settings: Settings, *, bucket: Any | None = None):
        self._settings = settings
        self._client: storage.Client | None = None
        self._bucket = bucket

    def _get_client(self) -> storage.Client:
        if self._client is None:
            credentials = _load_credentials(self._settings.google_application_credentials)
            if credentials is None:
                raise StorageUnavailable(
                    "GCS credentials not found. Please configure GOOGLE_APPLICATION_CREDENTIALS "
                    "with a valid service account JSON file."
                )
            self._client = storage.Client(
                project=self._settings.gcp_project_id,
                credentials=credentials,
            )
        return self._client

    def _get_bucket(self) -> Any:
        if self._bucket is None:
            self._bucket = self._get_client().bucket(self._settings.gcs_bucket_name)
        return self._bucket

    def validate(self, mimetype: str | None, size: int) -> None:
        if mimetype not in ALLOWED_IMAGE_TYPES:
            raise UnsupportedImageType(
                f"Invalid file type. Allowed types: {', '.join(ALLOWED_IMAGE_TYPES)}"
            )
        max_bytes = self._settings.image_upload_max_bytes
        if size > max_bytes:
            raise ImageTooLarge(
                f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB"
            )

    def _upload_and_sign(
        self, key: str, data: bytes, mimetype: str, original_name: str | None
    ) -> str:
        blob = self._get_bucket().blob(key)
        blob.metadata = {
            "originalName": original_name or "",
            "uploadedAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        # Atomic create: prevent overwriting an existing object
        blob.upload_from_string(data, content_type=mimetype, if_generation_match=0)
        return blob.generate_signed_url(
            version="v4",
            expiration=self._settings.image_url_ttl,
            method="GET",
        )

    async def upload_image(
        self,
        data: bytes,
        mimetype: str | None,
        size: int,
        original_name: str | None,
    ) -> dict[str, str]:
        """Store an image and return ``{"url": signed_url, "key": object_key}``."""

        self.validate(mimetype, size)
        key = build_object_key(data, original_name)
        try:
            url = await asyncio.to_thread(
                self._upload_and_sign, key, data, mimetype or "", original_name
            )
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"Failed to upload image: {exc}") from exc
        logger.info("Uploaded image %s (%d bytes, %s)", key, size, mimetype)
        return {"url": url, "key": key}

    async def delete_image(self, key: str) -> None:
        """Delete a stored image; missing objects are treated as already deleted."""

        def _delete() -> None:
            self._get_bucket().blob(key).delete()

        try:
            await asyncio.to_thread(_delete)
        except gcs_exceptions.NotFound:
            logger.info("Image %s was already deleted", key)
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"Failed to delete image: {exc}") from exc
        else:
            logger.info("Deleted image %s", key)


__all__ = [
    "ALLOWED_IMAGE_TYPES",
    "ImageStorage",
    "ImageTooLarge",
    "StorageError",
    "StorageUnavailable",
    "UnsupportedImageType",
    "build_object_key",
]
