"""Helpers for converting chat messages between wire and internal shapes.

Clients send OpenAI-style content parts where an image part carries an
``image_url`` object. Internally the relay works with ``imageUrl`` so that the
two conventions never get mixed up; ``denormalize_messages`` restores the wire
shape whenever a request is re-issued upstream.
"""

from __future__ import annotations

import logging
from copy import deepcopy
from typing import Any, Mapping, Sequence

logger = logging.getLogger(__name__)

WIRE_IMAGE_KEY = "image_url"
INTERNAL_IMAGE_KEY = "imageUrl"

_PREVIEW_LIMIT = 500


def _rename_image_part(
    part: Mapping[str, Any], source_key: str, target_key: str
) -> dict[str, Any]:
    image = part.get(source_key)
    if not isinstance(image, Mapping):
        return deepcopy(dict(part))

    converted: dict[str, Any] = {"url": image.get("url")}
    detail = image.get("detail")
    if detail is not None:
        converted["detail"] = detail

    renamed = {
        key: deepcopy(value) for key, value in part.items() if key != source_key
    }
    renamed[target_key] = converted
    return renamed


def _convert_content(content: Any, source_key: str, target_key: str) -> Any:
    if not isinstance(content, list):
        return content

    converted: list[Any] = []
    for part in content:
        if not isinstance(part, Mapping):
            converted.append(deepcopy(part))
            continue
        part_type = part.get("type")
        if part_type == "image_url":
            converted.append(_rename_image_part(part, source_key, target_key))
        elif part_type == "text":
            converted.append(deepcopy(dict(part)))
        else:
            logger.debug("Passing through unrecognized content part type %r", part_type)
            converted.append(deepcopy(dict(part)))
    return converted


def _convert_messages(
    messages: Sequence[Mapping[str, Any]], source_key: str, target_key: str
) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for message in messages:
        entry = {key: value for key, value in message.items() if key != "content"}
        if "content" in message:
            entry["content"] = _convert_content(
                message["content"], source_key, target_key
            )
        converted.append(entry)
    return converted


def normalize_messages(
    messages: Sequence[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    """Return internal copies of wire messages (``image_url`` → ``imageUrl``)."""

    return _convert_messages(messages, WIRE_IMAGE_KEY, INTERNAL_IMAGE_KEY)


def denormalize_messages(
    messages: Sequence[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    """Return wire copies of internal messages (``imageUrl`` → ``image_url``)."""

    return _convert_messages(messages, INTERNAL_IMAGE_KEY, WIRE_IMAGE_KEY)


def summarize_messages(
    messages: Sequence[Mapping[str, Any]], *, limit: int = _PREVIEW_LIMIT
) -> list[dict[str, Any]]:
    """Build a log-friendly preview of a conversation."""

    preview: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            text = content[:limit] + ("..." if len(content) > limit else "")
        else:
            text = "[multipart content]"
        preview.append({"role": message.get("role"), "content": text})
    return preview


__all__ = [
    "INTERNAL_IMAGE_KEY",
    "WIRE_IMAGE_KEY",
    "denormalize_messages",
    "normalize_messages",
    "summarize_messages",
]
