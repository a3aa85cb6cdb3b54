"""Type definitions for the chat streaming subsystem."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union


SseEvent = dict[str, str | None]
DisconnectProbe = Callable[[], Awaitable[bool]]

DONE_MARKER = "[DONE]"


class RelayState(str, Enum):
    IDLE = "idle"
    HEADERS_SENT = "headers_sent"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    FINALIZED = "finalized"
    FAILED = "failed"


def data_event(payload: dict[str, Any]) -> SseEvent:
    """Wrap a JSON payload as a ``data:``-only SSE frame."""

    return {"data": json.dumps(payload, ensure_ascii=False)}


def done_event() -> SseEvent:
    return {"data": DONE_MARKER}


def error_event(message: str) -> SseEvent:
    return data_event({"error": message})


@dataclass(frozen=True)
class ResolvedToolCall:
    """A tool invocation reconstructed from streamed fragments."""

    index: int
    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class ImageGenerationCall:
    call_id: str
    prompt: str
    style: str | None = None

    name = "generate_image"


@dataclass(frozen=True)
class VideoEmbedCall:
    call_id: str
    video_id: str
    explanation: str = ""

    name = "show_youtube_video"


@dataclass(frozen=True)
class UnknownToolCall:
    call_id: str
    name: str


@dataclass(frozen=True)
class InvalidToolCall:
    """A known tool whose arguments could not be parsed."""

    call_id: str
    name: str
    error: str


ToolInvocation = Union[
    ImageGenerationCall, VideoEmbedCall, UnknownToolCall, InvalidToolCall
]


@dataclass(frozen=True)
class ImageGenerationResult:
    url: str
    prompt: str
    attempts: int


__all__ = [
    "DONE_MARKER",
    "DisconnectProbe",
    "ImageGenerationCall",
    "ImageGenerationResult",
    "InvalidToolCall",
    "RelayState",
    "ResolvedToolCall",
    "SseEvent",
    "ToolInvocation",
    "UnknownToolCall",
    "VideoEmbedCall",
    "data_event",
    "done_event",
    "error_event",
]
