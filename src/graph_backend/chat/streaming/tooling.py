"""Tool definitions and streamed tool-call assembly."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .types import (
    ImageGenerationCall,
    InvalidToolCall,
    ResolvedToolCall,
    ToolInvocation,
    UnknownToolCall,
    VideoEmbedCall,
)

logger = logging.getLogger(__name__)


IMAGE_STYLES = (
    "photorealistic",
    "illustration",
    "anime",
    "watercolor",
    "sketch",
    "3d-render",
    "pixel-art",
)

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": ImageGenerationCall.name,
            "description": (
                "Generate an image from a text description. Use when the user "
                "asks to draw, create, render or visualize something."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "prompt": {
                        "type": "string",
                        "description": "Detailed description of the image to generate.",
                    },
                    "style": {
                        "type": "string",
                        "enum": list(IMAGE_STYLES),
                        "description": "Optional visual style for the image.",
                    },
                },
                "required": ["prompt"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": VideoEmbedCall.name,
            "description": (
                "Embed a YouTube video in the conversation when a video would "
                "help answer the user's request."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "videoId": {
                        "type": "string",
                        "description": "The 11-character YouTube video id.",
                    },
                    "explanation": {
                        "type": "string",
                        "description": "Short note on why this video is relevant.",
                    },
                },
                "required": ["videoId"],
            },
        },
    },
]


@dataclass
class _AccumulatorEntry:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class ToolCallAssembler:
    """Rebuild tool calls from index-tagged streaming fragments.

    One assembler belongs to exactly one streaming call. Fragments are merged
    into entries keyed by their ``index``; argument fragments are only ever
    appended and a name is only replaced by a non-empty one. Nothing is
    considered complete until ``finalize`` runs after the stream ends.
    """

    def __init__(self) -> None:
        self._entries: dict[int, _AccumulatorEntry] = {}
        self._finalized = False

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def has_entries(self) -> bool:
        return bool(self._entries)

    def ingest(self, deltas: Any) -> None:
        if self._finalized:
            raise RuntimeError("Cannot ingest tool call fragments after finalize()")

        for delta in deltas or []:
            if not isinstance(delta, dict):
                continue

            entry = self._entries.setdefault(
                self._resolve_index(delta), _AccumulatorEntry()
            )

            delta_id = delta.get("id")
            if isinstance(delta_id, str) and delta_id:
                entry.id = delta_id

            function_delta = delta.get("function") or {}
            if not isinstance(function_delta, dict):
                continue
            function_name = function_delta.get("name")
            if isinstance(function_name, str) and function_name:
                entry.name = function_name
            arguments_fragment = function_delta.get("arguments")
            if isinstance(arguments_fragment, str) and arguments_fragment:
                entry.arguments.append(arguments_fragment)

    def _resolve_index(self, delta: dict[str, Any]) -> int:
        index = delta.get("index")
        if isinstance(index, int) and not isinstance(index, bool) and index >= 0:
            return index

        delta_id = delta.get("id")
        if isinstance(delta_id, str) and delta_id:
            for existing_index, existing in self._entries.items():
                if existing.id == delta_id:
                    return existing_index

        return max(self._entries, default=-1) + 1

    def finalize(self) -> list[ResolvedToolCall]:
        """Return a snapshot of every assembled call in ascending index order."""

        if self._finalized:
            raise RuntimeError("ToolCallAssembler.finalize() called twice")
        self._finalized = True

        resolved: list[ResolvedToolCall] = []
        for index in sorted(self._entries):
            entry = self._entries[index]
            resolved.append(
                ResolvedToolCall(
                    index=index,
                    id=entry.id or f"call_{index}",
                    name=entry.name,
                    arguments="".join(entry.arguments),
                )
            )
        return resolved


def _load_arguments(call: ResolvedToolCall) -> dict[str, Any]:
    raw = call.arguments.strip()
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("tool arguments must be a JSON object")
    return parsed


def parse_tool_call(call: ResolvedToolCall) -> ToolInvocation:
    """Classify a resolved call into one of the known tool variants."""

    if call.name not in (ImageGenerationCall.name, VideoEmbedCall.name):
        return UnknownToolCall(call_id=call.id, name=call.name)

    try:
        arguments = _load_arguments(call)
    except ValueError as exc:
        return InvalidToolCall(
            call_id=call.id,
            name=call.name,
            error=f"Invalid arguments for {call.name}: {exc}",
        )

    if call.name == ImageGenerationCall.name:
        prompt = arguments.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return InvalidToolCall(
                call_id=call.id,
                name=call.name,
                error="generate_image requires a non-empty 'prompt'",
            )
        style = arguments.get("style")
        if not isinstance(style, str) or style not in IMAGE_STYLES:
            if style is not None:
                logger.debug("Ignoring unsupported image style %r", style)
            style = None
        return ImageGenerationCall(call_id=call.id, prompt=prompt.strip(), style=style)

    video_id = arguments.get("videoId")
    if not isinstance(video_id, str) or not video_id.strip():
        return InvalidToolCall(
            call_id=call.id,
            name=call.name,
            error="show_youtube_video requires a 'videoId'",
        )
    explanation = arguments.get("explanation")
    return VideoEmbedCall(
        call_id=call.id,
        video_id=video_id.strip(),
        explanation=explanation if isinstance(explanation, str) else "",
    )


__all__ = [
    "IMAGE_STYLES",
    "TOOL_DEFINITIONS",
    "ToolCallAssembler",
    "parse_tool_call",
]
