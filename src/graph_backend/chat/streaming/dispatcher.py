"""Execute resolved tool calls and translate them into stream events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Protocol, Sequence

from ...openrouter import OpenRouterError
from ..messages import denormalize_messages
from .tooling import parse_tool_call
from .types import (
    ImageGenerationCall,
    ImageGenerationResult,
    InvalidToolCall,
    ResolvedToolCall,
    SseEvent,
    UnknownToolCall,
    VideoEmbedCall,
    data_event,
)

logger = logging.getLogger(__name__)


ACCEPTED_IMAGE_PREFIXES = ("data:image/", "http://", "https://")

IMAGE_SYSTEM_INSTRUCTION = (
    "You are an image generation assistant. Use the conversation so far as "
    "context and produce exactly one image that matches the final request. "
    "Always respond with an image; keep any accompanying text brief."
)


class CompletionClient(Protocol):
    async def create_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        ...


class ImageGenerationError(Exception):
    """Raised when an image could not be produced for a tool call."""


class ImageGenerationTimeout(ImageGenerationError):
    """Raised when a single image request exceeds its time budget."""


def extract_image_url(body: Any) -> str | None:
    """Return the first accepted image URL from a completion body."""

    if not isinstance(body, Mapping):
        return None
    choices = body.get("choices")
    if not isinstance(choices, Sequence) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, Mapping):
        return None
    message = first.get("message")
    if not isinstance(message, Mapping):
        return None
    images = message.get("images")
    if not isinstance(images, Sequence) or not images:
        return None
    image = images[0]
    if not isinstance(image, Mapping):
        return None
    image_url = image.get("image_url")
    if not isinstance(image_url, Mapping):
        return None
    url = image_url.get("url")
    if isinstance(url, str) and url.startswith(ACCEPTED_IMAGE_PREFIXES):
        return url
    return None


class ImageGenerator:
    """Produce an image with a secondary, non-streaming completion call."""

    def __init__(
        self,
        client: CompletionClient,
        *,
        model: str,
        timeout: float = 60.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        self._client = client
        self._model = model
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    def build_payload(
        self,
        call: ImageGenerationCall,
        conversation: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
    ) -> dict[str, Any]:
        prompt = call.prompt
        if call.style:
            prompt = f"{prompt}\n\nStyle: {call.style}"

        # The caller's conversation is never modified; this list is private.
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": IMAGE_SYSTEM_INSTRUCTION}
        ]
        messages.extend(denormalize_messages(conversation))
        messages.append({"role": "user", "content": prompt})

        return {
            "model": model or self._model,
            "stream": False,
            "modalities": ["image", "text"],
            "messages": messages,
        }

    async def generate(
        self,
        call: ImageGenerationCall,
        conversation: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
    ) -> ImageGenerationResult:
        payload = self.build_payload(call, conversation, model=model)
        total_attempts = self._max_retries + 1

        for attempt in range(1, total_attempts + 1):
            try:
                body = await asyncio.wait_for(
                    self._client.create_completion(payload), timeout=self._timeout
                )
            except asyncio.TimeoutError as exc:
                raise ImageGenerationTimeout("Image generation timed out") from exc
            except OpenRouterError as exc:
                raise ImageGenerationError(
                    f"Image generation failed: {exc}"
                ) from exc

            url = extract_image_url(body)
            if url is not None:
                return ImageGenerationResult(
                    url=url, prompt=call.prompt, attempts=attempt
                )

            logger.warning(
                "Image generation attempt %d/%d returned no usable image (call %s)",
                attempt,
                total_attempts,
                call.call_id,
            )
            if attempt < total_attempts:
                await asyncio.sleep(self._retry_delay)

        raise ImageGenerationError(
            f"Image generation returned no image after {total_attempts} attempts"
        )


class SideEffectDispatcher:
    """Map each resolved tool call to at most one output event."""

    def __init__(self, image_generator: ImageGenerator) -> None:
        self._image_generator = image_generator

    async def dispatch(
        self,
        call: ResolvedToolCall,
        conversation: Sequence[Mapping[str, Any]],
        *,
        image_model: str | None = None,
    ) -> SseEvent | None:
        invocation = parse_tool_call(call)

        if isinstance(invocation, UnknownToolCall):
            logger.info(
                "Ignoring unrecognized tool call %r (id=%s)",
                invocation.name,
                invocation.call_id,
            )
            return None

        if isinstance(invocation, InvalidToolCall):
            logger.warning(
                "Tool call %s (%s) has invalid arguments: %s",
                invocation.call_id,
                invocation.name,
                invocation.error,
            )
            return _tool_error_event(invocation.name, invocation.error)

        if isinstance(invocation, VideoEmbedCall):
            return data_event(
                {
                    "type": "youtube",
                    "videoId": invocation.video_id,
                    "explanation": invocation.explanation,
                }
            )

        try:
            result = await self._image_generator.generate(
                invocation, conversation, model=image_model
            )
        except ImageGenerationError as exc:
            logger.error(
                "Image generation failed for call %s (prompt=%r): %s",
                invocation.call_id,
                invocation.prompt[:200],
                exc,
            )
            return _tool_error_event(invocation.name, str(exc))

        logger.info(
            "Generated image for call %s after %d attempt(s)",
            invocation.call_id,
            result.attempts,
        )
        return data_event(
            {"type": "image", "content": result.url, "prompt": result.prompt}
        )


def _tool_error_event(tool_name: str, message: str) -> SseEvent:
    return data_event({"type": "tool_error", "tool": tool_name, "error": message})


__all__ = [
    "ACCEPTED_IMAGE_PREFIXES",
    "CompletionClient",
    "IMAGE_SYSTEM_INSTRUCTION",
    "ImageGenerationError",
    "ImageGenerationTimeout",
    "ImageGenerator",
    "SideEffectDispatcher",
    "extract_image_url",
]
