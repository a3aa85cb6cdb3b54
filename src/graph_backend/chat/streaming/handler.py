"""Conversation streaming relay."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, AsyncIterator, Protocol

from ...openrouter import OpenRouterError
from ...schemas.chat import ChatRequest
from ...services.telemetry import OutcomeRecorder, StreamOutcome
from ..messages import denormalize_messages, normalize_messages, summarize_messages
from .dispatcher import SideEffectDispatcher
from .tooling import TOOL_DEFINITIONS, ToolCallAssembler
from .types import (
    DisconnectProbe,
    RelayState,
    SseEvent,
    data_event,
    done_event,
    error_event,
)

logger = logging.getLogger(__name__)


MISSING_KEY_MESSAGE = "OPENROUTER_API_KEY environment variable is not set or is empty"

# Substring of the upstream error text -> message shown to the user.
ERROR_OVERRIDES: tuple[tuple[str, str], ...] = (
    (
        "User not found",
        "Invalid or missing OpenRouter API key. Please check your "
        "OPENROUTER_API_KEY environment variable.",
    ),
    (
        "flagged",
        "The request was blocked by the provider's content-safety filter. "
        "Please rephrase your message and try again.",
    ),
    (
        "moderation",
        "The request was blocked by the provider's content-safety filter. "
        "Please rephrase your message and try again.",
    ),
)


class ChatStreamClient(Protocol):
    @property
    def has_credentials(self) -> bool:
        ...

    def open_chat_stream(self, payload: dict[str, Any]) -> Any:
        ...


class ConfigurationError(Exception):
    """Raised when the relay cannot start because configuration is missing."""


class ClientDisconnected(Exception):
    """Raised internally when the downstream client has gone away."""


def classify_upstream_error(message: str) -> str:
    """Rewrite known upstream failures into actionable text."""

    for pattern, override in ERROR_OVERRIDES:
        if pattern.lower() in message.lower():
            return override
    return message


class StreamRelay:
    """Relay one chat completion stream to the client as SSE payloads.

    The relay owns the whole lifecycle of a request: it emits content and
    reasoning deltas as they arrive, assembles tool calls, dispatches them
    once the upstream stream is exhausted, and finishes with exactly one
    terminal frame (``[DONE]`` or an ``{"error": ...}`` payload). A single
    outcome record is handed to the recorder on every exit path.
    """

    def __init__(
        self,
        client: ChatStreamClient,
        dispatcher: SideEffectDispatcher,
        recorder: OutcomeRecorder,
        *,
        default_model: str,
        default_provider_sort: str = "latency",
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._recorder = recorder
        self._default_model = default_model
        self._default_provider_sort = default_provider_sort

    async def stream(
        self,
        request: ChatRequest,
        *,
        client_id: str | None = None,
        is_disconnected: DisconnectProbe | None = None,
    ) -> AsyncGenerator[SseEvent, None]:
        """Yield SSE payloads for ``request`` until a terminal frame is sent."""

        model = request.model or self._default_model
        outcome = StreamOutcome(client_id=client_id, model=model)
        # The transport has written the event-stream headers by the time the
        # first frame is requested.
        state = RelayState.HEADERS_SENT
        terminal: SseEvent | None = None
        conversation: list[dict[str, Any]] = []

        try:
            try:
                if not self._client.has_credentials:
                    raise ConfigurationError(MISSING_KEY_MESSAGE)

                conversation = normalize_messages(request.wire_messages())
                logger.info(
                    "Chat stream request client=%s model=%s provider=%s messages=%s",
                    client_id,
                    model,
                    request.provider.model_dump(exclude_none=True)
                    if request.provider
                    else None,
                    summarize_messages(conversation),
                )
                payload = request.to_upstream_payload(
                    model=model,
                    messages=denormalize_messages(conversation),
                    default_provider_sort=self._default_provider_sort,
                    tools=TOOL_DEFINITIONS,
                )

                assembler = ToolCallAssembler()
                async with self._client.open_chat_stream(payload) as chunks:
                    state = RelayState.STREAMING
                    async with aclosing(chunks):
                        async for event in self._consume(
                            chunks, assembler, outcome, is_disconnected
                        ):
                            yield event

                if assembler.has_entries:
                    state = RelayState.TOOL_DISPATCH
                    resolved = assembler.finalize()
                    outcome.tool_call_count = len(resolved)
                    for call in resolved:
                        await _raise_if_disconnected(is_disconnected)
                        event = await self._dispatch_isolated(
                            call, conversation, request.image_model
                        )
                        if event is not None:
                            yield event

                if not outcome.produced_output:
                    logger.warning(
                        "Chat stream for client %s (model %s) produced no content",
                        client_id,
                        model,
                    )
                outcome.mark_success()
                terminal = done_event()
                state = RelayState.FINALIZED
            except ClientDisconnected:
                logger.info(
                    "Client %s disconnected during chat stream (model %s)",
                    client_id,
                    model,
                )
                outcome.mark_cancelled()
                state = RelayState.FAILED
            except Exception as exc:
                message = self._describe_failure(exc, state)
                logger.error(
                    "Chat stream failed in state %s client=%s model=%s error=%s messages=%s",
                    state.value,
                    client_id,
                    model,
                    message,
                    summarize_messages(conversation),
                    exc_info=not isinstance(
                        exc, (ConfigurationError, OpenRouterError)
                    ),
                )
                outcome.mark_error(message)
                terminal = error_event(message)
                state = RelayState.FAILED

            if terminal is not None:
                yield terminal
        finally:
            outcome.close()
            self._recorder.record(outcome)

    async def _consume(
        self,
        chunks: AsyncIterator[dict[str, Any]],
        assembler: ToolCallAssembler,
        outcome: StreamOutcome,
        is_disconnected: DisconnectProbe | None,
    ) -> AsyncGenerator[SseEvent, None]:
        while True:
            await _raise_if_disconnected(is_disconnected)
            try:
                chunk = await anext(chunks)
            except StopAsyncIteration:
                break
            outcome.chunk_count += 1

            usage = chunk.get("usage")
            if isinstance(usage, dict):
                outcome.usage = usage

            choices = chunk.get("choices")
            if not isinstance(choices, list) or not choices:
                continue
            choice = choices[0]
            if not isinstance(choice, dict):
                continue

            finish_reason = choice.get("finish_reason")
            if isinstance(finish_reason, str) and finish_reason:
                outcome.finish_reason = finish_reason

            delta = choice.get("delta")
            if not isinstance(delta, dict):
                continue

            reasoning = delta.get("reasoning")
            if isinstance(reasoning, str) and reasoning:
                outcome.reasoning_length += len(reasoning)
                yield data_event({"reasoning": reasoning})

            content = delta.get("content")
            if isinstance(content, str) and content:
                outcome.response_length += len(content)
                yield data_event({"content": content})

            if tool_deltas := delta.get("tool_calls"):
                assembler.ingest(tool_deltas)

    async def _dispatch_isolated(
        self,
        call: Any,
        conversation: list[dict[str, Any]],
        image_model: str | None,
    ) -> SseEvent | None:
        try:
            return await self._dispatcher.dispatch(
                call, conversation, image_model=image_model
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Tool call %s (%s) raised", call.id, call.name)
            return data_event(
                {"type": "tool_error", "tool": call.name, "error": str(exc)}
            )

    @staticmethod
    def _describe_failure(exc: Exception, state: RelayState) -> str:
        if isinstance(exc, ConfigurationError):
            return str(exc)
        message = str(exc) or exc.__class__.__name__
        if state is RelayState.HEADERS_SENT and isinstance(exc, OpenRouterError):
            return classify_upstream_error(message)
        return message


async def _raise_if_disconnected(probe: DisconnectProbe | None) -> None:
    if probe is not None and await probe():
        raise ClientDisconnected()


__all__ = [
    "ConfigurationError",
    "ERROR_OVERRIDES",
    "MISSING_KEY_MESSAGE",
    "StreamRelay",
    "classify_upstream_error",
]
