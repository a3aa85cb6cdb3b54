"""Chat orchestrator wiring the OpenRouter client, relay and outcome recorder."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncGenerator

from ..config import PROJECT_ROOT, LoggingPreferences
from ..logging_handlers import cleanup_old_logs
from ..openrouter import OpenRouterClient, OpenRouterError
from ..schemas.chat import ChatRequest
from ..services.telemetry import OutcomeLogWriter, OutcomeRecorder
from .messages import denormalize_messages, normalize_messages, summarize_messages
from .streaming import ImageGenerator, SideEffectDispatcher, SseEvent, StreamRelay
from .streaming.handler import (
    MISSING_KEY_MESSAGE,
    ConfigurationError,
    classify_upstream_error,
)
from .streaming.types import DisconnectProbe

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


class ChatOrchestrator:
    """High-level coordination for chat requests."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: OpenRouterClient | None = None,
        recorder: OutcomeRecorder | None = None,
        project_root: Path | None = None,
    ):
        root = project_root or PROJECT_ROOT

        self._logging: LoggingPreferences = settings.load_logging_preferences(root)

        outcome_log_dir = settings.outcome_log_dir
        if not outcome_log_dir.is_absolute():
            outcome_log_dir = root / outcome_log_dir
        self._outcome_log_dir = outcome_log_dir

        self._settings = settings
        self._client = client or OpenRouterClient(settings)
        self._recorder = recorder or OutcomeRecorder(
            [
                OutcomeLogWriter(
                    outcome_log_dir,
                    min_level=self._logging.outcomes_level,
                )
            ]
        )
        self._image_generator = ImageGenerator(
            self._client,
            model=settings.default_image_model,
            timeout=settings.image_generation_timeout,
            max_retries=settings.image_generation_max_retries,
            retry_delay=settings.image_generation_retry_delay,
        )
        self._relay = StreamRelay(
            self._client,
            SideEffectDispatcher(self._image_generator),
            self._recorder,
            default_model=settings.default_model,
            default_provider_sort=settings.default_provider_sort,
        )

    @property
    def recorder(self) -> OutcomeRecorder:
        return self._recorder

    async def initialize(self) -> None:
        """Start the outcome recorder and prune expired outcome logs."""

        await self._recorder.start()
        deleted, _ = await asyncio.to_thread(
            cleanup_old_logs,
            [self._outcome_log_dir],
            self._logging.retention_hours,
            pattern="*.jsonl",
            logger=logger,
        )
        logger.info(
            "Chat orchestrator ready: default model %s, %d expired outcome log(s) removed",
            self._settings.default_model,
            deleted,
        )

    async def shutdown(self) -> None:
        """Flush pending outcome records and release HTTP clients."""

        try:
            await self._recorder.stop()
        except Exception as exc:
            logger.warning("Error stopping outcome recorder: %s", exc)

        try:
            await asyncio.wait_for(self._client.aclose(), timeout=2.0)
            await asyncio.wait_for(OpenRouterClient.aclose_shared(), timeout=2.0)
        except asyncio.TimeoutError:
            logger.warning("Timed out closing OpenRouter HTTP clients")
        except Exception as exc:
            logger.warning("Error closing OpenRouter client: %s", exc)

    def process_stream(
        self,
        request: ChatRequest,
        *,
        client_id: str | None = None,
        is_disconnected: DisconnectProbe | None = None,
    ) -> AsyncGenerator[SseEvent, None]:
        """Return the SSE payload stream for a chat request."""

        return self._relay.stream(
            request, client_id=client_id, is_disconnected=is_disconnected
        )

    async def complete(
        self, request: ChatRequest, *, client_id: str | None = None
    ) -> str:
        """Run a non-streaming completion and return the assistant text."""

        model = request.model or self._settings.default_model
        if not self._client.has_credentials:
            logger.error("Chat request failed client=%s error=%s", client_id, MISSING_KEY_MESSAGE)
            raise ConfigurationError(MISSING_KEY_MESSAGE)

        conversation = normalize_messages(request.wire_messages())
        logger.info(
            "Chat request client=%s model=%s messages=%s",
            client_id,
            model,
            summarize_messages(conversation),
        )
        payload = request.to_upstream_payload(
            model=model,
            messages=denormalize_messages(conversation),
            default_provider_sort=self._settings.default_provider_sort,
            stream=False,
        )

        try:
            body = await self._client.create_completion(payload)
        except OpenRouterError as exc:
            message = classify_upstream_error(str(exc))
            logger.error(
                "Chat request failed client=%s model=%s error=%s",
                client_id,
                model,
                message,
            )
            raise OpenRouterError(exc.status_code, message) from exc

        text = _extract_message_text(body)
        logger.info(
            "Chat response client=%s model=%s response=%r responseLength=%d",
            client_id,
            model,
            text[:1000] + ("..." if len(text) > 1000 else ""),
            len(text),
        )
        return text


def _extract_message_text(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else ""


__all__ = ["ChatOrchestrator"]
