"""OpenRouter streaming client utilities."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Iterable, Optional

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)


class OpenRouterError(Exception):
    """Wrap transport or API failures when communicating with OpenRouter."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(describe_error_detail(detail))
        self.status_code = status_code
        self.detail = detail


class UpstreamStreamError(Exception):
    """Raised when an already-open completion stream fails mid-flight."""


def describe_error_detail(detail: Any) -> str:
    """Return a human readable message for an OpenRouter error payload."""

    if isinstance(detail, dict):
        message = detail.get("message")
        if isinstance(message, str) and message:
            return message
        return json.dumps(detail)
    if detail is None:
        return "Unknown error"
    return str(detail)


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


class OpenRouterClient:
    """Client responsible for chat completions against OpenRouter."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._transport = transport
        self._owned_client: httpx.AsyncClient | None = None

    @property
    def has_credentials(self) -> bool:
        return self._settings.has_openrouter_key

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
        if self._transport is not None:
            # Injected transports are not shared with the process-wide pool.
            if self._owned_client is None:
                self._owned_client = httpx.AsyncClient(
                    timeout=timeout, transport=self._transport
                )
            return self._owned_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def _headers(self) -> dict[str, str]:
        api_key = self._settings.openrouter_api_key
        secret = api_key.get_secret_value().strip() if api_key is not None else ""
        headers = {
            "Authorization": f"Bearer {secret}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._settings.openrouter_app_url:
            referer = str(self._settings.openrouter_app_url)
            headers["HTTP-Referer"] = referer
            headers["Referer"] = referer
        if self._settings.openrouter_app_name:
            headers["X-Title"] = self._settings.openrouter_app_name
        return headers

    def _json_headers(self) -> dict[str, str]:
        headers = dict(self._headers)
        headers["Accept"] = "application/json"
        return headers

    @property
    def _base_url(self) -> str:
        """Return the OpenRouter API base URL without a trailing slash."""

        return str(self._settings.openrouter_base_url).rstrip("/")

    @asynccontextmanager
    async def open_chat_stream(
        self, payload: dict[str, Any]
    ) -> AsyncGenerator[AsyncIterator[dict[str, Any]], None]:
        """Open a streaming completion and yield an iterator of decoded chunks.

        Failures while opening (connection errors, HTTP status >= 400) raise
        ``OpenRouterError`` from the ``async with`` statement itself. Failures
        while iterating raise ``UpstreamStreamError``. The upstream response is
        closed when the context exits, including on cancellation.
        """

        client = await self._get_http_client()
        request = client.build_request(
            "POST",
            f"{self._base_url}/chat/completions",
            headers=self._headers,
            json=payload,
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        try:
            if response.status_code >= 400:
                body = await response.aread()
                detail = self._extract_error_detail(body)
                raise OpenRouterError(response.status_code, detail)
            yield self._iter_chunks(response)
        finally:
            await response.aclose()

    async def create_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Issue a non-streaming completion request and return the JSON body."""

        body = dict(payload)
        body["stream"] = False

        client = await self._get_http_client()
        try:
            response = await client.post(
                f"{self._base_url}/chat/completions",
                headers=self._json_headers(),
                json=body,
            )
        except httpx.HTTPError as exc:
            raise OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            detail = self._extract_error_detail(response.content)
            raise OpenRouterError(response.status_code, detail)

        try:
            return response.json()
        except ValueError as exc:
            raise OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    async def aclose(self) -> None:
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                logger.debug("Error closing pooled HTTP client: %s", exc)

    async def _iter_chunks(
        self, response: httpx.Response
    ) -> AsyncGenerator[dict[str, Any], None]:
        try:
            async for event in self._iter_events(response):
                if event.event != "message" or not event.data:
                    continue
                if event.data == "[DONE]":
                    return
                try:
                    chunk = json.loads(event.data)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON SSE payload: %s", event.data)
                    continue
                if not isinstance(chunk, dict):
                    continue
                error = chunk.get("error")
                if error and not chunk.get("choices"):
                    # OpenRouter reports provider failures in-band after a 200.
                    raise UpstreamStreamError(describe_error_detail(error))
                yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamStreamError(str(exc) or exc.__class__.__name__) from exc

    async def _iter_events(
        self, response: httpx.Response
    ) -> AsyncGenerator[ServerSentEvent, None]:
        buffer: list[str] = []
        async for line in response.aiter_lines():
            if not line:
                if buffer:
                    yield self._parse_event(buffer)
                    buffer.clear()
                continue
            if line.startswith(":"):
                continue
            buffer.append(line)
        if buffer:
            yield self._parse_event(buffer)

    def _parse_event(self, lines: Iterable[str]) -> ServerSentEvent:
        event_name: Optional[str] = None
        event_id: Optional[str] = None
        data_lines: list[str] = []

        for line in lines:
            field, _, value = line.partition(":")
            value = value.lstrip(" ")
            if field == "event":
                event_name = value or None
            elif field == "data":
                data_lines.append(value)
            elif field == "id":
                event_id = value or None

        data = "\n".join(data_lines)
        return ServerSentEvent(
            data=data, event=event_name or "message", event_id=event_id
        )

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "OpenRouter returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = [
    "OpenRouterClient",
    "OpenRouterError",
    "ServerSentEvent",
    "UpstreamStreamError",
    "describe_error_detail",
]
