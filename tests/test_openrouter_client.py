from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from graph_backend.openrouter import (
    OpenRouterClient,
    OpenRouterError,
    UpstreamStreamError,
    describe_error_detail,
)


def make_client(
    settings_factory: Callable[..., Any],
    handler: Callable[[httpx.Request], httpx.Response],
    **overrides: Any,
) -> OpenRouterClient:
    settings = settings_factory(**overrides)
    return OpenRouterClient(settings, transport=httpx.MockTransport(handler))


def _sse(*payloads: Any) -> bytes:
    lines: list[str] = [": OPENROUTER PROCESSING", ""]
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.extend([f"data: {data}", ""])
    return ("\n".join(lines) + "\n").encode()


def test_headers_include_referer_and_title(settings_factory) -> None:
    client = OpenRouterClient(
        settings_factory(REFERER="https://app.example.com", X_TITLE="Graph")
    )

    headers = client._headers  # type: ignore[attr-defined]

    assert headers["Authorization"] == "Bearer test-key"
    assert headers["HTTP-Referer"].rstrip("/") == "https://app.example.com"
    assert headers["X-Title"] == "Graph"


def test_parse_event_supports_multiple_data_lines(settings_factory) -> None:
    client = OpenRouterClient(settings_factory())

    event = client._parse_event(  # type: ignore[attr-defined]
        ["event: completion", "id: test-id", "data: part one", "data: part two"]
    )

    assert event.event == "completion"
    assert event.event_id == "test-id"
    assert event.data == "part one\npart two"


def test_describe_error_detail() -> None:
    assert describe_error_detail({"message": "User not found."}) == "User not found."
    assert describe_error_detail({"code": 1}) == '{"code": 1}'
    assert describe_error_detail(None) == "Unknown error"


@pytest.mark.asyncio
async def test_open_chat_stream_yields_decoded_chunks(settings_factory) -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        body = _sse(
            {"choices": [{"delta": {"content": "Hi"}}]},
            "not json",
            {"choices": [], "usage": {"total_tokens": 3}},
            "[DONE]",
            {"choices": [{"delta": {"content": "after done"}}]},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    client = make_client(settings_factory, handler)
    async with client.open_chat_stream({"model": "m", "stream": True}) as chunks:
        received = [chunk async for chunk in chunks]
    await client.aclose()

    assert seen["url"] == "https://openrouter.test/api/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"] == {"model": "m", "stream": True}
    assert received == [
        {"choices": [{"delta": {"content": "Hi"}}]},
        {"choices": [], "usage": {"total_tokens": 3}},
    ]


@pytest.mark.asyncio
async def test_open_chat_stream_raises_on_http_error(settings_factory) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "User not found.", "code": 401}})

    client = make_client(settings_factory, handler)
    with pytest.raises(OpenRouterError) as excinfo:
        async with client.open_chat_stream({"model": "m"}):
            pytest.fail("stream should not open")
    await client.aclose()

    assert excinfo.value.status_code == 401
    assert str(excinfo.value) == "User not found."


@pytest.mark.asyncio
async def test_open_chat_stream_wraps_connect_errors(settings_factory) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(settings_factory, handler)
    with pytest.raises(OpenRouterError) as excinfo:
        async with client.open_chat_stream({"model": "m"}):
            pass
    await client.aclose()

    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_in_band_error_raises_stream_error(settings_factory) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(
            {"choices": [{"delta": {"content": "partial"}}]},
            {"error": {"message": "Provider returned error"}},
        )
        return httpx.Response(200, content=body)

    client = make_client(settings_factory, handler)
    received: list[dict[str, Any]] = []
    with pytest.raises(UpstreamStreamError, match="Provider returned error"):
        async with client.open_chat_stream({"model": "m"}) as chunks:
            async for chunk in chunks:
                received.append(chunk)
    await client.aclose()

    assert received == [{"choices": [{"delta": {"content": "partial"}}]}]


@pytest.mark.asyncio
async def test_create_completion_forces_non_streaming(settings_factory) -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["accept"] = request.headers["Accept"]
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    client = make_client(settings_factory, handler)
    body = await client.create_completion({"model": "m", "stream": True})
    await client.aclose()

    assert seen["body"]["stream"] is False
    assert seen["accept"] == "application/json"
    assert body["choices"][0]["message"]["content"] == "ok"


@pytest.mark.asyncio
async def test_create_completion_raises_on_error_status(settings_factory) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    client = make_client(settings_factory, handler)
    with pytest.raises(OpenRouterError) as excinfo:
        await client.create_completion({"model": "m"})
    await client.aclose()

    assert excinfo.value.status_code == 500
    assert excinfo.value.detail == "upstream exploded"


def test_has_credentials_requires_non_blank_key(settings_factory) -> None:
    assert OpenRouterClient(settings_factory()).has_credentials
    assert not OpenRouterClient(settings_factory(OPENROUTER_API_KEY="  ")).has_credentials
