"""Tests for the streaming relay state machine."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import pytest

from graph_backend.chat.streaming.dispatcher import ImageGenerator, SideEffectDispatcher
from graph_backend.chat.streaming.handler import MISSING_KEY_MESSAGE, StreamRelay
from graph_backend.openrouter import OpenRouterError, UpstreamStreamError
from graph_backend.schemas.chat import ChatRequest
from graph_backend.services.telemetry import OutcomeKind, OutcomeRecorder, StreamOutcome


def _content(text: str) -> dict[str, Any]:
    return {"choices": [{"delta": {"content": text}}]}


def _reasoning(text: str) -> dict[str, Any]:
    return {"choices": [{"delta": {"reasoning": text}}]}


def _tool(index: int, *, id: str | None = None, name: str | None = None, arguments: str = "") -> dict[str, Any]:
    fragment: dict[str, Any] = {"index": index, "function": {"arguments": arguments}}
    if id is not None:
        fragment["id"] = id
    if name is not None:
        fragment["function"]["name"] = name
    return {"choices": [{"delta": {"tool_calls": [fragment]}}]}


def _finish(reason: str, usage: dict[str, Any] | None = None) -> dict[str, Any]:
    chunk: dict[str, Any] = {"choices": [{"delta": {}, "finish_reason": reason}]}
    if usage is not None:
        chunk["usage"] = usage
    return chunk


class FakeStreamClient:
    """Chat + completion client replaying scripted upstream behaviour."""

    def __init__(
        self,
        chunks: list[dict[str, Any]] | None = None,
        *,
        open_error: Exception | None = None,
        fail_after: int | None = None,
        completions: list[Any] | None = None,
        has_credentials: bool = True,
        chunk_delay: float = 0.0,
    ) -> None:
        self._chunks = chunks or []
        self._open_error = open_error
        self._fail_after = fail_after
        self._completions = list(completions or [])
        self._has_credentials = has_credentials
        self._chunk_delay = chunk_delay
        self.payloads: list[dict[str, Any]] = []
        self.completion_payloads: list[dict[str, Any]] = []
        self.opened = 0
        self.closed = 0
        self.pulled = 0

    @property
    def has_credentials(self) -> bool:
        return self._has_credentials

    @asynccontextmanager
    async def open_chat_stream(self, payload: dict[str, Any]):
        self.payloads.append(payload)
        if self._open_error is not None:
            raise self._open_error
        self.opened += 1
        try:
            yield self._iterate()
        finally:
            self.closed += 1

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        for position, chunk in enumerate(self._chunks):
            if self._fail_after is not None and position == self._fail_after:
                raise UpstreamStreamError("connection reset by peer")
            if self._chunk_delay:
                await asyncio.sleep(self._chunk_delay)
            self.pulled += 1
            yield chunk

    async def create_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.completion_payloads.append(payload)
        response = self._completions.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class CollectingRecorder(OutcomeRecorder):
    def __init__(self) -> None:
        super().__init__()
        self.outcomes: list[StreamOutcome] = []

    def record(self, outcome: StreamOutcome) -> None:
        self.outcomes.append(outcome)
        super().record(outcome)


def _make_relay(client: FakeStreamClient, recorder: OutcomeRecorder) -> StreamRelay:
    generator = ImageGenerator(client, model="image-model", retry_delay=0)
    return StreamRelay(
        client,
        SideEffectDispatcher(generator),
        recorder,
        default_model="default-model",
    )


def _request(**overrides: Any) -> ChatRequest:
    payload: dict[str, Any] = {"messages": [{"role": "user", "content": "hello"}]}
    payload.update(overrides)
    return ChatRequest.model_validate(payload)


async def _collect(relay: StreamRelay, request: ChatRequest, **kwargs: Any) -> list[Any]:
    frames: list[Any] = []
    async for event in relay.stream(request, **kwargs):
        data = event["data"]
        frames.append(data if data == "[DONE]" else json.loads(data))
    return frames


def _assert_single_terminal(frames: list[Any]) -> None:
    terminals = [
        frame for frame in frames if frame == "[DONE]" or (isinstance(frame, dict) and "error" in frame and "type" not in frame)
    ]
    assert len(terminals) == 1
    assert frames[-1] is terminals[0]


@pytest.mark.asyncio
async def test_plain_stream_relays_content_then_done() -> None:
    client = FakeStreamClient(
        [
            _reasoning("thinking"),
            _content("Hel"),
            _content("lo"),
            {"choices": [], "usage": {"total_tokens": 5}},
            _finish("stop", usage={"total_tokens": 7}),
        ]
    )
    recorder = CollectingRecorder()

    frames = await _collect(_make_relay(client, recorder), _request(), client_id="client-1")

    assert frames == [
        {"reasoning": "thinking"},
        {"content": "Hel"},
        {"content": "lo"},
        "[DONE]",
    ]
    [outcome] = recorder.outcomes
    assert outcome.success is True
    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.client_id == "client-1"
    assert outcome.model == "default-model"
    assert outcome.response_length == 5
    assert outcome.reasoning_length == 8
    assert outcome.chunk_count == 5
    assert outcome.finish_reason == "stop"
    assert outcome.usage == {"total_tokens": 7}
    assert outcome.duration_ms is not None
    assert client.closed == 1


@pytest.mark.asyncio
async def test_upstream_payload_carries_defaults_and_tools() -> None:
    client = FakeStreamClient([_content("ok")])
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "look"},
                {"type": "image_url", "image_url": {"url": "https://e.com/a.png"}},
            ],
        }
    ]

    await _collect(
        _make_relay(client, CollectingRecorder()),
        _request(messages=messages, model="custom/model", plugins=[{"id": "web"}]),
    )

    [payload] = client.payloads
    assert payload["model"] == "custom/model"
    assert payload["stream"] is True
    assert payload["provider"] == {"sort": "latency"}
    assert payload["plugins"] == [{"id": "web"}]
    assert payload["tool_choice"] == "auto"
    assert [tool["function"]["name"] for tool in payload["tools"]] == [
        "generate_image",
        "show_youtube_video",
    ]
    assert payload["usage"] == {"include": True}
    assert payload["messages"] == messages


@pytest.mark.asyncio
async def test_tool_calls_dispatched_after_stream_in_index_order() -> None:
    client = FakeStreamClient(
        [
            _content("Here you go"),
            _tool(1, id="call_v", name="show_youtube_video", arguments='{"videoId":'),
            _tool(0, id="call_i", name="generate_image", arguments='{"prompt": "a fox"}'),
            _tool(1, arguments=' "abc"}'),
            _finish("tool_calls"),
        ],
        completions=[
            {"choices": [{"message": {"images": [{"image_url": {"url": "https://e.com/fox.png"}}]}}]}
        ],
    )
    recorder = CollectingRecorder()

    frames = await _collect(
        _make_relay(client, recorder), _request(imageModel="custom/image")
    )

    assert frames == [
        {"content": "Here you go"},
        {"type": "image", "content": "https://e.com/fox.png", "prompt": "a fox"},
        {"type": "youtube", "videoId": "abc", "explanation": ""},
        "[DONE]",
    ]
    assert client.completion_payloads[0]["model"] == "custom/image"
    # The conversation passed to the secondary call ends with the prompt turn.
    assert client.completion_payloads[0]["messages"][-1] == {
        "role": "user",
        "content": "a fox",
    }
    [outcome] = recorder.outcomes
    assert outcome.tool_call_count == 2
    assert outcome.finish_reason == "tool_calls"


@pytest.mark.asyncio
async def test_unknown_tool_and_invalid_arguments() -> None:
    client = FakeStreamClient(
        [
            _tool(0, id="a", name="web_search", arguments="{}"),
            _tool(1, id="b", name="generate_image", arguments="{broken"),
        ]
    )

    frames = await _collect(_make_relay(client, CollectingRecorder()), _request())

    assert len(frames) == 2
    assert frames[0]["type"] == "tool_error"
    assert frames[0]["tool"] == "generate_image"
    assert frames[-1] == "[DONE]"


@pytest.mark.asyncio
async def test_image_failure_is_isolated_from_other_calls() -> None:
    client = FakeStreamClient(
        [
            _tool(0, id="a", name="generate_image", arguments='{"prompt": "x"}'),
            _tool(1, id="b", name="show_youtube_video", arguments='{"videoId": "v"}'),
        ],
        completions=[{"choices": []}] * 3,
    )

    frames = await _collect(_make_relay(client, CollectingRecorder()), _request())

    assert frames[0] == {
        "type": "tool_error",
        "tool": "generate_image",
        "error": "Image generation returned no image after 3 attempts",
    }
    assert frames[1] == {"type": "youtube", "videoId": "v", "explanation": ""}
    assert frames[2] == "[DONE]"
    assert len(client.completion_payloads) == 3


@pytest.mark.asyncio
async def test_missing_credentials_emit_single_error() -> None:
    client = FakeStreamClient([_content("never")], has_credentials=False)
    recorder = CollectingRecorder()

    frames = await _collect(_make_relay(client, recorder), _request())

    assert frames == [{"error": MISSING_KEY_MESSAGE}]
    assert client.payloads == []
    [outcome] = recorder.outcomes
    assert outcome.success is False
    assert outcome.kind is OutcomeKind.ERROR


@pytest.mark.parametrize(
    ("detail", "expected"),
    [
        ({"message": "User not found.", "code": 401}, "Invalid or missing OpenRouter API key"),
        ({"message": "Input was flagged by moderation"}, "content-safety filter"),
        ({"message": "Rate limited"}, "Rate limited"),
    ],
)
@pytest.mark.asyncio
async def test_stream_open_failure_is_classified(detail: dict[str, Any], expected: str) -> None:
    client = FakeStreamClient(open_error=OpenRouterError(401, detail))
    recorder = CollectingRecorder()

    frames = await _collect(_make_relay(client, recorder), _request())

    assert len(frames) == 1
    assert expected in frames[0]["error"]
    assert recorder.outcomes[0].kind is OutcomeKind.ERROR


@pytest.mark.asyncio
async def test_mid_stream_failure_keeps_partial_content() -> None:
    client = FakeStreamClient(
        [_content("partial "), _content("answer"), _content("lost")], fail_after=2
    )
    recorder = CollectingRecorder()

    frames = await _collect(_make_relay(client, recorder), _request())

    assert frames == [
        {"content": "partial "},
        {"content": "answer"},
        {"error": "connection reset by peer"},
    ]
    _assert_single_terminal(frames)
    [outcome] = recorder.outcomes
    assert outcome.success is False
    assert outcome.response_length == len("partial answer")
    assert client.closed == 1


@pytest.mark.asyncio
async def test_mid_stream_failure_skips_pending_tool_calls() -> None:
    client = FakeStreamClient(
        [_tool(0, id="a", name="show_youtube_video", arguments='{"videoId": "v"}'), _content("x")],
        fail_after=1,
    )

    frames = await _collect(_make_relay(client, CollectingRecorder()), _request())

    assert frames == [{"error": "connection reset by peer"}]


@pytest.mark.asyncio
async def test_empty_stream_is_a_successful_empty_outcome() -> None:
    client = FakeStreamClient([_finish("stop")])
    recorder = CollectingRecorder()

    frames = await _collect(_make_relay(client, recorder), _request())

    assert frames == ["[DONE]"]
    [outcome] = recorder.outcomes
    assert outcome.success is True
    assert outcome.kind is OutcomeKind.EMPTY_SUCCESS


@pytest.mark.asyncio
async def test_disconnect_probe_stops_relay_without_terminal() -> None:
    client = FakeStreamClient([_content(c) for c in "abcde"])
    recorder = CollectingRecorder()
    checks = 0

    async def is_disconnected() -> bool:
        nonlocal checks
        checks += 1
        return checks > 2

    frames = await _collect(
        _make_relay(client, recorder), _request(), is_disconnected=is_disconnected
    )

    assert frames == [{"content": "a"}, {"content": "b"}]
    # no upstream chunk is read once the client is gone
    assert client.pulled == 2
    [outcome] = recorder.outcomes
    assert outcome.kind is OutcomeKind.CANCELLED
    assert client.closed == 1


@pytest.mark.asyncio
async def test_disconnect_before_tool_dispatch_skips_side_effects() -> None:
    client = FakeStreamClient(
        [_tool(0, id="a", name="generate_image", arguments='{"prompt": "x"}')]
    )
    recorder = CollectingRecorder()
    checks = 0

    async def is_disconnected() -> bool:
        nonlocal checks
        checks += 1
        # connected while streaming the single chunk, gone before dispatch
        return checks > 2

    frames = await _collect(
        _make_relay(client, recorder), _request(), is_disconnected=is_disconnected
    )

    assert frames == []
    assert client.completion_payloads == []
    assert recorder.outcomes[0].kind is OutcomeKind.CANCELLED


@pytest.mark.asyncio
async def test_task_cancellation_records_cancelled_outcome() -> None:
    client = FakeStreamClient([_content("a"), _content("b")], chunk_delay=5)
    recorder = CollectingRecorder()
    relay = _make_relay(client, recorder)

    task = asyncio.create_task(_collect(relay, _request()))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    [outcome] = recorder.outcomes
    assert outcome.kind is OutcomeKind.CANCELLED
    assert client.closed == 1


@pytest.mark.asyncio
async def test_recorder_sink_failures_do_not_reach_client() -> None:
    async def broken_sink(outcome: StreamOutcome) -> None:
        raise RuntimeError("sink down")

    recorder = OutcomeRecorder([broken_sink])
    await recorder.start()
    try:
        frames = await _collect(
            _make_relay(FakeStreamClient([_content("hi")]), recorder), _request()
        )
        await recorder.join()
    finally:
        await recorder.stop()

    assert frames == [{"content": "hi"}, "[DONE]"]
