"""Chat API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse
from sse_starlette.sse import EventSourceResponse

from ..chat import ChatOrchestrator
from ..chat.streaming.handler import ConfigurationError
from ..openrouter import OpenRouterError
from ..schemas.chat import ChatRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["chat"])


@router.post("/chat/stream", response_model=None, status_code=200)
async def stream_chat(
    payload: ChatRequest,
    request: Request,
    x_client_id: str | None = Header(default=None),
) -> EventSourceResponse:
    """Stream a chat completion from OpenRouter through Server-Sent Events."""

    orchestrator: ChatOrchestrator = request.app.state.chat_orchestrator
    return EventSourceResponse(
        orchestrator.process_stream(
            payload,
            client_id=x_client_id,
            is_disconnected=request.is_disconnected,
        )
    )


@router.post("/chat", response_class=PlainTextResponse)
async def chat(
    payload: ChatRequest,
    request: Request,
    x_client_id: str | None = Header(default=None),
) -> PlainTextResponse:
    """Return the assistant reply for a chat request as plain text."""

    orchestrator: ChatOrchestrator = request.app.state.chat_orchestrator
    try:
        text = await orchestrator.complete(payload, client_id=x_client_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except OpenRouterError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return PlainTextResponse(text)


__all__ = ["router"]
