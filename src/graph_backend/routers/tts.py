"""Text-to-speech routes backed by Deepgram."""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import Response, StreamingResponse

from ..config import Settings, get_settings
from ..schemas.tts import TextToSpeechRequest, TimedSpeechResponse
from ..services.tts_service import TTSConfigurationError, TTSError, TTSService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["tts"])

_AUDIO_HEADERS = {"Cache-Control": "no-cache"}


def get_tts_service(settings: Settings = Depends(get_settings)) -> TTSService:
    return TTSService(settings)


@router.post("/text-to-speech", response_model=None)
async def text_to_speech(
    payload: TextToSpeechRequest,
    service: TTSService = Depends(get_tts_service),
    x_client_id: str | None = Header(default=None),
) -> Response:
    """Synthesize speech, optionally with word-level timestamps."""

    text = payload.text
    logger.info(
        "POST /api/v1/text-to-speech client=%s textLength=%d includeTimestamps=%s",
        x_client_id,
        len(text or ""),
        payload.include_timestamps,
    )
    if not text or not text.strip():
        raise HTTPException(status_code=400, detail="Text is required")

    try:
        if payload.include_timestamps:
            result = await service.synthesize_with_timestamps(text)
            if isinstance(result, bytes):
                return Response(
                    content=result, media_type="audio/mpeg", headers=_AUDIO_HEADERS
                )
            body = TimedSpeechResponse.model_validate(result)
            logger.info(
                "Text-to-speech completed client=%s words=%d",
                x_client_id,
                len(body.words),
            )
            return Response(
                content=body.model_dump_json(), media_type="application/json"
            )

        audio = await service.stream_speech(text)
        return StreamingResponse(
            audio, media_type="audio/mpeg", headers=_AUDIO_HEADERS
        )
    except TTSConfigurationError as exc:
        logger.error("Text-to-speech failed client=%s error=%s", x_client_id, exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except TTSError as exc:
        logger.error(
            "Text-to-speech failed client=%s error=%s details=%s",
            x_client_id,
            exc,
            exc.details,
        )
        raise HTTPException(
            status_code=500, detail={"error": str(exc), "details": exc.details}
        ) from exc
    except httpx.HTTPError as exc:
        logger.error("Text-to-speech failed client=%s error=%s", x_client_id, exc)
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to generate speech", "details": str(exc)},
        ) from exc


__all__ = ["get_tts_service", "router"]
