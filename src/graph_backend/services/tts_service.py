"""Deepgram text-to-speech with optional word timestamps."""

from __future__ import annotations

import base64
import logging
from typing import Any, AsyncIterator, Optional

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)


class TTSConfigurationError(Exception):
    """Raised when no Deepgram API key is configured."""


class TTSError(Exception):
    """Raised when Deepgram rejects a synthesis request."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.details = details


class TTSService:
    """
    Service for Deepgram Aura speech synthesis.

    Uses a singleton httpx.AsyncClient for connection pooling across requests.

    - stream_speech() returns an async iterator of MP3 chunks as they arrive
    - synthesize_with_timestamps() collects the audio, transcribes it with
      Deepgram listen and returns base64 audio plus word timings
    """

    # Singleton HTTP client for connection pooling
    _http_client: Optional[httpx.AsyncClient] = None

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.deepgram_api_key = (
            settings.deepgram_api_key.get_secret_value()
            if settings.deepgram_api_key
            else None
        )
        base_url = str(settings.deepgram_base_url).rstrip("/")
        self.speak_url = f"{base_url}/speak"
        self.listen_url = f"{base_url}/listen"
        self.tts_model = settings.deepgram_tts_model
        self.stt_model = settings.deepgram_stt_model
        self._owned_client = http_client

    @classmethod
    def get_http_client(cls) -> httpx.AsyncClient:
        """Get singleton HTTP client for connection pooling."""
        if cls._http_client is None:
            cls._http_client = httpx.AsyncClient(timeout=30.0)
            logger.info("Created singleton httpx.AsyncClient for TTS")
        return cls._http_client

    @classmethod
    async def close_http_client(cls) -> None:
        """Close the singleton HTTP client. Call on app shutdown."""
        if cls._http_client is not None:
            await cls._http_client.aclose()
            cls._http_client = None
            logger.info("Closed TTS HTTP client")

    def _client(self) -> httpx.AsyncClient:
        return self._owned_client or self.get_http_client()

    def _headers(self, content_type: str) -> dict[str, str]:
        if not self.deepgram_api_key:
            raise TTSConfigurationError("DEEPGRAM_API_KEY is not configured")
        return {
            "Authorization": f"Token {self.deepgram_api_key}",
            "Content-Type": content_type,
        }

    async def stream_speech(self, text: str) -> AsyncIterator[bytes]:
        """Open a Deepgram speak stream and return an iterator of audio chunks.

        Upstream failures are raised before the iterator is returned so the
        caller can still answer with an error status.
        """

        client = self._client()
        request = client.build_request(
            "POST",
            self.speak_url,
            params={"model": self.tts_model},
            headers=self._headers("application/json"),
            json={"text": text},
        )
        response = await client.send(request, stream=True)
        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            raise TTSError(
                "Failed to generate speech",
                f"Deepgram API error: {response.status_code} "
                f"{body.decode('utf-8', errors='replace')}",
            )

        async def _stream() -> AsyncIterator[bytes]:
            streamed = 0
            try:
                async for chunk in response.aiter_bytes():
                    streamed += len(chunk)
                    yield chunk
            finally:
                await response.aclose()
                logger.info("Deepgram TTS streamed %d bytes", streamed)

        return _stream()

    async def synthesize(self, text: str) -> bytes:
        """Synthesize ``text`` and return the complete MP3 audio."""

        response = await self._client().post(
            self.speak_url,
            params={"model": self.tts_model},
            headers=self._headers("application/json"),
            json={"text": text},
        )
        if response.status_code >= 400:
            raise TTSError(
                "Failed to generate speech",
                f"Deepgram API error: {response.status_code} {response.text}",
            )
        audio = response.content
        logger.info("Deepgram TTS synthesized %d bytes for text: %s...", len(audio), text[:50])
        return audio

    async def transcribe_words(self, audio: bytes) -> list[dict[str, Any]] | None:
        """Return word timings for ``audio``, or ``None`` when transcription fails."""

        try:
            response = await self._client().post(
                self.listen_url,
                params={
                    "model": self.stt_model,
                    "utterances": "true",
                    "punctuate": "true",
                },
                headers=self._headers("audio/mpeg"),
                content=audio,
            )
        except httpx.HTTPError as exc:
            logger.warning("Deepgram transcription request failed: %s", exc)
            return None

        if response.status_code >= 400:
            logger.warning(
                "Deepgram transcription failed with status %d", response.status_code
            )
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("Deepgram transcription returned invalid JSON")
            return None
        return extract_words(data)

    async def synthesize_with_timestamps(self, text: str) -> bytes | dict[str, Any]:
        """Return ``{audio, words, duration}`` or raw audio if timing is unavailable."""

        audio = await self.synthesize(text)
        words = await self.transcribe_words(audio)
        if words is None:
            logger.warning(
                "Transcription failed, returning %d bytes of audio without timestamps",
                len(audio),
            )
            return audio
        return {
            "audio": base64.b64encode(audio).decode("ascii"),
            "words": words,
            "duration": words[-1]["end"] if words else 0,
        }


def _collect_words(raw_words: Any, into: list[dict[str, Any]]) -> None:
    if not isinstance(raw_words, list):
        return
    for word in raw_words:
        if not isinstance(word, dict):
            continue
        text = word.get("word")
        start = word.get("start")
        end = word.get("end")
        if text and start is not None and end is not None:
            into.append({"word": text, "start": start, "end": end})


def extract_words(data: Any) -> list[dict[str, Any]]:
    """Pull word timings from a Deepgram listen response.

    Words are read from ``results.channels[].alternatives[].words``; when that
    yields nothing the ``results.utterances[].words`` structure is used.
    """

    words: list[dict[str, Any]] = []
    results = data.get("results") if isinstance(data, dict) else None
    if not isinstance(results, dict):
        return words

    for channel in results.get("channels") or []:
        if not isinstance(channel, dict):
            continue
        for alternative in channel.get("alternatives") or []:
            if isinstance(alternative, dict):
                _collect_words(alternative.get("words"), words)

    if not words:
        for utterance in results.get("utterances") or []:
            if isinstance(utterance, dict):
                _collect_words(utterance.get("words"), words)

    return words


__all__ = [
    "TTSConfigurationError",
    "TTSError",
    "TTSService",
    "extract_words",
]
