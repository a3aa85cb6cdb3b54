"""Pydantic models for text-to-speech requests."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TextToSpeechRequest(BaseModel):
    text: Optional[str] = None
    include_timestamps: bool = Field(default=False, alias="includeTimestamps")

    model_config = ConfigDict(populate_by_name=True)


class WordTiming(BaseModel):
    word: str
    start: float
    end: float


class TimedSpeechResponse(BaseModel):
    """Base64 MP3 audio with per-word timings."""

    audio: str
    words: list[WordTiming]
    duration: float


__all__ = ["TextToSpeechRequest", "TimedSpeechResponse", "WordTiming"]
