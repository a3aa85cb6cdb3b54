"""Pydantic models for chat requests."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChatMessage(BaseModel):
    """Represents a single chat message in the client's wire format."""

    role: Literal["system", "user", "assistant"]
    content: Union[str, List[Dict[str, Any]]]

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _system_content_is_text(self) -> "ChatMessage":
        if self.role == "system" and not isinstance(self.content, str):
            raise ValueError("system messages must have plain-text content")
        return self


class ProviderPreferences(BaseModel):
    """OpenRouter provider routing preferences."""

    sort: Optional[Literal["latency", "price", "throughput"]] = None
    allow_fallbacks: Optional[bool] = None

    model_config = ConfigDict(extra="allow")


class ChatPlugin(BaseModel):
    """OpenRouter plugin directive, e.g. ``{"id": "web", "max_results": 5}``."""

    id: str

    model_config = ConfigDict(extra="allow")


class ChatRequest(BaseModel):
    """Incoming chat request payload."""

    messages: List[ChatMessage]
    model: Optional[str] = None
    image_model: Optional[str] = Field(default=None, alias="imageModel")
    provider: Optional[ProviderPreferences] = None
    plugins: Optional[List[ChatPlugin]] = None

    model_config = ConfigDict(populate_by_name=True)

    def wire_messages(self) -> list[dict[str, Any]]:
        """Return the messages exactly as the client's wire format describes them."""

        return [message.model_dump(exclude_none=True) for message in self.messages]

    def to_upstream_payload(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        default_provider_sort: str = "latency",
        stream: bool = True,
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Serialize the request for OpenRouter, enforcing defaults."""

        payload: Dict[str, Any] = {
            "model": model,
            "stream": stream,
            "messages": messages,
        }
        if self.provider is not None:
            payload["provider"] = self.provider.model_dump(exclude_none=True)
        else:
            payload["provider"] = {"sort": default_provider_sort}
        if self.plugins:
            payload["plugins"] = [
                plugin.model_dump(exclude_none=True) for plugin in self.plugins
            ]
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if stream:
            payload["usage"] = {"include": True}
        return payload


__all__ = [
    "ChatMessage",
    "ChatPlugin",
    "ChatRequest",
    "ProviderPreferences",
]
