"""Chat streaming package."""

from .dispatcher import ImageGenerator, SideEffectDispatcher
from .handler import StreamRelay
from .tooling import TOOL_DEFINITIONS, ToolCallAssembler
from .types import SseEvent

__all__ = [
    "ImageGenerator",
    "SideEffectDispatcher",
    "SseEvent",
    "StreamRelay",
    "TOOL_DEFINITIONS",
    "ToolCallAssembler",
]
