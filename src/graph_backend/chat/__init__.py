"""Chat relay components."""

from .orchestrator import ChatOrchestrator

__all__ = ["ChatOrchestrator"]
