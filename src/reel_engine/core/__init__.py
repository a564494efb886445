"""Core components for REEL Engine."""

from reel_engine.core.config import settings
from reel_engine.core.errors import OrchestrationError

__all__ = ["settings", "OrchestrationError"]
