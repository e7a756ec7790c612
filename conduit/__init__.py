"""Conduit - streaming LLM interaction engine.

Public API: Engine, Settings, the message model, and provider construction.
"""

from conduit.config import Settings
from conduit.engine import Engine
from conduit.messages import (
    CompletionResult,
    Message,
    TextSegment,
    ToolCallSegment,
    ToolResultSegment,
    ToolSpec,
)
from conduit.providers import AbortSignal, StreamOptions, create_provider

__all__ = [
    "AbortSignal",
    "CompletionResult",
    "Engine",
    "Message",
    "Settings",
    "StreamOptions",
    "TextSegment",
    "ToolCallSegment",
    "ToolResultSegment",
    "ToolSpec",
    "create_provider",
]
