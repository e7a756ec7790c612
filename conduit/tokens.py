"""Token estimation.

Vendor tokenizers are not public, so a chars/4 heuristic is used everywhere.
It only has to be cheap and consistent between calls.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable
from typing import Any

from conduit.messages import Message, TextSegment, ToolCallSegment, ToolResultSegment

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate token count for text: ceil(len / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _serialize(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, separators=(",", ":"), default=str)


def estimate_message_tokens(message: Message) -> int:
    """Sum estimates over text, tool call arguments and tool result content."""
    total = 0
    for seg in message.content:
        if isinstance(seg, TextSegment):
            total += estimate_tokens(seg.text)
        elif isinstance(seg, ToolCallSegment):
            total += estimate_tokens(_serialize(seg.input))
        elif isinstance(seg, ToolResultSegment):
            total += estimate_tokens(_serialize(seg.content))
    return total


def estimate_conversation_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)
