"""Context window management.

Keeps a conversation inside the model's token budget. Truncation is the
always-available floor: it drops the oldest history (optionally keeping the
first message, usually the user's original request). Compression is opt-in
and can never make things worse: if it fails for any reason the caller gets
the original conversation back and truncation takes over.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from conduit.compression import (
    CompressionResult,
    compress_conversation,
    default_compression_config,
    should_compress,
)
from conduit.errors import RequestCancelledError
from conduit.messages import Message, ToolCallSegment
from conduit.tokens import estimate_conversation_tokens, estimate_message_tokens

if TYPE_CHECKING:
    from conduit.config import Settings
    from conduit.providers.base import AbortSignal, LLMProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextUsage:
    total_tokens: int
    max_tokens: int
    percentage: float  # 0-100
    remaining: int


@dataclass
class CompactionOutcome:
    messages: list[Message]
    compressed: bool = False
    stats: CompressionResult | None = None


# ------------------------------------------------------------------
# Truncation
# ------------------------------------------------------------------


def _has_orphaned_results(message: Message, known_calls: set[str]) -> bool:
    return any(seg.call_id not in known_calls for seg in message.tool_result_segments)


def truncate_messages(
    messages: list[Message],
    max_context_tokens: int = 180_000,
    system_prompt_tokens: int = 2_000,
    keep_first: bool = True,
) -> list[Message]:
    """Drop the oldest messages until the rest fit the budget.

    The budget is max_context_tokens minus the system prompt reservation.
    Under budget the messages are returned unchanged. Otherwise a newest-first
    greedy window is kept, with the first message re-prepended when
    keep_first is set and it fits together with the newest message. If even
    the newest message alone is over budget it is returned on its own. Tool
    results at the start of the window whose calls were dropped are removed
    too, except for the newest message.
    """
    if not messages:
        return []

    available = max_context_tokens - system_prompt_tokens
    tokens = [estimate_message_tokens(m) for m in messages]
    if sum(tokens) <= available:
        return list(messages)

    keep_first = keep_first and len(messages) > 1
    if keep_first and tokens[0] + tokens[-1] > available:
        logger.warning(
            "First message (%d tokens) and newest message (%d tokens) exceed "
            "the %d token budget together; dropping the first message",
            tokens[0],
            tokens[-1],
            available,
        )
        keep_first = False

    budget = available - (tokens[0] if keep_first else 0)
    lowest = 1 if keep_first else 0
    start = len(messages) - 1
    used = 0
    for i in range(len(messages) - 1, lowest - 1, -1):
        if used + tokens[i] > budget:
            break
        used += tokens[i]
        start = i

    if tokens[-1] > budget:
        logger.warning(
            "Newest message (%d tokens) exceeds the %d token budget on its own",
            tokens[-1],
            available,
        )

    head = [messages[0]] if keep_first else []
    window = list(messages[start:])
    known_calls = {
        seg.id for m in head for seg in m.content if isinstance(seg, ToolCallSegment)
    }
    while len(window) > 1 and _has_orphaned_results(window[0], known_calls):
        window.pop(0)

    result = head + window
    logger.info(
        "Truncated conversation: %d -> %d messages (%d -> %d tokens, budget %d)",
        len(messages),
        len(result),
        sum(tokens),
        estimate_conversation_tokens(result),
        available,
    )
    return result


def is_approaching_context_limit(
    messages: list[Message], warning_threshold: int = 160_000
) -> bool:
    return estimate_conversation_tokens(messages) > warning_threshold


def get_context_usage(
    messages: list[Message],
    max_context_tokens: int = 180_000,
    system_prompt_tokens: int = 2_000,
) -> ContextUsage:
    total = estimate_conversation_tokens(messages)
    available = max_context_tokens - system_prompt_tokens
    percentage = total / available * 100 if available > 0 else 100.0
    return ContextUsage(
        total_tokens=total,
        max_tokens=available,
        percentage=max(0.0, min(percentage, 100.0)),
        remaining=max(available - total, 0),
    )


# ------------------------------------------------------------------
# Compression trigger
# ------------------------------------------------------------------


async def auto_compress_if_needed(
    messages: list[Message],
    settings: Settings,
    provider: LLMProvider | None = None,
    abort_signal: AbortSignal | None = None,
) -> CompactionOutcome:
    """Compress when settings.auto_compact is on and the trigger fires.

    Any failure in the compression attempt returns the original messages
    uncompressed. User cancellation is not a failure and propagates.
    """
    if not settings.auto_compact:
        return CompactionOutcome(messages=messages)

    config = default_compression_config(settings.context_limit)
    config = dataclasses.replace(config, method=settings.compact_method)
    if not should_compress(messages, config):
        return CompactionOutcome(messages=messages)

    try:
        result = await compress_conversation(messages, config, provider, abort_signal)
    except RequestCancelledError:
        raise
    except Exception:
        logger.exception("Auto-compression failed, falling back to truncation")
        return CompactionOutcome(messages=messages)

    if result.compressed_count >= result.original_count:
        return CompactionOutcome(messages=messages)
    return CompactionOutcome(
        messages=result.compressed_messages,
        compressed=True,
        stats=result,
    )
