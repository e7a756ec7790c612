"""Per-turn glue: fit the conversation to the context window, then call the
provider through the retry layer.

The Engine owns one provider for its lifetime but holds no conversation
state; the caller passes the conversation in on every turn.
"""

from __future__ import annotations

import logging

from conduit.config import Settings
from conduit.context import (
    ContextUsage,
    auto_compress_if_needed,
    get_context_usage,
    truncate_messages,
)
from conduit.messages import CompletionResult, Message, ToolSpec
from conduit.providers.base import AbortSignal, LLMProvider, StreamOptions
from conduit.retry import OnRetry, with_retry

logger = logging.getLogger(__name__)


class Engine:
    """LLM interaction engine for one configured provider."""

    def __init__(self, settings: Settings, provider: LLMProvider) -> None:
        self.settings = settings
        self.provider = provider

    async def prepare(
        self,
        messages: list[Message],
        abort_signal: AbortSignal | None = None,
    ) -> list[Message]:
        """Compress (when enabled and triggered), then truncate to the budget."""
        outcome = await auto_compress_if_needed(
            messages, self.settings, self.provider, abort_signal
        )
        if outcome.compressed and outcome.stats is not None:
            logger.info(
                "Auto-compressed %d -> %d messages, saved %d tokens (%s)",
                outcome.stats.original_count,
                outcome.stats.compressed_count,
                outcome.stats.saved_tokens,
                outcome.stats.method,
            )
        return truncate_messages(
            outcome.messages,
            max_context_tokens=self.settings.context_limit,
            system_prompt_tokens=self.settings.system_prompt_tokens,
            keep_first=self.settings.keep_first_message,
        )

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolSpec] | None = None,
        options: StreamOptions | None = None,
        on_retry: OnRetry | None = None,
    ) -> CompletionResult:
        """Run one turn: prepare the context and stream a completion with retry."""
        options = options or StreamOptions()
        prepared = await self.prepare(messages, options.abort_signal)
        tool_list = list(tools or [])

        async def attempt() -> CompletionResult:
            return await self.provider.stream_completion(prepared, tool_list, options)

        return await with_retry(
            attempt,
            self.settings.retry_policy(),
            on_retry=on_retry,
            abort_signal=options.abort_signal,
        )

    def context_usage(self, messages: list[Message]) -> ContextUsage:
        return get_context_usage(
            messages,
            max_context_tokens=self.settings.context_limit,
            system_prompt_tokens=self.settings.system_prompt_tokens,
        )

    def abort(self) -> None:
        self.provider.abort()

    async def aclose(self) -> None:
        await self.provider.aclose()
