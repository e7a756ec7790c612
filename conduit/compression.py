"""Conversation compression - summarizing rewrite of older history.

Three methods:
  simple:   heuristic extraction (objectives, actions, files, errors, tools)
  semantic: LLM-written summary, falling back to the heuristic one
  smart:    picks simple or semantic by conversation size

Older messages up to a split point are replaced by one assistant summary
message; the recent tail is kept verbatim. The split always lands on a user
message that starts a turn, so no tool result loses its call.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field

from conduit.errors import RequestCancelledError
from conduit.messages import Message, TextSegment, ToolCallSegment
from conduit.providers.base import AbortSignal, LLMProvider, StreamOptions
from conduit.tokens import estimate_conversation_tokens, estimate_message_tokens

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompt
# ------------------------------------------------------------------

SUMMARY_PROMPT = """\
Please create a concise summary of this conversation. Focus on:
1. Main topics and objectives
2. Key decisions and actions taken
3. Important code or files mentioned
4. Unresolved questions or next steps

Keep the summary under 500 words and use markdown formatting.

CONVERSATION:
{conversation}

EXTRACTED INFO:
- Files: {files}
- Tools used: {tools}

SUMMARY:"""

SUMMARY_HEADER = "[CONVERSATION SUMMARY - {count} messages compressed]"

# Per-message cap when serializing history for the summary prompt
_SUMMARY_MESSAGE_CHARS = 500

# Above this size (tokens) smart compression asks the LLM for the summary
_SMART_SEMANTIC_ABOVE = 50_000

_FILE_PATH_RE = re.compile(r"(?:/[\w.-]+)+\.\w+|(?:[\w-]+/)+[\w.-]+\.\w+")
_DECISION_KEYWORDS = ("decided", "chose", "selected", "implemented", "created", "fixed", "updated")
_ERROR_KEYWORDS = ("error", "failed", "exception", "bug", "issue", "problem")
_DECISION_RE = re.compile(rf"((?:{'|'.join(_DECISION_KEYWORDS)})[^.!?]*[.!?])", re.IGNORECASE)
_ERROR_RE = re.compile(rf"((?:{'|'.join(_ERROR_KEYWORDS)})[^.!?]*[.!?])", re.IGNORECASE)


@dataclass(frozen=True)
class CompressionConfig:
    method: str = "smart"  # semantic | simple | smart
    max_context_tokens: int = 180_000
    compress_threshold: float = 0.8  # fraction of context that triggers compression
    preserve_ratio: float = 0.3  # fraction of tokens kept verbatim at the tail


@dataclass
class CompressionResult:
    compressed_messages: list[Message]
    original_count: int
    compressed_count: int
    original_tokens: int
    compressed_tokens: int
    method: str

    @property
    def saved_tokens(self) -> int:
        return self.original_tokens - self.compressed_tokens

    @property
    def compression_ratio(self) -> float:
        if self.original_tokens == 0:
            return 1.0
        return self.compressed_tokens / self.original_tokens


@dataclass
class SemanticExtraction:
    """Facts pulled from the compressed span without an LLM."""

    key_decisions: list[str] = field(default_factory=list)
    file_references: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    objectives: list[str] = field(default_factory=list)
    tool_usage: Counter[str] = field(default_factory=Counter)


def default_compression_config(max_context_tokens: int = 180_000) -> CompressionConfig:
    """Adaptive thresholds: small windows compress earlier and keep less."""
    if max_context_tokens <= 4_000:
        threshold, preserve = 0.6, 0.25
    elif max_context_tokens <= 8_000:
        threshold, preserve = 0.65, 0.25
    elif max_context_tokens <= 16_000:
        threshold, preserve = 0.7, 0.3
    elif max_context_tokens <= 40_000:
        threshold, preserve = 0.75, 0.3
    else:
        threshold, preserve = 0.8, 0.3
    return CompressionConfig(
        method="smart",
        max_context_tokens=max_context_tokens,
        compress_threshold=threshold,
        preserve_ratio=preserve,
    )


def should_compress(messages: list[Message], config: CompressionConfig) -> bool:
    total = estimate_conversation_tokens(messages)
    return total >= config.max_context_tokens * config.compress_threshold


def _starts_turn(message: Message) -> bool:
    return message.role == "user" and not message.tool_result_segments


def find_split_point(messages: list[Message], tokens_to_keep: int) -> int:
    """Index of the first message kept verbatim.

    Walks backwards accumulating tokens; at the first message that would
    overflow `tokens_to_keep`, snaps forward to the next user message that
    starts a turn. Returns len(messages) when there is no safe split and 0
    when everything fits.
    """
    accumulated = 0
    for i in range(len(messages) - 1, -1, -1):
        tokens = estimate_message_tokens(messages[i])
        if accumulated + tokens > tokens_to_keep:
            for j in range(i, len(messages)):
                if _starts_turn(messages[j]):
                    return j
            return len(messages)
        accumulated += tokens
    return 0


def extract_semantic_info(messages: list[Message]) -> SemanticExtraction:
    extraction = SemanticExtraction()
    for msg in messages:
        text = " ".join(s.text for s in msg.content if isinstance(s, TextSegment))

        extraction.file_references.extend(_FILE_PATH_RE.findall(text))
        extraction.key_decisions.extend(_DECISION_RE.findall(text))
        extraction.errors.extend(_ERROR_RE.findall(text))

        if msg.role == "user":
            sentences = [s.strip() for s in re.split(r"[.!?]+", text) if len(s.strip()) > 10]
            if sentences:
                extraction.objectives.append(sentences[0])

        for seg in msg.content:
            if isinstance(seg, ToolCallSegment):
                extraction.tool_usage[seg.name] += 1

    extraction.file_references = _dedupe(extraction.file_references)
    extraction.key_decisions = _dedupe(extraction.key_decisions)[:10]
    extraction.errors = _dedupe(extraction.errors)[:5]
    extraction.objectives = _dedupe(extraction.objectives)[:5]
    return extraction


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def generate_simple_summary(extraction: SemanticExtraction) -> str:
    lines = ["## Summary", ""]

    def section(title: str, items: list[str]) -> None:
        if items:
            lines.append(f"**{title}:**")
            lines.extend(f"- {item.strip()}" for item in items)
            lines.append("")

    section("Objectives", extraction.objectives)
    section("Key Actions", extraction.key_decisions[:5])
    section("Files Referenced", extraction.file_references[:10])
    section("Issues Encountered", extraction.errors)
    section(
        "Tools Used",
        [f"{tool}: {count}x" for tool, count in extraction.tool_usage.most_common()],
    )
    return "\n".join(lines).rstrip() + "\n"


def _serialize_for_summary(messages: list[Message]) -> str:
    parts = []
    for msg in messages:
        text = msg.text
        if len(text) > _SUMMARY_MESSAGE_CHARS:
            text = text[:_SUMMARY_MESSAGE_CHARS] + "..."
        parts.append(f"{msg.role.upper()}: {text}")
    return "\n\n".join(parts)


async def generate_llm_summary(
    messages: list[Message],
    extraction: SemanticExtraction,
    provider: LLMProvider,
    abort_signal: AbortSignal | None = None,
) -> str:
    """Ask the model for a summary. Empty output falls back to the heuristic one."""
    prompt = SUMMARY_PROMPT.format(
        conversation=_serialize_for_summary(messages),
        files=", ".join(extraction.file_references[:5]),
        tools=", ".join(extraction.tool_usage),
    )
    result = await provider.stream_completion(
        [Message.user(prompt)],
        [],
        StreamOptions(abort_signal=abort_signal),
    )
    return result.text.strip() or generate_simple_summary(extraction)


async def _summarize_and_split(
    messages: list[Message],
    config: CompressionConfig,
    method: str,
    provider: LLMProvider | None,
    abort_signal: AbortSignal | None,
) -> CompressionResult:
    original_tokens = estimate_conversation_tokens(messages)
    split = find_split_point(messages, int(original_tokens * config.preserve_ratio))

    if split <= 0 or split >= len(messages) - 1:
        # Not enough history to compress
        return CompressionResult(
            compressed_messages=list(messages),
            original_count=len(messages),
            compressed_count=len(messages),
            original_tokens=original_tokens,
            compressed_tokens=original_tokens,
            method=method,
        )

    older, recent = messages[:split], messages[split:]
    extraction = extract_semantic_info(older)

    if method == "semantic" and provider is not None:
        try:
            summary = await generate_llm_summary(older, extraction, provider, abort_signal)
        except RequestCancelledError:
            raise
        except Exception as e:
            logger.warning("LLM summarization failed (%s), using heuristic summary", e)
            summary = generate_simple_summary(extraction)
    else:
        summary = generate_simple_summary(extraction)

    summary_message = Message.assistant(
        f"{SUMMARY_HEADER.format(count=len(older))}\n\n{summary}"
    )
    compressed = [summary_message, *recent]
    return CompressionResult(
        compressed_messages=compressed,
        original_count=len(messages),
        compressed_count=len(compressed),
        original_tokens=original_tokens,
        compressed_tokens=estimate_conversation_tokens(compressed),
        method=method,
    )


async def compress_conversation(
    messages: list[Message],
    config: CompressionConfig,
    provider: LLMProvider | None = None,
    abort_signal: AbortSignal | None = None,
) -> CompressionResult:
    """Compress older history with config.method. Unknown methods act as smart."""
    method = config.method
    if method not in ("semantic", "simple"):
        total = estimate_conversation_tokens(messages)
        if total > _SMART_SEMANTIC_ABOVE and provider is not None:
            method = "semantic"
        else:
            method = "simple"
        logger.debug("Smart compression chose %s for %d tokens", method, total)

    result = await _summarize_and_split(messages, config, method, provider, abort_signal)
    if result.saved_tokens > 0:
        logger.info(
            "Compressed conversation (%s): %d messages -> %d, %d -> %d tokens (%.0f%%)",
            result.method,
            result.original_count,
            result.compressed_count,
            result.original_tokens,
            result.compressed_tokens,
            result.compression_ratio * 100,
        )
    return result
