"""Shared data models for the engine.

Conversation content is a list of Messages, each holding an ordered list of
typed Segments. Provider adapters translate these to and from their own wire
shapes; nothing vendor-specific lives here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]

# end_turn | tool_use | max_tokens, or any other vendor string verbatim
StopReason = str

_STOP_REASON_MAP: dict[str, str] = {
    # Anthropic
    "end_turn": "end_turn",
    "stop_sequence": "end_turn",
    "tool_use": "tool_use",
    "max_tokens": "max_tokens",
    # OpenAI-compatible (DeepSeek, LM Studio)
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


@dataclass(frozen=True)
class TextSegment:
    text: str
    type: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ToolCallSegment:
    """A request from the model to run a tool."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = field(default="tool_use", init=False)


@dataclass(frozen=True)
class ToolResultSegment:
    """The result of a tool run, answering the ToolCallSegment with call_id."""

    call_id: str
    content: Any  # str, or structured content (list/dict)
    is_error: bool = False
    type: Literal["tool_result"] = field(default="tool_result", init=False)


Segment = Union[TextSegment, ToolCallSegment, ToolResultSegment]


@dataclass
class Message:
    """A single message in a conversation."""

    role: Role
    content: list[Segment] = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", content=[TextSegment(text)])

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role="assistant", content=[TextSegment(text)])

    @classmethod
    def from_result(cls, result: CompletionResult) -> Message:
        """Assistant message carrying a completion's text and tool calls."""
        return cls(role="assistant", content=list(result.content))

    @classmethod
    def tool_results(cls, results: list[ToolResultSegment]) -> Message:
        """All results for one assistant turn go back in a single user message."""
        return cls(role="user", content=list(results))

    @property
    def text(self) -> str:
        return "\n".join(s.text for s in self.content if isinstance(s, TextSegment))

    @property
    def tool_calls(self) -> list[ToolCallSegment]:
        return [s for s in self.content if isinstance(s, ToolCallSegment)]

    @property
    def tool_result_segments(self) -> list[ToolResultSegment]:
        return [s for s in self.content if isinstance(s, ToolResultSegment)]


@dataclass(frozen=True)
class ToolSpec:
    """A tool catalog entry as offered to the model."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(frozen=True)
class CompletionResult:
    """Vendor-independent output of one provider call."""

    content: tuple[TextSegment | ToolCallSegment, ...] = ()
    stop_reason: StopReason = "end_turn"
    reasoning: str | None = None

    @property
    def text(self) -> str:
        return "".join(s.text for s in self.content if isinstance(s, TextSegment))

    @property
    def tool_calls(self) -> list[ToolCallSegment]:
        return [s for s in self.content if isinstance(s, ToolCallSegment)]


def normalize_stop_reason(raw: str | None, has_tool_calls: bool = False) -> StopReason:
    """Map a vendor finish reason into the common stop reason set.

    Unknown reasons pass through verbatim. A missing reason is inferred from
    whether the stream produced tool calls.
    """
    if not raw:
        return "tool_use" if has_tool_calls else "end_turn"
    return _STOP_REASON_MAP.get(raw, raw)


def find_orphaned_results(messages: list[Message]) -> list[str]:
    """Return call ids of tool results with no earlier matching tool call.

    A non-empty return means the conversation cannot be sent as-is.
    """
    seen: set[str] = set()
    orphans: list[str] = []
    for msg in messages:
        for seg in msg.content:
            if isinstance(seg, ToolCallSegment):
                seen.add(seg.id)
            elif isinstance(seg, ToolResultSegment) and seg.call_id not in seen:
                orphans.append(seg.call_id)
    return orphans
