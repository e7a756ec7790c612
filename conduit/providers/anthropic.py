"""Anthropic Messages API adapter, streamed over httpx.

Decodes the Messages SSE stream (message_start, content_block_start/delta/
stop, message_delta, message_stop, ping, error) into a CompletionResult.
Text and tool-input fragments are keyed by content block index.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from conduit.errors import ProviderError
from conduit.inactivity import InactivityTimer
from conduit.messages import (
    CompletionResult,
    Message,
    TextSegment,
    ToolCallSegment,
    ToolResultSegment,
    ToolSpec,
    normalize_stop_reason,
)
from conduit.providers.accumulator import ToolCallAccumulator
from conduit.providers.base import LLMProvider, StreamOptions, iter_sse_data

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # text_delta, thinking_delta, tool_start, tool_input_delta, block_stop, done, error
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    error_type: str = ""
    stop_reason: str = ""
    block_index: int = 0


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse Anthropic SSE event dict into StreamEvent.

    Ping keepalives return None (they still reset the inactivity timer at
    the line level). stop_reason is in message_delta.delta, not
    message_start. In-stream errors arrive as HTTP 200 with an error event.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            error_type=error.get("type", "unknown"),
            text=error.get("message", ""),
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return StreamEvent(
            type="text_block_start",
            text=block.get("text", ""),
            block_index=block_index,
        )

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "thinking_delta":
            return StreamEvent(
                type="thinking_delta",
                text=delta.get("thinking", ""),
                block_index=block_index,
            )
        if delta.get("type") == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


@dataclass
class _StreamState:
    """Everything accumulated while decoding one response."""

    content: list[TextSegment | ToolCallSegment] = field(default_factory=list)
    text_blocks: dict[int, list[str]] = field(default_factory=dict)
    reasoning: list[str] = field(default_factory=list)
    tools: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    stop_reason: str = ""


class AnthropicProvider(LLMProvider):
    """Claude models via the Messages API."""

    provider_name = "anthropic"
    default_base_url = "https://api.anthropic.com"

    def _build_headers(self) -> dict[str, str]:
        """Auth header selection.

        OAuth tokens (sk-ant-oat*) require Bearer auth plus beta headers.
        Regular API keys use x-api-key.
        """
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }
        api_key = self.config.api_key
        if not api_key:
            logger.warning("No Anthropic credentials configured -- API calls will fail")
        elif "sk-ant-oat" in api_key:
            headers["authorization"] = f"Bearer {api_key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
        else:
            headers["x-api-key"] = api_key
        return headers

    def _build_payload(self, messages: list[Message], tools: list[ToolSpec]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": _build_messages(messages),
            "stream": True,
        }
        if self.config.system_prompt:
            payload["system"] = [
                {
                    "type": "text",
                    "text": self.config.system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]
        return payload

    async def _stream(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        options: StreamOptions,
        timer: InactivityTimer,
    ) -> CompletionResult:
        payload = self._build_payload(messages, tools)
        state = _StreamState()

        async with self._http.stream("POST", "/v1/messages", json=payload) as response:
            if response.status_code != 200:
                body = await response.aread()
                raise ProviderError.from_response(
                    self.provider_name, response.status_code, body, response.headers
                )

            async for data in iter_sse_data(response, timer):
                event = _parse_sse_event(data)
                if event is None:
                    continue
                if event.type == "error":
                    raise ProviderError(self.provider_name, event.text, error_type=event.error_type)
                _apply_event(state, event, options)

        # Blocks left open by a truncated stream are flushed in order
        for index in sorted(state.text_blocks):
            _flush_text(state, index)
        for call in state.tools.finish_all():
            _emit_tool_call(state, call, options)

        return CompletionResult(
            content=tuple(state.content),
            stop_reason=normalize_stop_reason(
                state.stop_reason,
                has_tool_calls=any(isinstance(s, ToolCallSegment) for s in state.content),
            ),
            reasoning="".join(state.reasoning) or None,
        )


def _apply_event(state: _StreamState, event: StreamEvent, options: StreamOptions) -> None:
    if event.type == "text_block_start":
        state.text_blocks[event.block_index] = [event.text] if event.text else []

    elif event.type == "text_delta":
        state.text_blocks.setdefault(event.block_index, []).append(event.text)
        if options.on_text_delta and event.text:
            options.on_text_delta(event.text)

    elif event.type == "thinking_delta":
        state.reasoning.append(event.text)

    elif event.type == "tool_start":
        state.tools.add(event.block_index, id=event.tool_id, name=event.tool_name)

    elif event.type == "tool_input_delta":
        if event.block_index in state.tools:
            state.tools.add(event.block_index, arguments=event.text)

    elif event.type == "block_stop":
        if event.block_index in state.tools:
            call = state.tools.finish(event.block_index)
            if call is not None:
                _emit_tool_call(state, call, options)
        else:
            _flush_text(state, event.block_index)

    elif event.type == "done":
        state.stop_reason = event.stop_reason


def _flush_text(state: _StreamState, index: int) -> None:
    parts = state.text_blocks.pop(index, None)
    if parts:
        state.content.append(TextSegment("".join(parts)))


def _emit_tool_call(state: _StreamState, call: ToolCallSegment, options: StreamOptions) -> None:
    state.content.append(call)
    if options.on_tool_use:
        options.on_tool_use(call)


def _build_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert internal Messages to Anthropic API message format."""
    result: list[dict[str, Any]] = []
    for msg in messages:
        blocks: list[dict[str, Any]] = []
        for seg in msg.content:
            if isinstance(seg, TextSegment):
                blocks.append({"type": "text", "text": seg.text})
            elif isinstance(seg, ToolCallSegment):
                blocks.append({"type": "tool_use", "id": seg.id, "name": seg.name, "input": seg.input})
            elif isinstance(seg, ToolResultSegment):
                content = seg.content
                if not isinstance(content, (str, list)):
                    content = json.dumps(content)
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": seg.call_id,
                    "content": content,
                    "is_error": seg.is_error,
                })
        result.append({"role": msg.role, "content": blocks})
    return result
