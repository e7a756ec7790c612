"""Shared adapter for OpenAI-style /chat/completions streaming.

DeepSeek and local OpenAI-compatible servers use the same wire format:
`data:` chunks with choices[0].delta carrying content, optional
reasoning_content, and tool_calls fragments tagged with an index, ending
with `data: [DONE]`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

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


@dataclass
class StreamState:
    """Accumulated state for one chat-completions stream."""

    tools: ToolCallAccumulator
    text: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    finish_reason: str | None = None


class OpenAICompatibleProvider(LLMProvider):
    completions_path = "/chat/completions"

    def _build_headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            "accept": "text/event-stream",
        }
        if self.config.api_key:
            headers["authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _build_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        if self.config.system_prompt:
            result.append({"role": "system", "content": self.config.system_prompt})
        result.extend(convert_messages(messages))
        return result

    def _build_payload(self, messages: list[Message], tools: list[ToolSpec]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": self._build_messages(messages),
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": True,
        }
        if tools:
            payload["tools"] = convert_tools(tools)
            payload["tool_choice"] = "auto"
        return payload

    async def _open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        request = self._http.build_request("POST", self.completions_path, json=payload)
        return await self._http.send(request, stream=True)

    def _error_from_response(
        self, status_code: int, body: bytes, headers: httpx.Headers
    ) -> ProviderError:
        return ProviderError.from_response(self.provider_name, status_code, body, headers)

    def _new_state(self, tools: list[ToolSpec]) -> StreamState:
        return StreamState(tools=ToolCallAccumulator())

    async def _stream(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        options: StreamOptions,
        timer: InactivityTimer,
    ) -> CompletionResult:
        payload = self._build_payload(messages, tools)
        state = self._new_state(tools)

        response = await self._open_stream(payload)
        try:
            if response.status_code != 200:
                body = await response.aread()
                raise self._error_from_response(response.status_code, body, response.headers)
            async for chunk in iter_sse_data(response, timer):
                self._apply_chunk(state, chunk, options)
        finally:
            await response.aclose()

        return self._finalize(state, tools, options)

    def _apply_chunk(self, state: StreamState, chunk: Any, options: StreamOptions) -> None:
        if not isinstance(chunk, dict):
            return
        if chunk.get("error") and not chunk.get("choices"):
            raise self._stream_error(chunk["error"])

        # Metadata/usage chunks carry no choices
        choices = chunk.get("choices")
        if not choices:
            return
        choice = choices[0]
        delta = choice.get("delta") or {}

        content = delta.get("content")
        if content:
            self._on_content(state, content, options)

        reasoning = delta.get("reasoning_content")
        if reasoning:
            state.reasoning.append(reasoning)

        for fragment in delta.get("tool_calls") or []:
            function = fragment.get("function") or {}
            state.tools.add(
                fragment.get("index", 0),
                id=fragment.get("id"),
                name=function.get("name"),
                arguments=function.get("arguments"),
            )

        if choice.get("finish_reason"):
            state.finish_reason = choice["finish_reason"]

    def _on_content(self, state: StreamState, text: str, options: StreamOptions) -> None:
        state.text.append(text)
        if options.on_text_delta:
            options.on_text_delta(text)

    def _stream_error(self, error: Any) -> ProviderError:
        if isinstance(error, dict):
            return ProviderError(
                self.provider_name,
                str(error.get("message", error)),
                error_type=error.get("type") or error.get("code"),
            )
        return ProviderError(self.provider_name, str(error))

    def _finalize(
        self, state: StreamState, tools: list[ToolSpec], options: StreamOptions
    ) -> CompletionResult:
        content: list[TextSegment | ToolCallSegment] = []
        text = "".join(state.text)
        if text:
            content.append(TextSegment(text))
        calls = state.tools.finish_all()
        for call in calls:
            content.append(call)
            if options.on_tool_use:
                options.on_tool_use(call)
        return CompletionResult(
            content=tuple(content),
            stop_reason=normalize_stop_reason(state.finish_reason, has_tool_calls=bool(calls)),
            reasoning="".join(state.reasoning) or None,
        )


def convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert internal Messages to chat-completions message dicts.

    Tool results become `tool` role messages placed before any user text in
    the same message, so they directly follow the assistant's tool_calls.
    """
    result: list[dict[str, Any]] = []
    for msg in messages:
        texts = [s.text for s in msg.content if isinstance(s, TextSegment)]
        if msg.role == "user":
            for seg in msg.content:
                if isinstance(seg, ToolResultSegment):
                    content = seg.content if isinstance(seg.content, str) else json.dumps(seg.content)
                    result.append({"role": "tool", "tool_call_id": seg.call_id, "content": content})
            if texts:
                result.append({"role": "user", "content": "\n".join(texts)})
        else:
            message: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts)}
            calls = msg.tool_calls
            if calls:
                message["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.input)},
                    }
                    for call in calls
                ]
            result.append(message)
    return result


def convert_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": {
                    "type": "object",
                    "properties": tool.input_schema.get("properties", {}),
                    **(
                        {"required": tool.input_schema["required"]}
                        if tool.input_schema.get("required")
                        else {}
                    ),
                },
            },
        }
        for tool in tools
    ]
