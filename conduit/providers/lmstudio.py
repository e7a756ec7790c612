"""LM Studio adapter for locally hosted OpenAI-compatible models.

Local models are less disciplined than hosted APIs, so on top of the shared
chat-completions decoding this adapter:

- injects the system prompt into the first user message (many local chat
  templates have no system role),
- separates <think>...</think> reasoning from the answer,
- repairs truncated tool-argument JSON where it can,
- falls back to tool calls written as JSON in plain text, for tool names
  that are actually in the catalog,
- retries the initial connection, since the server may still be loading a
  model.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, cast

import httpx

from conduit.errors import ProviderError
from conduit.messages import (
    CompletionResult,
    Message,
    TextSegment,
    ToolCallSegment,
    ToolSpec,
    normalize_stop_reason,
)
from conduit.providers.accumulator import ToolCallAccumulator
from conduit.providers.base import ProviderConfig, StreamOptions
from conduit.providers.openai_compat import OpenAICompatibleProvider, StreamState

logger = logging.getLogger(__name__)

_THINK_OPEN = "<think>"
_THINK_CLOSE = "</think>"

_NO_TOOL_SUPPORT = (
    "This model does not support tool/function calling. Load a model in LM Studio "
    "that does (e.g. Qwen 2.5, Llama 3.1/3.2, or one from lmstudio-community)."
)


def _lacks_tool_support(text: str) -> bool:
    return "Only user and assistant roles are supported" in text or (
        "tool" in text and "not supported" in text
    )


class ThinkTagFilter:
    """Incrementally drops <think>...</think> spans from streamed text.

    A tag split across chunks is held back until it can be decided.
    """

    def __init__(self) -> None:
        self._in_think = False
        self._pending = ""

    def feed(self, chunk: str) -> str:
        buf = self._pending + chunk
        self._pending = ""
        visible: list[str] = []
        while buf:
            tag = _THINK_CLOSE if self._in_think else _THINK_OPEN
            idx = buf.find(tag)
            if idx == -1:
                keep = _partial_tag_suffix(buf, tag)
                head, self._pending = buf[: len(buf) - keep], buf[len(buf) - keep :]
                if not self._in_think:
                    visible.append(head)
                break
            if not self._in_think:
                visible.append(buf[:idx])
            buf = buf[idx + len(tag) :]
            self._in_think = not self._in_think
        return "".join(visible)

    def flush(self) -> str:
        rest = "" if self._in_think else self._pending
        self._pending = ""
        return rest


def _partial_tag_suffix(buf: str, tag: str) -> int:
    for k in range(min(len(tag) - 1, len(buf)), 0, -1):
        if buf.endswith(tag[:k]):
            return k
    return 0


def split_think_tags(raw: str) -> tuple[str, str]:
    """Split raw model output into (answer text, thinking text).

    Handles an unclosed <think> (rest is thinking) and a </think> with no
    opening tag (everything before it is thinking, as emitted by templates
    that open the block in the prompt).
    """
    text: list[str] = []
    thinking: list[str] = []
    idx = 0
    in_think = False
    while idx < len(raw):
        if in_think:
            close = raw.find(_THINK_CLOSE, idx)
            if close == -1:
                thinking.append(raw[idx:])
                break
            thinking.append(raw[idx:close])
            idx = close + len(_THINK_CLOSE)
            in_think = False
            continue

        open_ = raw.find(_THINK_OPEN, idx)
        close = raw.find(_THINK_CLOSE, idx)
        if close != -1 and (open_ == -1 or close < open_):
            thinking.append(raw[idx:close])
            idx = close + len(_THINK_CLOSE)
            continue
        if open_ == -1:
            text.append(raw[idx:])
            break
        text.append(raw[idx:open_])
        idx = open_ + len(_THINK_OPEN)
        in_think = True
    return "".join(text).strip(), "".join(thinking).strip()


def _balance(fragment: str) -> tuple[int, int, bool]:
    braces = brackets = 0
    in_string = escaped = False
    for char in fragment:
        if escaped:
            escaped = False
            continue
        if char == "\\" and in_string:
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if not in_string:
            if char == "{":
                braces += 1
            elif char == "}":
                braces -= 1
            elif char == "[":
                brackets += 1
            elif char == "]":
                brackets -= 1
    return braces, brackets, in_string


def _close(fragment: str) -> dict[str, Any] | None:
    braces, brackets, in_string = _balance(fragment)
    if in_string:
        fragment += '"'
    fragment += "]" * max(brackets, 0) + "}" * max(braces, 0)
    try:
        parsed = json.loads(fragment)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def repair_json(raw: str) -> dict[str, Any] | None:
    """Best-effort repair of a truncated JSON object.

    Closes an open string and any open brackets/braces; failing that, drops
    the last incomplete key/value pair and tries again.
    """
    fragment = raw.strip()
    if not fragment:
        return None
    repaired = _close(fragment)
    if repaired is not None:
        return repaired
    last_comma = fragment.rfind(",")
    if last_comma > 0:
        return _close(fragment[:last_comma])
    return None


def extract_json_objects(text: str) -> list[tuple[Any, str]]:
    """Find top-level JSON objects embedded in free text.

    Returns (parsed value, original substring) pairs, honouring braces
    inside string literals.
    """
    results: list[tuple[Any, str]] = []
    i = 0
    while i < len(text):
        if text[i] != "{":
            i += 1
            continue
        depth = 0
        in_string = escaped = False
        end = -1
        for j in range(i, len(text)):
            char = text[j]
            if escaped:
                escaped = False
                continue
            if char == "\\" and in_string:
                escaped = True
                continue
            if char == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = j
                    break
        if end == -1:
            break
        candidate = text[i : end + 1]
        try:
            results.append((json.loads(candidate), candidate))
        except json.JSONDecodeError:
            pass
        i = end + 1
    return results


def extract_tool_calls_from_text(
    text: str, available_tools: frozenset[str]
) -> list[tuple[ToolCallSegment, str]]:
    """Recover tool calls a model wrote as {"name": ..., "arguments": {...}} text.

    Only names in the tool catalog are accepted, so hallucinated tools and
    ordinary JSON in an answer are left alone.
    """
    calls: list[tuple[ToolCallSegment, str]] = []
    for obj, original in extract_json_objects(text):
        if not isinstance(obj, dict):
            continue
        name = obj.get("name")
        if not isinstance(name, str) or name not in available_tools:
            continue
        args = obj.get("arguments", obj.get("parameters", {}))
        if isinstance(args, str):
            try:
                args = json.loads(args)
            except json.JSONDecodeError:
                continue
        if not isinstance(args, dict):
            continue
        call_id = f"text_tool_{len(calls)}_{uuid.uuid4().hex[:8]}"
        calls.append((ToolCallSegment(id=call_id, name=name, input=args), original))
    return calls


def _meaningful(text: str) -> str:
    printable = "".join(c for c in text if c.isprintable() or c in "\n\r\t")
    return re.sub(r"\s+", " ", printable).strip()


@dataclass
class _LMStudioState(StreamState):
    available_tools: frozenset[str] = frozenset()
    think_filter: ThinkTagFilter | None = None


class LMStudioProvider(OpenAICompatibleProvider):
    provider_name = "lmstudio"
    default_base_url = "http://127.0.0.1:1234/v1"

    def __init__(
        self,
        config: ProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        connect_retries: int = 3,
        connect_retry_delay: float = 2.0,
    ) -> None:
        super().__init__(config, transport)
        self.connect_retries = max(1, connect_retries)
        self.connect_retry_delay = connect_retry_delay

    def _build_headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            "accept": "text/event-stream",
            "cache-control": "no-cache",
        }
        # LM Studio needs no auth by default
        if self.config.api_key and self.config.api_key != "not-needed":
            headers["authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _build_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        converted = super()._build_messages(messages)
        system_prompt = self.config.system_prompt
        if not system_prompt:
            return converted
        converted = [m for m in converted if m["role"] != "system"]
        for message in converted:
            if message["role"] == "user" and isinstance(message["content"], str):
                message["content"] = (
                    f"[SYSTEM INSTRUCTIONS]\n{system_prompt}\n[END SYSTEM INSTRUCTIONS]\n\n"
                    f"User: {message['content']}"
                )
                break
        return converted

    def _build_payload(self, messages: list[Message], tools: list[ToolSpec]) -> dict[str, Any]:
        payload = super()._build_payload(messages, tools)
        payload["stream_options"] = {"include_usage": False}
        return payload

    async def _open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        delay = self.connect_retry_delay
        for attempt in range(1, self.connect_retries + 1):
            try:
                return await super()._open_stream(payload)
            except (httpx.NetworkError, httpx.TimeoutException) as e:
                if attempt == self.connect_retries:
                    raise ProviderError(
                        self.provider_name,
                        f"Cannot connect to LM Studio at {self._http.base_url} after "
                        f"{attempt} attempts. Is the server started with a model loaded?",
                        error_type="connection_error",
                    ) from e
                logger.warning(
                    "LM Studio connection failed (%s), retrying in %.1fs (%d attempts left)",
                    type(e).__name__,
                    delay,
                    self.connect_retries - attempt,
                )
                await asyncio.sleep(delay)
                delay *= 1.5
        raise AssertionError("unreachable")

    def _error_from_response(
        self, status_code: int, body: bytes, headers: httpx.Headers
    ) -> ProviderError:
        text = body.decode(errors="replace")
        if _lacks_tool_support(text):
            return ProviderError(
                self.provider_name,
                _NO_TOOL_SUPPORT,
                status_code=status_code,
                error_type="tools_unsupported",
            )
        return super()._error_from_response(status_code, body, headers)

    def _stream_error(self, error: Any) -> ProviderError:
        if _lacks_tool_support(json.dumps(error) if not isinstance(error, str) else error):
            return ProviderError(self.provider_name, _NO_TOOL_SUPPORT, error_type="tools_unsupported")
        return super()._stream_error(error)

    def _new_state(self, tools: list[ToolSpec]) -> StreamState:
        return _LMStudioState(
            tools=ToolCallAccumulator(repair=repair_json),
            available_tools=frozenset(t.name for t in tools),
            think_filter=ThinkTagFilter(),
        )

    def _on_content(self, state: StreamState, text: str, options: StreamOptions) -> None:
        state.text.append(text)
        if options.on_text_delta and isinstance(state, _LMStudioState) and state.think_filter:
            visible = state.think_filter.feed(text)
            if visible:
                options.on_text_delta(visible)

    def _finalize(
        self, state: StreamState, tools: list[ToolSpec], options: StreamOptions
    ) -> CompletionResult:
        state = cast(_LMStudioState, state)
        if options.on_text_delta and state.think_filter:
            tail = state.think_filter.flush()
            if tail:
                options.on_text_delta(tail)

        text, thinking = split_think_tags("".join(state.text))
        reasoning = "".join(state.reasoning).strip()
        had_native_calls = len(state.tools) > 0
        calls = state.tools.finish_all()
        finish_reason = state.finish_reason

        if not had_native_calls and text:
            extracted = extract_tool_calls_from_text(text, state.available_tools)
            if extracted:
                logger.info("Recovered %d tool call(s) from text output", len(extracted))
                cleaned = text
                for _, original in extracted:
                    cleaned = cleaned.replace(original, "")
                text = _meaningful(cleaned)
                if len(text) <= 10:
                    text = ""
                calls = [call for call, _ in extracted]
                # Server reported a plain stop; the turn still wants tools run
                finish_reason = "tool_calls"

        content: list[TextSegment | ToolCallSegment] = []
        if text:
            content.append(TextSegment(text))
        for call in calls:
            content.append(call)
            if options.on_tool_use:
                options.on_tool_use(call)

        return CompletionResult(
            content=tuple(content),
            stop_reason=normalize_stop_reason(finish_reason, has_tool_calls=bool(calls)),
            reasoning="\n".join(part for part in (reasoning, thinking) if part) or None,
        )
