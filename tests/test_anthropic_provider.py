"""Tests for the Anthropic Messages adapter.

Covers:
- SSE event parsing (_parse_sse_event pure function)
- Full streams through httpx.MockTransport: text, tools, reasoning, errors
- Inactivity timeout and user abort mid-stream
"""

import asyncio
import logging

import pytest

from conduit.errors import (
    AuthenticationError,
    InactivityTimeoutError,
    ProviderError,
    RateLimitError,
    RequestCancelledError,
)
from conduit.messages import Message, ToolCallSegment, ToolResultSegment, ToolSpec
from conduit.providers.anthropic import AnthropicProvider, _parse_sse_event
from conduit.providers.base import AbortSignal, ProviderConfig, StreamOptions
from conftest import sse_event

TOOLS = [ToolSpec(name="read_file", description="Read a file", input_schema={"type": "object"})]


def _provider(server, **config) -> AnthropicProvider:
    defaults = {"model": "claude-sonnet-4-20250514", "api_key": "sk-ant-test"}
    defaults.update(config)
    return AnthropicProvider(ProviderConfig(**defaults), transport=server.transport)


def _text_stream(*parts: str, stop_reason: str = "end_turn") -> list[str]:
    records = [
        sse_event("message_start", {"message": {"id": "msg_1", "role": "assistant"}}),
        sse_event("content_block_start", {"index": 0, "content_block": {"type": "text", "text": ""}}),
    ]
    for part in parts:
        records.append(
            sse_event("content_block_delta", {"index": 0, "delta": {"type": "text_delta", "text": part}})
        )
    records += [
        sse_event("content_block_stop", {"index": 0}),
        sse_event("message_delta", {"delta": {"stop_reason": stop_reason}}),
        sse_event("message_stop", {}),
    ]
    return records


# ---------------------------------------------------------------------------
# _parse_sse_event
# ---------------------------------------------------------------------------


class TestParseSSEEvent:
    def test_text_delta(self):
        event = _parse_sse_event({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": "Hello world"},
        })
        assert event.type == "text_delta"
        assert event.text == "Hello world"

    def test_tool_use_start(self):
        event = _parse_sse_event({
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_abc", "name": "web_search"},
        })
        assert event.type == "tool_start"
        assert event.tool_name == "web_search"
        assert event.tool_id == "toolu_abc"
        assert event.block_index == 1

    def test_input_json_delta(self):
        event = _parse_sse_event({
            "type": "content_block_delta",
            "index": 2,
            "delta": {"type": "input_json_delta", "partial_json": '{"query":'},
        })
        assert event.type == "tool_input_delta"
        assert event.text == '{"query":'
        assert event.block_index == 2

    def test_thinking_delta(self):
        event = _parse_sse_event({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "thinking_delta", "thinking": "hmm"},
        })
        assert event.type == "thinking_delta"
        assert event.text == "hmm"

    def test_message_delta_stop_reason(self):
        event = _parse_sse_event({"type": "message_delta", "delta": {"stop_reason": "tool_use"}})
        assert event.type == "done"
        assert event.stop_reason == "tool_use"

    def test_ping_returns_none(self):
        assert _parse_sse_event({"type": "ping"}) is None

    def test_in_stream_error(self):
        event = _parse_sse_event({
            "type": "error",
            "error": {"type": "overloaded_error", "message": "Overloaded"},
        })
        assert event.type == "error"
        assert event.error_type == "overloaded_error"
        assert event.text == "Overloaded"

    def test_unknown_event_returns_none(self):
        assert _parse_sse_event({"type": "some_future_event"}) is None


# ---------------------------------------------------------------------------
# Streaming through the adapter
# ---------------------------------------------------------------------------


class TestAnthropicStreaming:
    @pytest.mark.asyncio
    async def test_text_streams_and_completes(self, fake_server):
        server = fake_server(_text_stream("Hel", "lo", "!"))
        provider = _provider(server)
        deltas = []

        result = await provider.stream_completion(
            [Message.user("hi")], [], StreamOptions(on_text_delta=deltas.append)
        )

        assert deltas == ["Hel", "lo", "!"]
        assert result.text == "Hello!"
        assert result.stop_reason == "end_turn"
        assert result.reasoning is None
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_request_shape(self, fake_server):
        server = fake_server(_text_stream("ok"))
        provider = _provider(server, system_prompt="Be terse.", max_tokens=512)
        history = [
            Message.user("list files"),
            Message(role="assistant", content=[ToolCallSegment(id="t1", name="read_file", input={"p": 1})]),
            Message.tool_results([ToolResultSegment(call_id="t1", content="a.txt")]),
        ]

        await provider.stream_completion(history, TOOLS)

        request = server.requests[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        payload = server.last_payload
        assert payload["stream"] is True
        assert payload["max_tokens"] == 512
        assert payload["system"][0]["text"] == "Be terse."
        assert payload["tools"][0]["name"] == "read_file"
        assert payload["messages"][1]["content"][0] == {
            "type": "tool_use", "id": "t1", "name": "read_file", "input": {"p": 1},
        }
        assert payload["messages"][2]["content"][0]["tool_use_id"] == "t1"
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_oauth_token_uses_bearer(self, fake_server):
        server = fake_server(_text_stream("ok"))
        provider = _provider(server, api_key="sk-ant-oat01-xyz")
        await provider.stream_completion([Message.user("hi")], [])
        headers = server.requests[0].headers
        assert headers["authorization"] == "Bearer sk-ant-oat01-xyz"
        assert "x-api-key" not in headers
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_text_then_tools_in_order(self, fake_server):
        records = [
            sse_event("message_start", {"message": {}}),
            sse_event("content_block_start", {"index": 0, "content_block": {"type": "text", "text": ""}}),
            sse_event("content_block_delta", {"index": 0, "delta": {"type": "text_delta", "text": "Reading."}}),
            sse_event("content_block_stop", {"index": 0}),
            sse_event("content_block_start", {
                "index": 1, "content_block": {"type": "tool_use", "id": "tu_1", "name": "read_file"},
            }),
            sse_event("content_block_start", {
                "index": 2, "content_block": {"type": "tool_use", "id": "tu_2", "name": "read_file"},
            }),
            sse_event("content_block_delta", {"index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"path"'}}),
            sse_event("content_block_delta", {"index": 2, "delta": {"type": "input_json_delta", "partial_json": '{"path"'}}),
            sse_event("content_block_delta", {"index": 1, "delta": {"type": "input_json_delta", "partial_json": ': "a"}'}}),
            sse_event("content_block_delta", {"index": 2, "delta": {"type": "input_json_delta", "partial_json": ': "b"}'}}),
            sse_event("content_block_stop", {"index": 1}),
            sse_event("content_block_stop", {"index": 2}),
            "event: ping\ndata: {\"type\": \"ping\"}\n\n",
            sse_event("message_delta", {"delta": {"stop_reason": "tool_use"}}),
            sse_event("message_stop", {}),
        ]
        server = fake_server(records)
        provider = _provider(server)
        seen = []

        result = await provider.stream_completion(
            [Message.user("read a and b")], TOOLS, StreamOptions(on_tool_use=seen.append)
        )

        assert result.stop_reason == "tool_use"
        assert result.text == "Reading."
        assert [c.input for c in result.tool_calls] == [{"path": "a"}, {"path": "b"}]
        assert seen == result.tool_calls
        assert result.content[0].type == "text"
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_malformed_tool_dropped(self, fake_server):
        records = [
            sse_event("content_block_start", {
                "index": 0, "content_block": {"type": "tool_use", "id": "bad", "name": "read_file"},
            }),
            sse_event("content_block_delta", {"index": 0, "delta": {"type": "input_json_delta", "partial_json": '{"path": '}}),
            sse_event("content_block_stop", {"index": 0}),
            sse_event("content_block_start", {
                "index": 1, "content_block": {"type": "tool_use", "id": "good", "name": "read_file"},
            }),
            sse_event("content_block_delta", {"index": 1, "delta": {"type": "input_json_delta", "partial_json": '{}'}}),
            sse_event("content_block_stop", {"index": 1}),
            sse_event("message_delta", {"delta": {"stop_reason": "tool_use"}}),
        ]
        server = fake_server(records)
        provider = _provider(server)
        result = await provider.stream_completion([Message.user("x")], TOOLS)
        assert [c.id for c in result.tool_calls] == ["good"]
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_thinking_kept_separate(self, fake_server):
        records = [
            sse_event("content_block_start", {"index": 0, "content_block": {"type": "thinking", "thinking": ""}}),
            sse_event("content_block_delta", {"index": 0, "delta": {"type": "thinking_delta", "thinking": "Let me think."}}),
            sse_event("content_block_stop", {"index": 0}),
            sse_event("content_block_start", {"index": 1, "content_block": {"type": "text", "text": ""}}),
            sse_event("content_block_delta", {"index": 1, "delta": {"type": "text_delta", "text": "Answer"}}),
            sse_event("content_block_stop", {"index": 1}),
            sse_event("message_delta", {"delta": {"stop_reason": "end_turn"}}),
        ]
        server = fake_server(records)
        provider = _provider(server)
        result = await provider.stream_completion([Message.user("q")], [])
        assert result.text == "Answer"
        assert result.reasoning == "Let me think."
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_truncated_stream_flushes_text(self, fake_server):
        records = _text_stream("partial")[:3]
        server = fake_server(records)
        provider = _provider(server)
        result = await provider.stream_completion([Message.user("q")], [])
        assert result.text == "partial"
        assert result.stop_reason == "end_turn"
        await provider.aclose()


class TestAnthropicErrors:
    @pytest.mark.asyncio
    async def test_in_stream_overloaded_error(self, fake_server):
        records = [
            sse_event("message_start", {"message": {}}),
            sse_event("error", {"error": {"type": "overloaded_error", "message": "Overloaded"}}),
        ]
        provider = _provider(fake_server(records))
        with pytest.raises(ProviderError) as exc_info:
            await provider.stream_completion([Message.user("q")], [])
        assert exc_info.value.error_type == "overloaded_error"
        assert exc_info.value.vendor_message == "Overloaded"
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_http_429_with_retry_after(self, fake_server):
        server = fake_server(
            [],
            status_code=429,
            body=b'{"type":"error","error":{"type":"rate_limit_error","message":"Slow down"}}',
            headers={"retry-after": "12"},
        )
        provider = _provider(server)
        with pytest.raises(RateLimitError) as exc_info:
            await provider.stream_completion([Message.user("q")], [])
        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.status_code == 429
        assert "Slow down" in str(exc_info.value)
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_http_401(self, fake_server):
        server = fake_server(
            [],
            status_code=401,
            body=b'{"error":{"type":"authentication_error","message":"invalid x-api-key"}}',
        )
        provider = _provider(server)
        with pytest.raises(AuthenticationError) as exc_info:
            await provider.stream_completion([Message.user("q")], [])
        assert exc_info.value.vendor_message == "invalid x-api-key"
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_stalled_stream_times_out(self, fake_server):
        server = fake_server(_text_stream("a", "b"), stall_after=3)
        provider = _provider(server, inactivity_timeout=0.2)
        deltas = []
        with pytest.raises(InactivityTimeoutError):
            await provider.stream_completion(
                [Message.user("q")], [], StreamOptions(on_text_delta=deltas.append)
            )
        assert deltas == ["a"]
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_slow_steady_stream_completes(self, fake_server):
        server = fake_server(_text_stream("a", "b", "c", "d", "e"), delay=0.05)
        provider = _provider(server, inactivity_timeout=0.2)
        result = await provider.stream_completion([Message.user("q")], [])
        assert result.text == "abcde"
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_abort_signal_cancels_request(self, fake_server):
        server = fake_server(_text_stream("a", "b"), stall_after=3)
        provider = _provider(server, inactivity_timeout=None)
        signal = AbortSignal()
        asyncio.get_running_loop().call_later(0.05, signal.abort)

        with pytest.raises(RequestCancelledError):
            await provider.stream_completion(
                [Message.user("q")], [], StreamOptions(abort_signal=signal)
            )
        assert provider._inflight is None
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_provider_abort_cancels_request(self, fake_server):
        server = fake_server(_text_stream("a"), stall_after=1)
        provider = _provider(server, inactivity_timeout=None)
        asyncio.get_running_loop().call_later(0.05, provider.abort)
        with pytest.raises(RequestCancelledError):
            await provider.stream_completion([Message.user("q")], [])
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_pre_aborted_signal_fails_fast(self, fake_server):
        server = fake_server(_text_stream("a"))
        provider = _provider(server)
        signal = AbortSignal()
        signal.abort()
        with pytest.raises(RequestCancelledError):
            await provider.stream_completion([Message.user("q")], [], StreamOptions(abort_signal=signal))
        assert server.requests == []
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_second_call_takes_over_abort_handle(self, fake_server, caplog):
        server = fake_server(_text_stream("a", "b", "c"), delay=0.03)
        provider = _provider(server, inactivity_timeout=None)

        first = asyncio.create_task(provider.stream_completion([Message.user("one")], []))
        await asyncio.sleep(0.01)
        with caplog.at_level(logging.WARNING, logger="conduit.providers.base"):
            second = asyncio.create_task(provider.stream_completion([Message.user("two")], []))
            await asyncio.sleep(0.01)
        assert "another is in flight" in caplog.text

        provider.abort()
        with pytest.raises(RequestCancelledError):
            await second
        result = await first
        assert result.text == "abc"
        assert result.stop_reason == "end_turn"
        await provider.aclose()
