"""Tests for token estimation and the message model."""

import math

import pytest

from conduit.messages import (
    CompletionResult,
    Message,
    TextSegment,
    ToolCallSegment,
    ToolResultSegment,
    find_orphaned_results,
    normalize_stop_reason,
)
from conduit.tokens import (
    estimate_conversation_tokens,
    estimate_message_tokens,
    estimate_tokens,
)


# ------------------------------------------------------------------
# Token estimation
# ------------------------------------------------------------------


class TestEstimateTokens:
    @pytest.mark.parametrize("length", [0, 1, 3, 4, 5, 399, 400, 401])
    def test_ceil_len_div_4(self, length):
        assert estimate_tokens("x" * length) == math.ceil(length / 4)

    def test_monotonic_in_length(self):
        previous = 0
        for length in range(0, 200):
            current = estimate_tokens("y" * length)
            assert current >= previous
            previous = current

    def test_empty_is_zero(self):
        assert estimate_tokens("") == 0


class TestEstimateMessageTokens:
    def test_text_segments_summed(self):
        msg = Message(role="user", content=[TextSegment("a" * 8), TextSegment("b" * 5)])
        assert estimate_message_tokens(msg) == 2 + 2

    def test_tool_call_input_serialized(self):
        call = ToolCallSegment(id="c1", name="read", input={"path": "/tmp/x"})
        msg = Message(role="assistant", content=[call])
        # {"path":"/tmp/x"} is 17 chars
        assert estimate_message_tokens(msg) == math.ceil(17 / 4)

    def test_tool_result_string_and_structured(self):
        text = ToolResultSegment(call_id="c1", content="z" * 40)
        structured = ToolResultSegment(call_id="c2", content=[{"k": 1}])
        assert estimate_message_tokens(Message(role="user", content=[text])) == 10
        # [{"k":1}] is 9 chars
        assert estimate_message_tokens(Message(role="user", content=[structured])) == 3

    def test_conversation_sum(self):
        msgs = [Message.user("a" * 40), Message.assistant("b" * 80)]
        assert estimate_conversation_tokens(msgs) == 30

    def test_empty_conversation(self):
        assert estimate_conversation_tokens([]) == 0


# ------------------------------------------------------------------
# Message model
# ------------------------------------------------------------------


class TestStopReason:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("end_turn", "end_turn"),
            ("stop_sequence", "end_turn"),
            ("tool_use", "tool_use"),
            ("max_tokens", "max_tokens"),
            ("stop", "end_turn"),
            ("tool_calls", "tool_use"),
            ("function_call", "tool_use"),
            ("length", "max_tokens"),
        ],
    )
    def test_known_reasons(self, raw, expected):
        assert normalize_stop_reason(raw) == expected

    def test_unknown_passes_through(self):
        assert normalize_stop_reason("content_filter") == "content_filter"

    def test_missing_inferred_from_tool_calls(self):
        assert normalize_stop_reason(None) == "end_turn"
        assert normalize_stop_reason("", has_tool_calls=True) == "tool_use"


class TestMessage:
    def test_from_result_round_trips_content(self):
        call = ToolCallSegment(id="c1", name="ls", input={})
        result = CompletionResult(content=(TextSegment("hi"), call), stop_reason="tool_use")
        msg = Message.from_result(result)
        assert msg.role == "assistant"
        assert msg.tool_calls == [call]
        assert msg.text == "hi"

    def test_tool_results_message(self):
        msg = Message.tool_results([ToolResultSegment(call_id="c1", content="ok")])
        assert msg.role == "user"
        assert [s.call_id for s in msg.tool_result_segments] == ["c1"]

    def test_segment_type_tags(self):
        assert TextSegment("x").type == "text"
        assert ToolCallSegment(id="1", name="n").type == "tool_use"
        assert ToolResultSegment(call_id="1", content="").type == "tool_result"


class TestOrphanedResults:
    def test_paired_conversation_is_clean(self):
        msgs = [
            Message.user("go"),
            Message(role="assistant", content=[ToolCallSegment(id="c1", name="ls")]),
            Message.tool_results([ToolResultSegment(call_id="c1", content="a b")]),
        ]
        assert find_orphaned_results(msgs) == []

    def test_result_without_call_reported(self):
        msgs = [Message.tool_results([ToolResultSegment(call_id="gone", content="")])]
        assert find_orphaned_results(msgs) == ["gone"]
