"""Tests for local input-token estimates."""

from __future__ import annotations

import json

from phase_agent.protocol import ToolCall, ToolSchema, TurnInput, assistant_tool_calls_message, tool_result_message
from phase_agent.token_estimator import (
    MESSAGE_OVERHEAD_TOKENS,
    REQUEST_OVERHEAD_TOKENS,
    TOOL_OVERHEAD_TOKENS,
    estimate_message_tokens,
    estimate_text_tokens,
    estimate_turn_input_tokens,
)


class TestTextTokens:
    def test_bytes_over_four_rounded_up(self) -> None:
        assert estimate_text_tokens("abcd") == 1
        assert estimate_text_tokens("abcde") == 2

    def test_blank(self) -> None:
        assert estimate_text_tokens("") == 0
        assert estimate_text_tokens("   ") == 0
        assert estimate_text_tokens(None) == 0

    def test_multibyte_counts_bytes(self) -> None:
        # 4 chars, 8 bytes
        assert estimate_text_tokens("éééé") == 2


class TestMessageTokens:
    def test_plain_message(self) -> None:
        assert estimate_message_tokens({"role": "user", "content": "abcd"}) == MESSAGE_OVERHEAD_TOKENS + 1

    def test_tool_message(self) -> None:
        msg = tool_result_message(ToolCall(id="c1", name="ls", input={}), "abcdefgh")
        expected = MESSAGE_OVERHEAD_TOKENS + TOOL_OVERHEAD_TOKENS + 1 + 1 + 2
        assert estimate_message_tokens(msg) == expected

    def test_assistant_tool_calls(self) -> None:
        msg = assistant_tool_calls_message([ToolCall(id="c1", name="ls", input={"p": "."})])
        args_tokens = estimate_text_tokens(json.dumps({"p": "."}, separators=(",", ":")))
        expected = MESSAGE_OVERHEAD_TOKENS + TOOL_OVERHEAD_TOKENS + 1 + 1 + args_tokens
        assert estimate_message_tokens(msg) == expected

    def test_unknown_role(self) -> None:
        assert estimate_message_tokens({"role": "developer", "content": "x" * 40}) == MESSAGE_OVERHEAD_TOKENS


class TestTurnInput:
    def test_totals(self) -> None:
        tool = ToolSchema(name="ls", description="List", input_schema={"type": "object"})
        estimate = estimate_turn_input_tokens(
            TurnInput(messages=[{"role": "user", "content": "abcd"}], tools=[tool])
        )
        assert estimate.message_tokens == MESSAGE_OVERHEAD_TOKENS + 1
        assert estimate.tool_schema_tokens > TOOL_OVERHEAD_TOKENS
        assert estimate.total_tokens == REQUEST_OVERHEAD_TOKENS + estimate.message_tokens + estimate.tool_schema_tokens

    def test_no_tools(self) -> None:
        estimate = estimate_turn_input_tokens(TurnInput(messages=[]))
        assert estimate.total_tokens == REQUEST_OVERHEAD_TOKENS
