"""Local input-token estimates for a model turn.

A rough 4-bytes-per-token estimate plus fixed per-request, per-message and
per-tool overheads. Used for context-size telemetry and the recall evidence
token budget; never sent to a provider.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

from phase_agent.protocol import Message, TurnInput

BYTES_PER_TOKEN = 4
REQUEST_OVERHEAD_TOKENS = 3
MESSAGE_OVERHEAD_TOKENS = 4
TOOL_OVERHEAD_TOKENS = 8


@dataclass(frozen=True)
class InputTokenEstimate:
    message_tokens: int
    tool_schema_tokens: int
    total_tokens: int


def estimate_text_tokens(text: str | None) -> int:
    if not text or not text.strip():
        return 0
    return max(1, math.ceil(len(text.encode("utf-8")) / BYTES_PER_TOKEN))


def _estimate_serialized_tokens(value: Any) -> int:
    return estimate_text_tokens(json.dumps(value, separators=(",", ":"), default=str))


def _tool_call_arguments(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw if raw is not None else {}


def estimate_message_tokens(message: Message) -> int:
    role = message.get("role")
    content = message.get("content")
    text = content if isinstance(content, str) else ""

    if role == "tool":
        return (
            MESSAGE_OVERHEAD_TOKENS
            + TOOL_OVERHEAD_TOKENS
            + estimate_text_tokens(message.get("tool_call_id"))
            + estimate_text_tokens(message.get("name"))
            + estimate_text_tokens(text)
        )

    tool_calls = message.get("tool_calls") or []
    if role == "assistant" and tool_calls:
        total = MESSAGE_OVERHEAD_TOKENS + estimate_text_tokens(text)
        for call in tool_calls:
            function = call.get("function") or {}
            total += (
                TOOL_OVERHEAD_TOKENS
                + estimate_text_tokens(call.get("id"))
                + estimate_text_tokens(function.get("name"))
                + _estimate_serialized_tokens(_tool_call_arguments(function.get("arguments")))
            )
        return total

    if role in ("system", "user", "assistant"):
        return MESSAGE_OVERHEAD_TOKENS + estimate_text_tokens(text)
    return MESSAGE_OVERHEAD_TOKENS


def estimate_turn_input_tokens(turn_input: TurnInput) -> InputTokenEstimate:
    message_tokens = sum(estimate_message_tokens(m) for m in turn_input.messages)
    tool_schema_tokens = sum(
        TOOL_OVERHEAD_TOKENS
        + estimate_text_tokens(tool.name)
        + estimate_text_tokens(tool.description)
        + _estimate_serialized_tokens(tool.input_schema)
        for tool in turn_input.tools or []
    )
    return InputTokenEstimate(
        message_tokens=message_tokens,
        tool_schema_tokens=tool_schema_tokens,
        total_tokens=REQUEST_OVERHEAD_TOKENS + message_tokens + tool_schema_tokens,
    )
