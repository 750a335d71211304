"""Provider-facing turn types and the LLMProvider protocol.

Transcript messages are plain OpenAI chat-format dicts::

    {"role": "system", "content": "..."}
    {"role": "user", "content": "..."}
    {"role": "assistant", "content": None, "tool_calls": [...]}
    {"role": "tool", "tool_call_id": "call_1", "name": "shell", "content": "..."}

A provider answers one ``TurnInput`` with either an ``AssistantTurn`` (plain
text, no tool calls) or a ``ToolCallsTurn``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol, Union, runtime_checkable

Message = dict[str, Any]


@dataclass(frozen=True)
class ToolSchema:
    """Tool schema as exposed to the model."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: Any = None


@dataclass(frozen=True)
class AssistantTurn:
    content: str
    type: str = "assistant"


@dataclass(frozen=True)
class ToolCallsTurn:
    calls: list[ToolCall]
    assistant_content: str | None = None
    type: str = "tool_calls"


TurnOutput = Union[AssistantTurn, ToolCallsTurn]


@dataclass
class TurnInput:
    messages: list[Message]
    tools: list[ToolSchema] | None = None


@dataclass(frozen=True)
class ProviderCapabilities:
    native_tool_calling: bool = True


@runtime_checkable
class LLMProvider(Protocol):
    """A model backend the agent loop and the recall service can drive."""

    name: str
    capabilities: ProviderCapabilities

    async def generate_turn(self, turn_input: TurnInput) -> TurnOutput: ...


def assistant_tool_calls_message(calls: list[ToolCall], content: str | None = None) -> Message:
    """Build the assistant transcript entry that precedes tool results."""
    return {
        "role": "assistant",
        "content": content,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.input if call.input is not None else {})},
            }
            for call in calls
        ],
    }


def tool_result_message(call: ToolCall, content: str) -> Message:
    return {"role": "tool", "tool_call_id": call.id, "name": call.name, "content": content}
