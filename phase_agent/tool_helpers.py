"""Built-in recall tool schema and tool-result formatting."""

from __future__ import annotations

import json
from typing import Any

from phase_agent.agent_step import AGENT_STEP_TOOL_NAME
from phase_agent.protocol import ToolSchema
from phase_agent.tool_utils import ToolResult, ToolSelectionHints

CONTEXT_RECALL_TOOL_NAME = "context_recall_agent"

CONTEXT_RECALL_TOOL_SCHEMA = ToolSchema(
    name=CONTEXT_RECALL_TOOL_NAME,
    description="Search prior sessions when historical context is needed.",
    input_schema={
        "type": "object",
        "required": ["query"],
        "properties": {
            "query": {
                "type": "string",
                "description": "Question to search in prior sessions.",
            },
            "searchQuery": {
                "type": "string",
                "description": "Optional keyword-focused query used for retrieval.",
            },
        },
    },
)

CONTEXT_RECALL_TOOL_HINTS = ToolSelectionHints(
    tags=("memory", "history", "context", "recall"),
    aliases=("search_history", "previous_sessions"),
    examples=("what did we discuss before",),
    domain="memory",
    priority=1,
)

MAX_LISTED_TOOLS = 20


def format_tool_result(tool_name: str, result: ToolResult) -> str:
    return json.dumps(
        {
            "tool": tool_name,
            "ok": result.ok,
            "output": result.output or "",
            "error": result.error or "",
            "meta": result.meta or {},
        },
        indent=2,
        default=str,
    )


def format_validation_error(
    tool_name: str,
    validation_error: str,
    schema: dict[str, Any] | None = None,
) -> str:
    """Validation failure text that carries the schema so the model can retry."""
    lines = [f"Tool '{tool_name}' input validation failed: {validation_error}"]

    if schema:
        properties = schema.get("properties")
        required = schema.get("required")
        if properties:
            lines.append("")
            lines.append(f"Required schema for '{tool_name}':")
            lines.append(json.dumps(properties, indent=2))
        if required:
            lines.append("")
            lines.append(f"Required fields: {', '.join(required)}")

    return "\n".join(lines)


def format_selection_error(tool_name: str, allowed_tool_names: set[str] | frozenset[str]) -> str:
    available = sorted(name for name in allowed_tool_names if name != AGENT_STEP_TOOL_NAME)
    prefix = f"Tool '{tool_name}' is not available in this step's selected tool set."
    if not available:
        return f"{prefix} No executable tools are currently exposed."

    shown = available[:MAX_LISTED_TOOLS]
    suffix = f" (showing {len(shown)}/{len(available)})" if len(available) > len(shown) else ""
    return f"{prefix} Available tools{suffix}: {', '.join(shown)}"
