"""Per-step tool subset selection.

Tools are ranked by token overlap between the step query (user content plus
recent scratchpad summaries) and each tool's name, hints, description and
schema property names. The top-K survive, plus an always-include list.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Sequence

from phase_agent.config import ToolSelectionConfig
from phase_agent.protocol import ToolSchema
from phase_agent.tool_helpers import CONTEXT_RECALL_TOOL_HINTS, CONTEXT_RECALL_TOOL_NAME, CONTEXT_RECALL_TOOL_SCHEMA
from phase_agent.tool_utils import ToolDefinition, ToolSelectionHints

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9_]+")

NAME_WEIGHT = 6
HINT_WEIGHT = 4
DESCRIPTION_WEIGHT = 2
SCHEMA_WEIGHT = 3
SELECTION_QUERY_ENTRIES = 4


@dataclass(frozen=True)
class SelectableTool:
    schema: ToolSchema
    hints: ToolSelectionHints | None = None


@dataclass(frozen=True)
class RankedTool:
    tool: SelectableTool
    score: float
    reasons: tuple[str, ...] = ()


@dataclass
class TurnToolSelection:
    tools: list[ToolSchema] = field(default_factory=list)
    allowed_tool_names: frozenset[str] = frozenset()


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def tokenize(text: str) -> list[str]:
    if not text or not text.strip():
        return []
    return _TOKEN_RE.findall(text.lower())


def score_tool(tool: SelectableTool, query: str) -> tuple[float, list[str]]:
    """Score one tool against a query. Returns (score, reasons)."""
    reasons: list[str] = []
    query_tokens = set(tokenize(query))
    if not query_tokens:
        return 0, reasons

    hints = tool.hints or ToolSelectionHints()
    properties = tool.schema.input_schema.get("properties") or {}

    name_hits = len(query_tokens & set(tokenize(tool.schema.name.replace("_", " "))))
    desc_hits = len(query_tokens & set(tokenize(tool.schema.description)))
    prop_hits = len(query_tokens & set(tokenize(" ".join(properties.keys()))))
    hint_text = " ".join([*hints.tags, *hints.aliases, *hints.examples, hints.domain or ""])
    hint_hits = len(query_tokens & set(tokenize(hint_text)))

    score: float = 0
    if name_hits:
        score += name_hits * NAME_WEIGHT
        reasons.append(f"name:{name_hits}")
    if hint_hits:
        score += hint_hits * HINT_WEIGHT
        reasons.append(f"hints:{hint_hits}")
    if desc_hits:
        score += desc_hits * DESCRIPTION_WEIGHT
        reasons.append(f"description:{desc_hits}")
    if prop_hits:
        score += prop_hits * SCHEMA_WEIGHT
        reasons.append(f"schema:{prop_hits}")
    if isinstance(hints.priority, (int, float)) and not isinstance(hints.priority, bool):
        score += hints.priority
        reasons.append(f"priority:{hints.priority}")

    return score, reasons


def select_tools(
    query: str,
    tools: Sequence[SelectableTool],
    top_k: int,
    always_include: Sequence[str] = (),
) -> tuple[list[SelectableTool], list[RankedTool]]:
    """Rank tools and keep the top-K plus any always-include names.

    Returns (selected, ranked). Duplicate names keep their first occurrence.
    """
    source: dict[str, SelectableTool] = {}
    for tool in tools:
        source.setdefault(tool.schema.name, tool)
    if not source:
        return [], []

    ranked = []
    for tool in source.values():
        score, reasons = score_tool(tool, query)
        ranked.append(RankedTool(tool=tool, score=score, reasons=tuple(reasons)))
    ranked.sort(key=lambda r: (-r.score, r.tool.schema.name))

    selected = {r.tool.schema.name: r.tool for r in ranked[: max(1, top_k)]}
    for name in always_include:
        if name in source:
            selected[name] = source[name]
    return list(selected.values()), ranked


# ---------------------------------------------------------------------------
# Per-step selector
# ---------------------------------------------------------------------------


def build_selectable_tools(definitions: Sequence[ToolDefinition], *, include_recall: bool = True) -> list[SelectableTool]:
    selectable = [
        SelectableTool(
            schema=ToolSchema(
                name=d.name,
                description=d.description,
                input_schema=d.input_schema or {"type": "object"},
            ),
            hints=d.selection_hints,
        )
        for d in definitions
    ]
    if include_recall:
        selectable.append(SelectableTool(schema=CONTEXT_RECALL_TOOL_SCHEMA, hints=CONTEXT_RECALL_TOOL_HINTS))
    return selectable


def build_selection_query(user_content: str, recent: Sequence[tuple[str, str]]) -> str:
    """Join user content with "phase summary" pairs of the latest scratchpad entries."""
    scratchpad_summary = " ".join(f"{phase} {summary}" for phase, summary in recent[-SELECTION_QUERY_ENTRIES:])
    return "\n".join(chunk for chunk in (user_content, scratchpad_summary) if chunk.strip()).strip()


class ToolSelector:
    """Chooses the tool subset exposed to the model for one step."""

    def __init__(self, config: ToolSelectionConfig) -> None:
        self.config = config

    def select(self, query: str, available: Sequence[SelectableTool], *, expanded: bool = False) -> TurnToolSelection:
        if not available:
            return TurnToolSelection()

        if not self.config.enabled:
            schemas = [tool.schema for tool in available]
            return TurnToolSelection(schemas, frozenset(s.name for s in schemas))

        top_k = self.config.retry_top_k if expanded else self.config.top_k
        selected, ranked = select_tools(
            query,
            available,
            top_k,
            always_include=[*self.config.always_include, CONTEXT_RECALL_TOOL_NAME],
        )
        if not selected:
            # fail open
            selected = list(available)

        schemas = [tool.schema for tool in selected]
        logger.debug(
            "Tool selection top_k=%d expanded=%s selected=%s top=%s",
            top_k,
            expanded,
            [s.name for s in schemas],
            [(r.tool.schema.name, r.score) for r in ranked[:3]],
        )
        return TurnToolSelection(schemas, frozenset(s.name for s in schemas))
