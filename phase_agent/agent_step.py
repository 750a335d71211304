"""The ``agent_step`` meta-tool: schema, payload parsing, and scratchpad rendering.

Every step the model reports its phase by calling ``agent_step``. The payload
is a tagged union on ``phase``; each variant carries only its own fields. The
ACT variant's ``tool_input`` is opaque here and is validated later by the
target tool's own schema.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Any, Iterable, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, StrictStr, TypeAdapter, ValidationError

from phase_agent.protocol import ToolSchema

logger = logging.getLogger(__name__)

AGENT_STEP_TOOL_NAME = "agent_step"

PHASES: tuple[str, ...] = ("reason", "act", "verify", "reflect", "feedback", "end")
END_STATUSES: tuple[str, ...] = ("solved", "partial", "stuck")

AGENT_STEP_TOOL_SCHEMA = ToolSchema(
    name=AGENT_STEP_TOOL_NAME,
    description=(
        "Declare your current reasoning phase, thinking, and optional action. "
        "You MUST call this tool every step of your agent loop."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "phase": {
                "type": "string",
                "enum": list(PHASES),
                "description": "Current phase of the agent loop.",
            },
            "thinking": {
                "type": "string",
                "description": "Your private reasoning for this step.",
            },
            "summary": {
                "type": "string",
                "description": "A short public summary of what this step does.",
            },
            "action": {
                "type": "object",
                "description": "Required when phase is 'act'. The tool to execute.",
                "properties": {
                    "tool_name": {"type": "string", "description": "Name of the tool to call."},
                    "tool_input": {"type": "object", "description": "Input for the tool."},
                },
                "required": ["tool_name", "tool_input"],
            },
            "feedback_message": {
                "type": "string",
                "description": "Required when phase is 'feedback'. Message to show the user.",
            },
            "end_status": {
                "type": "string",
                "enum": list(END_STATUSES),
                "description": "Required when phase is 'end'. Outcome status.",
            },
            "end_message": {
                "type": "string",
                "description": "Required when phase is 'end'. Final message to the user.",
            },
            "approaches_tried": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Approaches tried so far (used in reflect phase).",
            },
        },
        "required": ["phase", "thinking", "summary"],
    },
)


# ---------------------------------------------------------------------------
# Step payload variants
# ---------------------------------------------------------------------------


class _StepBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    thinking: StrictStr
    summary: str = ""
    approaches_tried: list[str] | None = None


class StepAction(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    tool_name: StrictStr
    tool_input: Any = Field(default_factory=dict)


class ReasonStep(_StepBase):
    phase: Literal["reason"]


class ActStep(_StepBase):
    phase: Literal["act"]
    action: StepAction


class VerifyStep(_StepBase):
    phase: Literal["verify"]


class ReflectStep(_StepBase):
    phase: Literal["reflect"]


class FeedbackStep(_StepBase):
    phase: Literal["feedback"]
    feedback_message: StrictStr


class EndStep(_StepBase):
    phase: Literal["end"]
    end_message: StrictStr
    end_status: Literal["solved", "partial", "stuck"] = "solved"


AgentStep = Annotated[
    ReasonStep | ActStep | VerifyStep | ReflectStep | FeedbackStep | EndStep,
    Field(discriminator="phase"),
]

_AGENT_STEP_ADAPTER: TypeAdapter[AgentStep] = TypeAdapter(AgentStep)


def _normalize_step_payload(raw: Mapping[str, Any]) -> dict[str, Any]:
    payload = dict(raw)
    if not isinstance(payload.get("summary"), str):
        payload["summary"] = ""

    approaches = payload.get("approaches_tried")
    if isinstance(approaches, list):
        payload["approaches_tried"] = [item for item in approaches if isinstance(item, str)]
    else:
        payload.pop("approaches_tried", None)

    if payload.get("phase") == "end" and payload.get("end_status") not in END_STATUSES:
        payload["end_status"] = "solved"

    action = payload.get("action")
    if isinstance(action, Mapping) and action.get("tool_input") is None:
        payload["action"] = {**action, "tool_input": {}}
    return payload


def parse_agent_step(raw: Any) -> AgentStep | None:
    """Validate an ``agent_step`` tool input; None for any invalid shape."""
    if not isinstance(raw, Mapping):
        return None
    if raw.get("phase") not in PHASES:
        return None
    try:
        return _AGENT_STEP_ADAPTER.validate_python(_normalize_step_payload(raw))
    except ValidationError as exc:
        logger.debug("Rejected agent_step payload (phase=%s): %s", raw.get("phase"), exc.errors())
        return None


# ---------------------------------------------------------------------------
# Scratchpad
# ---------------------------------------------------------------------------

SCRATCHPAD_MARKER = "--- Scratchpad ---"
SCRATCHPAD_END_MARKER = "--- End Scratchpad ---"
SCRATCHPAD_KEEP_FIRST = 2
SCRATCHPAD_KEEP_LAST = 3
SCRATCHPAD_TRUNCATE_THRESHOLD = 8
RESULT_PREVIEW_CHARS = 300


@dataclass(frozen=True)
class ScratchpadEntry:
    step: int
    phase: str
    thinking: str
    summary: str
    tool_result: str | None = None


def build_scratchpad_block(entries: list[ScratchpadEntry], approaches: Iterable[str]) -> str:
    approaches = list(approaches)
    if not entries and not approaches:
        return "[Scratchpad: empty]"

    lines = [SCRATCHPAD_MARKER]
    if approaches:
        lines.append(f"Approaches tried: {', '.join(approaches)}")

    if len(entries) > SCRATCHPAD_TRUNCATE_THRESHOLD:
        omitted = len(entries) - SCRATCHPAD_KEEP_FIRST - SCRATCHPAD_KEEP_LAST
        visible = entries[:SCRATCHPAD_KEEP_FIRST] + entries[-SCRATCHPAD_KEEP_LAST:]
        lines.append(f"({omitted} intermediate steps omitted)")
    else:
        visible = entries

    for entry in visible:
        lines.append(f"[Step {entry.step}] {entry.phase.upper()}: {entry.summary}")
        if entry.tool_result:
            preview = entry.tool_result
            if len(preview) > RESULT_PREVIEW_CHARS:
                preview = preview[:RESULT_PREVIEW_CHARS] + "...[truncated]"
            lines.append(f"  Result: {preview}")

    lines.append(SCRATCHPAD_END_MARKER)
    return "\n".join(lines)


def rebuild_system_message(messages: list[dict[str, Any]], entries: list[ScratchpadEntry], approaches: Iterable[str]) -> None:
    """Replace the scratchpad section of the leading system message in place."""
    if not entries:
        return
    if not messages or messages[0].get("role") != "system":
        return
    base_system = str(messages[0].get("content") or "").split(f"\n{SCRATCHPAD_MARKER}")[0].rstrip()
    messages[0]["content"] = f"{base_system}\n\n{build_scratchpad_block(entries, approaches)}"
