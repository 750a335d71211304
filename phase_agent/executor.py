"""ActionExecutor: runs one ACT step's tool call for the agent loop.

Never raises. Repeated identical calls, selection misses, validation failures
and tool exceptions all come back as ``ToolResult(ok=False, ...)`` so the model
can self-correct. Every call/result pair is reported to session memory.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Collection

from phase_agent.agent_step import AGENT_STEP_TOOL_NAME, ScratchpadEntry
from phase_agent.config import AgentLoopConfig
from phase_agent.memory import MemoryRunHandle, SessionMemory, ToolCallRecord, ToolResultRecord
from phase_agent.recall.service import ContextRecallService
from phase_agent.tool_helpers import CONTEXT_RECALL_TOOL_NAME, format_selection_error, format_validation_error
from phase_agent.tool_utils import ToolExecutor, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """Mutable state of one AgentLoop.run() invocation."""

    step: int = 0
    scratchpad: list[ScratchpadEntry] = field(default_factory=list)
    approaches_tried: list[str] = field(default_factory=list)
    tool_calls_made: int = 0
    tool_names_used: set[str] = field(default_factory=set)
    failed_tool_calls: int = 0
    reflect_cycles: int = 0
    consecutive_non_act_steps: int = 0
    force_expanded_selection_next_step: bool = False
    last_action_signature: str | None = None
    consecutive_repeated_actions: int = 0

    def add_approaches(self, approaches: list[str]) -> None:
        for approach in approaches:
            if approach not in self.approaches_tried:
                self.approaches_tried.append(approach)


def stable_stringify(value: Any) -> str:
    """Order-independent serialization: object keys sorted at every depth.

    Integral floats render like ints (``1.0`` and ``1`` are the same action)
    and keys of mixed types are compared by their string form.
    """
    if value is None or isinstance(value, (bool, str)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return json.dumps(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, dict):
        items = sorted(((str(k), v) for k, v in value.items()), key=lambda kv: kv[0])
        return "{" + ",".join(f"{json.dumps(k, ensure_ascii=False)}:{stable_stringify(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(v) for v in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def action_signature(tool_name: str, tool_input: Any) -> str:
    return f"{tool_name}::{stable_stringify(tool_input)}"


def is_selection_miss(result: ToolResult) -> bool:
    meta = result.meta or {}
    return meta.get("selectionMiss") is True or meta.get("repeatedActionBlocked") is True


class ActionExecutor:
    def __init__(
        self,
        config: AgentLoopConfig,
        session_memory: SessionMemory,
        tool_executor: ToolExecutor | None = None,
        recall_service: ContextRecallService | None = None,
    ) -> None:
        self.config = config
        self.session_memory = session_memory
        self.tool_executor = tool_executor
        self.recall_service = recall_service

    async def execute(
        self,
        client_id: str,
        state: RunState,
        tool_name: str,
        tool_input: Any,
        run_handle: MemoryRunHandle,
        allowed_tool_names: Collection[str],
    ) -> ToolResult:
        call_id = f"agent-act-{state.step}-{int(time.time() * 1000)}"
        state.tool_names_used.add(tool_name)
        self.session_memory.record_tool_call(
            client_id,
            ToolCallRecord(
                run_id=run_handle.run_id,
                session_id=run_handle.session_id,
                step_id=state.step,
                tool_call_id=call_id,
                tool_name=tool_name,
                args=tool_input,
            ),
        )

        t0 = time.monotonic()
        signature = action_signature(tool_name, tool_input)
        if state.last_action_signature == signature:
            state.consecutive_repeated_actions += 1
        else:
            state.last_action_signature = signature
            state.consecutive_repeated_actions = 1

        if state.consecutive_repeated_actions > self.config.repeated_action_limit:
            logger.warning(
                "Blocked repeated tool call tool=%s count=%d limit=%d",
                tool_name,
                state.consecutive_repeated_actions,
                self.config.repeated_action_limit,
            )
            result = ToolResult(
                ok=False,
                error=f"Blocked repeated identical tool call for '{tool_name}'. Try a different strategy.",
                meta={
                    "repeatedActionBlocked": True,
                    "repeatedCount": state.consecutive_repeated_actions,
                    "repeatedActionLimit": self.config.repeated_action_limit,
                },
            )
        elif tool_name not in allowed_tool_names:
            result = ToolResult(
                ok=False,
                error=format_selection_error(tool_name, set(allowed_tool_names)),
                meta={
                    "selectionMiss": True,
                    "availableTools": [n for n in allowed_tool_names if n != AGENT_STEP_TOOL_NAME],
                },
            )
        elif tool_name == CONTEXT_RECALL_TOOL_NAME and self.recall_service is not None:
            result = await self._execute_context_recall(tool_input, run_handle.session_id)
        elif self.tool_executor is not None:
            result = await self._execute_tool(client_id, tool_name, tool_input)
        else:
            result = ToolResult(ok=False, error=f"Tool execution unavailable for: {tool_name}")

        if is_selection_miss(result):
            state.force_expanded_selection_next_step = True
        if not result.ok:
            state.failed_tool_calls += 1

        duration_ms = int((time.monotonic() - t0) * 1000)
        self.session_memory.record_tool_result(
            client_id,
            ToolResultRecord(
                run_id=run_handle.run_id,
                session_id=run_handle.session_id,
                step_id=state.step,
                tool_call_id=call_id,
                tool_name=tool_name,
                status="success" if result.ok else "failed",
                output=result.output or "",
                error_message=result.error,
                duration_ms=duration_ms,
            ),
        )
        logger.debug("Agent ACT step %d: %s ok=%s duration_ms=%d", state.step, tool_name, result.ok, duration_ms)
        return result

    async def _execute_tool(self, client_id: str, tool_name: str, tool_input: Any) -> ToolResult:
        assert self.tool_executor is not None
        try:
            validation = self.tool_executor.validate(tool_name, tool_input)
            if not validation.valid:
                return ToolResult(
                    ok=False,
                    error=format_validation_error(tool_name, validation.error or "invalid input", validation.schema),
                )
            return await self.tool_executor.execute(tool_name, tool_input, {"clientId": client_id})
        except Exception as exc:
            logger.warning("Tool %s raised during execution: %s", tool_name, exc)
            return ToolResult(ok=False, error=str(exc) or "Unknown tool execution error")

    async def _execute_context_recall(self, tool_input: Any, active_session_id: str | None) -> ToolResult:
        assert self.recall_service is not None
        payload = tool_input if isinstance(tool_input, dict) else {}
        raw_query = payload.get("query")
        query = raw_query.strip() if isinstance(raw_query, str) else ""
        if not query:
            return ToolResult(ok=False, error="context_recall_agent requires a non-empty `query` string")

        raw_search = payload.get("searchQuery")
        search_query = raw_search.strip() if isinstance(raw_search, str) and raw_search.strip() else None

        recall = await self.recall_service.recall(
            query,
            self.session_memory.get_prompt_memory_context(),
            active_session_id,
            invocation_mode="explicit",
            search_query=search_query,
        )
        output = {
            "status": recall.status,
            "reason": recall.reason,
            "query": query,
            "searchQuery": search_query or query,
            "searchedSessionIds": recall.searched_session_ids,
            "evidence": [item.to_dict() for item in recall.evidence],
            "evidenceCount": len(recall.evidence),
            "modelCalls": recall.model_calls,
            "elapsedMs": recall.elapsed_ms,
            "foundUsefulData": recall.found_useful_data,
        }
        return ToolResult(
            ok=True,
            output=json.dumps(output, indent=2),
            meta={"status": recall.status, "evidenceCount": len(recall.evidence), "modelCalls": recall.model_calls},
        )
