"""Phase-driven agent loop.

Each step the model reports a phase through the ``agent_step`` meta-tool
(reason, act, verify, reflect, feedback, end) and may also call exposed tools
directly. The loop stops on a terminal phase, on the step or no-progress
budget, or when the escalation heuristic decides the run should be handed to
a more capable mode.

Usage::

    loop = AgentLoop(provider, session_memory=memory, tool_executor=tools,
                     recall_service=recall, config=AgentLoopConfig())
    result = await loop.run("client-1", "Summarise the logs", system_context,
                            run_handle=MemoryRunHandle(session_id="s1", run_id="r1"))
    result.type          # "reply" | "feedback" | "escalate"
    result.end_status    # "solved" | "partial" | "stuck" (reply / escalate)

Only a provider without native tool calling raises
(``ProviderCapabilityError``); every other problem ends up in the result.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from phase_agent.agent_step import (
    AGENT_STEP_TOOL_NAME,
    AGENT_STEP_TOOL_SCHEMA,
    ActStep,
    AgentStep,
    EndStep,
    FeedbackStep,
    ReasonStep,
    ReflectStep,
    ScratchpadEntry,
    VerifyStep,
    parse_agent_step,
    rebuild_system_message,
)
from phase_agent.config import AgentLoopConfig
from phase_agent.errors import ProviderCapabilityError
from phase_agent.executor import ActionExecutor, RunState
from phase_agent.memory import AgentStepRecord, MemoryRunHandle, SessionMemory
from phase_agent.protocol import (
    LLMProvider,
    Message,
    ToolCall,
    TurnInput,
    assistant_tool_calls_message,
    tool_result_message,
)
from phase_agent.recall.service import ContextRecallService
from phase_agent.token_estimator import estimate_turn_input_tokens
from phase_agent.tool_helpers import format_tool_result
from phase_agent.tool_selection import (
    ToolSelector,
    TurnToolSelection,
    build_selectable_tools,
    build_selection_query,
)
from phase_agent.tool_utils import ToolDefinition, ToolExecutor

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict[str, Any]], None]

EXHAUSTED_MESSAGE = "I've exhausted my reasoning steps. Here's what I found so far based on my analysis."
EMPTY_RESPONSE_MESSAGE = "Empty tool call response."
INVALID_STEP_ERROR = "Invalid agent_step input. Check required fields."
ESCALATION_REASON = "tool_volume_and_diversity_with_low_progress"

__all__ = [
    "AgentLoop",
    "AgentLoopResult",
    "EscalationDetails",
    "RunState",
]


@dataclass(frozen=True)
class EscalationDetails:
    reason: str
    summary: str
    tool_names_used: list[str]
    failed_tool_calls: int
    reflect_cycles: int


@dataclass
class AgentLoopResult:
    type: Literal["reply", "feedback", "escalate"]
    content: str
    total_steps: int
    tool_calls_made: int
    end_status: Literal["solved", "partial", "stuck"] | None = None
    escalation: EscalationDetails | None = None
    messages: list[Message] = field(default_factory=list, repr=False)


class AgentLoop:
    def __init__(
        self,
        provider: LLMProvider,
        *,
        session_memory: SessionMemory,
        tool_executor: ToolExecutor | None = None,
        recall_service: ContextRecallService | None = None,
        on_event: EventCallback | None = None,
        config: AgentLoopConfig | None = None,
        tool_definitions: list[ToolDefinition] | None = None,
    ) -> None:
        self.provider = provider
        self.session_memory = session_memory
        self.tool_executor = tool_executor
        self.recall_service = recall_service
        self.on_event = on_event
        self.config = config or AgentLoopConfig()
        self.tool_definitions = list(tool_definitions or [])
        self.selector = ToolSelector(self.config.tool_selection)
        self.executor = ActionExecutor(self.config, session_memory, tool_executor, recall_service)

    async def run(
        self,
        client_id: str,
        user_content: str,
        system_context: str = "",
        *,
        run_handle: MemoryRunHandle,
        dynamic_system_tokens: int = 0,
        static_system_tokens: int = 0,
        model_name: str | None = None,
    ) -> AgentLoopResult:
        if not self.provider.capabilities.native_tool_calling:
            raise ProviderCapabilityError(f"Provider '{self.provider.name}' does not support native tool calling.")

        state = RunState()
        messages: list[Message] = []
        if system_context.strip():
            messages.append({"role": "system", "content": system_context})
        messages.append({"role": "user", "content": user_content})

        logger.info("Agent run start client=%s run=%s session=%s", client_id, run_handle.run_id, run_handle.session_id)

        while (
            state.step < self._effective_limit(state)
            and state.consecutive_non_act_steps < self.config.no_progress_limit
        ):
            state.step += 1
            rebuild_system_message(messages, state.scratchpad, state.approaches_tried)

            selection = self._select_turn_tools(user_content, state)
            turn_input = TurnInput(messages=messages, tools=[AGENT_STEP_TOOL_SCHEMA, *selection.tools])
            self._emit_context_size(
                client_id, turn_input, state.step, dynamic_system_tokens, static_system_tokens, model_name
            )

            turn = await self.provider.generate_turn(turn_input)

            if turn.type == "assistant":
                return self._finish(state, messages, "reply", turn.content, end_status="solved")

            calls = list(turn.calls)
            if not calls:
                return self._finish(state, messages, "reply", EMPTY_RESPONSE_MESSAGE, end_status="stuck")

            step_call = next((c for c in calls if c.name == AGENT_STEP_TOOL_NAME), None)
            direct_calls = [c for c in calls if c.name != AGENT_STEP_TOOL_NAME]

            if step_call is not None:
                parsed = parse_agent_step(step_call.input)
                if parsed is None:
                    logger.warning("Invalid agent_step payload at step %d", state.step)
                    messages.append(assistant_tool_calls_message([step_call], turn.assistant_content))
                    messages.append(tool_result_message(step_call, json.dumps({"error": INVALID_STEP_ERROR})))
                    continue

                phase_result = await self._route_phase(
                    client_id,
                    state,
                    parsed,
                    step_call,
                    messages,
                    run_handle,
                    selection.allowed_tool_names,
                    assistant_content=turn.assistant_content,
                )
                if phase_result is not None:
                    return phase_result

            if direct_calls:
                await self._handle_direct_tool_calls(
                    client_id,
                    state,
                    direct_calls,
                    messages,
                    run_handle,
                    selection.allowed_tool_names,
                    # text already went out with the agent_step call
                    assistant_content=turn.assistant_content if step_call is None else None,
                )

            escalation = self._evaluate_escalation(state)
            if escalation is not None:
                self.session_memory.record_agent_step(
                    client_id,
                    AgentStepRecord(
                        run_id=run_handle.run_id,
                        session_id=run_handle.session_id,
                        step=state.step,
                        phase="escalate",
                        summary=escalation.summary,
                        approaches_tried=tuple(state.approaches_tried),
                        end_status="partial",
                    ),
                )
                logger.info("Agent run escalating: %s", escalation.summary)
                return self._finish(
                    state, messages, "escalate", escalation.summary, end_status="partial", escalation=escalation
                )

        logger.warning(
            "Agent run stopped without a final answer step=%d tool_calls=%d non_act=%d",
            state.step,
            state.tool_calls_made,
            state.consecutive_non_act_steps,
        )
        return self._finish(state, messages, "reply", EXHAUSTED_MESSAGE, end_status="stuck")

    # ------------------------------------------------------------------
    # Phase dispatch
    # ------------------------------------------------------------------

    async def _route_phase(
        self,
        client_id: str,
        state: RunState,
        parsed: AgentStep,
        call: ToolCall,
        messages: list[Message],
        run_handle: MemoryRunHandle,
        allowed_tool_names: frozenset[str],
        assistant_content: str | None = None,
    ) -> AgentLoopResult | None:
        messages.append(assistant_tool_calls_message([call], assistant_content))

        if isinstance(parsed, ReasonStep):
            state.scratchpad.append(ScratchpadEntry(state.step, "reason", parsed.thinking, parsed.summary))
            messages.append(tool_result_message(call, json.dumps({"acknowledged": True, "step": state.step})))
            state.consecutive_non_act_steps += 1
            return None

        if isinstance(parsed, ActStep):
            action = parsed.action
            result = await self.executor.execute(
                client_id, state, action.tool_name, action.tool_input, run_handle, allowed_tool_names
            )
            result_str = format_tool_result(action.tool_name, result)
            state.scratchpad.append(ScratchpadEntry(state.step, "act", parsed.thinking, parsed.summary, result_str))
            messages.append(tool_result_message(call, result_str))
            state.tool_calls_made += 1
            state.consecutive_non_act_steps = 0
            return None

        if isinstance(parsed, VerifyStep):
            state.scratchpad.append(ScratchpadEntry(state.step, "verify", parsed.thinking, parsed.summary))
            messages.append(tool_result_message(call, json.dumps({"acknowledged": True})))
            state.consecutive_non_act_steps += 1
            return None

        if isinstance(parsed, ReflectStep):
            state.add_approaches(parsed.approaches_tried or [])
            state.reflect_cycles += 1
            state.scratchpad.append(ScratchpadEntry(state.step, "reflect", parsed.thinking, parsed.summary))
            messages.append(
                tool_result_message(
                    call, json.dumps({"acknowledged": True, "approaches_recorded": len(state.approaches_tried)})
                )
            )
            state.consecutive_non_act_steps += 1
            return None

        if isinstance(parsed, FeedbackStep):
            self.session_memory.record_assistant_feedback(
                client_id, run_handle.run_id, run_handle.session_id, parsed.feedback_message
            )
            self._record_agent_step(client_id, state, parsed, run_handle)
            return self._finish(state, messages, "feedback", parsed.feedback_message)

        if isinstance(parsed, EndStep):
            self._record_agent_step(client_id, state, parsed, run_handle)
            return self._finish(state, messages, "reply", parsed.end_message, end_status=parsed.end_status)

        return None

    async def _handle_direct_tool_calls(
        self,
        client_id: str,
        state: RunState,
        calls: list[ToolCall],
        messages: list[Message],
        run_handle: MemoryRunHandle,
        allowed_tool_names: frozenset[str],
        assistant_content: str | None = None,
    ) -> None:
        """Run tool calls made outside agent_step as implicit ACT steps, in call order."""
        messages.append(assistant_tool_calls_message(calls, assistant_content))
        for call in calls:
            result = await self.executor.execute(client_id, state, call.name, call.input, run_handle, allowed_tool_names)
            result_str = format_tool_result(call.name, result)
            state.scratchpad.append(
                ScratchpadEntry(state.step, "act", f"Direct tool call: {call.name}", f"Execute {call.name}", result_str)
            )
            messages.append(tool_result_message(call, result_str))
            state.tool_calls_made += 1
            state.consecutive_non_act_steps = 0

    def _record_agent_step(self, client_id: str, state: RunState, parsed: AgentStep, run_handle: MemoryRunHandle) -> None:
        self.session_memory.record_agent_step(
            client_id,
            AgentStepRecord(
                run_id=run_handle.run_id,
                session_id=run_handle.session_id,
                step=state.step,
                phase=parsed.phase,
                summary=parsed.summary,
                approaches_tried=tuple(state.approaches_tried),
                action_tool_name=parsed.action.tool_name if isinstance(parsed, ActStep) else None,
                end_status=parsed.end_status if isinstance(parsed, EndStep) else None,
            ),
        )

    # ------------------------------------------------------------------
    # Budgets and escalation
    # ------------------------------------------------------------------

    def _effective_limit(self, state: RunState) -> int:
        return min(
            self.config.base_step_limit + state.tool_calls_made * self.config.step_limit_per_tool,
            self.config.max_step_limit,
        )

    def _evaluate_escalation(self, state: RunState) -> EscalationDetails | None:
        escalation = self.config.escalation
        if not escalation.enabled:
            return None

        min_calls_reached = state.tool_calls_made > escalation.min_tool_calls
        diversity_reached = len(state.tool_names_used) >= escalation.min_distinct_tools
        weak_convergence = (
            state.failed_tool_calls >= escalation.min_failed_tool_calls
            or state.reflect_cycles >= escalation.min_reflect_cycles
        )
        if not (min_calls_reached and diversity_reached and weak_convergence):
            return None

        tool_names = sorted(state.tool_names_used)
        return EscalationDetails(
            reason=ESCALATION_REASON,
            summary=(
                "Escalating to maximum mode: "
                f"{state.tool_calls_made} tool call(s), {len(tool_names)} tool type(s), "
                f"{state.failed_tool_calls} failed call(s), {state.reflect_cycles} reflect cycle(s)."
            ),
            tool_names_used=tool_names,
            failed_tool_calls=state.failed_tool_calls,
            reflect_cycles=state.reflect_cycles,
        )

    # ------------------------------------------------------------------
    # Tool selection and telemetry
    # ------------------------------------------------------------------

    def _select_turn_tools(self, user_content: str, state: RunState) -> TurnToolSelection:
        definitions = self.tool_definitions
        if not definitions and self.tool_executor is not None:
            definitions = self.tool_executor.definitions()
        available = build_selectable_tools(definitions, include_recall=self.recall_service is not None)

        expanded = state.force_expanded_selection_next_step
        query = build_selection_query(user_content, [(e.phase, e.summary) for e in state.scratchpad])
        selection = self.selector.select(query, available, expanded=expanded)
        state.force_expanded_selection_next_step = False
        return selection

    def _emit_context_size(
        self,
        client_id: str,
        turn_input: TurnInput,
        step: int,
        dynamic_system_tokens: int,
        static_system_tokens: int,
        model_name: str | None,
    ) -> None:
        estimate = estimate_turn_input_tokens(turn_input)
        runtime_dynamic_tokens = max(0, estimate.total_tokens - static_system_tokens)
        model = model_name or getattr(self.provider, "model", None) or self.provider.name

        if self.on_event is not None:
            self.on_event(
                client_id,
                {
                    "type": "context_size",
                    "mode": "local_estimate",
                    "step": step,
                    "provider": self.provider.name,
                    "model": model,
                    "inputTokens": estimate.total_tokens,
                    "messageTokens": estimate.message_tokens,
                    "toolSchemaTokens": estimate.tool_schema_tokens,
                    "staticSystemTokens": static_system_tokens,
                    "dynamicSystemTokens": dynamic_system_tokens,
                    "runtimeDynamicTokens": runtime_dynamic_tokens,
                },
            )
        logger.debug(
            "Context tokens before model call step=%d total=%d provider=%s model=%s static=%d dynamic=%d",
            step,
            estimate.total_tokens,
            self.provider.name,
            model,
            static_system_tokens,
            runtime_dynamic_tokens,
        )

    @staticmethod
    def _finish(
        state: RunState,
        messages: list[Message],
        result_type: Literal["reply", "feedback", "escalate"],
        content: str,
        *,
        end_status: Literal["solved", "partial", "stuck"] | None = None,
        escalation: EscalationDetails | None = None,
    ) -> AgentLoopResult:
        logger.info(
            "Agent run finished type=%s end_status=%s steps=%d tool_calls=%d",
            result_type,
            end_status,
            state.step,
            state.tool_calls_made,
        )
        return AgentLoopResult(
            type=result_type,
            content=content,
            total_steps=state.step,
            tool_calls_made=state.tool_calls_made,
            end_status=end_status,
            escalation=escalation,
            messages=list(messages),
        )
