"""Budget-gated JSON model calls for the recall sub-agent.

Every sub-call (decide, select chunks, extract evidence, rerank) goes through
``RecallModel.call_json``. A call that is unaffordable, fails, or returns
unparsable output yields ``None`` and the caller falls back to its heuristic.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

from phase_agent.config import ContextRecallLimits
from phase_agent.memory import ConversationTurn, RecalledContextEvidence
from phase_agent.prompts import render_prompt
from phase_agent.protocol import LLMProvider, TurnInput
from phase_agent.recall.text import parse_json
from phase_agent.recall.types import RecallRuntimeState
from phase_agent.token_estimator import estimate_text_tokens

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

EVIDENCE_OVERHEAD_TOKENS = 18


def monotonic_ms() -> float:
    return time.monotonic() * 1000


def payload_json(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


class RecallModel:
    """Provider access plus time/model-call budget checks for one service."""

    def __init__(
        self,
        provider: LLMProvider | None,
        limits: ContextRecallLimits,
        now: Clock = monotonic_ms,
    ) -> None:
        self.provider = provider
        self.limits = limits
        self.now = now

    def elapsed_ms(self, state: RecallRuntimeState) -> int:
        return int(self.now() - state.started_at)

    def is_deadline_exceeded(self, state: RecallRuntimeState) -> bool:
        return self.now() - state.started_at > self.limits.total_recall_ms

    def can_call_model(self, state: RecallRuntimeState) -> bool:
        if self.provider is None:
            return False
        if state.model_calls >= self.limits.max_model_calls:
            return False
        return not self.is_deadline_exceeded(state)

    async def call_json(self, mode: str, template: str, state: RecallRuntimeState, **context: Any) -> Any:
        """Render ``template`` and ask the provider for strict JSON."""
        if not self.can_call_model(state) or self.provider is None:
            logger.debug("Recall model call skipped (%s): budget exhausted", mode)
            return None

        messages = render_prompt(template, **context)
        state.model_calls += 1
        try:
            output = await self.provider.generate_turn(TurnInput(messages=messages))
        except Exception as exc:
            logger.warning("Context recall model call failed (%s): %s", mode, exc)
            return None
        if getattr(output, "type", None) != "assistant":
            return None

        parsed = parse_json(output.content)
        if parsed is None:
            logger.warning("Context recall model returned unparsable JSON (%s)", mode)
        logger.debug("Recall model call %s done (calls=%d)", mode, state.model_calls)
        return parsed

    def apply_turn_limit(self, turns: list[ConversationTurn], state: RecallRuntimeState) -> list[ConversationTurn]:
        cap = self.limits.max_turns_per_session
        if cap <= 0 or len(turns) <= cap:
            return turns
        state.truncated = True
        return turns[:cap]


def estimate_evidence_cost(item: RecalledContextEvidence) -> int:
    return (
        EVIDENCE_OVERHEAD_TOKENS
        + estimate_text_tokens(item.session_id)
        + estimate_text_tokens(item.turn_ref)
        + estimate_text_tokens(item.timestamp)
        + estimate_text_tokens(item.snippet)
        + estimate_text_tokens(item.why_relevant)
    )
