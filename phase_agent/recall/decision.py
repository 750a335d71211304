"""Gate and decide whether a query needs prior-session recall."""

from __future__ import annotations

import logging

from phase_agent.config import ContextRecallLimits
from phase_agent.memory import PromptMemoryContext
from phase_agent.recall.model import RecallModel, payload_json
from phase_agent.recall.text import compact_snippet, is_short_referential, matches_history_reference
from phase_agent.recall.types import RecallDecision, RecallRuntimeState

logger = logging.getLogger(__name__)

EXPLICIT_REASON = "explicit context_recall_agent tool invocation"
DECISION_POLICY = "Set needs_recall=true if prior-session memory is likely required for correctness."


class RecallDecisionEngine:
    """Cheap regex gate plus a model-backed needs_recall decision."""

    def __init__(self, model: RecallModel, limits: ContextRecallLimits, *, enabled: bool = True) -> None:
        self.model = model
        self.limits = limits
        self.enabled = enabled

    def should_trigger(self, query: str, memory_context: PromptMemoryContext) -> bool:
        if not self.enabled:
            return False
        trimmed = query.strip()
        if not trimmed:
            return False
        if matches_history_reference(trimmed):
            return True
        return is_short_referential(trimmed, len(memory_context.conversation_turns))

    def fallback_decision(self, query: str, memory_context: PromptMemoryContext) -> RecallDecision:
        trimmed = query.strip()
        if matches_history_reference(trimmed):
            return RecallDecision(True, "history-reference detected in user query", query)
        if is_short_referential(trimmed, len(memory_context.conversation_turns)):
            return RecallDecision(True, "short referential query with limited active context", query)
        return RecallDecision(False, "no clear history dependency detected", query)

    @staticmethod
    def explicit_decision(query: str, search_query: str | None = None) -> RecallDecision:
        if isinstance(search_query, str) and search_query.strip():
            return RecallDecision(True, EXPLICIT_REASON, search_query.strip())
        return RecallDecision(True, EXPLICIT_REASON, query)

    async def decide(
        self,
        query: str,
        memory_context: PromptMemoryContext,
        state: RecallRuntimeState,
    ) -> RecallDecision:
        fallback = self.fallback_decision(query, memory_context)
        parsed = await self.model.call_json(
            "DECIDE",
            "recall_decide",
            state,
            payload_json=payload_json(self._decision_payload(query, memory_context)),
        )
        if not isinstance(parsed, dict) or not isinstance(parsed.get("needs_recall"), bool):
            logger.debug("Recall decision fell back to heuristic: %s", fallback.reason)
            return fallback

        reason = parsed.get("reason")
        search_query = parsed.get("search_query")
        return RecallDecision(
            needs_recall=parsed["needs_recall"],
            reason=reason.strip() if isinstance(reason, str) and reason.strip() else fallback.reason,
            search_query=search_query.strip() if isinstance(search_query, str) and search_query.strip() else query,
        )

    def _decision_payload(self, query: str, memory_context: PromptMemoryContext) -> dict:
        window = self.limits.decision_context_turns
        recent = memory_context.conversation_turns[-window:] if window > 0 else []
        return {
            "query": query,
            "previous_session_summary": compact_snippet(memory_context.previous_session_summary, 380),
            "recent_turns": [
                {"id": f"recent-{i + 1}", "role": turn.role, "text": compact_snippet(turn.content, 260)}
                for i, turn in enumerate(recent)
            ],
            "policy": DECISION_POLICY,
        }
