"""ContextRecallService: end-to-end recall over prior sessions.

Pipeline: gate → decide → search session summaries → recursive per-session
evidence extraction → budget-aware accumulation → dedupe → rerank.

``recall()`` never raises. Every model sub-call is budget-gated and falls back
to a deterministic heuristic, and any unexpected exception degrades the whole
call to ``not_found``::

    service = ContextRecallService(memory, provider, config=ContextRecallConfig())
    result = await service.recall("what did we decide about the release?", memory.get_prompt_memory_context())
    result.status  # skipped | not_found | found | partial
"""

from __future__ import annotations

import logging

from phase_agent.config import ContextRecallConfig
from phase_agent.memory import PromptMemoryContext, RecalledContextEvidence, SessionMemory
from phase_agent.protocol import LLMProvider
from phase_agent.recall.decision import RecallDecisionEngine
from phase_agent.recall.model import Clock, RecallModel, monotonic_ms
from phase_agent.recall.ranker import EvidenceRanker
from phase_agent.recall.retriever import HierarchicalRetriever
from phase_agent.recall.text import to_keywords
from phase_agent.recall.types import (
    ContextRecallResult,
    IndexedTurn,
    InvocationMode,
    RecallRuntimeState,
)

logger = logging.getLogger(__name__)


class ContextRecallService:
    def __init__(
        self,
        session_memory: SessionMemory,
        provider: LLMProvider | None = None,
        *,
        config: ContextRecallConfig | None = None,
        now: Clock = monotonic_ms,
    ) -> None:
        self.session_memory = session_memory
        self.config = config or ContextRecallConfig()
        self.limits = self.config.limits
        self.model = RecallModel(provider, self.limits, now)
        self.decision = RecallDecisionEngine(self.model, self.limits, enabled=self.config.enabled)
        self.retriever = HierarchicalRetriever(self.model, self.limits)
        self.ranker = EvidenceRanker(self.model, self.limits)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def should_trigger(self, query: str, memory_context: PromptMemoryContext) -> bool:
        return self.decision.should_trigger(query, memory_context)

    async def recall(
        self,
        query: str,
        memory_context: PromptMemoryContext,
        active_session_id: str | None = None,
        *,
        invocation_mode: InvocationMode = "auto",
        search_query: str | None = None,
    ) -> ContextRecallResult:
        state = RecallRuntimeState(
            started_at=self.model.now(),
            remaining_tokens=self.limits.evidence_token_budget,
        )

        if not self.enabled:
            return ContextRecallResult(status="skipped", reason="Context recall is disabled")
        if invocation_mode == "auto" and not self.should_trigger(query, memory_context):
            return ContextRecallResult(status="skipped", reason="Recall trigger conditions not met")
        if self.model.provider is None:
            return ContextRecallResult(status="skipped", reason="Context recall agent unavailable: no LLM provider")

        try:
            return await self._run(query, memory_context, active_session_id, invocation_mode, search_query, state)
        except Exception:
            logger.exception("Context recall failed")
            return ContextRecallResult(
                status="not_found",
                reason="Context recall failed unexpectedly",
                elapsed_ms=self.model.elapsed_ms(state),
                model_calls=state.model_calls,
                trigger_reason=state.trigger_reason,
            )

    async def _run(
        self,
        query: str,
        memory_context: PromptMemoryContext,
        active_session_id: str | None,
        invocation_mode: InvocationMode,
        search_query: str | None,
        state: RecallRuntimeState,
    ) -> ContextRecallResult:
        if invocation_mode == "explicit":
            decision = self.decision.explicit_decision(query, search_query)
        else:
            decision = await self.decision.decide(query, memory_context, state)
        state.trigger_reason = decision.reason

        if not decision.needs_recall:
            return self._result(state, "skipped", decision.reason, [], [])

        hits = await self.session_memory.search_session_summaries(
            decision.search_query, self.limits.max_matched_sessions + 2
        )
        candidates = [hit for hit in hits if hit.session_id != active_session_id][: self.limits.max_matched_sessions]
        if not candidates:
            return self._result(state, "not_found", "No relevant historical sessions matched", [], [])

        query_terms = to_keywords(query)
        evidence: list[RecalledContextEvidence] = []
        searched: list[str] = []

        for hit in candidates:
            if self.model.is_deadline_exceeded(state):
                state.truncated = True
                break

            searched.append(hit.session_id)
            all_turns = await self.session_memory.load_session_turns(hit.session_id)
            if not all_turns:
                continue

            turns = self.model.apply_turn_limit(all_turns, state)
            indexed = [IndexedTurn(index=i, turn=turn) for i, turn in enumerate(turns)]
            session_evidence = await self.retriever.extract_session_evidence(
                query, query_terms, hit, indexed, self.limits.recursion_depth, state
            )
            logger.debug(
                "Recall session %s: turns=%d evidence=%d model_calls=%d",
                hit.session_id,
                len(turns),
                len(session_evidence),
                state.model_calls,
            )
            if self.ranker.accumulate(evidence, session_evidence, state):
                break

        deduped = self.ranker.dedupe(evidence)
        if len(deduped) > 1:
            deduped = await self.ranker.rerank(query, deduped, state)

        if not deduped:
            reason = (
                "Recall ran but produced no useful evidence within limits"
                if state.truncated
                else "Sessions matched but no relevant evidence passed filters"
            )
            return self._result(state, "not_found", reason, [], searched)

        if state.truncated:
            return self._result(
                state,
                "partial",
                "Relevant evidence found, but retrieval hit time/token/model-call limits",
                deduped,
                searched,
            )
        return self._result(state, "found", "Relevant evidence found", deduped, searched)

    def _result(
        self,
        state: RecallRuntimeState,
        status: str,
        reason: str,
        evidence: list[RecalledContextEvidence],
        searched: list[str],
    ) -> ContextRecallResult:
        result = ContextRecallResult(
            status=status,  # type: ignore[arg-type]
            reason=reason,
            evidence=evidence,
            searched_session_ids=searched,
            elapsed_ms=self.model.elapsed_ms(state),
            model_calls=state.model_calls,
            trigger_reason=state.trigger_reason,
        )
        logger.info(
            "Context recall %s: %s (sessions=%d evidence=%d model_calls=%d elapsed_ms=%d)",
            result.status,
            reason,
            len(searched),
            len(evidence),
            result.model_calls,
            result.elapsed_ms,
        )
        return result
