"""Evidence dedupe, budget-aware accumulation, and final rerank."""

from __future__ import annotations

import logging
from typing import Iterable

from phase_agent.config import ContextRecallLimits
from phase_agent.memory import RecalledContextEvidence
from phase_agent.recall.model import RecallModel, estimate_evidence_cost, payload_json
from phase_agent.recall.text import compact_snippet
from phase_agent.recall.types import RecallRuntimeState

logger = logging.getLogger(__name__)


def by_confidence(evidence: Iterable[RecalledContextEvidence], limit: int) -> list[RecalledContextEvidence]:
    return sorted(evidence, key=lambda item: item.confidence, reverse=True)[:limit]


def dedupe_evidence(evidence: Iterable[RecalledContextEvidence], limit: int) -> list[RecalledContextEvidence]:
    """Keep the highest-confidence item per (session_id, turn_ref)."""
    deduped: dict[str, RecalledContextEvidence] = {}
    for item in evidence:
        existing = deduped.get(item.key)
        if existing is None or existing.confidence < item.confidence:
            deduped[item.key] = item
    return by_confidence(deduped.values(), limit)


class EvidenceRanker:
    def __init__(self, model: RecallModel, limits: ContextRecallLimits) -> None:
        self.model = model
        self.limits = limits

    def accumulate(
        self,
        collected: list[RecalledContextEvidence],
        session_evidence: list[RecalledContextEvidence],
        state: RecallRuntimeState,
    ) -> bool:
        """Charge session evidence against the token budget.

        Appends affordable items to ``collected``. Returns True once the
        budget or the item cap is exhausted and accumulation should stop.
        """
        for item in session_evidence:
            cost = estimate_evidence_cost(item)
            if cost > state.remaining_tokens:
                state.truncated = True
                continue
            collected.append(item)
            state.remaining_tokens -= cost
            if self._exhausted(collected, state):
                state.truncated = True
                break
        return self._exhausted(collected, state)

    def _exhausted(self, collected: list[RecalledContextEvidence], state: RecallRuntimeState) -> bool:
        return state.remaining_tokens <= 0 or len(collected) >= self.limits.max_evidence_items

    def dedupe(self, evidence: Iterable[RecalledContextEvidence]) -> list[RecalledContextEvidence]:
        return dedupe_evidence(evidence, self.limits.max_evidence_items)

    async def rerank(
        self,
        query: str,
        evidence: list[RecalledContextEvidence],
        state: RecallRuntimeState,
    ) -> list[RecalledContextEvidence]:
        limit = self.limits.max_evidence_items
        if not self.model.can_call_model(state):
            return by_confidence(evidence, limit)

        keyed = [
            {
                "key": item.key,
                "sessionId": item.session_id,
                "turnRef": item.turn_ref,
                "timestamp": item.timestamp,
                "snippet": compact_snippet(item.snippet, 220),
                "whyRelevant": compact_snippet(item.why_relevant, 160),
                "confidence": item.confidence,
            }
            for item in evidence
        ]
        parsed = await self.model.call_json(
            "RERANK_EVIDENCE",
            "rerank_evidence",
            state,
            max_items=limit,
            payload_json=payload_json({"query": query, "evidence": keyed}),
        )
        raw_keys = parsed.get("selected_keys") if isinstance(parsed, dict) else None
        selected_keys = [key for key in raw_keys if isinstance(key, str)] if isinstance(raw_keys, list) else []
        if not selected_keys:
            return by_confidence(evidence, limit)

        by_key = {item.key: item for item in evidence}
        reranked: list[RecalledContextEvidence] = []
        for key in selected_keys:
            item = by_key.pop(key, None)
            if item is None:
                continue
            reranked.append(item)
            if len(reranked) >= limit:
                break

        if reranked:
            logger.debug("Recall rerank kept %d of %d evidence items", len(reranked), len(evidence))
            return reranked
        return by_confidence(evidence, limit)
