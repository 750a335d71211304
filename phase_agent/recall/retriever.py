"""Recursive chunk-select / leaf-extract search over one session's turns.

Large transcripts are split into 2..max_chunk_branches contiguous chunks, the
model (or keyword overlap) picks the promising ones, and the search recurses
into them until a chunk is small enough, or deep enough, to extract evidence
from directly. A branch that yields nothing falls back to leaf extraction
over the unsplit turn set.
"""

from __future__ import annotations

import logging
import math

from phase_agent.config import ContextRecallLimits
from phase_agent.memory import RecalledContextEvidence, SessionSummaryHit
from phase_agent.recall.model import RecallModel, payload_json
from phase_agent.recall.ranker import dedupe_evidence
from phase_agent.recall.text import clamp_confidence, compact_snippet, score_text
from phase_agent.recall.types import ChunkCandidate, ChunkSelection, IndexedTurn, RecallRuntimeState

logger = logging.getLogger(__name__)

SINGLE_CHUNK_CONFIDENCE = 0.8
MODEL_CHUNK_CONFIDENCE = 0.65
MODEL_LEAF_CONFIDENCE = 0.7


class HierarchicalRetriever:
    def __init__(self, model: RecallModel, limits: ContextRecallLimits) -> None:
        self.model = model
        self.limits = limits

    async def extract_session_evidence(
        self,
        query: str,
        query_terms: list[str],
        session_hit: SessionSummaryHit,
        turns: list[IndexedTurn],
        depth: int,
        state: RecallRuntimeState,
    ) -> list[RecalledContextEvidence]:
        if not turns or self.model.is_deadline_exceeded(state):
            return []

        if len(turns) <= self.limits.max_leaf_turns or depth <= 1:
            return await self.extract_leaf_evidence(query, query_terms, session_hit, turns, state)

        chunks = self.split_into_chunks(turns)
        selected = await self.select_relevant_chunks(query, query_terms, session_hit, chunks, state)
        if not selected:
            return await self.extract_leaf_evidence(query, query_terms, session_hit, turns, state)

        chunk_map = {chunk.id: chunk for chunk in chunks}
        collected: list[RecalledContextEvidence] = []
        for selection in selected:
            if self.model.is_deadline_exceeded(state):
                state.truncated = True
                break
            chunk = chunk_map.get(selection.id)
            if chunk is None:
                continue

            logger.debug(
                "Recall descending into %s of %s (depth=%d confidence=%.2f)",
                chunk.id,
                session_hit.session_id,
                depth - 1,
                selection.confidence,
            )
            collected.extend(
                await self.extract_session_evidence(query, query_terms, session_hit, chunk.turns, depth - 1, state)
            )
            if len(collected) >= self.limits.max_evidence_items:
                state.truncated = True
                break

        if collected:
            return dedupe_evidence(collected, self.limits.max_evidence_items)
        return await self.extract_leaf_evidence(query, query_terms, session_hit, turns, state)

    # -- chunking -----------------------------------------------------------

    def split_into_chunks(self, turns: list[IndexedTurn]) -> list[ChunkCandidate]:
        if not turns:
            return []
        if len(turns) <= self.limits.max_leaf_turns:
            return [self._make_chunk(turns)]

        chunk_count = max(
            2,
            min(self.limits.max_chunk_branches, math.ceil(len(turns) / self.limits.max_leaf_turns)),
        )
        chunk_size = max(1, math.ceil(len(turns) / chunk_count))
        return [self._make_chunk(turns[i : i + chunk_size]) for i in range(0, len(turns), chunk_size)]

    def _make_chunk(self, turns: list[IndexedTurn]) -> ChunkCandidate:
        return ChunkCandidate(
            id=f"chunk-{turns[0].index + 1}-{turns[-1].index + 1}",
            turns=turns,
            summary=summarize_chunk(turns),
        )

    async def select_relevant_chunks(
        self,
        query: str,
        query_terms: list[str],
        session_hit: SessionSummaryHit,
        chunks: list[ChunkCandidate],
        state: RecallRuntimeState,
    ) -> list[ChunkSelection]:
        if not chunks:
            return []
        if len(chunks) == 1:
            return [ChunkSelection(chunks[0].id, "single chunk", SINGLE_CHUNK_CONFIDENCE)]

        payload = {
            "query": query,
            "session_id": session_hit.session_id,
            "session_summary": compact_snippet(session_hit.summary_text, 280),
            "chunks": [
                {
                    "id": chunk.id,
                    "turn_start": chunk.turns[0].ref,
                    "turn_end": chunk.turns[-1].ref,
                    "summary": chunk.summary,
                }
                for chunk in chunks
            ],
            "max_select": self.limits.max_chunk_selections,
        }
        parsed = await self.model.call_json("SELECT_CHUNKS", "select_chunks", state, payload_json=payload_json(payload))

        valid_ids = {chunk.id for chunk in chunks}
        items = parsed.get("selected") if isinstance(parsed, dict) else None
        selected: list[ChunkSelection] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict) or item.get("id") not in valid_ids:
                continue
            reason = item.get("reason")
            selected.append(
                ChunkSelection(
                    id=item["id"],
                    reason=reason.strip() if isinstance(reason, str) and reason.strip() else "Model-selected relevant chunk",
                    confidence=clamp_confidence(item.get("confidence"), MODEL_CHUNK_CONFIDENCE),
                )
            )
        selected.sort(key=lambda s: s.confidence, reverse=True)
        selected = selected[: self.limits.max_chunk_selections]

        if selected:
            return selected
        return self.fallback_chunk_selection(query_terms, chunks)

    def fallback_chunk_selection(self, query_terms: list[str], chunks: list[ChunkCandidate]) -> list[ChunkSelection]:
        scored = [(score_text(query_terms, chunk.summary), chunk) for chunk in chunks]
        scored = [item for item in scored if item[0] > 0]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            ChunkSelection(chunk.id, "Keyword overlap fallback", min(0.85, 0.2 + score / 5))
            for score, chunk in scored[: self.limits.max_chunk_selections]
        ]

    # -- leaves -------------------------------------------------------------

    async def extract_leaf_evidence(
        self,
        query: str,
        query_terms: list[str],
        session_hit: SessionSummaryHit,
        turns: list[IndexedTurn],
        state: RecallRuntimeState,
    ) -> list[RecalledContextEvidence]:
        if not turns:
            return []

        payload = {
            "query": query,
            "session_id": session_hit.session_id,
            "turns": [
                {
                    "turn_ref": entry.ref,
                    "role": entry.turn.role,
                    "timestamp": entry.turn.timestamp,
                    "content": compact_snippet(entry.turn.content, 420),
                }
                for entry in turns[: self.limits.max_leaf_turns]
            ],
            "max_evidence": self.limits.max_evidence_per_leaf,
        }
        parsed = await self.model.call_json(
            "EXTRACT_EVIDENCE", "extract_evidence", state, payload_json=payload_json(payload)
        )

        turn_by_ref = {entry.ref: entry for entry in turns}
        items = parsed.get("evidence") if isinstance(parsed, dict) else None
        extracted: list[RecalledContextEvidence] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            turn_ref = item.get("turn_ref").strip() if isinstance(item.get("turn_ref"), str) else ""
            matched = turn_by_ref.get(turn_ref)
            if matched is None:
                continue
            snippet = item.get("snippet")
            why = item.get("why_relevant")
            extracted.append(
                RecalledContextEvidence(
                    session_id=session_hit.session_id,
                    turn_ref=turn_ref,
                    timestamp=matched.turn.timestamp,
                    snippet=compact_snippet(
                        snippet if isinstance(snippet, str) and snippet.strip() else matched.turn.content, 320
                    ),
                    why_relevant=(
                        compact_snippet(why, 220)
                        if isinstance(why, str) and why.strip()
                        else "Model-selected relevant context"
                    ),
                    confidence=round(clamp_confidence(item.get("confidence"), MODEL_LEAF_CONFIDENCE), 2),
                )
            )
        extracted = extracted[: self.limits.max_evidence_per_leaf]

        if extracted:
            return extracted
        return self.fallback_leaf_evidence(query_terms, session_hit, turns)

    def fallback_leaf_evidence(
        self,
        query_terms: list[str],
        session_hit: SessionSummaryHit,
        turns: list[IndexedTurn],
    ) -> list[RecalledContextEvidence]:
        scored = [(score_text(query_terms, entry.turn.content), entry) for entry in turns]
        scored = [item for item in scored if item[0] > 0]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            RecalledContextEvidence(
                session_id=session_hit.session_id,
                turn_ref=entry.ref,
                timestamp=entry.turn.timestamp,
                snippet=compact_snippet(entry.turn.content, 320),
                why_relevant="Keyword-overlap fallback selection",
                confidence=round(min(0.85, 0.25 + score / 6), 2),
            )
            for score, entry in scored[: self.limits.max_evidence_per_leaf]
        ]


def summarize_chunk(turns: list[IndexedTurn]) -> str:
    """First two and last two turns of a chunk, one compact line each."""
    rows: list[str] = []
    seen: set[int] = set()
    for entry in [*turns[:2], *turns[-2:]]:
        if entry.index in seen:
            continue
        seen.add(entry.index)
        rows.append(f"{entry.ref} ({entry.turn.role}): {compact_snippet(entry.turn.content, 120)}")
    return " | ".join(rows)
