"""Tests for ContextRecallService and the recursive retriever.

Tests cover:
- trigger gate (history references, short referential queries, disabled)
- skipped / not_found / found / partial outcomes
- explicit invocation with a searchQuery override
- hierarchical descent on long sessions (chunk select → leaf extract)
- deadline, token budget and model-call limits
- heuristic fallbacks when the model fails or returns junk
- evidence dedupe and rerank

# mock-ok: the recall sub-agent's model is a scripted in-process provider;
# prompts, parsing, budgets and fallbacks are exercised for real.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable
from unittest.mock import AsyncMock, patch

import pytest

from phase_agent.config import ContextRecallConfig, ContextRecallLimits
from phase_agent.memory import (
    ConversationTurn,
    InMemorySessionMemory,
    PromptMemoryContext,
    RecalledContextEvidence,
    SessionSummaryHit,
)
from phase_agent.protocol import AssistantTurn, ProviderCapabilities, TurnInput
from phase_agent.recall.model import RecallModel
from phase_agent.recall.ranker import EvidenceRanker, dedupe_evidence
from phase_agent.recall.retriever import HierarchicalRetriever, summarize_chunk
from phase_agent.recall.service import ContextRecallService
from phase_agent.recall.types import IndexedTurn, RecallRuntimeState

_MODE_RE = re.compile(r"MODE=([A-Z_]+)")

Handler = Callable[[dict[str, Any]], Any]


class ScriptedRecallProvider:
    """Answers each recall sub-call from a per-mode handler.

    Handlers receive the decoded payload and return a JSON-able value, a raw
    string, or raise. Modes without a handler get non-JSON text back.
    """

    name = "scripted"
    capabilities = ProviderCapabilities()

    def __init__(self, handlers: dict[str, Handler] | None = None) -> None:
        self.handlers = handlers or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def generate_turn(self, turn_input: TurnInput) -> AssistantTurn:
        mode_match = _MODE_RE.search(turn_input.messages[0]["content"])
        mode = mode_match.group(1) if mode_match else "?"
        payload = json.loads(turn_input.messages[-1]["content"].split("Payload:\n", 1)[1])
        self.calls.append((mode, payload))
        handler = self.handlers.get(mode)
        if handler is None:
            return AssistantTurn(content="I cannot answer in JSON.")
        value = handler(payload)
        return AssistantTurn(content=value if isinstance(value, str) else json.dumps(value))

    def modes(self) -> list[str]:
        return [mode for mode, _ in self.calls]


class FailingProvider:
    name = "failing"
    capabilities = ProviderCapabilities()

    def __init__(self) -> None:
        self.calls = 0

    async def generate_turn(self, turn_input: TurnInput) -> AssistantTurn:
        self.calls += 1
        raise RuntimeError("model offline")


def _fixed_clock() -> float:
    return 0.0


def _stepping_clock(step_ms: float) -> Callable[[], float]:
    current = [-step_ms]

    def now() -> float:
        current[0] += step_ms
        return current[0]

    return now


def _context(turns: int = 0) -> PromptMemoryContext:
    return PromptMemoryContext(conversation_turns=[ConversationTurn("user", f"t{i}") for i in range(turns)])


def _service(memory, provider, *, now=_fixed_clock, enabled: bool = True, **limits: Any) -> ContextRecallService:
    config = ContextRecallConfig(enabled=enabled, limits=ContextRecallLimits(**limits))
    return ContextRecallService(memory, provider, config=config, now=now)


def _long_session(memory: InMemorySessionMemory, session_id: str = "s1", *, size: int = 72, needle: int = 40) -> None:
    turns = [
        ConversationTurn(
            "user" if i % 2 == 0 else "assistant",
            "the deployment plan is to ship on friday" if i == needle - 1 else f"filler chatter number {i}",
            timestamp=f"2026-01-01T00:{i % 60:02d}:00Z",
        )
        for i in range(size)
    ]
    memory.add_session(session_id, "deployment plan discussion", turns, closed_at="2026-01-02T00:00:00Z")


def _turn_number(ref: str) -> int:
    return int(ref.split("-")[1])


def _select_chunk_containing(target: int) -> Handler:
    def handler(payload: dict[str, Any]) -> dict[str, Any]:
        for chunk in payload["chunks"]:
            if _turn_number(chunk["turn_start"]) <= target <= _turn_number(chunk["turn_end"]):
                return {"selected": [{"id": chunk["id"], "reason": "mentions deployment", "confidence": 0.9}]}
        return {"selected": []}

    return handler


def _extract_turn(target: int, confidence: Any = 0.9) -> Handler:
    def handler(payload: dict[str, Any]) -> dict[str, Any]:
        refs = {t["turn_ref"] for t in payload["turns"]}
        ref = f"turn-{target}"
        if ref not in refs:
            return {"evidence": []}
        return {"evidence": [{"turn_ref": ref, "snippet": "ship on friday", "why_relevant": "the plan", "confidence": confidence}]}

    return handler


# ---------------------------------------------------------------------------
# Trigger gate
# ---------------------------------------------------------------------------


class TestShouldTrigger:
    def setup_method(self) -> None:
        self.service = _service(InMemorySessionMemory(), ScriptedRecallProvider())

    def test_history_reference(self) -> None:
        assert self.service.should_trigger("What did we discuss last time?", _context(10))

    def test_short_referential_with_little_context(self) -> None:
        assert self.service.should_trigger("continue with that", _context(1))

    def test_referential_with_rich_context(self) -> None:
        assert not self.service.should_trigger("continue with that", _context(3))

    def test_unrelated(self) -> None:
        assert not self.service.should_trigger("write a haiku about autumn", _context(0))

    def test_previous_session_with_empty_context(self) -> None:
        assert self.service.should_trigger("what did we discuss in the previous session?", _context(0))
        assert not self.service.should_trigger("hello", _context(0))

    def test_blank(self) -> None:
        assert not self.service.should_trigger("   ", _context(0))

    def test_disabled(self) -> None:
        service = _service(InMemorySessionMemory(), ScriptedRecallProvider(), enabled=False)
        assert not service.should_trigger("What did we discuss last time?", _context(0))


# ---------------------------------------------------------------------------
# Gating outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestGating:
    async def test_disabled(self) -> None:
        provider = ScriptedRecallProvider()
        service = _service(InMemorySessionMemory(), provider, enabled=False)
        result = await service.recall("what did we discuss last time?", _context(), invocation_mode="explicit")
        assert result.status == "skipped"
        assert result.reason == "Context recall is disabled"
        assert provider.calls == []

    async def test_auto_without_trigger(self) -> None:
        service = _service(InMemorySessionMemory(), ScriptedRecallProvider())
        result = await service.recall("write a haiku about autumn", _context())
        assert result.status == "skipped"
        assert result.reason == "Recall trigger conditions not met"

    async def test_no_provider(self) -> None:
        service = _service(InMemorySessionMemory(), None)
        result = await service.recall("what did we discuss last time?", _context())
        assert result.status == "skipped"
        assert "no LLM provider" in result.reason
        assert not result.found_useful_data

    async def test_model_says_no_recall(self) -> None:
        provider = ScriptedRecallProvider(
            {"DECIDE": lambda p: {"needs_recall": False, "reason": "answerable from live context"}}
        )
        result = await _service(InMemorySessionMemory(), provider).recall("what did we discuss before?", _context())
        assert result.status == "skipped"
        assert result.reason == "answerable from live context"
        assert result.trigger_reason == "answerable from live context"
        assert result.model_calls == 1

    async def test_no_sessions(self) -> None:
        result = await _service(InMemorySessionMemory(), ScriptedRecallProvider()).recall(
            "deployment plan", _context(), invocation_mode="explicit"
        )
        assert result.status == "not_found"
        assert result.reason == "No relevant historical sessions matched"
        assert result.evidence == []


# ---------------------------------------------------------------------------
# End-to-end retrieval
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestRecall:
    async def test_explicit_search_query_is_used(self) -> None:
        memory = InMemorySessionMemory()
        with patch.object(memory, "search_session_summaries", new=AsyncMock(return_value=[])) as search:
            result = await _service(memory, ScriptedRecallProvider()).recall(
                "what was in them?", _context(), invocation_mode="explicit", search_query="release notes"
            )
        search.assert_awaited_once_with("release notes", 6)
        assert result.status == "not_found"
        assert result.trigger_reason == "explicit context_recall_agent tool invocation"

    async def test_long_session_descends_into_chunks(self) -> None:
        memory = InMemorySessionMemory()
        _long_session(memory)
        provider = ScriptedRecallProvider(
            {"SELECT_CHUNKS": _select_chunk_containing(40), "EXTRACT_EVIDENCE": _extract_turn(40)}
        )
        service = _service(memory, provider, max_leaf_turns=10)

        result = await service.recall("deployment plan", _context(), invocation_mode="explicit")

        assert result.status == "found"
        assert result.found_useful_data
        assert result.searched_session_ids == ["s1"]
        assert [(e.session_id, e.turn_ref) for e in result.evidence] == [("s1", "turn-40")]
        assert result.evidence[0].timestamp == "2026-01-01T00:39:00Z"
        assert result.model_calls > 2
        assert provider.modes() == ["SELECT_CHUNKS", "SELECT_CHUNKS", "EXTRACT_EVIDENCE"]
        # first split: 72 turns into 4 chunks of 18
        assert [c["id"] for c in provider.calls[0][1]["chunks"]] == [
            "chunk-1-18",
            "chunk-19-36",
            "chunk-37-54",
            "chunk-55-72",
        ]
        # leaf payload never exceeds max_leaf_turns
        assert len(provider.calls[-1][1]["turns"]) <= 10

    async def test_active_session_excluded(self) -> None:
        memory = InMemorySessionMemory()
        _long_session(memory, "active", size=6, needle=2)
        _long_session(memory, "past", size=6, needle=2)
        provider = ScriptedRecallProvider({"EXTRACT_EVIDENCE": _extract_turn(2)})
        result = await _service(memory, provider).recall(
            "deployment plan", _context(), "active", invocation_mode="explicit"
        )
        assert result.searched_session_ids == ["past"]
        assert {e.session_id for e in result.evidence} == {"past"}

    async def test_confidence_clamped(self) -> None:
        memory = InMemorySessionMemory()
        _long_session(memory, size=6, needle=2)
        provider = ScriptedRecallProvider({"EXTRACT_EVIDENCE": _extract_turn(2, confidence=7)})
        result = await _service(memory, provider).recall("deployment plan", _context(), invocation_mode="explicit")
        assert result.status == "found"
        assert all(0.0 <= e.confidence <= 1.0 for e in result.evidence)
        assert result.evidence[0].confidence == 1.0

    async def test_model_failure_falls_back_to_keywords(self) -> None:
        memory = InMemorySessionMemory()
        memory.add_session(
            "s1",
            "database migration plan",
            [
                ConversationTurn("user", "hello there"),
                ConversationTurn("assistant", "we chose postgres for the database migration"),
            ],
        )
        provider = FailingProvider()
        result = await _service(memory, provider).recall(
            "what did we discuss before about the database migration?", _context()
        )
        assert result.status == "found"
        assert result.trigger_reason == "history-reference detected in user query"
        assert [e.turn_ref for e in result.evidence] == ["turn-2"]
        assert result.evidence[0].why_relevant == "Keyword-overlap fallback selection"
        assert 0.0 <= result.evidence[0].confidence <= 0.85
        # decide + extract, both failed
        assert provider.calls == 2
        assert result.model_calls == 2

    async def test_model_call_cap(self) -> None:
        memory = InMemorySessionMemory()
        _long_session(memory)
        provider = ScriptedRecallProvider(
            {"SELECT_CHUNKS": _select_chunk_containing(40), "EXTRACT_EVIDENCE": _extract_turn(40)}
        )
        result = await _service(memory, provider, max_leaf_turns=10, max_model_calls=1).recall(
            "deployment plan", _context(), invocation_mode="explicit"
        )
        assert len(provider.calls) == 1
        assert result.model_calls == 1

    async def test_deadline_stops_gracefully(self) -> None:
        memory = InMemorySessionMemory()
        memory.add_session("s1", "deployment plan", [ConversationTurn("user", "deployment plan")], closed_at="2026-01-02")
        memory.add_session("s2", "deployment plan", [ConversationTurn("user", "deployment plan")], closed_at="2026-01-01")
        provider = ScriptedRecallProvider({"EXTRACT_EVIDENCE": _extract_turn(1)})
        service = _service(memory, provider, now=_stepping_clock(20), total_recall_ms=30)

        result = await service.recall("deployment plan", _context(), invocation_mode="explicit")

        assert result.status == "not_found"
        assert result.reason == "Recall ran but produced no useful evidence within limits"
        assert result.searched_session_ids == ["s1"]
        assert provider.calls == []
        assert result.elapsed_ms >= 30

    async def test_token_budget_exhausted(self) -> None:
        memory = InMemorySessionMemory()
        _long_session(memory, size=6, needle=2)
        provider = ScriptedRecallProvider({"EXTRACT_EVIDENCE": _extract_turn(2)})
        result = await _service(memory, provider, evidence_token_budget=1).recall(
            "deployment plan", _context(), invocation_mode="explicit"
        )
        assert result.status == "not_found"
        assert "within limits" in result.reason

    async def test_item_cap_gives_partial(self) -> None:
        memory = InMemorySessionMemory()
        _long_session(memory, size=6, needle=2)

        def two_items(payload: dict[str, Any]) -> dict[str, Any]:
            return {
                "evidence": [
                    {"turn_ref": "turn-2", "snippet": "ship on friday", "why_relevant": "plan", "confidence": 0.9},
                    {"turn_ref": "turn-3", "snippet": "filler", "why_relevant": "context", "confidence": 0.4},
                ]
            }

        provider = ScriptedRecallProvider({"EXTRACT_EVIDENCE": two_items})
        result = await _service(memory, provider, max_evidence_items=1).recall(
            "deployment plan", _context(), invocation_mode="explicit"
        )
        assert result.status == "partial"
        assert [e.turn_ref for e in result.evidence] == ["turn-2"]

    async def test_unexpected_error_degrades_to_not_found(self) -> None:
        memory = InMemorySessionMemory()
        with patch.object(memory, "search_session_summaries", new=AsyncMock(side_effect=KeyError("index"))):
            result = await _service(memory, ScriptedRecallProvider()).recall(
                "deployment plan", _context(), invocation_mode="explicit"
            )
        assert result.status == "not_found"
        assert result.reason == "Context recall failed unexpectedly"

    async def test_to_dict(self) -> None:
        memory = InMemorySessionMemory()
        _long_session(memory, size=6, needle=2)
        provider = ScriptedRecallProvider({"EXTRACT_EVIDENCE": _extract_turn(2)})
        result = await _service(memory, provider).recall("deployment plan", _context(), invocation_mode="explicit")
        data = result.to_dict()
        assert data["status"] == "found"
        assert data["searchedSessionIds"] == ["s1"]
        assert data["evidence"][0]["turnRef"] == "turn-2"


# ---------------------------------------------------------------------------
# Retriever and ranker units
# ---------------------------------------------------------------------------


def _indexed(contents: list[str]) -> list[IndexedTurn]:
    return [IndexedTurn(i, ConversationTurn("user", text)) for i, text in enumerate(contents)]


def _evidence(sid: str, ref: str, confidence: float) -> RecalledContextEvidence:
    return RecalledContextEvidence(sid, ref, "", f"snippet {ref}", "why", confidence)


class TestChunking:
    def test_split_sizes(self) -> None:
        retriever = HierarchicalRetriever(RecallModel(None, ContextRecallLimits()), ContextRecallLimits(max_leaf_turns=10))
        chunks = retriever.split_into_chunks(_indexed([f"t{i}" for i in range(25)]))
        assert [c.id for c in chunks] == ["chunk-1-9", "chunk-10-18", "chunk-19-25"]

    def test_small_set_is_one_chunk(self) -> None:
        retriever = HierarchicalRetriever(RecallModel(None, ContextRecallLimits()), ContextRecallLimits())
        assert [c.id for c in retriever.split_into_chunks(_indexed(["a", "b"]))] == ["chunk-1-2"]
        assert retriever.split_into_chunks([]) == []

    def test_summarize_chunk(self) -> None:
        summary = summarize_chunk(_indexed(["one", "two", "three", "four", "five"]))
        assert summary == "turn-1 (user): one | turn-2 (user): two | turn-4 (user): four | turn-5 (user): five"

    def test_summarize_short_chunk_no_duplicates(self) -> None:
        assert summarize_chunk(_indexed(["only"])) == "turn-1 (user): only"

    def test_fallback_chunk_selection(self) -> None:
        limits = ContextRecallLimits(max_leaf_turns=2)
        retriever = HierarchicalRetriever(RecallModel(None, limits), limits)
        chunks = retriever.split_into_chunks(_indexed(["cats", "dogs", "deploy friday", "ship it", "misc", "other"]))
        selection = retriever.fallback_chunk_selection(["deploy"], chunks)
        assert [s.id for s in selection] == ["chunk-3-4"]
        assert selection[0].reason == "Keyword overlap fallback"


class TestRanker:
    def test_dedupe_keeps_highest_confidence(self) -> None:
        items = [_evidence("s1", "turn-1", 0.3), _evidence("s1", "turn-1", 0.8), _evidence("s2", "turn-1", 0.5)]
        deduped = dedupe_evidence(items, 10)
        assert [(e.key, e.confidence) for e in deduped] == [("s1:turn-1", 0.8), ("s2:turn-1", 0.5)]

    def test_dedupe_limit(self) -> None:
        items = [_evidence("s1", f"turn-{i}", i / 10) for i in range(5)]
        assert [e.turn_ref for e in dedupe_evidence(items, 2)] == ["turn-4", "turn-3"]

    @pytest.mark.asyncio
    async def test_rerank_follows_model_order(self) -> None:
        limits = ContextRecallLimits()
        provider = ScriptedRecallProvider(
            {"RERANK_EVIDENCE": lambda p: {"selected_keys": ["s2:turn-1", "bogus", "s2:turn-1", "s1:turn-1"]}}
        )
        ranker = EvidenceRanker(RecallModel(provider, limits, _fixed_clock), limits)
        state = RecallRuntimeState(started_at=0.0, remaining_tokens=100)
        items = [_evidence("s1", "turn-1", 0.9), _evidence("s2", "turn-1", 0.2)]
        reranked = await ranker.rerank("q", items, state)
        assert [e.key for e in reranked] == ["s2:turn-1", "s1:turn-1"]
        assert state.model_calls == 1

    @pytest.mark.asyncio
    async def test_rerank_fallback_on_junk(self) -> None:
        limits = ContextRecallLimits()
        ranker = EvidenceRanker(RecallModel(ScriptedRecallProvider(), limits, _fixed_clock), limits)
        items = [_evidence("s1", "turn-1", 0.2), _evidence("s2", "turn-1", 0.9)]
        reranked = await ranker.rerank("q", items, RecallRuntimeState(started_at=0.0, remaining_tokens=100))
        assert [e.key for e in reranked] == ["s2:turn-1", "s1:turn-1"]

    @pytest.mark.asyncio
    async def test_leaf_fallback_without_provider(self) -> None:
        hit = SessionSummaryHit("s1", "summary")
        limits = ContextRecallLimits()
        retriever = HierarchicalRetriever(RecallModel(None, limits), limits)
        evidence = await retriever.extract_leaf_evidence(
            "deploy", ["deploy"], hit, _indexed(["deploy on friday", "unrelated"]), RecallRuntimeState(0.0, 100)
        )
        assert [e.turn_ref for e in evidence] == ["turn-1"]
