"""Tests for the in-process session memory and memory record types."""

from __future__ import annotations

import pytest

from phase_agent.memory import (
    ConversationTurn,
    InMemorySessionMemory,
    RecalledContextEvidence,
    SessionMemory,
    ToolResultRecord,
)


def _memory() -> InMemorySessionMemory:
    memory = InMemorySessionMemory(previous_session_summary="Talked about CI.")
    memory.add_session(
        "old",
        "Database migration to postgres",
        [ConversationTurn("user", "migrate the database")],
        closed_at="2026-01-01T00:00:00+00:00",
    )
    memory.add_session(
        "new",
        "Release notes and database cleanup",
        [ConversationTurn("user", "draft release notes")],
        closed_at="2026-02-01T00:00:00+00:00",
    )
    memory.add_session(
        "other",
        "Frontend styling",
        [],
        keywords=["css", "layout"],
        closed_at="2026-03-01T00:00:00+00:00",
    )
    return memory


@pytest.mark.asyncio
class TestSearchSessionSummaries:
    async def test_scores_by_keyword_overlap(self) -> None:
        hits = await _memory().search_session_summaries("database migration", 5)
        assert [h.session_id for h in hits] == ["old", "new"]
        assert hits[0].score == 1.0
        assert hits[1].score == 0.5

    async def test_explicit_keywords_searched(self) -> None:
        hits = await _memory().search_session_summaries("css grid", 5)
        assert [h.session_id for h in hits] == ["other"]

    async def test_keywordless_query_returns_most_recent(self) -> None:
        hits = await _memory().search_session_summaries("the", 2)
        assert [h.session_id for h in hits] == ["other", "new"]
        assert hits[0].score > hits[1].score

    async def test_limit_floor(self) -> None:
        hits = await _memory().search_session_summaries("database", 0)
        assert len(hits) == 1

    async def test_no_match(self) -> None:
        assert await _memory().search_session_summaries("kubernetes", 5) == []

    async def test_load_session_turns(self) -> None:
        memory = _memory()
        turns = await memory.load_session_turns("old")
        assert turns == [ConversationTurn("user", "migrate the database")]
        assert await memory.load_session_turns("missing") == []


class TestLiveSessionAndRecording:
    def test_prompt_context(self) -> None:
        memory = _memory()
        memory.add_turn("user", "hello", timestamp="t1")
        memory.record_tool_result(
            "c1",
            ToolResultRecord(
                run_id="r", session_id="s", step_id=1, tool_call_id="x", tool_name="ls", status="failed", error_message="boom"
            ),
        )
        ctx = memory.get_prompt_memory_context()
        assert ctx.conversation_turns == [ConversationTurn("user", "hello", timestamp="t1")]
        assert ctx.previous_session_summary == "Talked about CI."
        assert ctx.tool_events == [{"toolName": "ls", "status": "failed", "output": "", "errorMessage": "boom"}]

    def test_feedback_recorded(self) -> None:
        memory = InMemorySessionMemory()
        memory.record_assistant_feedback("c1", "r1", "s1", "Need more info")
        client_id, record = memory.feedback[0]
        assert client_id == "c1"
        assert record.message == "Need more info"

    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemorySessionMemory(), SessionMemory)


class TestEvidence:
    def test_key_and_dict(self) -> None:
        item = RecalledContextEvidence("s1", "turn-3", "t", "snip", "why", 0.5)
        assert item.key == "s1:turn-3"
        assert item.to_dict() == {
            "sessionId": "s1",
            "turnRef": "turn-3",
            "timestamp": "t",
            "snippet": "snip",
            "whyRelevant": "why",
            "confidence": 0.5,
        }
