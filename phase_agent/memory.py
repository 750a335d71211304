"""Session memory collaborator: record types, protocol, and an in-process store.

The agent loop reports every tool call/result, agent step and feedback message
to a ``SessionMemory``; the recall service searches closed-session summaries
and loads their turns through the same object. Persistence is up to the
implementation. ``InMemorySessionMemory`` keeps everything in process and is
owned by whoever constructs it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol, runtime_checkable

from phase_agent.recall.text import to_keywords

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    content: str
    timestamp: str = ""
    session_path: str = ""


@dataclass
class PromptMemoryContext:
    """Live-session context available to the model for the current turn."""

    conversation_turns: list[ConversationTurn] = field(default_factory=list)
    previous_session_summary: str = ""
    tool_events: list[dict[str, Any]] = field(default_factory=list)
    active_topic_label: str | None = None


@dataclass(frozen=True)
class SessionSummaryHit:
    session_id: str
    summary_text: str
    keywords: tuple[str, ...] = ()
    closed_at: str = ""
    close_reason: str = ""
    score: float = 0.0


@dataclass(frozen=True)
class RecalledContextEvidence:
    """One past-turn snippet believed relevant to the current query."""

    session_id: str
    turn_ref: str
    timestamp: str
    snippet: str
    why_relevant: str
    confidence: float

    @property
    def key(self) -> str:
        return f"{self.session_id}:{self.turn_ref}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "turnRef": self.turn_ref,
            "timestamp": self.timestamp,
            "snippet": self.snippet,
            "whyRelevant": self.why_relevant,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class MemoryRunHandle:
    session_id: str
    run_id: str


@dataclass(frozen=True)
class ToolCallRecord:
    run_id: str
    session_id: str
    step_id: int
    tool_call_id: str
    tool_name: str
    args: Any = None


@dataclass(frozen=True)
class ToolResultRecord:
    run_id: str
    session_id: str
    step_id: int
    tool_call_id: str
    tool_name: str
    status: Literal["success", "failed"]
    output: str = ""
    error_message: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class AgentStepRecord:
    run_id: str
    session_id: str
    step: int
    phase: str
    summary: str
    approaches_tried: tuple[str, ...] = ()
    action_tool_name: str | None = None
    end_status: str | None = None


@dataclass(frozen=True)
class FeedbackRecord:
    run_id: str
    session_id: str
    message: str


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class SessionMemory(Protocol):
    def record_tool_call(self, client_id: str, record: ToolCallRecord) -> None: ...

    def record_tool_result(self, client_id: str, record: ToolResultRecord) -> None: ...

    def record_agent_step(self, client_id: str, record: AgentStepRecord) -> None: ...

    def record_assistant_feedback(self, client_id: str, run_id: str, session_id: str, message: str) -> None: ...

    def get_prompt_memory_context(self) -> PromptMemoryContext: ...

    async def search_session_summaries(self, query: str, limit: int) -> list[SessionSummaryHit]: ...

    async def load_session_turns(self, session_id: str) -> list[ConversationTurn]: ...


# ---------------------------------------------------------------------------
# In-process implementation
# ---------------------------------------------------------------------------


@dataclass
class _StoredSession:
    session_id: str
    summary: str
    turns: list[ConversationTurn]
    keywords: tuple[str, ...]
    closed_at: str
    close_reason: str


class InMemorySessionMemory:
    """Session memory held in process memory.

    Closed sessions are added with ``add_session``; the live conversation is
    tracked with ``add_turn``. Everything the loop records is kept in plain
    lists for inspection.
    """

    MAX_SEARCH_LIMIT = 20

    def __init__(self, *, previous_session_summary: str = "") -> None:
        self._sessions: dict[str, _StoredSession] = {}
        self._live_turns: list[ConversationTurn] = []
        self.previous_session_summary = previous_session_summary
        self.tool_calls: list[tuple[str, ToolCallRecord]] = []
        self.tool_results: list[tuple[str, ToolResultRecord]] = []
        self.agent_steps: list[tuple[str, AgentStepRecord]] = []
        self.feedback: list[tuple[str, FeedbackRecord]] = []

    # -- closed sessions ----------------------------------------------------

    def add_session(
        self,
        session_id: str,
        summary: str,
        turns: list[ConversationTurn],
        *,
        keywords: list[str] | None = None,
        closed_at: str | None = None,
        close_reason: str = "closed",
    ) -> None:
        self._sessions[session_id] = _StoredSession(
            session_id=session_id,
            summary=summary,
            turns=list(turns),
            keywords=tuple(keywords if keywords is not None else to_keywords(summary)),
            closed_at=closed_at or now_iso(),
            close_reason=close_reason,
        )

    async def search_session_summaries(self, query: str, limit: int = 5) -> list[SessionSummaryHit]:
        """Keyword-overlap search; ties (and keyword-less queries) go to the most recent."""
        capped = max(1, min(self.MAX_SEARCH_LIMIT, limit))
        by_recency = sorted(self._sessions.values(), key=lambda s: s.closed_at, reverse=True)
        terms = to_keywords(query)

        if not terms:
            return [
                self._hit(session, max(0.01, 1 - index * 0.1))
                for index, session in enumerate(by_recency[:capped])
            ]

        scored: list[tuple[int, _StoredSession]] = []
        for session in by_recency:
            vocabulary = set(session.keywords) | set(to_keywords(session.summary))
            matches = sum(1 for term in terms if term in vocabulary)
            if matches > 0:
                scored.append((matches, session))
        # stable sort keeps recency order among equal scores
        scored.sort(key=lambda item: item[0], reverse=True)
        return [self._hit(session, matches / len(terms)) for matches, session in scored[:capped]]

    async def load_session_turns(self, session_id: str) -> list[ConversationTurn]:
        session = self._sessions.get(session_id)
        return list(session.turns) if session else []

    @staticmethod
    def _hit(session: _StoredSession, score: float) -> SessionSummaryHit:
        return SessionSummaryHit(
            session_id=session.session_id,
            summary_text=session.summary,
            keywords=session.keywords,
            closed_at=session.closed_at,
            close_reason=session.close_reason,
            score=round(score, 4),
        )

    # -- live session -------------------------------------------------------

    def add_turn(self, role: Role, content: str, *, timestamp: str | None = None) -> None:
        self._live_turns.append(ConversationTurn(role=role, content=content, timestamp=timestamp or now_iso()))

    def get_prompt_memory_context(self) -> PromptMemoryContext:
        tool_events = [
            {"toolName": r.tool_name, "status": r.status, "output": r.output, "errorMessage": r.error_message}
            for _, r in self.tool_results
        ]
        return PromptMemoryContext(
            conversation_turns=list(self._live_turns),
            previous_session_summary=self.previous_session_summary,
            tool_events=tool_events,
        )

    # -- recording ----------------------------------------------------------

    def record_tool_call(self, client_id: str, record: ToolCallRecord) -> None:
        self.tool_calls.append((client_id, record))

    def record_tool_result(self, client_id: str, record: ToolResultRecord) -> None:
        self.tool_results.append((client_id, record))

    def record_agent_step(self, client_id: str, record: AgentStepRecord) -> None:
        self.agent_steps.append((client_id, record))

    def record_assistant_feedback(self, client_id: str, run_id: str, session_id: str, message: str) -> None:
        self.feedback.append((client_id, FeedbackRecord(run_id=run_id, session_id=session_id, message=message)))
