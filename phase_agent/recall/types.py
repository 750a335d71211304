"""Recall result and per-call runtime state types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from phase_agent.memory import ConversationTurn, RecalledContextEvidence

RecallStatus = Literal["skipped", "not_found", "found", "partial"]
InvocationMode = Literal["auto", "explicit"]


@dataclass
class RecallRuntimeState:
    """Budget bookkeeping for one recall() call.

    ``remaining_tokens`` only decreases, ``model_calls`` only increases and
    ``truncated`` never goes back to False once set.
    """

    started_at: float
    remaining_tokens: int
    model_calls: int = 0
    truncated: bool = False
    trigger_reason: str | None = None


@dataclass(frozen=True)
class RecallDecision:
    needs_recall: bool
    reason: str
    search_query: str


@dataclass(frozen=True)
class IndexedTurn:
    """A turn plus its zero-based position in the full session transcript."""

    index: int
    turn: ConversationTurn

    @property
    def ref(self) -> str:
        return f"turn-{self.index + 1}"


@dataclass(frozen=True)
class ChunkCandidate:
    id: str
    turns: list[IndexedTurn]
    summary: str


@dataclass(frozen=True)
class ChunkSelection:
    id: str
    reason: str
    confidence: float


@dataclass
class ContextRecallResult:
    status: RecallStatus
    reason: str
    evidence: list[RecalledContextEvidence] = field(default_factory=list)
    searched_session_ids: list[str] = field(default_factory=list)
    elapsed_ms: int = 0
    model_calls: int = 0
    trigger_reason: str | None = None

    @property
    def found_useful_data(self) -> bool:
        return self.status in ("found", "partial")

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "evidence": [item.to_dict() for item in self.evidence],
            "searchedSessionIds": list(self.searched_session_ids),
            "elapsedMs": self.elapsed_ms,
            "modelCalls": self.model_calls,
            "triggerReason": self.trigger_reason,
        }
