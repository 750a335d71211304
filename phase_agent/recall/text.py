"""Text helpers shared by the recall pipeline: keywords, snippets, JSON parsing."""

from __future__ import annotations

import json
import math
import re
from typing import Any

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "have", "i", "in", "is", "it", "of", "on", "or", "that",
        "the", "to", "was", "we", "were", "with", "you", "your",
    }
)

HISTORY_QUERY_PATTERN = re.compile(
    r"\b(previous|earlier|before|last time|last session|prior|past conversation|past interaction"
    r"|we discussed|we talked|as discussed|from our chat|remember)\b",
    re.IGNORECASE,
)
REFERENTIAL_PATTERN = re.compile(
    r"\b(it|that|those|same|again|continue|resume|follow up|follow-up)\b",
    re.IGNORECASE,
)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")

KEYWORD_MATCH_WEIGHT = 1.25


def normalize(text: str) -> str:
    lowered = _NON_ALNUM_RE.sub(" ", text.lower())
    return _WHITESPACE_RE.sub(" ", lowered).strip()


def to_keywords(text: str) -> list[str]:
    """Unique, order-preserving keywords of length >= 2 that are not stopwords."""
    seen: dict[str, None] = {}
    for raw in normalize(text).split(" "):
        if len(raw) < 2 or raw in STOPWORDS:
            continue
        seen.setdefault(raw, None)
    return list(seen)


def compact_snippet(text: str | None, max_chars: int = 320) -> str:
    single_line = _WHITESPACE_RE.sub(" ", text or "").strip()
    if len(single_line) <= max_chars:
        return single_line
    return f"{single_line[: max(0, max_chars - 3)]}..."


def clamp_confidence(value: Any, fallback: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return fallback
    return max(0.0, min(1.0, float(value)))


def score_text(query_terms: list[str], text: str) -> float:
    if not query_terms:
        return 0.0
    terms = set(to_keywords(text))
    if not terms:
        return 0.0
    return sum(KEYWORD_MATCH_WEIGHT for term in query_terms if term in terms)


def parse_json(text: str | None) -> Any:
    """Parse model JSON output, tolerating surrounding code fences. None when unparsable."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", cleaned))
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        return None


def matches_history_reference(query: str) -> bool:
    return bool(HISTORY_QUERY_PATTERN.search(query))


def is_short_referential(query: str, live_turn_count: int) -> bool:
    return live_turn_count <= 2 and len(query) <= 220 and bool(REFERENTIAL_PATTERN.search(query))
