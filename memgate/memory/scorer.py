"""Six-dimension relevance scoring for memory candidates.

final = w_rel * relevance + w_rec * recency + w_scope * scope_match
      + w_type * type_priority + w_decay * (1 - decay) + w_skill * skill_weight

The semantic profile applies when an embedding similarity is available for
the record; otherwise the lexical profile applies. Profiles are never mixed.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from memgate.memory.decay import hours_since
from memgate.memory.models import MemoryRecord, ScoreVector, utcnow


@dataclass(frozen=True)
class WeightProfile:
    name: str
    relevance: float
    recency: float
    scope_match: float
    type_priority: float
    decay: float
    skill_weight: float

    def total(self) -> float:
        return (
            self.relevance + self.recency + self.scope_match
            + self.type_priority + self.decay + self.skill_weight
        )


SEMANTIC_WEIGHTS = WeightProfile(
    name="semantic",
    relevance=0.40,
    recency=0.20,
    scope_match=0.15,
    type_priority=0.10,
    decay=0.10,
    skill_weight=0.05,
)

LEXICAL_WEIGHTS = WeightProfile(
    name="lexical",
    relevance=0.45,
    recency=0.20,
    scope_match=0.15,
    type_priority=0.10,
    decay=0.05,
    skill_weight=0.05,
)

for _profile in (SEMANTIC_WEIGHTS, LEXICAL_WEIGHTS):
    if not math.isclose(_profile.total(), 1.0, abs_tol=1e-9):
        raise RuntimeError(f"weight profile {_profile.name!r} sums to {_profile.total()}")

RECENCY_HALF_LIFE_HOURS = 24.0

SCOPE_GLOBAL_SCORE = 1.0
SCOPE_REQUESTED_SCORE = 0.9
SCOPE_OTHER_SCORE = 0.3

TYPE_PRIORITY = {
    "summary": 1.0,
    "semantic": 0.85,
    "episodic": 0.65,
}
_UNKNOWN_TYPE_PRIORITY = 0.5

STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "had", "her", "was",
    "one", "our", "out", "day", "get", "has", "him", "his", "how", "man", "new", "now",
    "old", "see", "two", "way", "who", "boy", "did", "its", "let", "put", "say", "she",
    "too", "use", "that", "with", "this", "they", "have", "from", "will", "been", "said",
    "each", "about", "your", "more", "also", "into", "just", "like", "than", "then",
    "them", "some", "what", "when", "which", "there", "their", "would", "make", "could",
})

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation, drop stop words and tokens under three chars."""
    if not text:
        return []
    cleaned = _NON_ALNUM_RE.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) > 2 and t not in STOP_WORDS]


def lexical_overlap(query: str, content: str) -> float:
    """Share of distinct query tokens that also appear in *content*."""
    q_tokens = set(tokenize(query))
    if not q_tokens:
        return 0.0
    c_tokens = set(tokenize(content))
    return len(q_tokens & c_tokens) / len(q_tokens)


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def recency_score(last_accessed: datetime, now: datetime | None = None) -> float:
    hours = hours_since(last_accessed, now)
    return math.exp(-math.log(2) * hours / RECENCY_HALF_LIFE_HOURS)


def scope_score(scope: str, requested: Iterable[str]) -> float:
    if scope == "global":
        return SCOPE_GLOBAL_SCORE
    if scope in set(requested):
        return SCOPE_REQUESTED_SCORE
    return SCOPE_OTHER_SCORE


def type_score(kind: str) -> float:
    return TYPE_PRIORITY.get(kind, _UNKNOWN_TYPE_PRIORITY)


def skill_overlap(tags: Sequence[str], active_skills: Iterable[str]) -> float:
    """Fraction of the record's tags that name an active skill."""
    if not tags:
        return 0.0
    active = set(active_skills)
    return sum(1 for t in tags if t in active) / len(tags)


@dataclass
class ScoringContext:
    scopes: tuple[str, ...] = ("conversation",)
    skill_ids: tuple[str, ...] = ()
    query_embedding: list[float] | None = None
    now: datetime = field(default_factory=utcnow)


class CandidateScorer:
    """Score memory records against a query under a fixed weight profile."""

    def score(
        self,
        query: str,
        record: MemoryRecord,
        ctx: ScoringContext,
        *,
        similarity: float | None = None,
    ) -> ScoreVector:
        if similarity is None and ctx.query_embedding and record.embedding:
            similarity = cosine(ctx.query_embedding, record.embedding)

        semantic = similarity is not None
        if semantic:
            relevance = min(1.0, max(0.0, similarity))
            weights = SEMANTIC_WEIGHTS
        else:
            relevance = lexical_overlap(query, record.content)
            weights = LEXICAL_WEIGHTS

        vec = ScoreVector(
            relevance=relevance,
            recency=recency_score(record.last_accessed, ctx.now),
            scope_match=scope_score(record.scope, ctx.scopes),
            type_priority=type_score(record.kind),
            decay_penalty=min(1.0, max(0.0, record.decay_score)),
            skill_weight=skill_overlap(record.tags, ctx.skill_ids),
        )
        vec.final = combine(vec, weights)
        return vec


def combine(vec: ScoreVector, weights: WeightProfile) -> float:
    return (
        weights.relevance * vec.relevance
        + weights.recency * vec.recency
        + weights.scope_match * vec.scope_match
        + weights.type_priority * vec.type_priority
        + weights.decay * (1.0 - vec.decay_penalty)
        + weights.skill_weight * vec.skill_weight
    )
