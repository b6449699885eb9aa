"""Core memory data types shared by scoring, packing and consolidation."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from memgate.privacy.gate import Permissions

MemoryKind = Literal["episodic", "semantic", "summary"]
MemoryScope = Literal["conversation", "project", "global"]
CandidateOrigin = Literal["short_term", "long_term", "skill"]
JobStatus = Literal["pending", "processing", "done", "failed"]
TriggerReason = Literal["token_pressure", "session_end", "manual"]

MEMORY_KINDS: tuple[str, ...] = ("episodic", "semantic", "summary")
MEMORY_SCOPES: tuple[str, ...] = ("conversation", "project", "global")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:16]}"


def parse_ts(value: Any) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        ts = value
    elif value:
        ts = datetime.fromisoformat(str(value))
    else:
        return utcnow()
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class MemoryRecord:
    """A stored unit of long-term memory."""

    id: str
    kind: MemoryKind
    scope: MemoryScope
    content: str
    user_id: str
    embedding: list[float] | None = None
    tags: list[str] = field(default_factory=list)
    confidence: float = 0.7
    decay_score: float = 0.0
    token_count: int = 0
    session_id: str | None = None
    project_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)
    source: str = "user"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "scope": self.scope,
            "content": self.content,
            "user_id": self.user_id,
            "embedding": self.embedding,
            "tags": list(self.tags),
            "confidence": self.confidence,
            "decay_score": self.decay_score,
            "token_count": self.token_count,
            "session_id": self.session_id,
            "project_id": self.project_id,
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryRecord:
        return cls(
            id=str(data["id"]),
            kind=data.get("kind", "episodic"),
            scope=data.get("scope", "conversation"),
            content=str(data.get("content", "")),
            user_id=str(data.get("user_id", "")),
            embedding=data.get("embedding"),
            tags=list(data.get("tags") or []),
            confidence=float(data.get("confidence", 0.7)),
            decay_score=float(data.get("decay_score", 0.0)),
            token_count=int(data.get("token_count", 0)),
            session_id=data.get("session_id"),
            project_id=data.get("project_id"),
            created_at=parse_ts(data.get("created_at")),
            last_accessed=parse_ts(data.get("last_accessed")),
            source=str(data.get("source", "user")),
        )


@dataclass(frozen=True)
class WindowTurn:
    """One message of the short-term sliding window."""

    role: str
    content: str
    token_count: int
    turn_index: int
    created_at: datetime = field(default_factory=utcnow)
    # False for turns under a forget directive; never consolidated.
    retain: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "token_count": self.token_count,
            "turn_index": self.turn_index,
            "created_at": self.created_at.isoformat(),
            "retain": self.retain,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WindowTurn:
        return cls(
            role=str(data.get("role", "user")),
            content=str(data.get("content", "")),
            token_count=int(data.get("token_count", 0)),
            turn_index=int(data.get("turn_index", 0)),
            created_at=parse_ts(data.get("created_at")),
            retain=bool(data.get("retain", True)),
        )


@dataclass
class ScoreVector:
    relevance: float = 0.0
    recency: float = 0.0
    scope_match: float = 0.0
    type_priority: float = 0.0
    decay_penalty: float = 0.0
    skill_weight: float = 0.0
    final: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "relevance": round(self.relevance, 4),
            "recency": round(self.recency, 4),
            "scope_match": round(self.scope_match, 4),
            "type_priority": round(self.type_priority, 4),
            "decay_penalty": round(self.decay_penalty, 4),
            "skill_weight": round(self.skill_weight, 4),
            "final": round(self.final, 4),
        }


@dataclass
class Citation:
    origin: str
    relevance: float
    excerpt: str


@dataclass
class ScoredCandidate:
    """A record (or skill fragment) competing for a slot in the prompt."""

    source_id: str
    origin: CandidateOrigin
    content: str
    label: str
    token_count: int
    scores: ScoreVector
    citation: Citation | None = None
    kind: str | None = None
    priority: int = 0
    dropped: bool = False
    drop_reason: str | None = None

    @property
    def final(self) -> float:
        return self.scores.final

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "origin": self.origin,
            "label": self.label,
            "token_count": self.token_count,
            "scores": self.scores.to_dict(),
            "dropped": self.dropped,
            "drop_reason": self.drop_reason,
        }


@dataclass(frozen=True)
class ContextBlock:
    label: str
    content: str
    token_count: int
    origin: str
    citation: Citation | None = None


@dataclass
class MemoryDiff:
    added: int = 0
    updated: int = 0
    removed: int = 0
    added_ids: list[str] = field(default_factory=list)
    updated_ids: list[str] = field(default_factory=list)
    key_facts: list[str] = field(default_factory=list)
    blocked_facts: int = 0
    step_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "added_ids": list(self.added_ids),
            "updated_ids": list(self.updated_ids),
            "key_facts": list(self.key_facts),
            "blocked_facts": self.blocked_facts,
            "step_errors": dict(self.step_errors),
        }


@dataclass(frozen=True)
class ConsolidationJob:
    """A queued request to consolidate one conversation's transcript.

    The transcript is an immutable snapshot taken at enqueue time so that
    later compaction of the live window cannot change what gets consolidated.
    """

    id: str
    conversation_id: str
    user_id: str
    reason: TriggerReason
    transcript: tuple[WindowTurn, ...]
    permissions: Permissions
    project_id: str | None = None
    status: JobStatus = "pending"
    created_at: datetime = field(default_factory=utcnow)
    error: str | None = None
    result: MemoryDiff | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "reason": self.reason,
            "transcript": [t.to_dict() for t in self.transcript],
            "permissions": self.permissions.to_dict(),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsolidationJob:
        from memgate.privacy.gate import Permissions

        result = data.get("result")
        return cls(
            id=str(data["id"]),
            conversation_id=str(data.get("conversation_id", "")),
            user_id=str(data.get("user_id", "")),
            project_id=data.get("project_id"),
            reason=data.get("reason", "manual"),
            transcript=tuple(WindowTurn.from_dict(t) for t in data.get("transcript") or []),
            permissions=Permissions.from_dict(data.get("permissions") or {}),
            status=data.get("status", "pending"),
            created_at=parse_ts(data.get("created_at")),
            error=data.get("error"),
            result=MemoryDiff(**result) if isinstance(result, dict) else None,
        )
