"""Write-permission gate combining sensitive patterns, forget directives and sentiment."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Sequence, TypeVar

from memgate.logging import get_logger
from memgate.privacy import patterns
from memgate.privacy.sentiment import SentimentLabel, classify_sentiment

logger = get_logger(__name__)

PrivacyMode = Literal["standard", "strict", "permissive"]
FactDecision = Literal["store", "redact", "block"]

PRIVACY_MODES: tuple[str, ...] = ("standard", "strict", "permissive")

# Categories where a redacted fact carries nothing worth keeping.
CREDENTIAL_CATEGORIES = frozenset({"api_key", "password"})

B = TypeVar("B")


@dataclass
class Permissions:
    can_write_episodic: bool = True
    can_write_semantic: bool = True
    can_write_summary: bool = True
    sentiment: SentimentLabel = "neutral"
    sentiment_score: float = 0.0
    redacted_patterns: list[str] = field(default_factory=list)
    retention_override: dict[str, bool] | None = None
    mode: PrivacyMode = "standard"

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_write_episodic": self.can_write_episodic,
            "can_write_semantic": self.can_write_semantic,
            "can_write_summary": self.can_write_summary,
            "sentiment": self.sentiment,
            "sentiment_score": self.sentiment_score,
            "redacted_patterns": list(self.redacted_patterns),
            "retention_override": dict(self.retention_override) if self.retention_override else None,
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Permissions:
        return cls(
            can_write_episodic=bool(data.get("can_write_episodic", True)),
            can_write_semantic=bool(data.get("can_write_semantic", True)),
            can_write_summary=bool(data.get("can_write_summary", True)),
            sentiment=data.get("sentiment", "neutral"),
            sentiment_score=float(data.get("sentiment_score", 0.0)),
            redacted_patterns=list(data.get("redacted_patterns") or []),
            retention_override=data.get("retention_override"),
            mode=data.get("mode", "standard"),
        )


class PrivacyGate:
    """Decide what may be written to memory and scrub what reaches the prompt.

    Detection is best-effort pattern matching. It is a guard rail for the
    memory pipeline, not a data-loss-prevention control.
    """

    def __init__(self, mode: PrivacyMode = "standard") -> None:
        if mode not in PRIVACY_MODES:
            raise ValueError(f"unknown privacy mode: {mode!r}")
        self.mode: PrivacyMode = mode

    def analyze(self, text: str, mode: PrivacyMode | None = None) -> Permissions:
        mode = mode or self.mode
        forget = patterns.has_forget_directive(text)
        found = patterns.detect(text)
        sentiment = classify_sentiment(text)

        episodic = not forget
        if found and mode != "permissive":
            episodic = False
        if mode == "strict" and sentiment.label == "volatile":
            episodic = False

        perms = Permissions(
            can_write_episodic=episodic,
            can_write_semantic=not forget,
            can_write_summary=not forget,
            sentiment=sentiment.label,
            sentiment_score=sentiment.score,
            redacted_patterns=found,
            retention_override=(
                {"forget_after_session": True, "forget_after_project": True} if forget else None
            ),
            mode=mode,
        )
        if forget or found:
            logger.debug(
                "privacy_gate_restricted",
                forget_directive=forget,
                categories=found,
                sentiment=sentiment.label,
                mode=mode,
            )
        return perms

    @staticmethod
    def redact(text: str) -> str:
        return patterns.redact(text)

    def redact_blocks(self, blocks: Sequence[B]) -> list[B]:
        """Return copies of context blocks with content and citation excerpts redacted."""
        out: list[B] = []
        for block in blocks:
            changes: dict[str, Any] = {}
            content = getattr(block, "content", "")
            cleaned = patterns.redact(content)
            if cleaned != content:
                changes["content"] = cleaned
            citation = getattr(block, "citation", None)
            if citation is not None:
                excerpt = patterns.redact(citation.excerpt)
                if excerpt != citation.excerpt:
                    changes["citation"] = replace(citation, excerpt=excerpt)
            out.append(replace(block, **changes) if changes else block)
        return out

    def classify_fact(self, text: str, mode: PrivacyMode | None = None) -> FactDecision:
        """Decide whether an extracted fact is stored as-is, redacted, or dropped."""
        mode = mode or self.mode
        if patterns.has_forget_directive(text):
            return "block"
        found = patterns.detect(text)
        if not found:
            return "store"
        if mode == "strict":
            return "block"
        if mode != "permissive" and CREDENTIAL_CATEGORIES.intersection(found):
            return "block"
        return "redact"

    @staticmethod
    def should_persist(permissions: Permissions, kind: str) -> bool:
        if kind == "episodic":
            return permissions.can_write_episodic
        if kind == "semantic":
            return permissions.can_write_semantic
        if kind == "summary":
            return permissions.can_write_summary
        return False
