"""Relevance gate and greedy nested-budget packing into an assembled prompt."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Sequence

from memgate.config.schema import BudgetConfig
from memgate.logging import get_logger
from memgate.memory.aggregator import turn_source_id
from memgate.memory.models import Citation, ContextBlock, ScoredCandidate, WindowTurn
from memgate.memory.tokens import count_tokens
from memgate.privacy.gate import PrivacyGate

logger = get_logger(__name__)

SKILL_BUDGET_EXCEEDED = "skill_budget_exceeded"
MEMORY_BUDGET_EXCEEDED = "memory_budget_exceeded"
ALREADY_IN_WINDOW = "already_in_window"
MAX_HEADER_CITATIONS = 5


def below_threshold_reason(threshold: float) -> str:
    return f"below_threshold:{threshold:g}"


@dataclass
class TokenBreakdown:
    system: int = 0
    context: int = 0
    history: int = 0
    user_message: int = 0
    total: int = 0
    budget_remaining: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "system": self.system,
            "context": self.context,
            "history": self.history,
            "user_message": self.user_message,
            "total": self.total,
            "budget_remaining": self.budget_remaining,
        }


@dataclass
class AssembledPrompt:
    system: str
    context_blocks: list[ContextBlock]
    messages: list[dict[str, str]]
    token_breakdown: TokenBreakdown

    def to_messages(self) -> list[dict[str, str]]:
        """Flatten into chat-completion messages with context appended to the system turn."""
        system = self.system
        if self.context_blocks:
            rendered = "\n\n".join(f"{b.label}\n{b.content}" for b in self.context_blocks)
            system = f"{system}\n\n# Retrieved Memory\n\n{rendered}"
        return [{"role": "system", "content": system}, *self.messages]


@dataclass
class PackResult:
    packed: list[ScoredCandidate]
    dropped: list[ScoredCandidate]
    window: list[WindowTurn]
    prompt: AssembledPrompt
    citations: list[Citation] = field(default_factory=list)

    def trace(self) -> dict[str, Any]:
        return {
            "packed": [c.to_dict() for c in self.packed],
            "dropped": [c.to_dict() for c in self.dropped],
            "token_breakdown": self.prompt.token_breakdown.to_dict(),
        }


def _drop(candidate: ScoredCandidate, reason: str) -> ScoredCandidate:
    return replace(candidate, dropped=True, drop_reason=reason)


def _keep(candidate: ScoredCandidate) -> ScoredCandidate:
    return replace(candidate, dropped=False, drop_reason=None)


class BudgetPacker:
    """One-pass gate, rank, pack and assemble.

    Skills pack first against the skill budget, memory next against the
    long-term budget. Non-fitting items are skipped, not terminal: a smaller
    item further down the ranking may still fit. Output depends only on the
    inputs, never on wall-clock time or iteration order of unordered sets.
    """

    def __init__(
        self,
        budgets: BudgetConfig,
        threshold: float,
        *,
        gate: PrivacyGate | None = None,
        base_instructions: str = "",
    ) -> None:
        self.budgets = budgets
        self.threshold = threshold
        self.gate = gate or PrivacyGate()
        self.base_instructions = base_instructions

    def pack(
        self,
        candidates: Sequence[ScoredCandidate],
        *,
        skills: Sequence[ScoredCandidate] = (),
        window: Sequence[WindowTurn] = (),
        user_message: str = "",
    ) -> PackResult:
        dropped: list[ScoredCandidate] = []
        viable: list[ScoredCandidate] = []
        reason = below_threshold_reason(self.threshold)
        for cand in candidates:
            if cand.final >= self.threshold:
                viable.append(cand)
            else:
                dropped.append(_drop(cand, reason))

        viable.sort(key=lambda c: (-c.final, c.source_id))
        ranked_skills = sorted(skills, key=lambda c: (-c.priority, c.source_id))

        packed: list[ScoredCandidate] = []
        used = 0
        for cand in ranked_skills:
            if used + cand.token_count <= self.budgets.skill_tokens:
                packed.append(_keep(cand))
                used += cand.token_count
            else:
                dropped.append(_drop(cand, SKILL_BUDGET_EXCEEDED))

        in_window = {turn_source_id(t) for t in window}
        used = 0
        for cand in viable:
            if cand.origin == "short_term" and cand.source_id in in_window:
                dropped.append(_drop(cand, ALREADY_IN_WINDOW))
                continue
            if used + cand.token_count <= self.budgets.long_term_tokens:
                packed.append(_keep(cand))
                used += cand.token_count
            else:
                dropped.append(_drop(cand, MEMORY_BUDGET_EXCEEDED))

        prompt, citations = self._assemble(packed, window, user_message)
        logger.debug(
            "context_packed",
            packed=len(packed),
            dropped=len(dropped),
            threshold=self.threshold,
            total_tokens=prompt.token_breakdown.total,
        )
        return PackResult(
            packed=packed,
            dropped=dropped,
            window=list(window),
            prompt=prompt,
            citations=citations,
        )

    def _assemble(
        self,
        packed: Sequence[ScoredCandidate],
        window: Sequence[WindowTurn],
        user_message: str,
    ) -> tuple[AssembledPrompt, list[Citation]]:
        skill_items = [c for c in packed if c.origin == "skill"]
        memory_items = [c for c in packed if c.origin != "skill"]

        blocks = self.gate.redact_blocks([
            ContextBlock(
                label=c.label,
                content=c.content,
                token_count=c.token_count,
                origin=c.origin,
                citation=c.citation,
            )
            for c in memory_items
        ])
        citations = [b.citation for b in blocks if b.citation is not None]

        parts = [self.base_instructions, *(c.content for c in skill_items)]
        if citations:
            parts.append(self._citation_header(citations))
        system = "\n\n".join(p for p in parts if p)

        messages = [
            {"role": t.role, "content": t.content}
            for t in window
            if t.role != "system"
        ]
        messages.append({"role": "user", "content": user_message})

        breakdown = TokenBreakdown(
            system=count_tokens(system),
            context=sum(b.token_count for b in blocks),
            history=sum(t.token_count for t in window),
            user_message=count_tokens(user_message),
        )
        breakdown.total = breakdown.system + breakdown.context + breakdown.history + breakdown.user_message
        breakdown.budget_remaining = max(0, self.budgets.grand_total - breakdown.total)
        prompt = AssembledPrompt(
            system=system,
            context_blocks=blocks,
            messages=messages,
            token_breakdown=breakdown,
        )
        return prompt, citations

    @staticmethod
    def _citation_header(citations: Sequence[Citation]) -> str:
        lines = [f"[Retrieved context: {len(citations)} sources]"]
        for i, cite in enumerate(citations[:MAX_HEADER_CITATIONS], start=1):
            lines.append(f"{i}. ({cite.origin}, relevance {cite.relevance:.2f}) {cite.excerpt}")
        return "\n".join(lines)
