"""Tests for relevance gating, nested budget packing and prompt assembly."""

from memgate.config.schema import BudgetConfig
from memgate.memory.models import Citation, ScoredCandidate, ScoreVector, WindowTurn
from memgate.memory.packer import (
    ALREADY_IN_WINDOW,
    MEMORY_BUDGET_EXCEEDED,
    SKILL_BUDGET_EXCEEDED,
    BudgetPacker,
    below_threshold_reason,
)


def _cand(source_id: str, final: float, tokens: int, *, origin: str = "long_term", content: str | None = None,
          priority: int = 0) -> ScoredCandidate:
    content = content if content is not None else f"memory {source_id}"
    return ScoredCandidate(
        source_id=source_id,
        origin=origin,  # type: ignore[arg-type]
        content=content,
        label=f"[semantic:global] {source_id}",
        token_count=tokens,
        scores=ScoreVector(relevance=final, final=final),
        citation=Citation(origin=origin, relevance=final, excerpt=content[:120]),
        kind="semantic",
        priority=priority,
    )


def _skill(skill_id: str, priority: int, tokens: int) -> ScoredCandidate:
    return ScoredCandidate(
        source_id=f"skill:{skill_id}",
        origin="skill",
        content=f"Skill fragment for {skill_id}.",
        label=f"[skill:{skill_id}]",
        token_count=tokens,
        scores=ScoreVector(final=1.0),
        priority=priority,
    )


def _packer(long_term: int = 3000, skill: int = 1500, threshold: float = 0.72) -> BudgetPacker:
    budgets = BudgetConfig(long_term_tokens=long_term, skill_tokens=skill)
    return BudgetPacker(budgets, threshold, base_instructions="Base.")


# ---------------------------------------------------------------------------
# Gate and budgets
# ---------------------------------------------------------------------------


class TestPacking:
    def test_oversized_candidate_dropped_for_budget(self) -> None:
        result = _packer(long_term=40).pack([_cand("m1", 0.80, 50)])
        assert result.packed == []
        assert len(result.dropped) == 1
        assert result.dropped[0].dropped is True
        assert result.dropped[0].drop_reason == MEMORY_BUDGET_EXCEEDED

    def test_below_threshold_reason_carries_threshold(self) -> None:
        result = _packer().pack([_cand("low", 0.5, 10)])
        assert result.dropped[0].drop_reason == below_threshold_reason(0.72)
        assert result.dropped[0].drop_reason == "below_threshold:0.72"

    def test_candidate_at_threshold_is_viable(self) -> None:
        result = _packer().pack([_cand("edge", 0.72, 10)])
        assert [c.source_id for c in result.packed] == ["edge"]

    def test_skips_large_item_and_keeps_packing_smaller(self) -> None:
        cands = [_cand("a", 0.95, 30), _cand("b", 0.90, 30), _cand("c", 0.85, 10)]
        result = _packer(long_term=45).pack(cands)
        assert [c.source_id for c in result.packed] == ["a", "c"]
        assert [(c.source_id, c.drop_reason) for c in result.dropped] == [("b", MEMORY_BUDGET_EXCEEDED)]

    def test_budgets_are_respected(self) -> None:
        cands = [_cand(f"m{i}", 0.9 - i * 0.01, 17) for i in range(20)]
        skills = [_skill("general", 0, 40), _skill("code", 10, 40), _skill("memory_aware", 15, 40)]
        result = _packer(long_term=100, skill=90).pack(cands, skills=skills)

        memory_tokens = sum(c.token_count for c in result.packed if c.origin != "skill")
        skill_tokens = sum(c.token_count for c in result.packed if c.origin == "skill")
        assert memory_tokens <= 100
        assert skill_tokens <= 90

    def test_skills_ranked_by_priority(self) -> None:
        skills = [_skill("general", 0, 40), _skill("code", 10, 40), _skill("memory_aware", 15, 40)]
        result = _packer(skill=90).pack([], skills=skills)
        assert [c.source_id for c in result.packed] == ["skill:memory_aware", "skill:code"]
        assert result.dropped[0].source_id == "skill:general"
        assert result.dropped[0].drop_reason == SKILL_BUDGET_EXCEEDED

    def test_ties_broken_by_source_id(self) -> None:
        cands = [_cand("z", 0.8, 5), _cand("a", 0.8, 5), _cand("m", 0.8, 5)]
        result = _packer().pack(cands)
        assert [c.source_id for c in result.packed] == ["a", "m", "z"]

    def test_short_term_duplicate_of_window_dropped(self) -> None:
        window = [WindowTurn(role="user", content="hello there", token_count=3, turn_index=4)]
        cands = [_cand("turn:4", 0.9, 3, origin="short_term"), _cand("turn:1", 0.9, 3, origin="short_term")]
        result = _packer().pack(cands, window=window, user_message="hi")
        assert [c.source_id for c in result.packed] == ["turn:1"]
        assert result.dropped[0].drop_reason == ALREADY_IN_WINDOW

    def test_pack_is_deterministic(self) -> None:
        cands = [_cand(f"m{i}", 0.75 + (i % 4) * 0.05, 11 + i) for i in range(12)]
        first = _packer(long_term=120).pack(list(cands), user_message="q").trace()
        second = _packer(long_term=120).pack(list(reversed(cands)), user_message="q").trace()
        assert first == second

    def test_inputs_are_not_mutated(self) -> None:
        cand = _cand("m1", 0.1, 5)
        _packer().pack([cand])
        assert cand.dropped is False
        assert cand.drop_reason is None


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


class TestAssembly:
    def test_token_breakdown_sums(self) -> None:
        window = [
            WindowTurn(role="user", content="first question", token_count=7, turn_index=0),
            WindowTurn(role="assistant", content="first answer", token_count=9, turn_index=1),
        ]
        packer = _packer()
        result = packer.pack([_cand("m1", 0.9, 25)], skills=[_skill("general", 0, 12)], window=window,
                             user_message="next question")
        bd = result.prompt.token_breakdown
        assert bd.context == 25
        assert bd.history == 16
        assert bd.total == bd.system + bd.context + bd.history + bd.user_message
        assert bd.budget_remaining == max(0, packer.budgets.grand_total - bd.total)

    def test_budget_remaining_never_negative(self) -> None:
        packer = BudgetPacker(
            BudgetConfig(short_term_tokens=0, long_term_tokens=0, skill_tokens=0, response_reserve_tokens=0),
            0.5,
            base_instructions="Base instructions that cost tokens.",
        )
        result = packer.pack([], user_message="hello")
        assert result.prompt.token_breakdown.budget_remaining == 0

    def test_messages_end_with_user_message(self) -> None:
        window = [
            WindowTurn(role="system", content="note", token_count=1, turn_index=0),
            WindowTurn(role="user", content="q1", token_count=1, turn_index=1),
            WindowTurn(role="assistant", content="a1", token_count=1, turn_index=2),
        ]
        result = _packer().pack([], window=window, user_message="q2")
        assert result.prompt.messages == [
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
            {"role": "user", "content": "q2"},
        ]
        flat = result.prompt.to_messages()
        assert flat[0]["role"] == "system"
        assert flat[-1] == {"role": "user", "content": "q2"}

    def test_system_has_skills_and_citation_header(self) -> None:
        cands = [_cand(f"m{i}", 0.9 - i * 0.01, 5) for i in range(7)]
        result = _packer().pack(cands, skills=[_skill("code", 10, 8)], user_message="q")
        system = result.prompt.system
        assert system.startswith("Base.")
        assert "Skill fragment for code." in system
        assert "[Retrieved context: 7 sources]" in system
        assert "5. (long_term" in system
        assert "6. (long_term" not in system
        assert len(result.citations) == 7

    def test_context_blocks_and_citations_are_redacted(self) -> None:
        cand = _cand("m1", 0.9, 12, content="Contact the owner at owner@example.com for access")
        result = _packer().pack([cand], user_message="q")
        block = result.prompt.context_blocks[0]
        assert "owner@example.com" not in block.content
        assert "[REDACTED:EMAIL]" in block.content
        assert "owner@example.com" not in result.prompt.system
        assert "owner@example.com" not in result.citations[0].excerpt

    def test_trace_lists_packed_and_dropped(self) -> None:
        result = _packer(long_term=10).pack([_cand("big", 0.9, 50), _cand("low", 0.2, 5), _cand("ok", 0.8, 5)])
        trace = result.trace()
        assert [c["source_id"] for c in trace["packed"]] == ["ok"]
        reasons = {c["source_id"]: c["drop_reason"] for c in trace["dropped"]}
        assert reasons == {"low": "below_threshold:0.72", "big": MEMORY_BUDGET_EXCEEDED}
        assert set(trace["token_breakdown"]) == {
            "system", "context", "history", "user_message", "total", "budget_remaining",
        }
