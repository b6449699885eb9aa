"""Gather and score candidates from the short-term window and long-term stores."""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Sequence

from memgate.logging import get_logger
from memgate.memory.models import (
    Citation,
    MemoryRecord,
    ScoredCandidate,
    WindowTurn,
)
from memgate.memory.scorer import CandidateScorer, ScoringContext
from memgate.memory.tokens import count_tokens
from memgate.memory.touch import TouchDispatcher
from memgate.storage.base import MemoryStorage, RecordFilter, SemanticIndex

logger = get_logger(__name__)

CITATION_EXCERPT_CHARS = 120
TURN_ID_PREFIX = "turn:"

ALL_SOURCES: tuple[str, ...] = ("short_term", "long_term", "semantic")


def turn_source_id(turn: WindowTurn) -> str:
    return f"{TURN_ID_PREFIX}{turn.turn_index}"


def _label(record: MemoryRecord) -> str:
    tags = ", ".join(record.tags) if record.tags else "memory"
    return f"[{record.kind}:{record.scope}] {tags}"


def _citation(origin: str, relevance: float, content: str) -> Citation:
    return Citation(
        origin=origin,
        relevance=round(relevance, 4),
        excerpt=content[:CITATION_EXCERPT_CHARS],
    )


class SourceAggregator:
    """Query enabled sources, score, deduplicate and rank memory candidates."""

    def __init__(
        self,
        storage: MemoryStorage,
        *,
        semantic_index: SemanticIndex | None = None,
        scorer: CandidateScorer | None = None,
        touch: TouchDispatcher | None = None,
        pool_multiplier: int = 3,
        decay_ceiling: float = 0.8,
    ) -> None:
        self.storage = storage
        self.semantic_index = semantic_index
        self.scorer = scorer or CandidateScorer()
        self.touch = touch or TouchDispatcher(storage)
        self.pool_multiplier = pool_multiplier
        self.decay_ceiling = decay_ceiling

    async def gather(
        self,
        query: str,
        ctx: ScoringContext,
        *,
        flt: RecordFilter,
        window: Sequence[WindowTurn] = (),
        sources: Iterable[str] = ALL_SOURCES,
        top_k: int = 5,
        limit: int = 25,
        touch_results: bool = True,
    ) -> list[ScoredCandidate]:
        """Score every enabled source and return the best ``limit`` candidates.

        With ``touch_results`` off the caller touches only what it ends up
        surfacing.
        """
        enabled = set(sources)
        pool = max(1, self.pool_multiplier * top_k)
        candidates: list[ScoredCandidate] = []

        if "short_term" in enabled:
            candidates.extend(self._score_window(query, ctx, window, flt, pool))
        if "long_term" in enabled:
            candidates.extend(await self._score_long_term(query, ctx, flt, pool))
        if "semantic" in enabled:
            candidates.extend(await self._score_semantic(ctx, flt, pool, query))

        ranked = self._dedupe(candidates)
        ranked.sort(key=lambda c: (-c.final, c.source_id))
        ranked = ranked[: max(0, limit)]

        if touch_results:
            self.touch.dispatch(c.source_id for c in ranked if c.origin == "long_term")
        logger.debug(
            "candidates_gathered",
            sources=sorted(enabled),
            scored=len(candidates),
            returned=len(ranked),
        )
        return ranked

    def _score_window(
        self,
        query: str,
        ctx: ScoringContext,
        window: Sequence[WindowTurn],
        flt: RecordFilter,
        pool: int,
    ) -> list[ScoredCandidate]:
        out: list[ScoredCandidate] = []
        turns = [t for t in window if t.role != "system"][-pool:]
        for turn in turns:
            record = MemoryRecord(
                id=turn_source_id(turn),
                kind="episodic",
                scope="conversation",
                content=turn.content,
                user_id=flt.user_id or "",
                token_count=turn.token_count,
                session_id=flt.session_id,
                created_at=turn.created_at,
                last_accessed=turn.created_at,
            )
            scores = self.scorer.score(query, record, ctx)
            out.append(ScoredCandidate(
                source_id=record.id,
                origin="short_term",
                content=turn.content,
                label=f"[{turn.role}:turn {turn.turn_index}]",
                token_count=turn.token_count,
                scores=scores,
                citation=_citation("short_term", scores.relevance, turn.content),
                kind="episodic",
            ))
        return out

    async def _score_long_term(
        self,
        query: str,
        ctx: ScoringContext,
        flt: RecordFilter,
        pool: int,
    ) -> list[ScoredCandidate]:
        query_flt = replace(flt, exclude_above_decay=self.decay_ceiling, limit=pool)
        try:
            records = await self.storage.query_records(query_flt)
        except Exception as e:
            logger.warning("long_term_source_unavailable", error=str(e))
            return []
        return [self._from_record(query, r, ctx, origin_label="long_term") for r in records]

    async def _score_semantic(
        self,
        ctx: ScoringContext,
        flt: RecordFilter,
        pool: int,
        query: str,
    ) -> list[ScoredCandidate]:
        if self.semantic_index is None or not ctx.query_embedding:
            return []
        try:
            hits = await self.semantic_index.search(ctx.query_embedding, 0.0, pool, flt)
        except Exception as e:
            logger.warning("semantic_source_unavailable", error=str(e))
            return []

        out: list[ScoredCandidate] = []
        for hit in hits:
            metadata = dict(hit.metadata or {})
            metadata.setdefault("id", hit.id)
            metadata.setdefault("content", hit.content)
            try:
                record = MemoryRecord.from_dict(metadata)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("semantic_hit_skipped", hit_id=hit.id, error=str(e))
                continue
            if record.decay_score >= self.decay_ceiling:
                continue
            out.append(self._from_record(
                query, record, ctx, origin_label="semantic", similarity=hit.similarity,
            ))
        return out

    def _from_record(
        self,
        query: str,
        record: MemoryRecord,
        ctx: ScoringContext,
        *,
        origin_label: str,
        similarity: float | None = None,
    ) -> ScoredCandidate:
        scores = self.scorer.score(query, record, ctx, similarity=similarity)
        return ScoredCandidate(
            source_id=record.id,
            origin="long_term",
            content=record.content,
            label=_label(record),
            token_count=record.token_count or count_tokens(record.content),
            scores=scores,
            citation=_citation(origin_label, scores.relevance, record.content),
            kind=record.kind,
        )

    @staticmethod
    def _dedupe(candidates: Iterable[ScoredCandidate]) -> list[ScoredCandidate]:
        best: dict[str, ScoredCandidate] = {}
        for cand in candidates:
            current = best.get(cand.source_id)
            if current is None or cand.final > current.final:
                best[cand.source_id] = cand
        return list(best.values())
