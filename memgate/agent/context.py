"""Context builder: per-request orchestration of retrieval, packing and triggering."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from memgate.config.schema import Config, Loadout
from memgate.logging import get_logger
from memgate.memory.aggregator import SourceAggregator
from memgate.memory.compactor import CompactionResult, WindowCompactor
from memgate.memory.models import ConsolidationJob, new_id
from memgate.memory.packer import BudgetPacker, PackResult
from memgate.memory.scorer import CandidateScorer, ScoringContext
from memgate.memory.skills import Skill, SkillTable, active_skill_tags, resolve_scopes
from memgate.memory.touch import TouchDispatcher
from memgate.memory.trigger import ConsolidationTrigger, compute_pressure, evaluate_trigger
from memgate.privacy.gate import Permissions, PrivacyGate
from memgate.session.manager import Conversation, ConversationManager
from memgate.storage.base import Embedder, MemoryStorage, RecordFilter, SemanticIndex

logger = get_logger(__name__)


@dataclass
class BuildResult:
    pack: PackResult
    permissions: Permissions
    trigger: ConsolidationTrigger
    pressure: float
    loadout_id: str
    skills: list[Skill] = field(default_factory=list)
    scopes: tuple[str, ...] = ()


@dataclass
class TurnOutcome:
    compaction: CompactionResult
    trigger: ConsolidationTrigger
    job: ConsolidationJob | None = None


class ContextBuilder:
    """
    Builds the prompt for one request and records the finished exchange.

    ``build`` runs skills, scope routing, retrieval, window selection and
    packing, then evaluates permissions and budget pressure. ``record_turn``
    appends the exchange, compacts the stored window and enqueues a
    consolidation job when the trigger fires.
    """

    def __init__(
        self,
        config: Config,
        storage: MemoryStorage,
        conversations: ConversationManager,
        *,
        semantic_index: SemanticIndex | None = None,
        embedder: Embedder | None = None,
        gate: PrivacyGate | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.conversations = conversations
        self.semantic_index = semantic_index
        self.embedder = embedder
        self.gate = gate or PrivacyGate()
        self.skill_table = SkillTable(config.skills)
        self.scorer = CandidateScorer()
        self.touch = TouchDispatcher(storage)

    async def build(
        self,
        conversation_key: str,
        message: str,
        *,
        user_id: str,
        project_id: str | None = None,
        loadout: str | None = None,
        session_end: bool = False,
        force: bool = False,
    ) -> BuildResult:
        lo = self.config.get_loadout(loadout)
        conversation = self.conversations.get_or_create(conversation_key, user_id=user_id, project_id=project_id)
        project_id = project_id or conversation.project_id
        structlog.contextvars.bind_contextvars(conversation_key=conversation_key, loadout=lo.id)
        try:
            skills = self.skill_table.activate(message, lo.active_skills)
            scopes = resolve_scopes(message, project_id)
            embedding = await self._embed_query(message, lo)
            ctx = ScoringContext(
                scopes=scopes,
                skill_ids=active_skill_tags(skills),
                query_embedding=embedding,
            )

            aggregator = SourceAggregator(
                self.storage,
                semantic_index=self.semantic_index,
                scorer=self.scorer,
                touch=self.touch,
                pool_multiplier=lo.pool_multiplier,
                decay_ceiling=lo.thresholds.decay_ceiling,
            )
            compactor = self._compactor(lo)
            window = compactor.select(conversation.turns, lo.budgets.short_term_tokens)
            candidates = await aggregator.gather(
                message,
                ctx,
                flt=RecordFilter(user_id=user_id, session_id=conversation_key, project_id=project_id),
                window=conversation.turns,
                sources=lo.sources,
                top_k=lo.top_k,
                limit=lo.retrieval_limit,
                touch_results=False,
            )

            packer = BudgetPacker(
                lo.budgets,
                lo.thresholds.relevance_threshold,
                gate=self.gate,
                base_instructions=self.config.base_instructions,
            )
            result = packer.pack(
                candidates,
                skills=[s.to_candidate() for s in skills],
                window=window,
                user_message=message,
            )
            self.touch.dispatch(c.source_id for c in result.packed if c.origin == "long_term")

            permissions = self.gate.analyze(message, lo.privacy_mode)
            pressure = compute_pressure(result.prompt.token_breakdown.total, lo.budgets)
            trigger = evaluate_trigger(
                pressure=pressure,
                trigger_ratio=lo.thresholds.trigger_ratio,
                permissions=permissions,
                session_end=session_end,
                force=force,
            )
            logger.info(
                "context_built",
                skills=[s.id for s in skills],
                scopes=list(scopes),
                packed=len(result.packed),
                dropped=len(result.dropped),
                total_tokens=result.prompt.token_breakdown.total,
                pressure=round(pressure, 4),
                consolidation_due=trigger.should_enqueue,
            )
            return BuildResult(
                pack=result,
                permissions=permissions,
                trigger=trigger,
                pressure=pressure,
                loadout_id=lo.id,
                skills=skills,
                scopes=scopes,
            )
        finally:
            structlog.contextvars.unbind_contextvars("conversation_key", "loadout")

    async def record_turn(
        self,
        conversation_key: str,
        user_message: str,
        assistant_message: str,
        *,
        permissions: Permissions,
        user_id: str = "",
        project_id: str | None = None,
        pressure: float | None = None,
        loadout: str | None = None,
        session_end: bool = False,
        force: bool = False,
    ) -> TurnOutcome:
        """Append an exchange, compact the stored window and maybe enqueue a job.

        The job transcript is snapshotted before compaction so evicted turns
        still reach consolidation. An exchange under a retention override stays
        in the live window but is left out of every snapshot.
        """
        lo = self.config.get_loadout(loadout)
        conversation = self.conversations.get_or_create(conversation_key, user_id=user_id, project_id=project_id)
        retain = not permissions.retention_override
        conversation.add_turn("user", user_message, retain=retain)
        conversation.add_turn("assistant", assistant_message, retain=retain)
        snapshot = tuple(t for t in conversation.turns if t.retain)

        compaction = self._compactor(lo).compact(
            conversation.turns,
            lo.budgets.short_term_tokens,
            trigger_ratio=lo.thresholds.trigger_ratio,
            compaction_pass=conversation.compaction_pass,
            pressure=pressure,
        )
        conversation.turns = compaction.window
        conversation.compaction_pass = compaction.compaction_pass

        trigger = evaluate_trigger(
            pressure=compaction.pressure,
            trigger_ratio=lo.thresholds.trigger_ratio,
            permissions=permissions,
            session_end=session_end,
            force=force,
        )
        job = None
        if trigger.should_enqueue and trigger.reason is not None:
            job = await self._enqueue(conversation, snapshot, permissions, trigger)
        self.conversations.save(conversation)
        return TurnOutcome(compaction=compaction, trigger=trigger, job=job)

    async def _enqueue(
        self,
        conversation: Conversation,
        snapshot: tuple,
        permissions: Permissions,
        trigger: ConsolidationTrigger,
    ) -> ConsolidationJob:
        job = ConsolidationJob(
            id=new_id("job_"),
            conversation_id=conversation.key,
            user_id=conversation.user_id,
            project_id=conversation.project_id,
            reason=trigger.reason or "manual",
            transcript=snapshot,
            permissions=Permissions.from_dict(permissions.to_dict()),
        )
        await self.storage.insert_job(job)
        logger.info(
            "consolidation_enqueued",
            job_id=job.id,
            conversation_key=conversation.key,
            reason=job.reason,
            turns=len(snapshot),
        )
        return job

    async def _embed_query(self, message: str, lo: Loadout) -> list[float] | None:
        if self.embedder is None or "semantic" not in lo.sources:
            return None
        try:
            return await self.embedder.embed(message)
        except Exception as e:
            logger.warning("query_embedding_failed", error=str(e))
            return None

    @staticmethod
    def _compactor(lo: Loadout) -> WindowCompactor:
        return WindowCompactor(
            target_ratio=lo.compaction.target_ratio,
            min_turns=lo.compaction.min_turns,
            max_turns=lo.compaction.max_turns,
        )
