"""Background consolidation: summarize, extract facts, refresh decay, emit a diff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from memgate.config.schema import WorkerConfig
from memgate.logging import get_logger
from memgate.memory.decay import compute_decay
from memgate.memory.models import (
    ConsolidationJob,
    MemoryDiff,
    MemoryRecord,
    WindowTurn,
    new_id,
    utcnow,
)
from memgate.memory.summary_policy import SummaryRoutingPolicy, parse_extracted_facts
from memgate.memory.tokens import count_tokens
from memgate.privacy.gate import PrivacyGate
from memgate.storage.base import Embedder, MemoryStorage, RecordFilter, TextGenerator

logger = get_logger(__name__)

SUMMARY_TAGS = ["summary", "auto-generated"]
SUMMARY_CONFIDENCE = 0.9
TRANSCRIPT_PROMPT_CHARS = 4000

SUMMARY_PROMPT = """Summarize this conversation for long-term memory.
Return ONLY a JSON object of the form
{{"summary": "<2-4 sentence prose summary>", "key_facts": ["<short declarative fact>", ...]}}
with between 3 and 7 key facts. Focus on decisions, stated preferences,
important facts and open questions. Be specific.

<conversation>
{transcript}
</conversation>"""

EXTRACT_PROMPT = """Extract durable facts and preferences from this conversation.
Return ONLY a JSON array of objects of the form
{{"content": "<fact>", "tags": ["<keyword>"], "confidence": <0.5-1.0>, "scope": "conversation" | "project" | "global"}}

Rules:
- Only include facts likely to remain true across conversations
- 1-3 tags per fact
- At most {limit} items
- Return [] if nothing durable was said

<conversation>
{transcript}
</conversation>"""


class StepSkipped(Exception):
    """A step had nothing to do or its generator was unavailable."""


def _retained(job: ConsolidationJob) -> list[WindowTurn]:
    return [t for t in job.transcript if t.retain]


@dataclass
class JobContext:
    job: ConsolidationJob
    transcript_text: str
    diff: MemoryDiff = field(default_factory=MemoryDiff)
    inserted_ids: set[str] = field(default_factory=set)
    attempted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class ConsolidationWorker:
    """Poll-based consumer of pending consolidation jobs.

    Every step is failure-tolerant: an exception is recorded on the diff and
    the remaining steps still run. A job fails only when it raises outside a
    step or when every attempted step failed. Delivery is at-least-once, so a
    job re-run after a crash may insert duplicate facts.
    """

    def __init__(
        self,
        storage: MemoryStorage,
        generator: TextGenerator | None = None,
        *,
        gate: PrivacyGate | None = None,
        config: WorkerConfig | None = None,
        embedder: Embedder | None = None,
        summary_policy: SummaryRoutingPolicy | None = None,
    ) -> None:
        self.storage = storage
        self.generator = generator
        self.gate = gate or PrivacyGate()
        self.config = config or WorkerConfig()
        self.embedder = embedder
        self.summary_policy = summary_policy or SummaryRoutingPolicy()

    async def process_pending(self, limit: int | None = None) -> dict[str, int]:
        """Run up to *limit* pending jobs sequentially."""
        jobs = await self.storage.get_pending_jobs(limit or self.config.batch_size)
        processed = 0
        failed = 0
        for job in jobs:
            status = await self.process_job(job)
            processed += 1
            if status == "failed":
                failed += 1
        if jobs:
            logger.info("consolidation_batch_done", processed=processed, failed=failed)
        return {"processed": processed, "failed": failed}

    async def process_job(self, job: ConsolidationJob) -> str:
        await self.storage.set_job_status(job.id, "processing")
        try:
            ctx = await self.run(job)
        except Exception as e:
            logger.exception("consolidation_job_failed", job_id=job.id, conversation_id=job.conversation_id)
            await self.storage.set_job_status(job.id, "failed", error=str(e) or type(e).__name__)
            return "failed"

        if ctx.attempted and len(ctx.failed) == len(ctx.attempted):
            error = "; ".join(f"{name}: {ctx.diff.step_errors[name]}" for name in ctx.failed)
            await self.storage.set_job_status(job.id, "failed", result=ctx.diff, error=error)
            return "failed"

        await self.storage.set_job_status(job.id, "done", result=ctx.diff)
        logger.info(
            "consolidation_job_done",
            job_id=job.id,
            conversation_id=job.conversation_id,
            reason=job.reason,
            added=ctx.diff.added,
            updated=ctx.diff.updated,
            blocked=ctx.diff.blocked_facts,
            step_errors=sorted(ctx.diff.step_errors),
        )
        return "done"

    async def run(self, job: ConsolidationJob) -> JobContext:
        ctx = JobContext(job=job, transcript_text=self._render_transcript(job))
        await self._run_step(ctx, "summarize", self._step_summarize)
        await self._run_step(ctx, "extract", self._step_extract)
        await self._run_step(ctx, "refresh_decay", self._step_refresh_decay)
        return ctx

    async def _run_step(
        self,
        ctx: JobContext,
        name: str,
        step: Callable[[JobContext], Awaitable[None]],
    ) -> None:
        try:
            await step(ctx)
        except StepSkipped as e:
            logger.debug("consolidation_step_skipped", job_id=ctx.job.id, step=name, reason=str(e))
            return
        except Exception as e:
            ctx.attempted.append(name)
            ctx.failed.append(name)
            ctx.diff.step_errors[name] = str(e) or type(e).__name__
            logger.warning("consolidation_step_failed", job_id=ctx.job.id, step=name, error=str(e))
            return
        ctx.attempted.append(name)

    # -- steps ---------------------------------------------------------------

    async def _step_summarize(self, ctx: JobContext) -> None:
        job = ctx.job
        if not self.gate.should_persist(job.permissions, "summary"):
            raise StepSkipped("summary_not_permitted")
        if len(_retained(job)) < self.config.min_transcript_turns:
            raise StepSkipped("transcript_too_short")

        raw = await self._generate(
            SUMMARY_PROMPT.format(transcript=ctx.transcript_text),
            self.config.summary_max_tokens,
        )
        if raw is None:
            raise StepSkipped("generation_unavailable")

        plan = self.summary_policy.resolve(raw)
        if plan.summary is None:
            raise StepSkipped("empty_summary")
        if plan.structured_source != "model":
            logger.warning(
                "consolidation_summary_fallback",
                job_id=job.id,
                structured_source=plan.structured_source,
                reason=plan.reason,
            )

        content = self.gate.redact(plan.summary)
        record = await self._new_record(
            job,
            kind="summary",
            scope="conversation",
            content=content,
            tags=list(SUMMARY_TAGS),
            confidence=SUMMARY_CONFIDENCE,
        )
        record_id = await self.storage.insert_record(record)
        ctx.inserted_ids.add(record_id)
        ctx.diff.added += 1
        ctx.diff.added_ids.append(record_id)
        ctx.diff.key_facts.extend(self.gate.redact(f) for f in plan.key_facts)

    async def _step_extract(self, ctx: JobContext) -> None:
        job = ctx.job
        if not self.gate.should_persist(job.permissions, "semantic"):
            raise StepSkipped("semantic_not_permitted")
        if not _retained(job):
            raise StepSkipped("empty_transcript")

        limit = self.config.max_extracted_facts
        raw = await self._generate(
            EXTRACT_PROMPT.format(transcript=ctx.transcript_text, limit=limit),
            self.config.extract_max_tokens,
        )
        if raw is None:
            raise StepSkipped("generation_unavailable")

        for fact in parse_extracted_facts(raw, limit=limit):
            decision = self.gate.classify_fact(fact.content, job.permissions.mode)
            if decision == "block":
                ctx.diff.blocked_facts += 1
                continue
            content = self.gate.redact(fact.content) if decision == "redact" else fact.content
            scope = fact.scope
            if scope == "project" and not job.project_id:
                scope = "conversation"
            record = await self._new_record(
                job,
                kind="semantic",
                scope=scope,
                content=content,
                tags=fact.tags,
                confidence=fact.confidence,
            )
            record_id = await self.storage.insert_record(record)
            ctx.inserted_ids.add(record_id)
            ctx.diff.added += 1
            ctx.diff.added_ids.append(record_id)
            if content not in ctx.diff.key_facts:
                ctx.diff.key_facts.append(content)

    async def _step_refresh_decay(self, ctx: JobContext) -> None:
        job = ctx.job
        records = await self.storage.query_records(RecordFilter(
            user_id=job.user_id,
            session_id=job.conversation_id,
            project_id=job.project_id,
            limit=self.config.decay_refresh_limit,
        ))
        now = utcnow()
        for record in records:
            if record.id in ctx.inserted_ids:
                continue
            owned = record.session_id == job.conversation_id or (
                job.project_id is not None and record.project_id == job.project_id
            )
            if not owned:
                continue
            fresh = compute_decay(record.last_accessed, now)
            if abs(fresh - record.decay_score) <= self.config.decay_epsilon:
                continue
            await self.storage.update_decay(record.id, fresh)
            ctx.diff.updated += 1
            ctx.diff.updated_ids.append(record.id)

    # -- helpers -------------------------------------------------------------

    async def _new_record(
        self,
        job: ConsolidationJob,
        *,
        kind: Any,
        scope: Any,
        content: str,
        tags: list[str],
        confidence: float,
    ) -> MemoryRecord:
        embedding = None
        if self.embedder is not None:
            try:
                embedding = await self.embedder.embed(content)
            except Exception as e:
                logger.warning("consolidation_embed_failed", job_id=job.id, error=str(e))
        return MemoryRecord(
            id=new_id("mem_"),
            kind=kind,
            scope=scope,
            content=content,
            user_id=job.user_id,
            embedding=embedding,
            tags=tags,
            confidence=confidence,
            decay_score=0.0,
            token_count=count_tokens(content),
            session_id=job.conversation_id,
            project_id=job.project_id,
            source="consolidation",
        )

    def _render_transcript(self, job: ConsolidationJob) -> str:
        text = "\n".join(f"{t.role.upper()}: {t.content}" for t in _retained(job))
        return self.gate.redact(text)[:TRANSCRIPT_PROMPT_CHARS]

    async def _generate(self, prompt: str, max_tokens: int) -> str | None:
        if self.generator is None:
            return None
        try:
            text = await asyncio.wait_for(
                self.generator.generate(prompt, max_tokens),
                timeout=self.config.generation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("consolidation_generation_timeout", timeout=self.config.generation_timeout)
            return None
        except Exception as e:
            logger.warning("consolidation_generation_failed", error=str(e))
            return None
        if not isinstance(text, str) or not text.strip():
            return None
        return text
