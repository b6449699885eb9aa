"""Local record and job store implementing the storage boundary."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from memgate.logging import get_logger
from memgate.memory.io import MemoryIO
from memgate.memory.models import (
    ConsolidationJob,
    JobStatus,
    MemoryDiff,
    MemoryRecord,
    new_id,
    utcnow,
)
from memgate.memory.scorer import cosine
from memgate.memory.tokens import count_tokens
from memgate.storage.base import RecordFilter, SemanticHit
from memgate.utils.helpers import ensure_dir

logger = get_logger(__name__)


def record_matches(record: MemoryRecord, flt: RecordFilter) -> bool:
    if flt.user_id is not None and record.user_id != flt.user_id:
        return False
    if flt.scopes is not None and record.scope not in flt.scopes:
        return False
    if flt.kinds is not None and record.kind not in flt.kinds:
        return False
    if flt.exclude_above_decay is not None and record.decay_score >= flt.exclude_above_decay:
        return False
    if flt.session_id is None and flt.project_id is None:
        return True
    if record.scope == "global":
        return True
    if flt.session_id is not None and record.session_id == flt.session_id:
        return True
    if flt.project_id is not None and record.project_id == flt.project_id:
        return True
    return False


class LocalMemoryStore:
    """In-memory store with optional JSON persistence under a workspace.

    Serves as the reference ``MemoryStorage`` and ``SemanticIndex`` for the
    CLI and tests. Writes are last-write-wins; nothing is ever deleted.
    """

    RECORDS_FILE = "records.json"
    JOBS_FILE = "jobs.json"

    def __init__(self, workspace: Path | None = None, io: MemoryIO | None = None) -> None:
        self.io = io or MemoryIO()
        self.memory_dir = ensure_dir(workspace / "memory") if workspace else None
        self._records: dict[str, MemoryRecord] = {}
        self._jobs: dict[str, ConsolidationJob] = {}
        self._load()

    # -- persistence ---------------------------------------------------------

    def _load(self) -> None:
        if self.memory_dir is None:
            return
        for raw in self.io.read_json(self.memory_dir / self.RECORDS_FILE, []):
            try:
                record = MemoryRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("memory_record_skipped", error=str(e))
                continue
            self._records[record.id] = record
        for raw in self.io.read_json(self.memory_dir / self.JOBS_FILE, []):
            try:
                job = ConsolidationJob.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("consolidation_job_skipped", error=str(e))
                continue
            self._jobs[job.id] = job
        logger.debug("memory_store_loaded", records=len(self._records), jobs=len(self._jobs))

    def _save_records(self) -> None:
        if self.memory_dir is None:
            return
        self.io.write_json(
            self.memory_dir / self.RECORDS_FILE,
            [r.to_dict() for r in self._records.values()],
        )

    def _save_jobs(self) -> None:
        if self.memory_dir is None:
            return
        self.io.write_json(
            self.memory_dir / self.JOBS_FILE,
            [j.to_dict() for j in self._jobs.values()],
        )

    # -- records -------------------------------------------------------------

    async def query_records(self, flt: RecordFilter) -> list[MemoryRecord]:
        matched = [r for r in self._records.values() if record_matches(r, flt)]
        matched.sort(key=lambda r: (-r.last_accessed.timestamp(), r.id))
        return matched[: max(0, flt.limit)]

    async def get_record(self, record_id: str) -> MemoryRecord | None:
        return self._records.get(record_id)

    async def insert_record(self, record: MemoryRecord) -> str:
        if not record.id:
            record = replace(record, id=new_id("mem_"))
        if not record.token_count:
            record = replace(record, token_count=count_tokens(record.content))
        self._records[record.id] = record
        self._save_records()
        return record.id

    async def update_decay(self, record_id: str, decay_score: float) -> None:
        record = self._records.get(record_id)
        if record is None:
            return
        self._records[record_id] = replace(record, decay_score=decay_score)
        self._save_records()

    async def touch(self, record_id: str) -> None:
        record = self._records.get(record_id)
        if record is None:
            return
        self._records[record_id] = replace(record, last_accessed=utcnow())
        self._save_records()

    # -- semantic index ------------------------------------------------------

    async def search(
        self,
        query_embedding: list[float],
        threshold: float,
        count: int,
        flt: RecordFilter | None = None,
    ) -> list[SemanticHit]:
        hits: list[SemanticHit] = []
        for record in self._records.values():
            if not record.embedding:
                continue
            if flt is not None and not record_matches(record, flt):
                continue
            similarity = cosine(query_embedding, record.embedding)
            if similarity < threshold:
                continue
            hits.append(SemanticHit(
                id=record.id,
                content=record.content,
                similarity=similarity,
                metadata=record.to_dict(),
            ))
        hits.sort(key=lambda h: (-h.similarity, h.id))
        return hits[: max(0, count)]

    # -- jobs ----------------------------------------------------------------

    async def insert_job(self, job: ConsolidationJob) -> str:
        self._jobs[job.id] = job
        self._save_jobs()
        return job.id

    async def get_job(self, job_id: str) -> ConsolidationJob | None:
        return self._jobs.get(job_id)

    async def get_pending_jobs(self, limit: int) -> list[ConsolidationJob]:
        pending = [j for j in self._jobs.values() if j.status == "pending"]
        pending.sort(key=lambda j: (j.created_at, j.id))
        return pending[: max(0, limit)]

    async def set_job_status(
        self,
        job_id: str,
        status: JobStatus,
        result: MemoryDiff | None = None,
        error: str | None = None,
    ) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning("consolidation_job_missing", job_id=job_id, status=status)
            return
        self._jobs[job_id] = replace(
            job,
            status=status,
            result=result if result is not None else job.result,
            error=error,
        )
        self._save_jobs()
