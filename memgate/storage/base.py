"""Boundary interfaces for the record store, semantic index and text generator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from memgate.memory.models import ConsolidationJob, JobStatus, MemoryDiff, MemoryRecord


@dataclass
class RecordFilter:
    """Predicate set for ``MemoryStorage.query_records``.

    ``None`` fields are unconstrained. ``session_id`` and ``project_id`` match
    records of that conversation or project, plus records of global scope.
    """

    user_id: str | None = None
    session_id: str | None = None
    project_id: str | None = None
    scopes: tuple[str, ...] | None = None
    kinds: tuple[str, ...] | None = None
    exclude_above_decay: float | None = None
    limit: int = 50


@dataclass
class SemanticHit:
    id: str
    content: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class MemoryStorage(Protocol):
    async def query_records(self, flt: RecordFilter) -> list[MemoryRecord]: ...

    async def get_record(self, record_id: str) -> MemoryRecord | None: ...

    async def insert_record(self, record: MemoryRecord) -> str: ...

    async def update_decay(self, record_id: str, decay_score: float) -> None: ...

    async def touch(self, record_id: str) -> None: ...

    async def insert_job(self, job: ConsolidationJob) -> str: ...

    async def get_pending_jobs(self, limit: int) -> list[ConsolidationJob]: ...

    async def set_job_status(
        self,
        job_id: str,
        status: JobStatus,
        result: MemoryDiff | None = None,
        error: str | None = None,
    ) -> None: ...


@runtime_checkable
class SemanticIndex(Protocol):
    async def search(
        self,
        query_embedding: list[float],
        threshold: float,
        count: int,
        flt: RecordFilter | None = None,
    ) -> list[SemanticHit]: ...


@runtime_checkable
class TextGenerator(Protocol):
    async def generate(self, prompt: str, max_tokens: int) -> str | None: ...


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, text: str) -> list[float] | None: ...
