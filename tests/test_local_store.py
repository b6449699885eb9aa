"""Tests for the JSON-backed local record and job store."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from memgate.memory.models import ConsolidationJob, MemoryDiff, MemoryRecord, WindowTurn
from memgate.memory.store import LocalMemoryStore, record_matches
from memgate.privacy.gate import Permissions
from memgate.storage.base import MemoryStorage, RecordFilter, SemanticIndex

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(record_id: str, **overrides) -> MemoryRecord:
    data = dict(id=record_id, kind="semantic", scope="conversation", content=f"fact {record_id}", user_id="u1")
    data.update(overrides)
    return MemoryRecord(**data)


def _job(job_id: str, created_at: datetime) -> ConsolidationJob:
    return ConsolidationJob(
        id=job_id,
        conversation_id="cli:default",
        user_id="u1",
        reason="manual",
        transcript=(WindowTurn(role="user", content="hello", token_count=1, turn_index=0, created_at=T0),),
        permissions=Permissions(),
        created_at=created_at,
    )


class TestRecordFilter:
    def test_session_filter_keeps_global_and_own(self) -> None:
        flt = RecordFilter(user_id="u1", session_id="s1")
        assert record_matches(_record("a", session_id="s1"), flt)
        assert record_matches(_record("b", scope="global"), flt)
        assert not record_matches(_record("c", session_id="s2"), flt)

    def test_project_filter(self) -> None:
        flt = RecordFilter(session_id="s1", project_id="p1")
        assert record_matches(_record("a", scope="project", project_id="p1"), flt)
        assert not record_matches(_record("b", scope="project", project_id="p2"), flt)

    def test_decay_ceiling_is_exclusive(self) -> None:
        flt = RecordFilter(exclude_above_decay=0.8)
        assert record_matches(_record("a", decay_score=0.79), flt)
        assert not record_matches(_record("b", decay_score=0.8), flt)

    def test_scope_and_kind(self) -> None:
        flt = RecordFilter(scopes=("global",), kinds=("summary",))
        assert record_matches(_record("a", scope="global", kind="summary"), flt)
        assert not record_matches(_record("b", scope="global", kind="semantic"), flt)
        assert not record_matches(_record("c", scope="project", kind="summary"), flt)


class TestLocalMemoryStore:
    def test_satisfies_protocols(self) -> None:
        store = LocalMemoryStore()
        assert isinstance(store, MemoryStorage)
        assert isinstance(store, SemanticIndex)

    @pytest.mark.asyncio
    async def test_insert_fills_id_and_tokens(self) -> None:
        store = LocalMemoryStore()
        record_id = await store.insert_record(_record("", content="User prefers vim keybindings"))
        assert record_id.startswith("mem_")
        stored = await store.get_record(record_id)
        assert stored is not None
        assert stored.token_count > 0

    @pytest.mark.asyncio
    async def test_query_orders_by_last_access(self) -> None:
        store = LocalMemoryStore()
        await store.insert_record(_record("old", last_accessed=T0 - timedelta(days=2)))
        await store.insert_record(_record("new", last_accessed=T0))
        await store.insert_record(_record("mid", last_accessed=T0 - timedelta(days=1)))
        records = await store.query_records(RecordFilter(limit=2))
        assert [r.id for r in records] == ["new", "mid"]

    @pytest.mark.asyncio
    async def test_update_decay_and_touch(self) -> None:
        store = LocalMemoryStore()
        await store.insert_record(_record("a", last_accessed=T0))
        await store.update_decay("a", 0.42)
        await store.touch("a")
        await store.touch("missing")
        rec = await store.get_record("a")
        assert rec.decay_score == 0.42
        assert rec.last_accessed > T0

    @pytest.mark.asyncio
    async def test_search_by_cosine(self) -> None:
        store = LocalMemoryStore()
        await store.insert_record(_record("x", embedding=[1.0, 0.0]))
        await store.insert_record(_record("y", embedding=[0.6, 0.8]))
        await store.insert_record(_record("z"))
        hits = await store.search([1.0, 0.0], 0.5, 10)
        assert [h.id for h in hits] == ["x", "y"]
        assert hits[1].similarity == pytest.approx(0.6)
        assert hits[0].metadata["id"] == "x"

    @pytest.mark.asyncio
    async def test_pending_jobs_oldest_first(self) -> None:
        store = LocalMemoryStore()
        await store.insert_job(_job("j2", T0 + timedelta(minutes=5)))
        await store.insert_job(_job("j1", T0))
        await store.insert_job(_job("j3", T0 + timedelta(minutes=9)))
        await store.set_job_status("j3", "done")
        assert [j.id for j in await store.get_pending_jobs(10)] == ["j1", "j2"]

    @pytest.mark.asyncio
    async def test_set_status_keeps_result_and_error(self) -> None:
        store = LocalMemoryStore()
        await store.insert_job(_job("j1", T0))
        await store.set_job_status("j1", "done", result=MemoryDiff(added=2))
        job = await store.get_job("j1")
        assert job.status == "done"
        assert job.result.added == 2
        await store.set_job_status("missing", "failed", error="nope")

    @pytest.mark.asyncio
    async def test_persists_to_workspace(self, tmp_path: Path) -> None:
        store = LocalMemoryStore(tmp_path)
        await store.insert_record(_record("a", tags=["db"], embedding=[0.1, 0.2]))
        await store.insert_job(_job("j1", T0))
        await store.set_job_status("j1", "failed", error="generator timeout")

        reloaded = LocalMemoryStore(tmp_path)
        rec = await reloaded.get_record("a")
        assert rec is not None
        assert rec.tags == ["db"]
        assert rec.embedding == [0.1, 0.2]
        job = await reloaded.get_job("j1")
        assert job.status == "failed"
        assert job.error == "generator timeout"
        assert job.transcript[0].content == "hello"

    def test_corrupt_file_yields_empty_store(self, tmp_path: Path) -> None:
        memory_dir = tmp_path / "memory"
        memory_dir.mkdir()
        (memory_dir / "records.json").write_text("{not json", encoding="utf-8")
        store = LocalMemoryStore(tmp_path)
        assert store._records == {}
