"""Tests for per-request context building and turn recording."""

from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from memgate.agent.context import ContextBuilder
from memgate.config.schema import BudgetConfig, Config, Loadout, builtin_loadouts
from memgate.memory.consolidation import ConsolidationWorker
from memgate.memory.models import MemoryRecord, utcnow
from memgate.memory.store import LocalMemoryStore
from memgate.privacy.gate import Permissions
from memgate.session.manager import ConversationManager
from memgate.storage.base import RecordFilter

KEY = "cli:ctx"


class _EchoGenerator:
    """Summarizes by echoing the transcript it was shown."""

    async def generate(self, prompt: str, max_tokens: int) -> str | None:
        if not prompt.startswith("Summarize"):
            return "[]"
        return prompt.split("<conversation>")[1].split("</conversation>")[0].strip()


def _builder(tmp_path: Path, config: Config | None = None, **kwargs) -> tuple[ContextBuilder, LocalMemoryStore]:
    config = config or Config(workspace=str(tmp_path))
    store = LocalMemoryStore()
    builder = ContextBuilder(config, store, ConversationManager(tmp_path), semantic_index=store, **kwargs)
    return builder, store


async def _seed(store: LocalMemoryStore) -> None:
    await store.insert_record(MemoryRecord(
        id="mem_coffee", kind="semantic", scope="global",
        content="User prefers dark roast coffee", user_id="u1",
    ))
    await store.insert_record(MemoryRecord(
        id="mem_cat", kind="semantic", scope="global",
        content="User's cat is named Miso", user_id="u1",
    ))


class TestBuild:
    @pytest.mark.asyncio
    async def test_packs_relevant_memory_and_drops_the_rest(self, tmp_path: Path) -> None:
        builder, store = _builder(tmp_path)
        await _seed(store)

        result = await builder.build(KEY, "coffee roast preference", user_id="u1")
        await builder.touch.drain()

        packed = [c.source_id for c in result.pack.packed]
        assert "mem_coffee" in packed
        assert "skill:general" in packed
        reasons = {c.source_id: c.drop_reason for c in result.pack.dropped}
        assert reasons["mem_cat"] == "below_threshold:0.72"

        system = result.pack.prompt.system
        assert system.startswith(builder.config.base_instructions)
        assert "[Retrieved context: 1 sources]" in system
        assert result.loadout_id == "default"
        assert result.scopes == ("conversation",)
        assert result.trigger.should_enqueue is False

    @pytest.mark.asyncio
    async def test_other_users_memories_are_invisible(self, tmp_path: Path) -> None:
        builder, store = _builder(tmp_path)
        await _seed(store)
        result = await builder.build(KEY, "coffee roast preference", user_id="someone-else")
        assert all(not c.source_id.startswith("mem_") for c in result.pack.packed)

    @pytest.mark.asyncio
    async def test_forget_directive_blocks_writes(self, tmp_path: Path) -> None:
        builder, _ = _builder(tmp_path)
        result = await builder.build(KEY, "Email me at a@b.com, don't remember this", user_id="u1", session_end=True)
        assert result.permissions.can_write_summary is False
        assert "email" in result.permissions.redacted_patterns
        assert result.trigger.should_enqueue is False

    @pytest.mark.asyncio
    async def test_session_end_triggers(self, tmp_path: Path) -> None:
        builder, _ = _builder(tmp_path)
        result = await builder.build(KEY, "thanks, that is all", user_id="u1", session_end=True)
        assert result.trigger.should_enqueue is True
        assert result.trigger.reason == "session_end"

    @pytest.mark.asyncio
    async def test_project_and_memory_reference_widen_scopes(self, tmp_path: Path) -> None:
        builder, _ = _builder(tmp_path)
        result = await builder.build(KEY, "what did we decide earlier?", user_id="u1", project_id="proj-9")
        assert result.scopes == ("conversation", "project", "global")
        assert "memory_aware" in [s.id for s in result.skills]

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_lexical(self, tmp_path: Path) -> None:
        embedder = AsyncMock()
        embedder.embed.side_effect = RuntimeError("embedding service down")
        builder, store = _builder(tmp_path, embedder=embedder)
        await _seed(store)

        result = await builder.build(KEY, "coffee roast preference", user_id="u1")
        await builder.touch.drain()
        assert "mem_coffee" in [c.source_id for c in result.pack.packed]

    @pytest.mark.asyncio
    async def test_semantic_match_via_embeddings(self, tmp_path: Path) -> None:
        embedder = AsyncMock()
        embedder.embed.return_value = [1.0, 0.0]
        builder, store = _builder(tmp_path, embedder=embedder)
        await store.insert_record(MemoryRecord(
            id="mem_vec", kind="semantic", scope="global", content="Beverage of choice: espresso",
            user_id="u1", embedding=[1.0, 0.0],
        ))

        result = await builder.build(KEY, "what should I drink", user_id="u1")
        await builder.touch.drain()
        hit = next(c for c in result.pack.packed if c.source_id == "mem_vec")
        assert hit.scores.relevance == pytest.approx(1.0)


class TestRecordTurn:
    @pytest.mark.asyncio
    async def test_session_end_enqueues_snapshot(self, tmp_path: Path) -> None:
        builder, store = _builder(tmp_path)
        outcome = await builder.record_turn(
            KEY, "let's use postgres", "Sounds good.", permissions=Permissions(), session_end=True,
        )

        assert outcome.job is not None
        assert outcome.job.reason == "session_end"
        assert [t.role for t in outcome.job.transcript] == ["user", "assistant"]
        pending = await store.get_pending_jobs(10)
        assert [j.id for j in pending] == [outcome.job.id]
        assert builder.conversations._get_path(KEY).exists()

    @pytest.mark.asyncio
    async def test_blocked_permissions_do_not_enqueue(self, tmp_path: Path) -> None:
        builder, store = _builder(tmp_path)
        perms = Permissions(can_write_episodic=False, can_write_semantic=False, can_write_summary=False)
        outcome = await builder.record_turn(KEY, "off the record", "ok", permissions=perms, session_end=True)
        assert outcome.job is None
        assert await store.get_pending_jobs(10) == []

    @pytest.mark.asyncio
    async def test_compaction_keeps_evicted_turns_in_job(self, tmp_path: Path) -> None:
        loadouts = builtin_loadouts()
        loadouts["tiny"] = Loadout(id="tiny", budgets=BudgetConfig(short_term_tokens=100))
        config = Config(workspace=str(tmp_path), loadouts=loadouts)
        builder, store = _builder(tmp_path, config=config)

        conversation = builder.conversations.get_or_create(KEY, user_id="u1")
        for i in range(4):
            conversation.add_turn("user" if i % 2 == 0 else "assistant", f"long turn {i}", token_count=40)

        outcome = await builder.record_turn(KEY, "next", "reply", permissions=Permissions(), loadout="tiny")

        assert outcome.compaction.compacted is True
        assert outcome.compaction.compaction_pass == 1
        assert outcome.job is not None
        assert outcome.job.reason == "token_pressure"
        assert len(outcome.job.transcript) == 6
        assert len(conversation.turns) < 6
        assert conversation.compaction_pass == 1
        assert sum(t.token_count for t in conversation.turns) <= 60 or len(conversation.turns) == 2

    @pytest.mark.asyncio
    async def test_off_the_record_turn_is_never_consolidated(self, tmp_path: Path) -> None:
        builder, store = _builder(tmp_path)

        first = await builder.build(KEY, "hi there", user_id="u1")
        await builder.record_turn(KEY, "hi there", "Hello!", permissions=first.permissions, user_id="u1")

        secret = "off the record, my salary is 90000 dollars"
        private = await builder.build(KEY, secret, user_id="u1")
        outcome = await builder.record_turn(KEY, secret, "Noted.", permissions=private.permissions, user_id="u1")
        assert outcome.job is None

        last = await builder.build(KEY, "let's plan the launch", user_id="u1", session_end=True)
        outcome = await builder.record_turn(
            KEY, "let's plan the launch", "Friday works.",
            permissions=last.permissions, user_id="u1", session_end=True,
        )
        assert outcome.job is not None
        assert [t.content for t in outcome.job.transcript] == [
            "hi there", "Hello!", "let's plan the launch", "Friday works.",
        ]

        builder.conversations.invalidate(KEY)
        reloaded = builder.conversations.get_or_create(KEY)
        assert [t.retain for t in reloaded.turns] == [True, True, False, False, True, True]

        worker = ConsolidationWorker(store, _EchoGenerator())
        assert await worker.process_pending() == {"processed": 1, "failed": 0}
        records = await store.query_records(RecordFilter(user_id="u1"))
        assert any(r.kind == "summary" for r in records)
        assert not any("salary" in r.content for r in records)

    @pytest.mark.asyncio
    async def test_job_owner_comes_from_record_turn(self, tmp_path: Path) -> None:
        builder, _ = _builder(tmp_path)
        outcome = await builder.record_turn(
            "cli:c9", "hi", "hello",
            permissions=Permissions(), user_id="u9", project_id="proj-9", session_end=True,
        )
        assert outcome.job is not None
        assert outcome.job.user_id == "u9"
        assert outcome.job.project_id == "proj-9"

    @pytest.mark.asyncio
    async def test_record_turn_fills_in_a_missing_owner(self, tmp_path: Path) -> None:
        builder, _ = _builder(tmp_path)
        builder.conversations.get_or_create(KEY)

        outcome = await builder.record_turn(
            KEY, "hi", "hello", permissions=Permissions(), user_id="u1", session_end=True,
        )
        assert outcome.job is not None
        assert outcome.job.user_id == "u1"
        assert builder.conversations.get_or_create(KEY, user_id="someone-else").user_id == "u1"

    @pytest.mark.asyncio
    async def test_only_packed_memories_are_touched(self, tmp_path: Path) -> None:
        builder, store = _builder(tmp_path)
        await _seed(store)
        stale = utcnow() - timedelta(hours=1)
        for record_id in ("mem_coffee", "mem_cat"):
            store._records[record_id] = replace(store._records[record_id], last_accessed=stale)

        await builder.build(KEY, "coffee roast preference", user_id="u1")
        await builder.touch.drain()

        assert store._records["mem_coffee"].last_accessed > stale
        assert store._records["mem_cat"].last_accessed == stale
