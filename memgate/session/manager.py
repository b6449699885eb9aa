"""Conversation window management and persistence."""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from memgate.logging import get_logger
from memgate.memory.models import WindowTurn, utcnow
from memgate.memory.tokens import count_tokens
from memgate.utils.helpers import atomic_write_text, ensure_dir, safe_filename

logger = get_logger(__name__)


@dataclass
class Conversation:
    """
    A conversation's short-term window.

    Stored as JSONL: one metadata line followed by one line per window turn.
    Turns evicted by compaction are gone from here; the consolidation job
    enqueued at eviction time carries the snapshot.
    """

    key: str
    user_id: str = ""
    project_id: str | None = None
    turns: list[WindowTurn] = field(default_factory=list)
    compaction_pass: int = 0
    next_turn_index: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def add_turn(
        self,
        role: str,
        content: str,
        token_count: int | None = None,
        retain: bool = True,
    ) -> WindowTurn:
        """Append a turn to the window."""
        turn = WindowTurn(
            role=role,
            content=content,
            token_count=count_tokens(content) if token_count is None else token_count,
            turn_index=self.next_turn_index,
            retain=retain,
        )
        self.turns.append(turn)
        self.next_turn_index += 1
        self.updated_at = utcnow()
        return turn

    def window_tokens(self) -> int:
        return sum(t.token_count for t in self.turns)

    def clear(self) -> None:
        """Drop all turns; the compaction counter keeps counting."""
        self.turns = []
        self.updated_at = utcnow()


class ConversationManager:
    """
    Manages conversation windows.

    Conversations are stored as JSONL files in the conversations directory.
    """

    def __init__(self, workspace: Path):
        self.workspace = workspace
        self.conversations_dir = ensure_dir(self.workspace / "conversations")
        self._cache: dict[str, Conversation] = {}
        self._persisted_signatures: dict[str, str] = {}
        self._save_writes = 0
        self._save_skips = 0

    def _get_path(self, key: str) -> Path:
        safe_key = safe_filename(key.replace(":", "_"))
        return self.conversations_dir / f"{safe_key}.jsonl"

    def get_or_create(self, key: str, user_id: str = "", project_id: str | None = None) -> Conversation:
        """
        Get an existing conversation or create a new one.

        Args:
            key: Conversation id.
            user_id: Owner; fills in an existing conversation with no owner.
            project_id: Active project; fills in an existing conversation with none.
        """
        if key in self._cache:
            return self._claim(self._cache[key], user_id, project_id)

        loaded = self._load(key)
        conversation = loaded or Conversation(key=key, user_id=user_id, project_id=project_id)
        self._claim(conversation, user_id, project_id)

        self._cache[key] = conversation
        if loaded is not None:
            self._persisted_signatures[key] = self._persist_signature(conversation)
        return conversation

    @staticmethod
    def _claim(conversation: Conversation, user_id: str, project_id: str | None) -> Conversation:
        if user_id and not conversation.user_id:
            conversation.user_id = user_id
        if project_id and conversation.project_id is None:
            conversation.project_id = project_id
        return conversation

    def _load(self, key: str) -> Conversation | None:
        path = self._get_path(key)
        if not path.exists():
            return None

        try:
            turns: list[WindowTurn] = []
            meta: dict[str, Any] = {}

            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    if data.get("_type") == "metadata":
                        meta = data
                    else:
                        turns.append(WindowTurn.from_dict(data))

            next_index = meta.get("next_turn_index")
            if next_index is None:
                next_index = (turns[-1].turn_index + 1) if turns else 0
            conversation = Conversation(
                key=key,
                user_id=meta.get("user_id", ""),
                project_id=meta.get("project_id"),
                turns=turns,
                compaction_pass=int(meta.get("compaction_pass", 0)),
                next_turn_index=int(next_index),
                metadata=meta.get("metadata", {}),
            )
            if meta.get("created_at"):
                conversation.created_at = datetime.fromisoformat(meta["created_at"])
            if meta.get("updated_at"):
                conversation.updated_at = datetime.fromisoformat(meta["updated_at"])
            return conversation
        except Exception as e:
            logger.warning("Failed to load conversation", conversation_key=key, error=str(e))
            return None

    @staticmethod
    def _persist_signature(conversation: Conversation) -> str:
        """Compute a compact signature for persisted conversation content."""
        metadata_json = json.dumps(conversation.metadata, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        last_turn_json = (
            json.dumps(conversation.turns[-1].to_dict(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
            if conversation.turns else ""
        )
        first_index = str(conversation.turns[0].turn_index) if conversation.turns else ""
        return "|".join((
            conversation.key,
            conversation.user_id,
            conversation.project_id or "",
            conversation.updated_at.isoformat(),
            str(conversation.compaction_pass),
            str(len(conversation.turns)),
            first_index,
            metadata_json,
            last_turn_json,
        ))

    @staticmethod
    def _write_file(path: Path, conversation: Conversation) -> None:
        metadata_line = {
            "_type": "metadata",
            "key": conversation.key,
            "user_id": conversation.user_id,
            "project_id": conversation.project_id,
            "created_at": conversation.created_at.isoformat(),
            "updated_at": conversation.updated_at.isoformat(),
            "compaction_pass": conversation.compaction_pass,
            "next_turn_index": conversation.next_turn_index,
            "metadata": conversation.metadata,
        }
        lines = [json.dumps(metadata_line, ensure_ascii=False)]
        lines.extend(json.dumps(turn.to_dict(), ensure_ascii=False) for turn in conversation.turns)
        atomic_write_text(path, "\n".join(lines) + "\n", encoding="utf-8")

    def save(self, conversation: Conversation) -> None:
        """Save a conversation to disk, skipping unchanged snapshots."""
        path = self._get_path(conversation.key)
        started = time.perf_counter()
        signature = self._persist_signature(conversation)
        if path.exists() and self._persisted_signatures.get(conversation.key) == signature:
            self._save_skips += 1
            logger.debug(
                "conversation_save_skipped",
                conversation_key=conversation.key,
                turn_count=len(conversation.turns),
                save_skips=self._save_skips,
            )
            self._cache[conversation.key] = conversation
            return

        self._write_file(path, conversation)
        self._save_writes += 1
        elapsed_ms = round((time.perf_counter() - started) * 1000, 3)

        self._cache[conversation.key] = conversation
        self._persisted_signatures[conversation.key] = signature
        logger.debug(
            "conversation_save_written",
            conversation_key=conversation.key,
            turn_count=len(conversation.turns),
            compaction_pass=conversation.compaction_pass,
            elapsed_ms=elapsed_ms,
            save_writes=self._save_writes,
        )

    def invalidate(self, key: str) -> None:
        """Remove a conversation from the in-memory cache."""
        self._cache.pop(key, None)
        self._persisted_signatures.pop(key, None)

    def list_conversations(self) -> list[dict[str, Any]]:
        conversations = []
        for path in self.conversations_dir.glob("*.jsonl"):
            try:
                with open(path, encoding="utf-8") as f:
                    first_line = f.readline().strip()
                if not first_line:
                    continue
                data = json.loads(first_line)
                if data.get("_type") == "metadata":
                    conversations.append({
                        "key": data.get("key") or path.stem,
                        "updated_at": data.get("updated_at"),
                        "compaction_pass": data.get("compaction_pass", 0),
                        "path": str(path),
                    })
            except (OSError, json.JSONDecodeError):
                continue
        return sorted(conversations, key=lambda x: x.get("updated_at") or "", reverse=True)
