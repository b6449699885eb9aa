"""Memory file I/O helpers with atomic semantics."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from memgate.logging import get_logger
from memgate.utils.helpers import atomic_write_text

logger = get_logger(__name__)


class MemoryIO:
    """Thin I/O adapter so the store can be tested independently of disk layout."""

    @staticmethod
    def write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
        atomic_write_text(path, content, encoding=encoding)

    @staticmethod
    def write_json(path: Path, payload: Any) -> None:
        atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=1) + "\n")

    @staticmethod
    def read_json(path: Path, default: Any) -> Any:
        """Read JSON from *path*; missing or corrupt files yield *default*."""
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("memory_file_unreadable", path=str(path), error=str(e))
            return default
