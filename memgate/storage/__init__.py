"""Storage boundary for memgate."""

from memgate.storage.base import (
    Embedder,
    MemoryStorage,
    RecordFilter,
    SemanticHit,
    SemanticIndex,
    TextGenerator,
)

__all__ = [
    "Embedder",
    "MemoryStorage",
    "RecordFilter",
    "SemanticHit",
    "SemanticIndex",
    "TextGenerator",
]
