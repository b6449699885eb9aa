"""Short-term window selection and pressure-driven compaction."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

from memgate.logging import get_logger
from memgate.memory.models import WindowTurn

logger = get_logger(__name__)


def window_tokens(turns: Sequence[WindowTurn]) -> int:
    return sum(t.token_count for t in turns)


@dataclass
class CompactionResult:
    window: list[WindowTurn]
    evicted: list[WindowTurn] = field(default_factory=list)
    compaction_pass: int = 0
    pressure: float = 0.0
    compacted: bool = False

    @property
    def evicted_count(self) -> int:
        return len(self.evicted)


class WindowCompactor:
    """Keep the newest turns in view; evict the oldest when pressure is high."""

    def __init__(self, target_ratio: float = 0.6, min_turns: int = 2, max_turns: int = 50) -> None:
        self.target_ratio = target_ratio
        self.min_turns = min_turns
        self.max_turns = max_turns

    @staticmethod
    def select(turns: Sequence[WindowTurn], budget: int) -> list[WindowTurn]:
        """Most recent turns whose tokens fit *budget*, in chronological order.

        Walks from the tail and stops at the first turn that would overflow.
        The stored window is not modified.
        """
        selected: list[WindowTurn] = []
        used = 0
        for turn in reversed(turns):
            if used + turn.token_count > budget:
                break
            selected.append(turn)
            used += turn.token_count
        selected.reverse()
        return selected

    def target_tokens(self, budget: int) -> int:
        return math.floor(self.target_ratio * budget)

    def compact(
        self,
        window: Sequence[WindowTurn],
        budget: int,
        *,
        trigger_ratio: float,
        compaction_pass: int = 0,
        pressure: float | None = None,
    ) -> CompactionResult:
        """Evict from the oldest end of the stored window.

        *pressure* defaults to window tokens over *budget*. At or above
        *trigger_ratio* the window is cut down to the target size (never below
        ``min_turns``) and ``compaction_pass`` advances by one if anything was
        evicted. Below the trigger only the ``max_turns`` cap applies.
        """
        turns = list(window)
        tokens = window_tokens(turns)
        if pressure is None:
            if budget > 0:
                pressure = tokens / budget
            else:
                pressure = math.inf if tokens else 0.0

        if pressure < trigger_ratio:
            evicted: list[WindowTurn] = []
            if len(turns) > self.max_turns:
                cut = len(turns) - self.max_turns
                evicted, turns = turns[:cut], turns[cut:]
            return CompactionResult(
                window=turns,
                evicted=evicted,
                compaction_pass=compaction_pass,
                pressure=pressure,
            )

        target = self.target_tokens(budget)
        evicted = []
        while tokens > target and len(turns) > self.min_turns:
            oldest = turns.pop(0)
            evicted.append(oldest)
            tokens -= oldest.token_count

        next_pass = compaction_pass + 1 if evicted else compaction_pass
        if evicted:
            logger.info(
                "window_compacted",
                evicted=len(evicted),
                remaining_turns=len(turns),
                remaining_tokens=tokens,
                target_tokens=target,
                pressure=round(pressure, 4),
                compaction_pass=next_pass,
            )
        return CompactionResult(
            window=turns,
            evicted=evicted,
            compaction_pass=next_pass,
            pressure=pressure,
            compacted=bool(evicted),
        )
