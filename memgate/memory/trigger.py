"""Consolidation trigger: decide whether a turn should enqueue a job."""

from __future__ import annotations

from dataclasses import dataclass

from memgate.config.schema import BudgetConfig
from memgate.memory.models import TriggerReason
from memgate.privacy.gate import Permissions


@dataclass(frozen=True)
class ConsolidationTrigger:
    should_enqueue: bool
    reason: TriggerReason | None = None
    pressure: float = 0.0


def compute_pressure(total_tokens: int, budgets: BudgetConfig) -> float:
    """Used tokens over the packable budgets (window + long-term + skills)."""
    capacity = budgets.packable_total
    if capacity <= 0:
        return 1.0 if total_tokens > 0 else 0.0
    return total_tokens / capacity


def evaluate_trigger(
    *,
    pressure: float,
    trigger_ratio: float,
    permissions: Permissions,
    session_end: bool = False,
    force: bool = False,
) -> ConsolidationTrigger:
    """Enqueue only when summaries may be written.

    Reason precedence is session_end, then token_pressure, then manual.
    """
    over = pressure >= trigger_ratio
    if not permissions.can_write_summary or not (over or session_end or force):
        return ConsolidationTrigger(should_enqueue=False, pressure=pressure)
    if session_end:
        reason: TriggerReason = "session_end"
    elif over:
        reason = "token_pressure"
    else:
        reason = "manual"
    return ConsolidationTrigger(should_enqueue=True, reason=reason, pressure=pressure)
