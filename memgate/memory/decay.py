"""Logistic staleness curve for memory records."""

from __future__ import annotations

import math
from datetime import datetime

from memgate.memory.models import utcnow

# Curve midpoint and steepness, in hours.
DECAY_MIDPOINT_HOURS = 48.0
DECAY_STEEPNESS = 0.03
# Decay never reaches 1.
DECAY_CAP = 0.95


def hours_since(ts: datetime, now: datetime | None = None) -> float:
    """Age of *ts* in hours, clamped at zero for timestamps in the future."""
    now = now or utcnow()
    return max(0.0, (now - ts).total_seconds() / 3600.0)


def compute_decay(last_accessed: datetime, now: datetime | None = None) -> float:
    """Map the time since last access to a decay score in ``[0, DECAY_CAP]``.

    About 0.33 after a day, about 0.5 after two days and pinned at the cap
    after a week without access.
    """
    hours = hours_since(last_accessed, now)
    raw = 1.0 / (1.0 + math.exp(-DECAY_STEEPNESS * (hours - DECAY_MIDPOINT_HOURS)))
    return min(DECAY_CAP, raw)
