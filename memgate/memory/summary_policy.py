"""Routing policy for structured consolidation output."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import json_repair

MIN_KEY_FACTS = 3
MAX_KEY_FACTS = 7
DEFAULT_FACT_CONFIDENCE = 0.7
FACT_SCOPES = ("conversation", "project", "global")


def _loads(raw_text: str | None) -> Any:
    if not raw_text or not raw_text.strip():
        return None
    try:
        return json_repair.loads(raw_text)
    except Exception:
        return None


def _clean_strings(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    out: list[str] = []
    for v in values:
        if isinstance(v, str) and v.strip():
            out.append(v.strip())
    return out


@dataclass
class SummaryPlan:
    summary: str | None
    key_facts: list[str] = field(default_factory=list)
    structured_source: str = "model"
    reason: str = "ok"


def normalize_summary_detailed(payload: Any) -> tuple[SummaryPlan | None, str]:
    """Validate a ``{summary, key_facts}`` payload; return (plan, reason)."""
    if payload is None:
        return None, "missing"
    if not isinstance(payload, dict):
        return None, "not_object"
    summary = payload.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        return None, "summary_missing"
    facts = _clean_strings(payload.get("key_facts"))
    if not (MIN_KEY_FACTS <= len(facts) <= MAX_KEY_FACTS):
        return None, f"key_facts_count:{len(facts)}"
    return SummaryPlan(summary=summary.strip(), key_facts=facts), "ok"


def coerce_partial_summary(payload: Any) -> SummaryPlan | None:
    """Keep whatever is usable from a payload that failed validation."""
    if not isinstance(payload, dict):
        return None
    summary = payload.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        return None
    facts = _clean_strings(payload.get("key_facts"))[:MAX_KEY_FACTS]
    return SummaryPlan(summary=summary.strip(), key_facts=facts)


class SummaryRoutingPolicy:
    """Resolve the best summary from model output.

    Order: validated model payload, salvaged partial payload, raw text with
    no facts. Malformed output never raises.
    """

    def resolve(self, raw_text: str | None) -> SummaryPlan:
        payload = _loads(raw_text)
        plan, reason = normalize_summary_detailed(payload)
        if plan is not None:
            return plan

        salvaged = coerce_partial_summary(payload)
        if salvaged is not None:
            salvaged.structured_source = "salvaged_model_partial"
            salvaged.reason = reason
            return salvaged

        text = (raw_text or "").strip()
        if not text:
            return SummaryPlan(summary=None, structured_source="missing", reason=reason)
        return SummaryPlan(summary=text, key_facts=[], structured_source="fallback_unstructured", reason=reason)


@dataclass
class ExtractedFact:
    content: str
    tags: list[str]
    confidence: float
    scope: str


def parse_extracted_facts(raw_text: str | None, limit: int = 5) -> list[ExtractedFact]:
    """Parse a JSON array (or ``{"facts": [...]}``) of extracted facts."""
    payload = _loads(raw_text)
    if isinstance(payload, dict):
        payload = payload.get("facts")
    if not isinstance(payload, list):
        return []

    facts: list[ExtractedFact] = []
    for item in payload:
        if len(facts) >= limit:
            break
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        try:
            confidence = float(item.get("confidence", DEFAULT_FACT_CONFIDENCE))
        except (TypeError, ValueError):
            confidence = DEFAULT_FACT_CONFIDENCE
        scope = item.get("scope")
        facts.append(ExtractedFact(
            content=content.strip(),
            tags=_clean_strings(item.get("tags"))[:3],
            confidence=min(1.0, max(0.0, confidence)),
            scope=scope if scope in FACT_SCOPES else "project",
        ))
    return facts
