"""Sensitive-content pattern table and redaction helpers."""

from __future__ import annotations

import re

# Evaluated in this order by detect() and redact(). Placeholders must never
# match any pattern so redaction stays idempotent.
SENSITIVE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("email", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("phone", re.compile(r"(?<![\d-])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    ("national_id", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("payment_card", re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b")),
    ("api_key", re.compile(r"\b(?:sk-|pk-|api_key=|apikey=|Bearer\s+)[A-Za-z0-9_\-]{16,}", re.IGNORECASE)),
    ("password", re.compile(r"\b(?:password|passwd|pwd)\s*[:=]\s*(?!\[REDACTED:)\S+", re.IGNORECASE)),
    (
        "ip_address",
        re.compile(
            r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
            r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
        ),
    ),
)

CATEGORY_NAMES: tuple[str, ...] = tuple(name for name, _ in SENSITIVE_PATTERNS)

FORGET_DIRECTIVES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?:don['’]?t|do not) (?:remember|store|save|log) (?:this|that)\b", re.IGNORECASE),
    re.compile(r"\boff the record\b", re.IGNORECASE),
    re.compile(r"\bno memory\b", re.IGNORECASE),
    re.compile(r"\bforget (?:this|that)\b", re.IGNORECASE),
    re.compile(r"\bprivate mode\b", re.IGNORECASE),
    re.compile(r"\bthis is confidential\b", re.IGNORECASE),
)


def placeholder(category: str) -> str:
    return f"[REDACTED:{category.upper()}]"


def detect(text: str) -> list[str]:
    """Return the categories found in *text*, in table order."""
    if not text:
        return []
    return [name for name, pattern in SENSITIVE_PATTERNS if pattern.search(text)]


def redact(text: str) -> str:
    """Replace every sensitive match with its category placeholder.

    ``redact(redact(x)) == redact(x)`` for any input.
    """
    if not text:
        return text
    for name, pattern in SENSITIVE_PATTERNS:
        text = pattern.sub(placeholder(name), text)
    return text


def has_forget_directive(text: str) -> bool:
    return any(p.search(text or "") for p in FORGET_DIRECTIVES)
