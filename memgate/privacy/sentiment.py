"""Lexicon-based sentiment and volatility classifier."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

SentimentLabel = Literal["positive", "negative", "neutral", "volatile"]

POSITIVE_WORDS = frozenset({
    "good", "great", "thanks", "thank", "love", "awesome", "excellent", "happy",
    "glad", "nice", "perfect", "appreciate", "helpful", "wonderful", "amazing",
    "works", "fixed", "enjoy", "cool", "brilliant",
})

NEGATIVE_WORDS = frozenset({
    "bad", "terrible", "hate", "awful", "angry", "annoyed", "broken", "wrong",
    "useless", "stupid", "horrible", "frustrated", "frustrating", "worst", "fail",
    "failed", "failing", "upset", "disappointed", "sad", "crash", "crashed",
})

URGENCY_WORDS = frozenset({
    "urgent", "asap", "immediately", "emergency", "now", "hurry", "critical",
})

# All-caps tokens that are ordinary acronyms rather than shouting.
CAPS_ALLOWLIST = frozenset({
    "API", "URL", "HTTP", "HTTPS", "JSON", "SQL", "CPU", "GPU", "RAM", "AWS",
    "CLI", "SDK", "LLM", "PDF", "CSV", "UTC", "USA", "FAQ", "ETA", "TODO",
})

_WORD_RE = re.compile(r"[A-Za-z']+")
_EXCLAMATION_RUN_RE = re.compile(r"!{2,}")
_CAPS_TOKEN_RE = re.compile(r"\b[A-Z]{3,}\b")


@dataclass(frozen=True)
class SentimentResult:
    label: SentimentLabel
    score: float
    positive_hits: int
    negative_hits: int
    volatile_hits: int


def classify_sentiment(text: str) -> SentimentResult:
    """Classify *text* as positive, negative, neutral or volatile.

    The score is ``(pos - neg) / (pos + neg)`` and 0.0 without lexicon hits.
    Volatility counts urgency words, runs of two or more exclamation marks, and
    emphatic all-caps tokens that are not common acronyms.
    """
    text = text or ""
    words = [w.lower().strip("'") for w in _WORD_RE.findall(text)]
    pos = sum(1 for w in words if w in POSITIVE_WORDS)
    neg = sum(1 for w in words if w in NEGATIVE_WORDS)

    volatile = sum(1 for w in words if w in URGENCY_WORDS)
    volatile += len(_EXCLAMATION_RUN_RE.findall(text))
    volatile += sum(1 for tok in _CAPS_TOKEN_RE.findall(text) if tok not in CAPS_ALLOWLIST)

    total = pos + neg
    score = (pos - neg) / total if total else 0.0

    label: SentimentLabel
    if volatile >= 2 or (neg > 0 and volatile > 0):
        label = "volatile"
    elif score > 0:
        label = "positive"
    elif score < 0:
        label = "negative"
    else:
        label = "neutral"
    return SentimentResult(
        label=label,
        score=score,
        positive_hits=pos,
        negative_hits=neg,
        volatile_hits=volatile,
    )
