from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Callable

from .deadlines import has_date_expression
from .models import SeverityLevel, SeverityResult, Source, WatchMode

URGENCY_KEYWORDS = [
    "deadline",
    "due",
    "must",
    "required",
    "effective",
    "enforcement",
    "penalty",
    "compliance",
    "mandatory",
    "urgent",
    "action required",
    "immediate",
]

_KEYWORD_PATTERNS = {
    keyword: re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE)
    for keyword in URGENCY_KEYWORDS
}

DATE_WEIGHT = 40
KEYWORD_WEIGHT = 10
KEYWORD_CAP = 30
MAGNITUDE_CAP = 15
MAGNITUDE_THRESHOLD = 10
VOLATILITY_THRESHOLD = 0.7
VOLATILITY_FACTOR = 0.7
CONFIDENCE_THRESHOLD = 80
CONFIDENCE_FACTOR = 0.8
METADATA_CAP = 50
METADATA_CAP_BELOW = 80
VOLATILITY_DECAY = 0.8


@dataclass(frozen=True)
class ScoringContext:
    new_text: str
    diff_text: str
    source: Source
    date_matched: bool


@dataclass(frozen=True)
class ScoringRule:
    """One named step; ``apply`` maps the running total to a new total and an optional reason."""

    name: str
    apply: Callable[[ScoringContext, float], tuple[float, str | None]]


def _date_rule(ctx: ScoringContext, total: float) -> tuple[float, str | None]:
    if not ctx.date_matched:
        return total, None
    return total + DATE_WEIGHT, "deadline or date expression modified."


def _keyword_rule(ctx: ScoringContext, total: float) -> tuple[float, str | None]:
    hits = [keyword for keyword, pattern in _KEYWORD_PATTERNS.items() if pattern.search(ctx.diff_text)]
    if not hits:
        return total, None
    points = min(len(hits) * KEYWORD_WEIGHT, KEYWORD_CAP)
    return total + points, f"urgency language detected: {', '.join(hits)}."


def _magnitude_rule(ctx: ScoringContext, total: float) -> tuple[float, str | None]:
    magnitude = min(len(ctx.diff_text) / 500 * 10, MAGNITUDE_CAP)
    if magnitude <= MAGNITUDE_THRESHOLD:
        return total, None
    return total + magnitude, "large content change."


def _volatility_rule(ctx: ScoringContext, total: float) -> tuple[float, str | None]:
    if ctx.source.volatility_score <= VOLATILITY_THRESHOLD:
        return total, None
    return total * VOLATILITY_FACTOR, "source changes frequently; severity dampened."


def _confidence_rule(ctx: ScoringContext, total: float) -> tuple[float, str | None]:
    if ctx.source.confidence_score <= CONFIDENCE_THRESHOLD or ctx.date_matched:
        return total, None
    return total * CONFIDENCE_FACTOR, "past alerts on this source were mostly routine; severity dampened."


def _metadata_cap_rule(ctx: ScoringContext, total: float) -> tuple[float, str | None]:
    if ctx.source.watch_mode != WatchMode.METADATA_ONLY or total >= METADATA_CAP_BELOW:
        return total, None
    if total <= METADATA_CAP:
        return total, None
    return float(METADATA_CAP), "metadata-only monitoring; severity capped."


DEFAULT_RULES: list[ScoringRule] = [
    ScoringRule("date_expression", _date_rule),
    ScoringRule("urgency_keywords", _keyword_rule),
    ScoringRule("change_magnitude", _magnitude_rule),
    ScoringRule("volatility_dampening", _volatility_rule),
    ScoringRule("confidence_dampening", _confidence_rule),
    ScoringRule("metadata_only_cap", _metadata_cap_rule),
]


def score_change(
    new_text: str,
    diff_text: str,
    source: Source,
    rules: list[ScoringRule] | None = None,
) -> SeverityResult:
    ctx = ScoringContext(
        new_text=new_text,
        diff_text=diff_text,
        source=source,
        date_matched=has_date_expression(diff_text),
    )
    total = 0.0
    reasons: list[str] = []
    for rule in rules or DEFAULT_RULES:
        total, reason = rule.apply(ctx, total)
        if reason:
            reasons.append(reason)
    score = _round_half_up(min(max(total, 0.0), 100.0))
    return SeverityResult(
        score=score,
        level=severity_level(score),
        reasons=reasons,
        date_matched=ctx.date_matched,
    )


def severity_level(score: int) -> SeverityLevel:
    if score > 80:
        return SeverityLevel.CRITICAL
    if score > 50:
        return SeverityLevel.HIGH
    if score > 20:
        return SeverityLevel.MEDIUM
    return SeverityLevel.LOW


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def next_volatility(previous: float, changed: bool) -> float:
    """Exponential moving average of change outcomes, kept in [0, 1]."""
    value = VOLATILITY_DECAY * previous + (1 - VOLATILITY_DECAY) * (1.0 if changed else 0.0)
    return max(0.0, min(1.0, value))
