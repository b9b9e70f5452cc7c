from __future__ import annotations

from datetime import datetime

from .models import (
    ActionCategory,
    ActionConfidence,
    DeadlineImpact,
    Guidance,
    SeverityLevel,
    SeverityResult,
    Source,
    WatchMode,
)
from .scoring import CONFIDENCE_THRESHOLD, VOLATILITY_THRESHOLD

MAX_EXPLANATION_BULLETS = 3

_GUIDANCE_TEXT = {
    ActionCategory.NO_ACTION: "Routine change. No action is needed beyond noting it.",
    ActionCategory.REVIEW: (
        "Review the updated page and confirm whether your obligations or dates are affected."
    ),
    ActionCategory.UPDATE: (
        "Update your calendars, records or procedures to reflect the changed requirements."
    ),
    ActionCategory.ESCALATE: (
        "Escalate to the responsible owner now and confirm the new date with the issuing body."
    ),
}

_IMPACT_TEXT = {
    DeadlineImpact.MOVED_EARLIER: "A deadline moved earlier.",
    DeadlineImpact.MOVED_LATER: "A deadline moved later.",
    DeadlineImpact.NEW_DEADLINE: "A new deadline was published.",
}


def deadline_impact(previous: datetime | None, current: datetime | None) -> DeadlineImpact:
    if current is None:
        return DeadlineImpact.NONE
    if previous is None:
        return DeadlineImpact.NEW_DEADLINE
    if current < previous:
        return DeadlineImpact.MOVED_EARLIER
    if current > previous:
        return DeadlineImpact.MOVED_LATER
    return DeadlineImpact.NONE


def advise(level: SeverityLevel, impact: DeadlineImpact) -> Guidance:
    if level == SeverityLevel.LOW:
        category, confidence = ActionCategory.NO_ACTION, ActionConfidence.HIGH
    elif level == SeverityLevel.CRITICAL and impact == DeadlineImpact.MOVED_EARLIER:
        category, confidence = ActionCategory.ESCALATE, ActionConfidence.HIGH
    elif level in (SeverityLevel.HIGH, SeverityLevel.CRITICAL):
        category, confidence = ActionCategory.UPDATE, ActionConfidence.MEDIUM
    else:
        category, confidence = ActionCategory.REVIEW, ActionConfidence.MEDIUM
    text = _GUIDANCE_TEXT[category]
    if category != ActionCategory.NO_ACTION and impact in _IMPACT_TEXT:
        text = f"{_IMPACT_TEXT[impact]} {text}"
    return Guidance(category=category, guidance=text, confidence=confidence)


def explanation_bullets(
    severity: SeverityResult,
    impact: DeadlineImpact,
    open_deadline: datetime | None,
) -> list[str]:
    bullets: list[str] = []
    if impact != DeadlineImpact.NONE:
        if open_deadline is None:
            bullets.append(_IMPACT_TEXT[impact])
        else:
            bullets.append(f"{_IMPACT_TEXT[impact]} Earliest open deadline: {open_deadline.date().isoformat()}.")
    for reason in severity.reasons:
        bullets.append(reason[0].upper() + reason[1:])
    if not bullets:
        bullets.append("Page content changed without urgency signals.")
    return bullets[:MAX_EXPLANATION_BULLETS]


def confidence_notes(source: Source, severity: SeverityResult) -> list[str]:
    notes: list[str] = []
    if source.volatility_score > VOLATILITY_THRESHOLD:
        notes.append("This source changes often, so individual changes are weighted down.")
    if source.confidence_score > CONFIDENCE_THRESHOLD:
        notes.append("Past acknowledgements mark this source as mostly routine.")
    if source.watch_mode == WatchMode.METADATA_ONLY:
        notes.append("Only the page title and description are monitored.")
    if source.confidence_stats.total_actions == 0:
        notes.append("No acknowledgement history yet for this source.")
    if severity.date_matched:
        notes.append("Date wording changed; verify the exact dates on the source page.")
    return notes
