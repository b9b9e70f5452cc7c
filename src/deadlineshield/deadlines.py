from __future__ import annotations

import re
from datetime import datetime, timezone

from .models import ExtractedDeadline

LABEL_WINDOW = 50
CONTEXT_CHARS = 20

_MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

_MONTH_NAMES = (
    "January|February|March|April|May|June|July|August|September|October|November|December"
    "|Sept|Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sep|Oct|Nov|Dec"
)

_ISO_DATE = re.compile(r"\b(\d{4})[-/](\d{1,2})[-/](\d{1,2})\b")
_US_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_MONTH_DATE = re.compile(
    rf"\b({_MONTH_NAMES})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b",
    re.IGNORECASE,
)
_LABEL = re.compile(r"\b(deadline|due|date|effective|required|by)\s*:", re.IGNORECASE)


def has_date_expression(text: str) -> bool:
    if not text:
        return False
    return any(pattern.search(text) for pattern in (_ISO_DATE, _US_DATE, _MONTH_DATE))


def extract_deadlines(text: str) -> list[ExtractedDeadline]:
    """Find candidate deadlines in normalized text.

    Results keep first-occurrence order and are unique by parsed instant.
    Unparseable dates are dropped.
    """
    if not text:
        return []
    found: list[tuple[int, int, datetime]] = []
    for match in _ISO_DATE.finditer(text):
        parsed = _build_date(match.group(1), match.group(2), match.group(3))
        if parsed:
            found.append((match.start(), match.end(), parsed))
    for match in _US_DATE.finditer(text):
        parsed = _build_date(match.group(3), match.group(1), match.group(2))
        if parsed:
            found.append((match.start(), match.end(), parsed))
    for match in _MONTH_DATE.finditer(text):
        month = _MONTHS.get(match.group(1)[:3].lower())
        if month is None:
            continue
        parsed = _build_date(match.group(3), str(month), match.group(2))
        if parsed:
            found.append((match.start(), match.end(), parsed))

    found.sort(key=lambda item: item[0])
    seen: set[datetime] = set()
    deadlines: list[ExtractedDeadline] = []
    for start, end, parsed in found:
        if parsed in seen:
            continue
        seen.add(parsed)
        deadlines.append(
            ExtractedDeadline(
                date=parsed,
                label=_find_label(text, start),
                source_text=text[max(0, start - CONTEXT_CHARS) : end + CONTEXT_CHARS].strip(),
            )
        )
    return deadlines


def earliest_deadline(deadlines: list[ExtractedDeadline]) -> datetime | None:
    if not deadlines:
        return None
    return min(item.date for item in deadlines)


def earliest_open_deadline(
    deadlines: list[ExtractedDeadline], now: datetime
) -> datetime | None:
    today = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    upcoming = [item.date for item in deadlines if item.date >= today]
    if not upcoming:
        return None
    return min(upcoming)


def _find_label(text: str, start: int) -> str | None:
    window = text[max(0, start - LABEL_WINDOW) : start]
    matches = list(_LABEL.finditer(window))
    if not matches:
        return None
    return matches[-1].group(1).capitalize()


def _build_date(year: str, month: str, day: str) -> datetime | None:
    try:
        return datetime(int(year), int(month), int(day), tzinfo=timezone.utc)
    except ValueError:
        return None
