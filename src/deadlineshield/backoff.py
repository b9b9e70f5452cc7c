from __future__ import annotations

from datetime import datetime, timedelta

from .config import BackoffConfig
from .models import Frequency, Source, SourceStatus

DEFAULT_DELAYS_MINUTES = [0, 30, 120, 720, 1440]
DEFAULT_DEGRADED_AFTER = 5
DEFAULT_MANUAL_AFTER = 10

_FREQUENCY_INTERVALS = {
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(days=7),
}

# States that hold a source out of scheduling until a resume or verify intent.
HOLD_STATUSES = frozenset({SourceStatus.BLOCKED, SourceStatus.NEEDS_MANUAL_VERIFICATION})


def frequency_interval(frequency: Frequency) -> timedelta:
    return _FREQUENCY_INTERVALS[frequency]


def retry_delay(consecutive_failures: int, delays_minutes: list[int] | None = None) -> timedelta:
    """Delay before the next attempt after ``consecutive_failures`` failures in a row."""
    delays = delays_minutes or DEFAULT_DELAYS_MINUTES
    if consecutive_failures <= 0:
        return timedelta(0)
    index = min(consecutive_failures, len(delays)) - 1
    return timedelta(minutes=delays[index])


def failure_status(
    consecutive_failures: int,
    *,
    blocked: bool,
    degraded_after: int = DEFAULT_DEGRADED_AFTER,
    manual_after: int = DEFAULT_MANUAL_AFTER,
) -> SourceStatus:
    if blocked:
        return SourceStatus.BLOCKED
    if consecutive_failures >= manual_after:
        return SourceStatus.NEEDS_MANUAL_VERIFICATION
    if consecutive_failures >= degraded_after:
        return SourceStatus.DEGRADED
    return SourceStatus.ERROR


def failure_updates(
    source: Source,
    now: datetime,
    *,
    blocked: bool,
    error: str,
    config: BackoffConfig | None = None,
) -> dict[str, object]:
    delays = config.delays_minutes if config else DEFAULT_DELAYS_MINUTES
    degraded_after = config.degraded_after if config else DEFAULT_DEGRADED_AFTER
    manual_after = config.manual_after if config else DEFAULT_MANUAL_AFTER

    failures = source.consecutive_failures + 1
    backoff_level = max(source.backoff_level, min(failures, len(delays)))
    status = failure_status(
        failures,
        blocked=blocked,
        degraded_after=degraded_after,
        manual_after=manual_after,
    )
    return {
        "status": status,
        "consecutive_failures": failures,
        "backoff_level": backoff_level,
        "consecutive_blocked": source.consecutive_blocked + 1 if blocked else 0,
        "next_check_at": now + retry_delay(failures, delays),
        "needs_check": status in HOLD_STATUSES,
        "last_checked_at": now,
        "last_error": error,
    }


def success_updates(source: Source, now: datetime, *, changed: bool) -> dict[str, object]:
    return {
        "status": SourceStatus.CHANGED if changed else SourceStatus.OK,
        "consecutive_failures": 0,
        "backoff_level": 0,
        "consecutive_blocked": 0,
        "next_check_at": now + frequency_interval(source.frequency),
        "needs_check": False,
        "last_checked_at": now,
        "last_success_at": now,
        "last_error": None,
    }
