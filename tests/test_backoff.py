from __future__ import annotations

from datetime import timedelta

import pytest

from deadlineshield.backoff import failure_status, failure_updates, retry_delay, success_updates
from deadlineshield.config import BackoffConfig
from deadlineshield.models import Frequency, SourceStatus

from conftest import T0


@pytest.mark.parametrize(
    "failures, minutes",
    [(0, 0), (1, 0), (2, 30), (3, 120), (4, 720), (5, 1440), (12, 1440)],
)
def test_retry_delay_follows_schedule(failures, minutes):
    assert retry_delay(failures) == timedelta(minutes=minutes)


def test_failure_status_thresholds():
    assert failure_status(1, blocked=False) == SourceStatus.ERROR
    assert failure_status(4, blocked=False) == SourceStatus.ERROR
    assert failure_status(5, blocked=False) == SourceStatus.DEGRADED
    assert failure_status(9, blocked=False) == SourceStatus.DEGRADED
    assert failure_status(10, blocked=False) == SourceStatus.NEEDS_MANUAL_VERIFICATION
    assert failure_status(1, blocked=True) == SourceStatus.BLOCKED


def test_fifth_failure_degrades_with_day_delay(source_record):
    source = source_record(consecutive_failures=4, backoff_level=4)

    updates = failure_updates(source, T0, blocked=False, error="network_error:timed out")

    assert updates["status"] == SourceStatus.DEGRADED
    assert updates["consecutive_failures"] == 5
    assert updates["backoff_level"] == 5
    assert updates["next_check_at"] == T0 + timedelta(minutes=1440)
    assert updates["needs_check"] is False
    assert updates["consecutive_blocked"] == 0
    assert updates["last_error"] == "network_error:timed out"


def test_blocked_failure_holds_source(source_record):
    source = source_record(consecutive_blocked=2, consecutive_failures=2)

    updates = failure_updates(source, T0, blocked=True, error="http_403")

    assert updates["status"] == SourceStatus.BLOCKED
    assert updates["consecutive_blocked"] == 3
    assert updates["needs_check"] is True
    assert updates["next_check_at"] == T0 + timedelta(minutes=120)


def test_backoff_level_never_decreases_while_failing(source_record):
    source = source_record(consecutive_failures=0, backoff_level=4)

    updates = failure_updates(source, T0, blocked=False, error="x")

    assert updates["backoff_level"] == 4


def test_custom_backoff_config(source_record):
    config = BackoffConfig(delays_minutes=[5, 10], degraded_after=2, manual_after=3)

    second = failure_updates(source_record(consecutive_failures=1), T0, blocked=False, error="x", config=config)
    third = failure_updates(source_record(consecutive_failures=2), T0, blocked=False, error="x", config=config)

    assert second["status"] == SourceStatus.DEGRADED
    assert second["next_check_at"] == T0 + timedelta(minutes=10)
    assert third["status"] == SourceStatus.NEEDS_MANUAL_VERIFICATION
    assert third["backoff_level"] == 2


def test_success_resets_failure_state(source_record):
    source = source_record(
        frequency=Frequency.WEEKLY,
        consecutive_failures=7,
        backoff_level=5,
        consecutive_blocked=1,
        status=SourceStatus.DEGRADED,
        last_error="http_500",
    )

    updates = success_updates(source, T0, changed=False)

    assert updates["status"] == SourceStatus.OK
    assert updates["consecutive_failures"] == 0
    assert updates["backoff_level"] == 0
    assert updates["consecutive_blocked"] == 0
    assert updates["next_check_at"] == T0 + timedelta(days=7)
    assert updates["last_error"] is None
    assert success_updates(source, T0, changed=True)["status"] == SourceStatus.CHANGED
