from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from deadlineshield.locks import acquire
from deadlineshield.models import ActionCategory, ActionConfidence, DeadlineImpact, SeverityLevel, SourceStatus
from deadlineshield.pipeline import (
    BASELINE,
    CHANGED,
    FAILED,
    LOCK_LOST,
    LOCKED,
    SKIPPED,
    UNCHANGED,
    check_source,
)
from deadlineshield.services.sources_service import pause_source
from deadlineshield.storage import (
    get_change_event,
    get_source,
    list_audit_entries,
    list_change_events,
    list_due_sources,
    list_source_checks,
)
from deadlineshield.tenants import save_tenant
from deadlineshield.utils import fingerprint

from conftest import T0

BASE_PAGE = (
    "<html><head><title>Filing Rules</title></head>"
    "<body><p>Filing rules apply to all members.</p></body></html>"
)
BASE_PAYLOAD = "Filing Rules Filing rules apply to all members."
DEADLINE_PAGE = (
    "<html><head><title>Filing Rules</title></head>"
    "<body><p>Filing rules apply to all members.</p>"
    "<p>Deadline: March 3, 2025. Filing is required.</p></body></html>"
)


def test_first_check_records_baseline(conn, ctx, fetcher, add_source):
    add_source()
    fetcher.page(BASE_PAGE)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == BASELINE
    source = get_source(conn, "src-1")
    assert source.status == SourceStatus.OK
    assert source.last_hash == fingerprint(BASE_PAYLOAD)
    assert source.last_title == "Filing Rules"
    assert source.next_check_at == T0 + timedelta(days=1)
    assert source.last_success_at == T0
    assert source.lock is None
    assert source.volatility_score == 0.0
    assert list_change_events(conn) == []
    checks = list_source_checks(conn, "src-1")
    assert [row["outcome"] for row in checks] == ["baseline"]


def test_same_content_is_unchanged_and_resets_failures(conn, ctx, fetcher, add_source):
    add_source(
        status=SourceStatus.ERROR,
        consecutive_failures=3,
        backoff_level=3,
        last_hash=fingerprint(BASE_PAYLOAD),
        last_text=BASE_PAYLOAD,
        last_error="network_error:connection reset",
    )
    fetcher.page(BASE_PAGE)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == UNCHANGED
    source = get_source(conn, "src-1")
    assert source.status == SourceStatus.OK
    assert source.consecutive_failures == 0
    assert source.backoff_level == 0
    assert source.last_error is None
    assert source.next_check_at == T0 + timedelta(days=1)
    assert list_change_events(conn) == []
    assert [row["outcome"] for row in list_source_checks(conn, "src-1")] == ["unchanged"]


def test_new_deadline_change_is_judged_and_alerted(conn, ctx, clock, fetcher, notifier, add_source):
    save_tenant(conn, "acme", email="ops@acme.example", plan="Pro")
    add_source()
    fetcher.page(BASE_PAGE)
    check_source(conn, "src-1", ctx)
    clock.advance(timedelta(days=1))
    fetcher.page(DEADLINE_PAGE)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == CHANGED
    assert result.status == SourceStatus.CHANGED
    event = get_change_event(conn, result.change_id)
    assert event.severity.score == 60
    assert event.severity.level == SeverityLevel.HIGH
    assert event.deadline_impact == DeadlineImpact.NEW_DEADLINE
    assert event.action_category == ActionCategory.UPDATE
    assert event.action_confidence == ActionConfidence.MEDIUM
    assert event.action_guidance.startswith("A new deadline was published.")
    assert event.diff_summary == "Content changed. 2 passage(s) added, 0 passage(s) removed."
    assert event.explanation_bullets == [
        "A new deadline was published. Earliest open deadline: 2025-03-03.",
        "Deadline or date expression modified.",
        "Urgency language detected: deadline, required.",
    ]
    assert [d.date for d in event.extracted_deadlines] == [datetime(2025, 3, 3, tzinfo=timezone.utc)]
    assert event.extracted_deadlines[0].label == "Deadline"

    source = get_source(conn, "src-1")
    assert source.status == SourceStatus.CHANGED
    assert source.next_deadline == datetime(2025, 3, 3, tzinfo=timezone.utc)
    assert source.volatility_score == pytest.approx(0.2)

    assert len(notifier.sent) == 1
    sent = notifier.sent[0]
    assert sent["recipient"] == "ops@acme.example"
    assert sent["subject"] == "[HIGH] Change Detected: Filing Rules"
    assert "Disclaimer:" in sent["text"]

    checks = list_source_checks(conn, "src-1")
    assert checks[0]["outcome"] == "changed"
    assert checks[0]["change_id"] == result.change_id


def test_starter_tenant_gets_no_guidance_or_email(conn, ctx, clock, fetcher, notifier, add_source):
    add_source()
    fetcher.page(BASE_PAGE)
    check_source(conn, "src-1", ctx)
    clock.advance(timedelta(days=1))
    fetcher.page(DEADLINE_PAGE)

    result = check_source(conn, "src-1", ctx)

    event = get_change_event(conn, result.change_id)
    assert event.severity.level == SeverityLevel.HIGH
    assert event.action_category is None
    assert event.action_guidance is None
    assert notifier.sent == []


def test_change_below_threshold_is_not_sent(conn, ctx, clock, fetcher, notifier, add_source):
    save_tenant(conn, "acme", email="ops@acme.example", plan="Pro", alert_threshold="critical")
    add_source()
    fetcher.page(BASE_PAGE)
    check_source(conn, "src-1", ctx)
    clock.advance(timedelta(days=1))
    fetcher.page(DEADLINE_PAGE)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == CHANGED
    assert notifier.sent == []


def test_notify_failure_does_not_fail_check(conn, ctx, clock, fetcher, add_source):
    class ExplodingNotifier:
        def notify(self, recipient, subject, text, html_body):
            raise RuntimeError("smtp down")

    ctx = replace(ctx, notifier=ExplodingNotifier())
    save_tenant(conn, "acme", email="ops@acme.example", plan="Pro")
    add_source()
    fetcher.page(BASE_PAGE)
    check_source(conn, "src-1", ctx)
    clock.advance(timedelta(days=1))
    fetcher.page(DEADLINE_PAGE)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == CHANGED
    assert get_change_event(conn, result.change_id) is not None
    assert get_source(conn, "src-1").status == SourceStatus.CHANGED


def test_blocked_fetch_holds_source(conn, ctx, fetcher, add_source):
    add_source()
    fetcher.blocked(403)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == "blocked"
    source = get_source(conn, "src-1")
    assert source.status == SourceStatus.BLOCKED
    assert source.needs_check is True
    assert source.consecutive_blocked == 1
    assert source.consecutive_failures == 1
    assert source.last_error == "http_403"
    assert source.lock is None
    audit = list_audit_entries(conn, "src-1")
    assert [(entry.actor, entry.action) for entry in audit] == [("system", "STATUS_BLOCKED")]
    assert list_due_sources(conn, T0 + timedelta(days=30)) == []


def test_repeated_failures_degrade_then_need_manual_verification(conn, ctx, clock, fetcher, add_source):
    add_source()
    fetcher.failed()

    statuses = []
    for _ in range(10):
        check_source(conn, "src-1", ctx)
        source = get_source(conn, "src-1")
        statuses.append(source.status)
        if source.consecutive_failures == 5:
            assert source.next_check_at == clock.now() + timedelta(minutes=1440)
            assert source.backoff_level == 5
        clock.advance(timedelta(days=2))

    assert statuses[:4] == [SourceStatus.ERROR] * 4
    assert statuses[4:9] == [SourceStatus.DEGRADED] * 5
    assert statuses[9] == SourceStatus.NEEDS_MANUAL_VERIFICATION
    source = get_source(conn, "src-1")
    assert source.needs_check is True
    actions = [entry.action for entry in list_audit_entries(conn, "src-1")]
    assert sorted(actions) == ["STATUS_DEGRADED", "STATUS_NEEDS_MANUAL_VERIFICATION"]

    fetcher.page(BASE_PAGE)
    check_source(conn, "src-1", ctx)
    source = get_source(conn, "src-1")
    assert source.status == SourceStatus.OK
    assert source.consecutive_failures == 0
    assert source.backoff_level == 0
    assert source.last_error is None


def test_locked_source_is_skipped(conn, ctx, fetcher, add_source):
    add_source()
    acquire(conn, "src-1", T0)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == LOCKED
    assert fetcher.calls == []
    assert list_source_checks(conn, "src-1") == []


def test_processing_error_marks_error_and_releases_lock(conn, ctx, fetcher, add_source, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("parser exploded")

    monkeypatch.setattr("deadlineshield.pipeline.snapshot_page", explode)
    add_source()
    fetcher.page(BASE_PAGE)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == FAILED
    source = get_source(conn, "src-1")
    assert source.status == SourceStatus.ERROR
    assert source.last_error == "processing_error:parser exploded"
    assert source.lock is None
    assert source.last_hash is None


def test_pause_during_check_is_kept(conn, ctx, fetcher, add_source):
    add_source()
    fetcher.page(BASE_PAGE)
    fetcher.before_return = lambda url: pause_source(conn, "src-1", "ops", "TEMPORARY", now=T0)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == BASELINE
    source = get_source(conn, "src-1")
    assert source.status == SourceStatus.PAUSED
    assert source.last_hash is not None
    assert source.lock is None


def test_lost_lock_discards_result(conn, ctx, fetcher, add_source):
    add_source()
    fetcher.page(BASE_PAGE)
    fetcher.before_return = lambda url: conn.execute(
        "UPDATE sources SET lock_holder = 'intruder' WHERE id = ?", ("src-1",)
    )

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == LOCK_LOST
    source = get_source(conn, "src-1")
    assert source.last_hash is None
    assert source.lock.holder == "intruder"
    assert list_source_checks(conn, "src-1") == []


def test_metadata_only_ignores_body_changes(conn, ctx, clock, fetcher, add_source):
    add_source(watch_mode="MetadataOnly")
    head = '<head><title>Rules</title><meta name="description" content="Filing rules."></head>'
    fetcher.page(f"<html>{head}<body><p>Version one.</p></body></html>")
    check_source(conn, "src-1", ctx)
    clock.advance(timedelta(days=1))
    fetcher.page(f"<html>{head}<body><p>Version two with 2025-03-03.</p></body></html>")

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == UNCHANGED
    assert get_source(conn, "src-1").last_text == "Rules Filing rules."

    clock.advance(timedelta(days=1))
    fetcher.page(
        '<html><head><title>Rules</title><meta name="description" content="Filing rules updated.">'
        "</head><body></body></html>"
    )
    assert check_source(conn, "src-1", ctx).outcome == CHANGED


def test_stale_due_list_does_not_repeat_a_finished_check(conn, ctx, clock, fetcher, add_source):
    add_source()
    fetcher.page(BASE_PAGE)
    first_pass = list_due_sources(conn, clock.now())
    second_pass = list_due_sources(conn, clock.now())

    first = [check_source(conn, source.id, ctx, require_due=True) for source in first_pass]
    clock.advance(timedelta(seconds=5))
    second = [check_source(conn, source.id, ctx, require_due=True) for source in second_pass]

    assert [result.outcome for result in first] == [BASELINE]
    assert [result.outcome for result in second] == [SKIPPED]
    assert len(fetcher.calls) == 1
    assert len(list_source_checks(conn, "src-1")) == 1
    assert get_source(conn, "src-1").next_check_at == T0 + timedelta(days=1)


def test_manual_check_ignores_schedule(conn, ctx, fetcher, add_source):
    add_source(next_check_at=T0 + timedelta(days=3))
    fetcher.page(BASE_PAGE)

    assert check_source(conn, "src-1", ctx, require_due=True).outcome == SKIPPED
    assert check_source(conn, "src-1", ctx).outcome == BASELINE
    assert len(fetcher.calls) == 1


def test_paused_source_skip_is_logged_with_reason(conn, ctx, fetcher, add_source, caplog):
    add_source(status=SourceStatus.PAUSED)

    with caplog.at_level(logging.INFO, logger="deadlineshield.tests"):
        result = check_source(conn, "src-1", ctx)

    assert result.outcome == SKIPPED
    assert fetcher.calls == []
    messages = [record.getMessage() for record in caplog.records]
    assert "event=source_claim_skipped source_id=src-1 reason=paused" in messages


def test_past_deadline_does_not_read_as_moved(conn, ctx, clock, fetcher, add_source):
    body = "<p>Deadline: March 1, 2025.</p><p>Renewal due June 1, 2025.</p>"
    add_source()
    fetcher.page(f"<html><head><title>Filing Rules</title></head><body>{body}</body></html>")
    check_source(conn, "src-1", ctx)
    assert get_source(conn, "src-1").next_deadline == datetime(2025, 3, 1, tzinfo=timezone.utc)
    clock.advance(timedelta(days=49))
    fetcher.page(
        f"<html><head><title>Filing Rules</title></head><body>{body}<p>Office hours updated.</p></body></html>"
    )

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == CHANGED
    event = get_change_event(conn, result.change_id)
    assert event.deadline_impact == DeadlineImpact.NONE
    assert not any(bullet.startswith("A deadline") for bullet in event.explanation_bullets)
    source = get_source(conn, "src-1")
    assert source.earliest_deadline == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert source.next_deadline == datetime(2025, 6, 1, tzinfo=timezone.utc)


def test_moved_deadline_after_first_one_passed(conn, ctx, clock, fetcher, add_source):
    add_source()
    fetcher.page(
        "<html><head><title>Filing Rules</title></head>"
        "<body><p>Deadline: March 1, 2025.</p></body></html>"
    )
    check_source(conn, "src-1", ctx)
    clock.advance(timedelta(days=49))
    fetcher.page(
        "<html><head><title>Filing Rules</title></head>"
        "<body><p>Deadline: March 10, 2025.</p></body></html>"
    )

    result = check_source(conn, "src-1", ctx)

    event = get_change_event(conn, result.change_id)
    assert event.deadline_impact == DeadlineImpact.MOVED_LATER
    assert event.explanation_bullets[0] == "A deadline moved later. Earliest open deadline: 2025-03-10."


def test_alert_composition_failure_does_not_fail_check(conn, ctx, clock, fetcher, add_source, monkeypatch):
    def broken_compose(*args, **kwargs):
        raise RuntimeError("template missing")

    monkeypatch.setattr("deadlineshield.pipeline.compose_alert", broken_compose)
    save_tenant(conn, "acme", email="ops@acme.example", plan="Pro")
    add_source()
    fetcher.page(BASE_PAGE)
    check_source(conn, "src-1", ctx)
    clock.advance(timedelta(days=1))
    fetcher.page(DEADLINE_PAGE)

    result = check_source(conn, "src-1", ctx)

    assert result.outcome == CHANGED
    source = get_source(conn, "src-1")
    assert source.status == SourceStatus.CHANGED
    assert source.lock is None
    assert source.last_error is None
