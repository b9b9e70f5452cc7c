from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .backoff import HOLD_STATUSES, failure_updates, success_updates
from .config import Config
from .deadlines import earliest_deadline, earliest_open_deadline, extract_deadlines
from .fetch import fetch_page
from .guidance import advise, confidence_notes, deadline_impact, explanation_bullets
from .locks import HELD, AlreadyLocked, Locked, acquire, release
from .models import AuditEntry, ChangeEvent, ExtractedDeadline, Source, SourceStatus
from .normalize import passage_diff, snapshot_page, watched_payload
from .notifier import Notifier, compose_alert
from .scoring import next_volatility, score_change
from .storage import (
    finish_source_check,
    get_source,
    insert_audit_entry,
    insert_change_event,
    record_source_check,
)
from .tenants import get_tenant_settings, should_alert
from .utils import Clock, fingerprint, log_event

LOCKED = "locked"
SKIPPED = "skipped"
BASELINE = "baseline"
UNCHANGED = "unchanged"
CHANGED = "changed"
BLOCKED = "blocked"
FAILED = "failed"
LOCK_LOST = "lock_lost"

_ESCALATION_STATUSES = HOLD_STATUSES | {SourceStatus.DEGRADED}


@dataclass(frozen=True)
class EngineContext:
    """Collaborators for one engine run; built by the entry point and passed down."""

    connect: Callable[[], Any]
    notifier: Notifier
    clock: Clock
    config: Config
    logger: logging.Logger


@dataclass(frozen=True)
class CheckResult:
    source_id: str
    outcome: str
    status: SourceStatus | None = None
    change_id: str | None = None
    error: str | None = None


def check_source(
    conn: Any,
    source_id: str,
    ctx: EngineContext,
    require_due: bool = False,
) -> CheckResult:
    """Run one locked check of a source: fetch, fingerprint and judge any change.

    Scheduled runs pass ``require_due`` so a source another pass already
    checked is skipped. A refused claim is not an error. Every other exit
    path writes a terminal state that also releases the lock; if even that
    fails the lock is dropped so the next cycle can retry.
    """
    started = ctx.clock.now()
    lock = acquire(conn, source_id, started, ctx.config.locks.ttl, require_due=require_due)
    if isinstance(lock, AlreadyLocked):
        log_event(ctx.logger, logging.INFO, "source_claim_skipped", source_id=source_id, reason=lock.reason)
        return CheckResult(source_id=source_id, outcome=LOCKED if lock.reason == HELD else SKIPPED)

    finalized = False
    try:
        source = get_source(conn, source_id)
        if source is None:
            raise LookupError(f"source vanished: {source_id}")
        fetch_cfg = ctx.config.fetch
        result = fetch_page(
            source.url,
            timeout_seconds=fetch_cfg.timeout_seconds,
            user_agent=fetch_cfg.user_agent,
            max_bytes=fetch_cfg.max_bytes,
            logger=ctx.logger,
        )
        if not result.ok:
            outcome = _finish_failure(
                conn,
                source,
                lock,
                ctx,
                started,
                blocked=result.blocked,
                http_status=result.http_status,
                error=result.error or result.kind,
            )
        else:
            outcome = _finish_success(conn, source, lock, ctx, started, result.body or "", result.http_status)
        finalized = True
        return outcome
    except Exception as exc:  # noqa: BLE001
        log_event(ctx.logger, logging.ERROR, "source_check_error", source_id=source_id, error=str(exc))
        source = get_source(conn, source_id)
        if source is None:
            return CheckResult(source_id=source_id, outcome=FAILED, error=str(exc))
        outcome = _finish_failure(
            conn,
            source,
            lock,
            ctx,
            started,
            blocked=False,
            http_status=None,
            error=f"processing_error:{exc}",
        )
        finalized = True
        return outcome
    finally:
        if not finalized:
            release(conn, lock)


def _finish_success(
    conn: Any,
    source: Source,
    lock: Locked,
    ctx: EngineContext,
    started: datetime,
    body: str,
    http_status: int | None,
) -> CheckResult:
    cfg = ctx.config
    snapshot = snapshot_page(body, cfg.normalize.max_chars)
    payload = watched_payload(snapshot, source.watch_mode)
    digest = fingerprint(payload)
    now = ctx.clock.now()

    deadlines = extract_deadlines(payload)
    next_deadline = earliest_open_deadline(deadlines, now)
    first_deadline = earliest_deadline(deadlines)
    baseline = source.last_hash is None
    changed = not baseline and digest != source.last_hash

    updates = success_updates(source, now, changed=changed)
    updates.update(
        {
            "last_hash": digest,
            "last_title": snapshot.title,
            "last_meta_description": snapshot.meta_description,
            "last_content_sample": snapshot.text[: cfg.normalize.sample_chars],
            "last_text": payload,
            "next_deadline": next_deadline,
            "earliest_deadline": first_deadline,
        }
    )
    if not baseline:
        updates["volatility_score"] = next_volatility(source.volatility_score, changed)

    event = None
    if changed:
        event = _build_change_event(
            conn, source, payload, deadlines, first_deadline, next_deadline, now
        )

    with conn.transaction():
        if not finish_source_check(conn, source.id, lock.holder, updates, now):
            return _lock_lost(source, ctx)
        if event is not None:
            insert_change_event(conn, event)
        record_source_check(
            conn,
            source.id,
            started_at=started,
            finished_at=now,
            outcome=CHANGED if changed else (BASELINE if baseline else UNCHANGED),
            http_status=http_status,
            changed=changed,
            change_id=event.id if event else None,
            error=None,
        )

    if baseline:
        log_event(ctx.logger, logging.INFO, "source_baseline_recorded", source_id=source.id, hash=digest[:12])
        return CheckResult(source_id=source.id, outcome=BASELINE, status=SourceStatus.OK)
    if event is None:
        log_event(ctx.logger, logging.INFO, "source_unchanged", source_id=source.id)
        return CheckResult(source_id=source.id, outcome=UNCHANGED, status=SourceStatus.OK)

    log_event(
        ctx.logger,
        logging.INFO,
        "source_changed",
        source_id=source.id,
        change_id=event.id,
        severity_score=event.severity.score,
        severity_level=event.severity.level.value,
        deadline_impact=event.deadline_impact.value,
    )
    _maybe_notify(conn, source, event, ctx)
    return CheckResult(
        source_id=source.id,
        outcome=CHANGED,
        status=SourceStatus.CHANGED,
        change_id=event.id,
    )


def _build_change_event(
    conn: Any,
    source: Source,
    payload: str,
    deadlines: list[ExtractedDeadline],
    first_deadline: datetime | None,
    next_deadline: datetime | None,
    now: datetime,
) -> ChangeEvent:
    """Judge a changed payload.

    Deadline impact compares the earliest extracted date with the one stored
    by the previous check; the explanation names the earliest date still open.
    """
    diff = passage_diff(source.last_text, payload)
    severity = score_change(payload, diff.text, source)
    impact = deadline_impact(source.earliest_deadline, first_deadline)
    tenant = get_tenant_settings(conn, source.tenant_id)
    guidance = advise(severity.level, impact) if tenant.guidance_enabled else None
    return ChangeEvent(
        id=uuid.uuid4().hex,
        source_id=source.id,
        tenant_id=source.tenant_id,
        source_url=source.url,
        detected_at=now,
        diff_summary=f"Content changed. {diff.summary}",
        severity=severity,
        explanation_bullets=explanation_bullets(severity, impact, next_deadline),
        extracted_deadlines=deadlines,
        deadline_impact=impact,
        action_category=guidance.category if guidance else None,
        action_guidance=guidance.guidance if guidance else None,
        action_confidence=guidance.confidence if guidance else None,
        confidence_notes=confidence_notes(source, severity),
    )


def _finish_failure(
    conn: Any,
    source: Source,
    lock: Locked,
    ctx: EngineContext,
    started: datetime,
    *,
    blocked: bool,
    http_status: int | None,
    error: str,
) -> CheckResult:
    now = ctx.clock.now()
    updates = failure_updates(source, now, blocked=blocked, error=error, config=ctx.config.backoff)
    status = updates["status"]
    with conn.transaction():
        if not finish_source_check(conn, source.id, lock.holder, updates, now):
            return _lock_lost(source, ctx)
        record_source_check(
            conn,
            source.id,
            started_at=started,
            finished_at=now,
            outcome=BLOCKED if blocked else FAILED,
            http_status=http_status,
            changed=False,
            change_id=None,
            error=error,
        )
        if status in _ESCALATION_STATUSES and status != source.status:
            insert_audit_entry(
                conn,
                AuditEntry(
                    id=None,
                    tenant_id=source.tenant_id,
                    actor="system",
                    action=f"STATUS_{status.value}",
                    source_id=source.id,
                    source_name=source.name,
                    created_at=now,
                    details=(
                        f"{source.status.value}->{status.value} "
                        f"failures={updates['consecutive_failures']} error={error}"
                    ),
                ),
            )

    event = "source_fetch_blocked" if blocked else "source_fetch_failed"
    log_event(
        ctx.logger,
        logging.WARNING,
        event,
        source_id=source.id,
        status=status.value,
        failures=updates["consecutive_failures"],
        next_check_at=updates["next_check_at"],
        error=error,
    )
    if status in (SourceStatus.DEGRADED, SourceStatus.NEEDS_MANUAL_VERIFICATION):
        log_event(ctx.logger, logging.WARNING, "source_degraded", source_id=source.id, status=status.value)
    return CheckResult(
        source_id=source.id,
        outcome=BLOCKED if blocked else FAILED,
        status=status,
        error=error,
    )


def _lock_lost(source: Source, ctx: EngineContext) -> CheckResult:
    log_event(ctx.logger, logging.WARNING, "source_lock_lost", source_id=source.id)
    return CheckResult(source_id=source.id, outcome=LOCK_LOST)


def _maybe_notify(conn: Any, source: Source, event: ChangeEvent, ctx: EngineContext) -> bool:
    """Best-effort alert for a committed change; failures are logged, never raised."""
    try:
        tenant = get_tenant_settings(conn, source.tenant_id)
        if not should_alert(tenant, event.severity.level):
            return False
        if not tenant.email or not tenant.email_alerts or not ctx.config.alerts.email_enabled:
            log_event(ctx.logger, logging.INFO, "notify_skipped", source_id=source.id, plan=tenant.plan)
            return False
        message = compose_alert(source, event, ctx.config.app, ctx.config.alerts)
        sent = ctx.notifier.notify(tenant.email, message.subject, message.text, message.html)
    except Exception as exc:  # noqa: BLE001
        log_event(ctx.logger, logging.WARNING, "notify_failed", source_id=source.id, error=str(exc))
        return False
    if not sent:
        log_event(ctx.logger, logging.WARNING, "notify_failed", source_id=source.id, change_id=event.id)
    return sent
