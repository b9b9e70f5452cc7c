from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from .db import connect_db
from .models import (
    AckStatus,
    ActionCategory,
    ActionConfidence,
    AuditEntry,
    ChangeEvent,
    ConfidenceStats,
    DeadlineImpact,
    ExtractedDeadline,
    Frequency,
    SeverityLevel,
    SeverityResult,
    Source,
    SourceLock,
    SourceStatus,
    WatchMode,
)
from .utils import json_dumps, parse_iso, parse_iso_or_none, to_iso, utc_now_iso

_SOURCE_COLUMNS = [
    "id",
    "tenant_id",
    "url",
    "name",
    "frequency",
    "watch_mode",
    "status",
    "last_hash",
    "consecutive_failures",
    "backoff_level",
    "next_check_at",
    "lock_holder",
    "lock_expires_at",
    "volatility_score",
    "confidence_score",
    "confidence_stats_json",
    "last_title",
    "last_meta_description",
    "last_content_sample",
    "last_text",
    "next_deadline",
    "earliest_deadline",
    "paused_at",
    "paused_by",
    "pause_reason",
    "verified_at",
    "verified_by",
    "verified_reason",
    "verified_note",
    "verified_hash",
    "needs_check",
    "consecutive_blocked",
    "last_checked_at",
    "last_success_at",
    "last_error",
    "version",
    "created_at",
]

# Columns the engine and intent handlers may write through update helpers.
_WRITABLE_SOURCE_COLUMNS = set(_SOURCE_COLUMNS) - {
    "id",
    "tenant_id",
    "lock_holder",
    "lock_expires_at",
    "version",
    "created_at",
}

_CHANGE_COLUMNS = [
    "id",
    "source_id",
    "tenant_id",
    "source_url",
    "detected_at",
    "diff_summary",
    "severity_score",
    "severity_level",
    "severity_reasons_json",
    "explanation_json",
    "deadlines_json",
    "deadline_impact",
    "action_category",
    "action_guidance",
    "action_confidence",
    "confidence_notes_json",
    "ack_status",
    "ack_at",
    "ack_by",
]


def init_db(path: str | None = None):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def upsert_tenant(
    conn: Any,
    tenant_id: str,
    *,
    email: str | None,
    plan: str,
    alert_threshold: str | None = None,
    guidance_enabled: bool | None = None,
    email_alerts: bool | None = None,
) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO tenants
            (id, email, plan, alert_threshold, guidance_enabled, email_alerts, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            email=excluded.email,
            plan=excluded.plan,
            alert_threshold=excluded.alert_threshold,
            guidance_enabled=excluded.guidance_enabled,
            email_alerts=excluded.email_alerts,
            updated_at=excluded.updated_at
        """,
        (
            tenant_id,
            email,
            plan,
            alert_threshold,
            _bool_or_none(guidance_enabled),
            _bool_or_none(email_alerts),
            now,
            now,
        ),
    )
    conn.commit()


def get_tenant_row(conn: Any, tenant_id: str) -> dict[str, object] | None:
    cursor = conn.execute(
        """
        SELECT id, email, plan, alert_threshold, guidance_enabled, email_alerts
        FROM tenants
        WHERE id = ?
        """,
        (tenant_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    keys = ["id", "email", "plan", "alert_threshold", "guidance_enabled", "email_alerts"]
    data = dict(zip(keys, row))
    for key in ("guidance_enabled", "email_alerts"):
        if data[key] is not None:
            data[key] = bool(data[key])
    return data


def insert_source(conn: Any, source: dict[str, object]) -> None:
    now = utc_now_iso()
    values = {
        "id": source["id"],
        "tenant_id": source["tenant_id"],
        "url": source["url"],
        "name": source["name"],
        "frequency": _column_value(source.get("frequency") or Frequency.DAILY),
        "watch_mode": _column_value(source.get("watch_mode") or WatchMode.FULL_CONTENT),
        "status": _column_value(source.get("status") or SourceStatus.OK),
        "next_check_at": _column_value(source.get("next_check_at")),
        "created_at": now,
        "updated_at": now,
    }
    columns = ", ".join(values.keys())
    placeholders = ", ".join(["?"] * len(values))
    conn.execute(
        f"INSERT INTO sources ({columns}) VALUES ({placeholders})",
        tuple(values.values()),
    )
    conn.commit()


def get_source(conn: Any, source_id: str, *, for_update: bool = False) -> Source | None:
    suffix = " FOR UPDATE" if for_update else ""
    cursor = conn.execute(
        f"SELECT {', '.join(_SOURCE_COLUMNS)} FROM sources WHERE id = ?{suffix}",
        (source_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_source(row)


def list_sources(
    conn: Any,
    tenant_id: str | None = None,
    status: SourceStatus | str | None = None,
) -> list[Source]:
    clauses: list[str] = []
    params: list[object] = []
    if tenant_id:
        clauses.append("tenant_id = ?")
        params.append(tenant_id)
    if status:
        clauses.append("status = ?")
        params.append(_column_value(status))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cursor = conn.execute(
        f"SELECT {', '.join(_SOURCE_COLUMNS)} FROM sources {where} ORDER BY created_at, id",
        tuple(params),
    )
    return [_row_to_source(row) for row in cursor.fetchall()]


def count_sources_for_tenant(conn: Any, tenant_id: str) -> int:
    cursor = conn.execute("SELECT COUNT(*) FROM sources WHERE tenant_id = ?", (tenant_id,))
    row = cursor.fetchone()
    return int(row[0]) if row else 0


def list_due_sources(conn: Any, now: datetime) -> list[Source]:
    now_iso = to_iso(now)
    cursor = conn.execute(
        f"""
        SELECT {', '.join(_SOURCE_COLUMNS)}
        FROM sources
        WHERE status != ?
          AND needs_check = 0
          AND (next_check_at IS NULL OR next_check_at <= ?)
          AND (lock_holder IS NULL OR lock_expires_at IS NULL OR lock_expires_at <= ?)
        ORDER BY COALESCE(next_check_at, ''), id
        """,
        (SourceStatus.PAUSED.value, now_iso, now_iso),
    )
    return [_row_to_source(row) for row in cursor.fetchall()]


def try_acquire_source_lock(
    conn: Any,
    source_id: str,
    holder: str,
    now: datetime,
    ttl: timedelta,
    require_due: bool = False,
) -> bool:
    now_iso = to_iso(now)
    sql = """
        UPDATE sources
        SET lock_holder = ?, lock_expires_at = ?, version = version + 1
        WHERE id = ?
          AND status != ?
          AND (lock_holder IS NULL OR lock_expires_at IS NULL OR lock_expires_at <= ?)
        """
    params: list[Any] = [holder, to_iso(now + ttl), source_id, SourceStatus.PAUSED.value, now_iso]
    if require_due:
        sql += "  AND needs_check = 0 AND (next_check_at IS NULL OR next_check_at <= ?)\n"
        params.append(now_iso)
    cursor = conn.execute(sql, tuple(params))
    conn.commit()
    return cursor.rowcount == 1


def release_source_lock(conn: Any, source_id: str, holder: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE sources
        SET lock_holder = NULL, lock_expires_at = NULL, version = version + 1
        WHERE id = ? AND lock_holder = ?
        """,
        (source_id, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def finish_source_check(
    conn: Any,
    source_id: str,
    holder: str,
    updates: dict[str, object],
    now: datetime,
) -> bool:
    """Write the terminal state of a check and release the lock in one statement.

    Only the current lock holder may write. A source paused while the check was
    in flight keeps its PAUSED status.
    """
    fields = dict(updates)
    status = fields.pop("status", None)
    assignments, params = _assignments(fields)
    if status is not None:
        assignments.append("status = CASE WHEN status = ? THEN status ELSE ? END")
        params.extend([SourceStatus.PAUSED.value, _column_value(status)])
    assignments.extend(
        [
            "lock_holder = NULL",
            "lock_expires_at = NULL",
            "version = version + 1",
            "updated_at = ?",
        ]
    )
    params.append(to_iso(now))
    params.extend([source_id, holder])
    cursor = conn.execute(
        f"UPDATE sources SET {', '.join(assignments)} WHERE id = ? AND lock_holder = ?",
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def update_source_fields(
    conn: Any,
    source_id: str,
    updates: dict[str, object],
    now: datetime,
    expected_version: int | None = None,
) -> bool:
    assignments, params = _assignments(updates)
    assignments.extend(["version = version + 1", "updated_at = ?"])
    params.append(to_iso(now))
    where = "id = ?"
    params.append(source_id)
    if expected_version is not None:
        where += " AND version = ?"
        params.append(expected_version)
    cursor = conn.execute(
        f"UPDATE sources SET {', '.join(assignments)} WHERE {where}",
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def insert_change_event(conn: Any, event: ChangeEvent) -> None:
    conn.execute(
        f"""
        INSERT INTO change_events ({', '.join(_CHANGE_COLUMNS)})
        VALUES ({', '.join(['?'] * len(_CHANGE_COLUMNS))})
        """,
        (
            event.id,
            event.source_id,
            event.tenant_id,
            event.source_url,
            to_iso(event.detected_at),
            event.diff_summary,
            event.severity.score,
            event.severity.level.value,
            json_dumps(event.severity.reasons),
            json_dumps(event.explanation_bullets),
            json_dumps([_deadline_to_dict(item) for item in event.extracted_deadlines]),
            event.deadline_impact.value,
            _column_value(event.action_category),
            event.action_guidance,
            _column_value(event.action_confidence),
            json_dumps(event.confidence_notes),
            _column_value(event.ack_status),
            _column_value(event.ack_at),
            event.ack_by,
        ),
    )
    conn.commit()


def get_change_event(conn: Any, change_id: str) -> ChangeEvent | None:
    cursor = conn.execute(
        f"SELECT {', '.join(_CHANGE_COLUMNS)} FROM change_events WHERE id = ?",
        (change_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_change(row)


def list_change_events(
    conn: Any,
    tenant_id: str | None = None,
    source_id: str | None = None,
    limit: int = 50,
) -> list[ChangeEvent]:
    clauses: list[str] = []
    params: list[object] = []
    if tenant_id:
        clauses.append("tenant_id = ?")
        params.append(tenant_id)
    if source_id:
        clauses.append("source_id = ?")
        params.append(source_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {', '.join(_CHANGE_COLUMNS)}
        FROM change_events
        {where}
        ORDER BY detected_at DESC, id
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_change(row) for row in cursor.fetchall()]


def mark_change_acknowledged(
    conn: Any,
    change_id: str,
    ack_status: AckStatus,
    actor: str,
    at: datetime,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE change_events
        SET ack_status = ?, ack_at = ?, ack_by = ?
        WHERE id = ? AND ack_status IS NULL
        """,
        (ack_status.value, to_iso(at), actor, change_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def insert_audit_entry(conn: Any, entry: AuditEntry) -> None:
    conn.execute(
        """
        INSERT INTO audit_log
            (tenant_id, actor, action, source_id, source_name, created_at, details, snapshot_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.tenant_id,
            entry.actor,
            entry.action,
            entry.source_id,
            entry.source_name,
            to_iso(entry.created_at),
            entry.details,
            json_dumps(entry.snapshot) if entry.snapshot is not None else None,
        ),
    )
    conn.commit()


def list_audit_entries(
    conn: Any,
    source_id: str | None = None,
    tenant_id: str | None = None,
    limit: int = 100,
) -> list[AuditEntry]:
    clauses: list[str] = []
    params: list[object] = []
    if source_id:
        clauses.append("source_id = ?")
        params.append(source_id)
    if tenant_id:
        clauses.append("tenant_id = ?")
        params.append(tenant_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT id, tenant_id, actor, action, source_id, source_name, created_at, details, snapshot_json
        FROM audit_log
        {where}
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        tuple(params),
    )
    entries = []
    for row in cursor.fetchall():
        entries.append(
            AuditEntry(
                id=int(row[0]),
                tenant_id=row[1],
                actor=row[2],
                action=row[3],
                source_id=row[4],
                source_name=row[5],
                created_at=parse_iso(row[6]),
                details=row[7],
                snapshot=json.loads(row[8]) if row[8] else None,
            )
        )
    return entries


def record_source_check(
    conn: Any,
    source_id: str,
    *,
    started_at: datetime,
    finished_at: datetime,
    outcome: str,
    http_status: int | None,
    changed: bool,
    change_id: str | None,
    error: str | None,
) -> None:
    duration_ms = int((finished_at - started_at).total_seconds() * 1000)
    conn.execute(
        """
        INSERT INTO source_checks
            (source_id, started_at, finished_at, outcome, http_status, duration_ms,
             changed, change_id, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source_id,
            to_iso(started_at),
            to_iso(finished_at),
            outcome,
            http_status,
            max(0, duration_ms),
            1 if changed else 0,
            change_id,
            error,
        ),
    )
    conn.commit()


def list_source_checks(conn: Any, source_id: str, limit: int = 50) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT id, source_id, started_at, finished_at, outcome, http_status, duration_ms,
               changed, change_id, error
        FROM source_checks
        WHERE source_id = ?
        ORDER BY started_at DESC, id DESC
        LIMIT ?
        """,
        (source_id, limit),
    )
    keys = [
        "id",
        "source_id",
        "started_at",
        "finished_at",
        "outcome",
        "http_status",
        "duration_ms",
        "changed",
        "change_id",
        "error",
    ]
    rows = []
    for row in cursor.fetchall():
        data = dict(zip(keys, row))
        data["changed"] = bool(data["changed"])
        rows.append(data)
    return rows


def _assignments(updates: dict[str, object]) -> tuple[list[str], list[object]]:
    assignments: list[str] = []
    params: list[object] = []
    for key, value in updates.items():
        if key == "confidence_stats":
            key = "confidence_stats_json"
            value = _stats_to_json(value)  # type: ignore[arg-type]
        if key not in _WRITABLE_SOURCE_COLUMNS:
            raise ValueError(f"Column not writable: {key}")
        assignments.append(f"{key} = ?")
        params.append(_column_value(value))
    return assignments, params


def _column_value(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _bool_or_none(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _stats_to_json(stats: ConfidenceStats) -> str:
    return json_dumps(asdict(stats))


def _stats_from_json(value: str | None) -> ConfidenceStats:
    if not value:
        return ConfidenceStats()
    try:
        data = json.loads(value)
    except json.JSONDecodeError:
        return ConfidenceStats()
    return ConfidenceStats(
        total_actions=int(data.get("total_actions") or 0),
        no_action_count=int(data.get("no_action_count") or 0),
        review_count=int(data.get("review_count") or 0),
        escalate_count=int(data.get("escalate_count") or 0),
        false_alarm_count=int(data.get("false_alarm_count") or 0),
        last_action_at=parse_iso_or_none(data.get("last_action_at")),
    )


def _deadline_to_dict(deadline: ExtractedDeadline) -> dict[str, object]:
    return {
        "date": to_iso(deadline.date),
        "label": deadline.label,
        "source_text": deadline.source_text,
    }


def _deadline_from_dict(data: dict[str, object]) -> ExtractedDeadline:
    return ExtractedDeadline(
        date=parse_iso(str(data["date"])),
        label=data.get("label"),  # type: ignore[arg-type]
        source_text=str(data.get("source_text") or ""),
    )


def _row_to_source(row: tuple) -> Source:
    data = dict(zip(_SOURCE_COLUMNS, row))
    lock = None
    if data["lock_holder"] and data["lock_expires_at"]:
        lock = SourceLock(holder=data["lock_holder"], expires_at=parse_iso(data["lock_expires_at"]))
    return Source(
        id=data["id"],
        tenant_id=data["tenant_id"],
        url=data["url"],
        name=data["name"],
        frequency=Frequency(data["frequency"]),
        watch_mode=WatchMode(data["watch_mode"]),
        status=SourceStatus(data["status"]),
        last_hash=data["last_hash"],
        consecutive_failures=int(data["consecutive_failures"] or 0),
        backoff_level=int(data["backoff_level"] or 0),
        next_check_at=parse_iso_or_none(data["next_check_at"]),
        lock=lock,
        volatility_score=float(data["volatility_score"] or 0.0),
        confidence_score=int(data["confidence_score"] if data["confidence_score"] is not None else 50),
        confidence_stats=_stats_from_json(data["confidence_stats_json"]),
        last_title=data["last_title"],
        last_meta_description=data["last_meta_description"],
        last_content_sample=data["last_content_sample"],
        last_text=data["last_text"],
        next_deadline=parse_iso_or_none(data["next_deadline"]),
        earliest_deadline=parse_iso_or_none(data["earliest_deadline"]),
        paused_at=parse_iso_or_none(data["paused_at"]),
        paused_by=data["paused_by"],
        pause_reason=data["pause_reason"],
        verified_at=parse_iso_or_none(data["verified_at"]),
        verified_by=data["verified_by"],
        verified_reason=data["verified_reason"],
        verified_note=data["verified_note"],
        verified_hash=data["verified_hash"],
        needs_check=bool(data["needs_check"]),
        consecutive_blocked=int(data["consecutive_blocked"] or 0),
        last_checked_at=parse_iso_or_none(data["last_checked_at"]),
        last_success_at=parse_iso_or_none(data["last_success_at"]),
        last_error=data["last_error"],
        version=int(data["version"] or 0),
        created_at=parse_iso_or_none(data["created_at"]),
    )


def _row_to_change(row: tuple) -> ChangeEvent:
    data = dict(zip(_CHANGE_COLUMNS, row))
    severity = SeverityResult(
        score=int(data["severity_score"]),
        level=SeverityLevel(data["severity_level"]),
        reasons=list(json.loads(data["severity_reasons_json"] or "[]")),
    )
    return ChangeEvent(
        id=data["id"],
        source_id=data["source_id"],
        tenant_id=data["tenant_id"],
        source_url=data["source_url"],
        detected_at=parse_iso(data["detected_at"]),
        diff_summary=data["diff_summary"],
        severity=severity,
        explanation_bullets=list(json.loads(data["explanation_json"] or "[]")),
        extracted_deadlines=[
            _deadline_from_dict(item) for item in json.loads(data["deadlines_json"] or "[]")
        ],
        deadline_impact=DeadlineImpact(data["deadline_impact"]),
        action_category=ActionCategory(data["action_category"]) if data["action_category"] else None,
        action_guidance=data["action_guidance"],
        action_confidence=(
            ActionConfidence(data["action_confidence"]) if data["action_confidence"] else None
        ),
        confidence_notes=list(json.loads(data["confidence_notes_json"] or "[]")),
        ack_status=AckStatus(data["ack_status"]) if data["ack_status"] else None,
        ack_at=parse_iso_or_none(data["ack_at"]),
        ack_by=data["ack_by"],
    )
