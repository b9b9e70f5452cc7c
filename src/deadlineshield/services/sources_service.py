from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import yaml

from ..backoff import HOLD_STATUSES
from ..confidence import confidence_level, record_acknowledgement
from ..errors import InvalidTransition, PlanLimitExceeded, SourceNotFound
from ..models import (
    AckStatus,
    AuditEntry,
    ChangeEvent,
    Frequency,
    PauseReason,
    Source,
    SourceStatus,
    VerifyReason,
    WatchMode,
)
from ..storage import (
    count_sources_for_tenant,
    get_change_event,
    get_source as load_source,
    insert_audit_entry,
    insert_source,
    list_audit_entries,
    list_change_events,
    list_source_checks,
    list_sources as load_sources,
    update_source_fields,
)
from ..tenants import get_tenant_settings, plan_limit
from ..utils import json_dumps, log_event, utc_now

logger = logging.getLogger("deadlineshield.services")


def source_to_dict(source: Source) -> dict[str, Any]:
    data = _jsonable(asdict(source))
    data.pop("last_text", None)
    data["confidence_level"] = confidence_level(source.confidence_score)
    return data


def change_to_dict(event: ChangeEvent) -> dict[str, Any]:
    return _jsonable(asdict(event))


def list_sources(
    conn: Any,
    tenant_id: str | None = None,
    status: str | None = None,
) -> list[dict[str, Any]]:
    if status:
        status = SourceStatus(status.upper()).value
    return [source_to_dict(source) for source in load_sources(conn, tenant_id, status)]


def get_source(conn: Any, source_id: str) -> dict[str, Any] | None:
    source = load_source(conn, source_id)
    if source is None:
        return None
    return source_to_dict(source)


def create_source(
    conn: Any,
    payload: dict[str, Any],
    actor: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    tenant_id = str(payload.get("tenant_id") or "").strip()
    if not tenant_id:
        raise ValueError("tenant_id is required")
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    url = str(payload.get("url") or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("url must be an absolute http(s) URL")
    frequency = Frequency(str(payload.get("frequency") or Frequency.DAILY.value))
    watch_mode = WatchMode(str(payload.get("watch_mode") or WatchMode.FULL_CONTENT.value))
    now = now or utc_now()

    with conn.transaction():
        plan = get_tenant_settings(conn, tenant_id).plan
        limit = plan_limit(plan)
        if count_sources_for_tenant(conn, tenant_id) >= limit:
            raise PlanLimitExceeded(f"{plan} plan allows {limit} sources")
        source_id = str(payload.get("id") or "").strip() or _generate_source_id(conn, name)
        if load_source(conn, source_id) is not None:
            raise ValueError(f"source already exists: {source_id}")
        insert_source(
            conn,
            {
                "id": source_id,
                "tenant_id": tenant_id,
                "url": url,
                "name": name,
                "frequency": frequency,
                "watch_mode": watch_mode,
                "status": SourceStatus.OK,
                "next_check_at": None,
            },
        )
        source = _require_source(conn, source_id)
        _audit(conn, source, actor or tenant_id, "CREATE", now, details=url)
    return source_to_dict(source)


def import_sources(conn: Any, path: str, tenant_id: str | None = None) -> dict[str, int]:
    """Create sources from a YAML list; ids that already exist are skipped."""
    with open(path, "r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or []
    items = loaded.get("sources", []) if isinstance(loaded, dict) else loaded
    if not isinstance(items, list):
        raise ValueError(f"{path} must contain a list of sources")
    created = 0
    skipped = 0
    for item in items:
        if not isinstance(item, dict):
            raise ValueError("each source must be a mapping")
        payload = dict(item)
        if tenant_id and not payload.get("tenant_id"):
            payload["tenant_id"] = tenant_id
        if payload.get("id") and load_source(conn, str(payload["id"])) is not None:
            skipped += 1
            continue
        create_source(conn, payload)
        created += 1
    return {"created": created, "skipped": skipped}


def pause_source(
    conn: Any,
    source_id: str,
    actor: str,
    reason: str,
    note: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    pause_reason = PauseReason(reason.upper())
    now = now or utc_now()
    with conn.transaction():
        source = _require_source(conn, source_id, for_update=True)
        if source.status == SourceStatus.PAUSED:
            raise InvalidTransition(f"source already paused: {source_id}")
        update_source_fields(
            conn,
            source_id,
            {
                "status": SourceStatus.PAUSED,
                "paused_at": now,
                "paused_by": actor,
                "pause_reason": pause_reason,
            },
            now,
        )
        details = pause_reason.value if not note else f"{pause_reason.value}: {note}"
        _audit(conn, source, actor, "PAUSE", now, details=details, snapshot=_snapshot(source))
    log_event(logger, logging.INFO, "source_paused", source_id=source_id, reason=pause_reason.value)
    return source_to_dict(_require_source(conn, source_id))


def resume_source(
    conn: Any,
    source_id: str,
    actor: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Return a paused or held source to automated scheduling, due immediately.

    Failure counters are left as they are; only a successful check resets them.
    """
    now = now or utc_now()
    with conn.transaction():
        source = _require_source(conn, source_id, for_update=True)
        if source.status != SourceStatus.PAUSED and not source.needs_check:
            raise InvalidTransition(f"source is not paused or held: {source_id}")
        update_source_fields(
            conn,
            source_id,
            {
                "status": SourceStatus.OK,
                "paused_at": None,
                "paused_by": None,
                "pause_reason": None,
                "needs_check": False,
                "next_check_at": now,
            },
            now,
        )
        _audit(conn, source, actor, "RESUME", now, details=f"from {source.status.value}")
    log_event(logger, logging.INFO, "source_resumed", source_id=source_id)
    return source_to_dict(_require_source(conn, source_id))


def verify_source(
    conn: Any,
    source_id: str,
    actor: str,
    reason: str,
    note: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Record that an operator checked the page by hand and clear any hold."""
    verify_reason = VerifyReason(reason.upper())
    now = now or utc_now()
    with conn.transaction():
        source = _require_source(conn, source_id, for_update=True)
        if source.status == SourceStatus.PAUSED:
            raise InvalidTransition(f"resume source before verifying: {source_id}")
        updates: dict[str, object] = {
            "verified_at": now,
            "verified_by": actor,
            "verified_reason": verify_reason,
            "verified_note": note,
            "verified_hash": source.last_hash,
            "needs_check": False,
        }
        if source.status in HOLD_STATUSES or source.status == SourceStatus.CHANGED:
            updates["status"] = SourceStatus.OK
        if source.needs_check:
            updates["next_check_at"] = now
        update_source_fields(conn, source_id, updates, now)
        details = verify_reason.value if not note else f"{verify_reason.value}: {note}"
        _audit(conn, source, actor, "VERIFY", now, details=details, snapshot=_snapshot(source))
    log_event(logger, logging.INFO, "source_verified", source_id=source_id, reason=verify_reason.value)
    return source_to_dict(_require_source(conn, source_id))


def acknowledge_change(
    conn: Any,
    change_id: str,
    ack_status: str,
    actor: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    result = record_acknowledgement(
        conn,
        change_id,
        AckStatus(ack_status.upper()),
        actor,
        now or utc_now(),
        logger=logger,
    )
    event = get_change_event(conn, change_id)
    return {
        "change": change_to_dict(event) if event else None,
        "applied": result.applied,
        "confidence_score": result.confidence_score,
        "confidence_level": result.confidence_level,
        "confidence_stats": _jsonable(asdict(result.stats)),
    }


def list_changes(
    conn: Any,
    tenant_id: str | None = None,
    source_id: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    return [change_to_dict(event) for event in list_change_events(conn, tenant_id, source_id, limit)]


def list_checks(conn: Any, source_id: str, limit: int = 50) -> list[dict[str, Any]]:
    _require_source(conn, source_id)
    return list_source_checks(conn, source_id, limit)


def list_audit(
    conn: Any,
    source_id: str | None = None,
    tenant_id: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    return [_jsonable(asdict(entry)) for entry in list_audit_entries(conn, source_id, tenant_id, limit)]


def _require_source(conn: Any, source_id: str, for_update: bool = False) -> Source:
    source = load_source(conn, source_id, for_update=for_update)
    if source is None:
        raise SourceNotFound(source_id)
    return source


def _snapshot(source: Source) -> dict[str, object]:
    return {
        "watch_mode": source.watch_mode.value,
        "title": source.last_title,
        "meta_description": source.last_meta_description,
        "content_sample": source.last_content_sample,
        "hash": source.last_hash,
        "url": source.url,
    }


def _audit(
    conn: Any,
    source: Source,
    actor: str,
    action: str,
    now: datetime,
    details: str | None = None,
    snapshot: dict[str, object] | None = None,
) -> None:
    insert_audit_entry(
        conn,
        AuditEntry(
            id=None,
            tenant_id=source.tenant_id,
            actor=actor,
            action=action,
            source_id=source.id,
            source_name=source.name,
            created_at=now,
            details=details,
            snapshot=snapshot,
        ),
    )


def _slugify(value: str) -> str:
    value = value.strip().lower()
    out = []
    dash = False
    for ch in value:
        if ch.isalnum():
            out.append(ch)
            dash = False
        elif not dash:
            out.append("-")
            dash = True
    slug = "".join(out).strip("-")
    return slug or "source"


def _generate_source_id(conn: Any, name: str) -> str:
    base = _slugify(name)
    candidate = base
    i = 2
    while load_source(conn, candidate) is not None:
        candidate = f"{base}-{i}"
        i += 1
    return candidate


def _jsonable(value: Any) -> Any:
    return json.loads(json_dumps(value))
