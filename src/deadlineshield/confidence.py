from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from .errors import ChangeNotFound, SourceNotFound
from .models import AckStatus, AuditEntry, ConfidenceStats, SeverityLevel
from .storage import (
    get_change_event,
    get_source,
    insert_audit_entry,
    mark_change_acknowledged,
    update_source_fields,
)
from .utils import log_event

FALSE_ALARM_LEVELS = frozenset({SeverityLevel.HIGH, SeverityLevel.CRITICAL})


@dataclass(frozen=True)
class AcknowledgementResult:
    change_id: str
    source_id: str
    applied: bool
    stats: ConfidenceStats
    confidence_score: int
    confidence_level: str


def apply_acknowledgement(
    stats: ConfidenceStats,
    ack_status: AckStatus,
    severity_level: SeverityLevel,
    at: datetime,
) -> ConfidenceStats:
    updated = replace(stats, total_actions=stats.total_actions + 1, last_action_at=at)
    if ack_status == AckStatus.ACK_NO_ACTION:
        updated = replace(updated, no_action_count=updated.no_action_count + 1)
        if severity_level in FALSE_ALARM_LEVELS:
            updated = replace(updated, false_alarm_count=updated.false_alarm_count + 1)
    elif ack_status == AckStatus.ACK_ESCALATED:
        updated = replace(updated, escalate_count=updated.escalate_count + 1)
    else:
        # ACK_REVIEWED and ACK_UPDATED both mean the change was looked at and handled.
        updated = replace(updated, review_count=updated.review_count + 1)
    return updated


def confidence_score(stats: ConfidenceStats) -> int:
    if stats.total_actions <= 0:
        return 50
    no_action_ratio = stats.no_action_count / stats.total_actions
    false_alarm_ratio = stats.false_alarm_count / stats.total_actions
    raw = 50 + 20 * no_action_ratio - 50 * false_alarm_ratio
    return max(0, min(100, math.floor(raw + 0.5)))


def confidence_level(score: int) -> str:
    if score > 80:
        return "HIGH"
    if score < 30:
        return "LOW"
    return "MEDIUM"


def record_acknowledgement(
    conn: Any,
    change_id: str,
    ack_status: AckStatus,
    actor: str,
    now: datetime,
    logger: logging.Logger | None = None,
) -> AcknowledgementResult:
    """Acknowledge a change and fold it into the source's confidence statistics.

    Runs as one transaction. A change that was already acknowledged is left
    untouched and the current statistics are returned with ``applied=False``.
    """
    with conn.transaction():
        event = get_change_event(conn, change_id)
        if event is None:
            raise ChangeNotFound(change_id)
        applied = mark_change_acknowledged(conn, change_id, ack_status, actor, now)
        source = get_source(conn, event.source_id, for_update=True)
        if source is None:
            raise SourceNotFound(event.source_id)
        if not applied:
            if logger:
                log_event(logger, logging.INFO, "ack_ignored_duplicate", change_id=change_id)
            return AcknowledgementResult(
                change_id=change_id,
                source_id=source.id,
                applied=False,
                stats=source.confidence_stats,
                confidence_score=source.confidence_score,
                confidence_level=confidence_level(source.confidence_score),
            )
        stats = apply_acknowledgement(
            source.confidence_stats, ack_status, event.severity.level, now
        )
        score = confidence_score(stats)
        update_source_fields(
            conn,
            source.id,
            {"confidence_stats": stats, "confidence_score": score},
            now,
        )
        insert_audit_entry(
            conn,
            AuditEntry(
                id=None,
                tenant_id=source.tenant_id,
                actor=actor,
                action="ACKNOWLEDGE",
                source_id=source.id,
                source_name=source.name,
                created_at=now,
                details=f"{ack_status.value} change={change_id} severity={event.severity.level.value}",
            ),
        )
    if logger:
        log_event(
            logger,
            logging.INFO,
            "change_acknowledged",
            change_id=change_id,
            source_id=source.id,
            ack_status=ack_status.value,
            confidence_score=score,
        )
    return AcknowledgementResult(
        change_id=change_id,
        source_id=source.id,
        applied=True,
        stats=stats,
        confidence_score=score,
        confidence_level=confidence_level(score),
    )
