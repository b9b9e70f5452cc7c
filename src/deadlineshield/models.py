from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SourceStatus(str, Enum):
    OK = "OK"
    CHANGED = "CHANGED"
    ERROR = "ERROR"
    BLOCKED = "BLOCKED"
    NEEDS_MANUAL_VERIFICATION = "NEEDS_MANUAL_VERIFICATION"
    PAUSED = "PAUSED"
    DEGRADED = "DEGRADED"


class Frequency(str, Enum):
    DAILY = "Daily"
    WEEKLY = "Weekly"


class WatchMode(str, Enum):
    FULL_CONTENT = "FullContent"
    METADATA_ONLY = "MetadataOnly"


class SeverityLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    SeverityLevel.LOW: 0,
    SeverityLevel.MEDIUM: 1,
    SeverityLevel.HIGH: 2,
    SeverityLevel.CRITICAL: 3,
}


class DeadlineImpact(str, Enum):
    NONE = "NONE"
    MOVED_EARLIER = "MOVED_EARLIER"
    MOVED_LATER = "MOVED_LATER"
    NEW_DEADLINE = "NEW_DEADLINE"


class ActionCategory(str, Enum):
    NO_ACTION = "NO_ACTION"
    REVIEW = "REVIEW"
    UPDATE = "UPDATE"
    ESCALATE = "ESCALATE"


class ActionConfidence(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class AckStatus(str, Enum):
    ACK_NO_ACTION = "ACK_NO_ACTION"
    ACK_REVIEWED = "ACK_REVIEWED"
    ACK_UPDATED = "ACK_UPDATED"
    ACK_ESCALATED = "ACK_ESCALATED"


class PauseReason(str, Enum):
    TEMPORARY = "TEMPORARY"
    TOO_NOISY = "TOO_NOISY"
    BLOCKED_SITE = "BLOCKED_SITE"
    NOT_NEEDED = "NOT_NEEDED"
    OTHER = "OTHER"


class VerifyReason(str, Enum):
    FALSE_POSITIVE = "FALSE_POSITIVE"
    EXPECTED_CHANGE = "EXPECTED_CHANGE"
    BLOCKED_BUT_OK = "BLOCKED_BUT_OK"
    OTHER = "OTHER"


@dataclass(frozen=True)
class ConfidenceStats:
    total_actions: int = 0
    no_action_count: int = 0
    review_count: int = 0
    escalate_count: int = 0
    false_alarm_count: int = 0
    last_action_at: datetime | None = None


@dataclass(frozen=True)
class SourceLock:
    holder: str
    expires_at: datetime


@dataclass(frozen=True)
class Source:
    id: str
    tenant_id: str
    url: str
    name: str
    frequency: Frequency
    watch_mode: WatchMode
    status: SourceStatus
    last_hash: str | None
    consecutive_failures: int
    backoff_level: int
    next_check_at: datetime | None
    lock: SourceLock | None
    volatility_score: float
    confidence_score: int
    confidence_stats: ConfidenceStats
    last_title: str | None
    last_meta_description: str | None
    last_content_sample: str | None
    last_text: str | None
    next_deadline: datetime | None
    earliest_deadline: datetime | None
    paused_at: datetime | None
    paused_by: str | None
    pause_reason: str | None
    verified_at: datetime | None
    verified_by: str | None
    verified_reason: str | None
    verified_note: str | None
    verified_hash: str | None
    needs_check: bool
    consecutive_blocked: int
    last_checked_at: datetime | None
    last_success_at: datetime | None
    last_error: str | None
    version: int
    created_at: datetime | None = None


@dataclass(frozen=True)
class ExtractedDeadline:
    date: datetime
    label: str | None
    source_text: str


@dataclass(frozen=True)
class SeverityResult:
    score: int
    level: SeverityLevel
    reasons: list[str]
    date_matched: bool = False


@dataclass(frozen=True)
class Guidance:
    category: ActionCategory
    guidance: str
    confidence: ActionConfidence


@dataclass(frozen=True)
class ChangeEvent:
    id: str
    source_id: str
    tenant_id: str
    source_url: str
    detected_at: datetime
    diff_summary: str
    severity: SeverityResult
    explanation_bullets: list[str]
    extracted_deadlines: list[ExtractedDeadline]
    deadline_impact: DeadlineImpact
    action_category: ActionCategory | None
    action_guidance: str | None
    action_confidence: ActionConfidence | None
    confidence_notes: list[str] = field(default_factory=list)
    ack_status: AckStatus | None = None
    ack_at: datetime | None = None
    ack_by: str | None = None


@dataclass(frozen=True)
class AuditEntry:
    id: int | None
    tenant_id: str
    actor: str
    action: str
    source_id: str
    source_name: str
    created_at: datetime
    details: str | None = None
    snapshot: dict[str, object] | None = None


@dataclass(frozen=True)
class TenantSettings:
    tenant_id: str
    email: str | None
    plan: str
    alert_threshold: SeverityLevel
    guidance_enabled: bool
    email_alerts: bool
