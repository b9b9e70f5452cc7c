from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Union

from .models import SourceStatus
from .storage import get_source, release_source_lock, try_acquire_source_lock

DEFAULT_LOCK_TTL = timedelta(minutes=5)

HELD = "held"
PAUSED = "paused"
NOT_DUE = "not_due"
MISSING = "missing"


@dataclass(frozen=True)
class Locked:
    source_id: str
    holder: str
    expires_at: datetime


@dataclass(frozen=True)
class AlreadyLocked:
    source_id: str
    reason: str = HELD


LockOutcome = Union[Locked, AlreadyLocked]


def new_holder_token() -> str:
    return uuid.uuid4().hex


def acquire(
    conn: Any,
    source_id: str,
    now: datetime,
    ttl: timedelta = DEFAULT_LOCK_TTL,
    holder: str | None = None,
    require_due: bool = False,
) -> LockOutcome:
    """Claim exclusive processing rights on a source until ``now + ttl``.

    The claim is one conditional UPDATE, so of two concurrent callers at most
    one sees its row updated. With ``require_due`` the source must also still
    be due at ``now``; a scheduler pass working from a stale due list then
    cannot repeat a check another pass already finished. A refusal carries
    the reason: ``held``, ``paused``, ``not_due`` or ``missing``.
    """
    token = holder or new_holder_token()
    if try_acquire_source_lock(conn, source_id, token, now, ttl, require_due=require_due):
        return Locked(source_id=source_id, holder=token, expires_at=now + ttl)
    return AlreadyLocked(source_id=source_id, reason=_refusal_reason(conn, source_id, now))


def release(conn: Any, lock: Locked) -> bool:
    """Drop a lock without writing a terminal state. No-op if the lock was lost."""
    return release_source_lock(conn, lock.source_id, lock.holder)


def _refusal_reason(conn: Any, source_id: str, now: datetime) -> str:
    source = get_source(conn, source_id)
    if source is None:
        return MISSING
    if source.status == SourceStatus.PAUSED:
        return PAUSED
    if source.lock is not None and source.lock.expires_at > now:
        return HELD
    return NOT_DUE
