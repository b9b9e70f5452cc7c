from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from deadlineshield.config import default_config
from deadlineshield.fetch import BLOCKED, FAILED, OK, FetchResult
from deadlineshield.models import ConfidenceStats, Frequency, Source, SourceStatus, WatchMode
from deadlineshield.pipeline import EngineContext
from deadlineshield.storage import init_db, insert_source, update_source_fields
from deadlineshield.utils import FixedClock

T0 = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

# Columns insert_source writes; other add_source keywords are applied as updates.
_INSERT_FIELDS = {"frequency", "watch_mode", "status", "next_check_at"}


class RecordingNotifier:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.sent: list[dict[str, str]] = []

    def notify(self, recipient: str, subject: str, text: str, html_body: str) -> bool:
        self.sent.append({"recipient": recipient, "subject": subject, "text": text, "html": html_body})
        return self.result


class FakeFetcher:
    """Stands in for fetch_page; returns the configured result and records URLs."""

    def __init__(self) -> None:
        self.result = FetchResult(kind=OK, http_status=200, body="<p>Hello.</p>", error=None)
        self.calls: list[str] = []
        self.before_return = None

    def page(self, html: str) -> None:
        self.result = FetchResult(kind=OK, http_status=200, body=html, error=None)

    def blocked(self, status: int = 403) -> None:
        self.result = FetchResult(kind=BLOCKED, http_status=status, body=None, error=f"http_{status}")

    def failed(self, error: str = "network_error:timed out", status: int | None = None) -> None:
        self.result = FetchResult(kind=FAILED, http_status=status, body=None, error=error)

    def __call__(self, url: str, **kwargs) -> FetchResult:
        self.calls.append(url)
        if self.before_return is not None:
            self.before_return(url)
        return self.result


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in ("DS_DB_URL", "DS_SCHEDULER_CONCURRENCY", "DS_SMTP_HOST", "DS_ADMIN_TOKEN", "DS_LOG_FILE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    conn = init_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ctx(db_path, clock, notifier):
    return EngineContext(
        connect=lambda: init_db(db_path),
        notifier=notifier,
        clock=clock,
        config=default_config(),
        logger=logging.getLogger("deadlineshield.tests"),
    )


@pytest.fixture
def fetcher(monkeypatch):
    fake = FakeFetcher()
    monkeypatch.setattr("deadlineshield.pipeline.fetch_page", fake)
    return fake


@pytest.fixture
def add_source(conn):
    def _add(
        source_id: str = "src-1",
        tenant_id: str = "acme",
        url: str = "https://agency.example.gov/filing-rules",
        name: str = "Filing Rules",
        **extra,
    ) -> str:
        record = {
            "id": source_id,
            "tenant_id": tenant_id,
            "url": url,
            "name": name,
        }
        state = {key: extra.pop(key) for key in list(extra) if key not in _INSERT_FIELDS}
        record.update(extra)
        insert_source(conn, record)
        if state:
            update_source_fields(conn, source_id, state, T0)
        return source_id

    return _add


@pytest.fixture
def source_record():
    """Builds an in-memory Source for pure judgment tests."""

    base = Source(
        id="src-1",
        tenant_id="acme",
        url="https://agency.example.gov/filing-rules",
        name="Filing Rules",
        frequency=Frequency.DAILY,
        watch_mode=WatchMode.FULL_CONTENT,
        status=SourceStatus.OK,
        last_hash=None,
        consecutive_failures=0,
        backoff_level=0,
        next_check_at=None,
        lock=None,
        volatility_score=0.0,
        confidence_score=50,
        confidence_stats=ConfidenceStats(),
        last_title=None,
        last_meta_description=None,
        last_content_sample=None,
        last_text=None,
        next_deadline=None,
        earliest_deadline=None,
        paused_at=None,
        paused_by=None,
        pause_reason=None,
        verified_at=None,
        verified_by=None,
        verified_reason=None,
        verified_note=None,
        verified_hash=None,
        needs_check=False,
        consecutive_blocked=0,
        last_checked_at=None,
        last_success_at=None,
        last_error=None,
        version=0,
    )

    def _build(**overrides) -> Source:
        return replace(base, **overrides)

    return _build
