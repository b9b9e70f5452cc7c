from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("deadlineshield.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tenants (
            id TEXT PRIMARY KEY,
            email TEXT NULL,
            plan TEXT NOT NULL DEFAULT 'Starter',
            alert_threshold TEXT NULL,
            guidance_enabled INTEGER NULL,
            email_alerts INTEGER NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            url TEXT NOT NULL,
            name TEXT NOT NULL,
            frequency TEXT NOT NULL DEFAULT 'Daily',
            watch_mode TEXT NOT NULL DEFAULT 'FullContent',
            status TEXT NOT NULL DEFAULT 'OK',
            last_hash TEXT NULL,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            backoff_level INTEGER NOT NULL DEFAULT 0,
            next_check_at TEXT NULL,
            lock_holder TEXT NULL,
            lock_expires_at TEXT NULL,
            volatility_score REAL NOT NULL DEFAULT 0,
            confidence_score INTEGER NOT NULL DEFAULT 50,
            confidence_stats_json TEXT NULL,
            last_title TEXT NULL,
            last_meta_description TEXT NULL,
            last_content_sample TEXT NULL,
            last_text TEXT NULL,
            next_deadline TEXT NULL,
            paused_at TEXT NULL,
            paused_by TEXT NULL,
            pause_reason TEXT NULL,
            verified_at TEXT NULL,
            verified_by TEXT NULL,
            verified_reason TEXT NULL,
            verified_note TEXT NULL,
            verified_hash TEXT NULL,
            needs_check INTEGER NOT NULL DEFAULT 0,
            consecutive_blocked INTEGER NOT NULL DEFAULT 0,
            last_checked_at TEXT NULL,
            last_success_at TEXT NULL,
            last_error TEXT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sources_tenant ON sources(tenant_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sources_due ON sources(status, next_check_at)"
    )


def _migration_change_events_and_audit(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS change_events (
            id TEXT PRIMARY KEY,
            source_id TEXT NOT NULL REFERENCES sources(id),
            tenant_id TEXT NOT NULL,
            source_url TEXT NOT NULL,
            detected_at TEXT NOT NULL,
            diff_summary TEXT NOT NULL,
            severity_score INTEGER NOT NULL,
            severity_level TEXT NOT NULL,
            severity_reasons_json TEXT NOT NULL,
            explanation_json TEXT NOT NULL,
            deadlines_json TEXT NOT NULL,
            deadline_impact TEXT NOT NULL,
            action_category TEXT NULL,
            action_guidance TEXT NULL,
            action_confidence TEXT NULL,
            confidence_notes_json TEXT NULL,
            ack_status TEXT NULL,
            ack_at TEXT NULL,
            ack_by TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_change_events_source ON change_events(source_id, detected_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_change_events_tenant ON change_events(tenant_id, detected_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id TEXT NOT NULL,
            actor TEXT NOT NULL,
            action TEXT NOT NULL,
            source_id TEXT NOT NULL,
            source_name TEXT NOT NULL,
            created_at TEXT NOT NULL,
            details TEXT NULL,
            snapshot_json TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_audit_log_source ON audit_log(source_id, created_at)"
    )


def _migration_source_checks(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS source_checks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_id TEXT NOT NULL REFERENCES sources(id),
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            outcome TEXT NOT NULL,
            http_status INTEGER NULL,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            changed INTEGER NOT NULL DEFAULT 0,
            change_id TEXT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_source_checks_source ON source_checks(source_id, started_at)"
    )


def _migration_earliest_deadline(conn: sqlite3.Connection) -> None:
    columns = {row[1] for row in conn.execute("PRAGMA table_info(sources)").fetchall()}
    if "earliest_deadline" in columns:
        return
    conn.execute("ALTER TABLE sources ADD COLUMN earliest_deadline TEXT NULL")
    conn.execute("UPDATE sources SET earliest_deadline = next_deadline")


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_change_events_and_audit", _migration_change_events_and_audit),
        ("003_source_checks", _migration_source_checks),
        ("004_earliest_deadline", _migration_earliest_deadline),
    ]
