from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("deadlineshield.migrations")
    with conn.transaction():
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
        for version, statements in _PG_MIGRATIONS:
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)


_PG_BOOTSTRAP = [
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
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
    """,
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
        volatility_score DOUBLE PRECISION NOT NULL DEFAULT 0,
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
    """,
    "CREATE INDEX IF NOT EXISTS idx_sources_tenant ON sources(tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_sources_due ON sources(status, next_check_at)",
]

_PG_CHANGE_EVENTS = [
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
    """,
    "CREATE INDEX IF NOT EXISTS idx_change_events_source ON change_events(source_id, detected_at)",
    "CREATE INDEX IF NOT EXISTS idx_change_events_tenant ON change_events(tenant_id, detected_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id BIGSERIAL PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        actor TEXT NOT NULL,
        action TEXT NOT NULL,
        source_id TEXT NOT NULL,
        source_name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        details TEXT NULL,
        snapshot_json TEXT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_source ON audit_log(source_id, created_at)",
]

_PG_SOURCE_CHECKS = [
    """
    CREATE TABLE IF NOT EXISTS source_checks (
        id BIGSERIAL PRIMARY KEY,
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
    """,
    "CREATE INDEX IF NOT EXISTS idx_source_checks_source ON source_checks(source_id, started_at)",
]

_PG_EARLIEST_DEADLINE = [
    "ALTER TABLE sources ADD COLUMN IF NOT EXISTS earliest_deadline TEXT NULL",
    "UPDATE sources SET earliest_deadline = next_deadline WHERE earliest_deadline IS NULL",
]

_PG_MIGRATIONS: list[tuple[str, list[str]]] = [
    ("pg_bootstrap_001", _PG_BOOTSTRAP),
    ("pg_change_events_002", _PG_CHANGE_EVENTS),
    ("pg_source_checks_003", _PG_SOURCE_CHECKS),
    ("pg_earliest_deadline_004", _PG_EARLIEST_DEADLINE),
]
