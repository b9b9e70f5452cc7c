from __future__ import annotations

import argparse
import json
import logging

import yaml

from .config import ConfigError, get_runtime_config, import_config_file
from .pipeline import check_source
from .scheduler import build_context, run_once
from .services.sources_service import (
    acknowledge_change,
    create_source,
    get_source,
    import_sources,
    list_changes,
    list_checks,
    list_sources,
    pause_source,
    resume_source,
    verify_source,
)
from .storage import init_db
from .tenants import PLANS, save_tenant
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("deadlineshield")


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=args.db or "default")
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    logger.info(json.dumps(cfg, indent=2, sort_keys=True))
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        import_config_file(conn, args.path)
    except (ConfigError, OSError, yaml.YAMLError) as exc:
        log_event(logger, logging.ERROR, "config_import_error", path=args.path, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def _cmd_tenants_set(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        settings = save_tenant(
            conn,
            args.tenant_id,
            email=args.email,
            plan=args.plan,
            alert_threshold=args.alert_threshold,
            guidance_enabled=args.guidance,
            email_alerts=args.email_alerts,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "tenant_set_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "tenant_saved",
        tenant_id=settings.tenant_id,
        plan=settings.plan,
        alert_threshold=settings.alert_threshold.value,
    )
    return 0


def _cmd_sources_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    payload = {
        "id": args.id,
        "tenant_id": args.tenant,
        "name": args.name,
        "url": args.url,
        "frequency": args.frequency,
        "watch_mode": args.watch_mode,
    }
    try:
        source = create_source(conn, payload, actor=args.actor)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "source_add_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "source_added", source_id=source["id"])
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        sources = list_sources(conn, args.tenant, args.status)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "sources_list_error", error=str(exc))
        return 1
    finally:
        conn.close()
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Add sources with `deadlineshield sources add` or `sources import FILE`",
        )
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source["id"],
            tenant_id=source["tenant_id"],
            status=source["status"],
            next_check_at=source["next_check_at"],
            url=source["url"],
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_sources_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        source = get_source(conn, args.source_id)
        checks = list_checks(conn, args.source_id, limit=5) if source else []
    finally:
        conn.close()
    if source is None:
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    source["recent_checks"] = checks
    logger.info(json.dumps(source, indent=2, sort_keys=True))
    return 0


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        counts = import_sources(conn, args.path, tenant_id=args.tenant)
    except (ValueError, OSError, yaml.YAMLError) as exc:
        log_event(logger, logging.ERROR, "sources_import_error", path=args.path, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "sources_imported", path=args.path, **counts)
    return 0


def _cmd_sources_pause(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        pause_source(conn, args.source_id, args.actor, args.reason, args.note)
    except (LookupError, ValueError) as exc:
        log_event(logger, logging.ERROR, "source_pause_error", source_id=args.source_id, error=str(exc))
        return 1
    finally:
        conn.close()
    return 0


def _cmd_sources_resume(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        resume_source(conn, args.source_id, args.actor)
    except (LookupError, ValueError) as exc:
        log_event(logger, logging.ERROR, "source_resume_error", source_id=args.source_id, error=str(exc))
        return 1
    finally:
        conn.close()
    return 0


def _cmd_sources_verify(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        verify_source(conn, args.source_id, args.actor, args.reason, args.note)
    except (LookupError, ValueError) as exc:
        log_event(logger, logging.ERROR, "source_verify_error", source_id=args.source_id, error=str(exc))
        return 1
    finally:
        conn.close()
    return 0


def _cmd_changes_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        changes = list_changes(conn, args.tenant, args.source, args.limit)
    finally:
        conn.close()
    for change in changes:
        log_event(
            logger,
            logging.INFO,
            "change",
            change_id=change["id"],
            source_id=change["source_id"],
            detected_at=change["detected_at"],
            severity=change["severity"]["level"],
            action=change["action_category"],
            ack_status=change["ack_status"],
        )
    log_event(logger, logging.INFO, "changes_listed", count=len(changes))
    return 0


def _cmd_changes_ack(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        result = acknowledge_change(conn, args.change_id, args.status, args.actor)
    except (LookupError, ValueError) as exc:
        log_event(logger, logging.ERROR, "change_ack_error", change_id=args.change_id, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "change_ack_result",
        change_id=args.change_id,
        applied=result["applied"],
        confidence_score=result["confidence_score"],
    )
    return 0


def _cmd_check(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        ctx = build_context(db_path=args.db)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn = ctx.connect()
    try:
        if get_source(conn, args.source_id) is None:
            log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
            return 1
        result = check_source(conn, args.source_id, ctx)
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "check_result",
        source_id=result.source_id,
        outcome=result.outcome,
        status=result.status.value if result.status else None,
        change_id=result.change_id,
    )
    return 0


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        ctx = build_context(concurrency=args.concurrency, db_path=args.db)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    run_once(ctx)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "admin_serve", host=args.host, port=args.port)
    uvicorn.run("deadlineshield.admin:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deadlineshield", description="DeadlineShield CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the SQLite state database (defaults to $DS_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_show = config_subparsers.add_parser("show", help="Print the runtime config")
    config_show.set_defaults(func=_cmd_config_show)
    config_import = config_subparsers.add_parser("import", help="Import runtime config from YAML")
    config_import.add_argument("path")
    config_import.set_defaults(func=_cmd_config_import)

    tenants_parser = subparsers.add_parser("tenants", help="Tenant settings")
    tenants_subparsers = tenants_parser.add_subparsers(dest="tenants_command", required=True)
    tenants_set = tenants_subparsers.add_parser("set", help="Create or update a tenant")
    tenants_set.add_argument("tenant_id")
    tenants_set.add_argument("--email", default=None)
    tenants_set.add_argument("--plan", choices=list(PLANS), default="Starter")
    tenants_set.add_argument("--alert-threshold", dest="alert_threshold", default=None)
    tenants_set.add_argument("--guidance", action=argparse.BooleanOptionalAction, default=None)
    tenants_set.add_argument(
        "--email-alerts",
        dest="email_alerts",
        action=argparse.BooleanOptionalAction,
        default=None,
    )
    tenants_set.set_defaults(func=_cmd_tenants_set)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_add = sources_subparsers.add_parser("add", help="Add a source")
    sources_add.add_argument("--tenant", required=True)
    sources_add.add_argument("--name", required=True)
    sources_add.add_argument("--url", required=True)
    sources_add.add_argument("--id", default=None)
    sources_add.add_argument("--frequency", choices=["Daily", "Weekly"], default="Daily")
    sources_add.add_argument(
        "--watch-mode",
        dest="watch_mode",
        choices=["FullContent", "MetadataOnly"],
        default="FullContent",
    )
    sources_add.add_argument("--actor", default="cli")
    sources_add.set_defaults(func=_cmd_sources_add)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.add_argument("--tenant", default=None)
    sources_list.add_argument("--status", default=None)
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_show = sources_subparsers.add_parser("show", help="Show a source")
    sources_show.add_argument("source_id")
    sources_show.set_defaults(func=_cmd_sources_show)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path")
    sources_import.add_argument("--tenant", default=None)
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_pause = sources_subparsers.add_parser("pause", help="Pause a source")
    sources_pause.add_argument("source_id")
    sources_pause.add_argument("--reason", default="OTHER")
    sources_pause.add_argument("--note", default=None)
    sources_pause.add_argument("--actor", default="cli")
    sources_pause.set_defaults(func=_cmd_sources_pause)

    sources_resume = sources_subparsers.add_parser("resume", help="Resume a paused or held source")
    sources_resume.add_argument("source_id")
    sources_resume.add_argument("--actor", default="cli")
    sources_resume.set_defaults(func=_cmd_sources_resume)

    sources_verify = sources_subparsers.add_parser("verify", help="Record a manual verification")
    sources_verify.add_argument("source_id")
    sources_verify.add_argument("--reason", required=True)
    sources_verify.add_argument("--note", default=None)
    sources_verify.add_argument("--actor", default="cli")
    sources_verify.set_defaults(func=_cmd_sources_verify)

    changes_parser = subparsers.add_parser("changes", help="Detected changes")
    changes_subparsers = changes_parser.add_subparsers(dest="changes_command", required=True)
    changes_list = changes_subparsers.add_parser("list", help="List recent changes")
    changes_list.add_argument("--tenant", default=None)
    changes_list.add_argument("--source", default=None)
    changes_list.add_argument("--limit", type=int, default=50)
    changes_list.set_defaults(func=_cmd_changes_list)
    changes_ack = changes_subparsers.add_parser("ack", help="Acknowledge a change")
    changes_ack.add_argument("change_id")
    changes_ack.add_argument(
        "--status",
        required=True,
        choices=["ACK_NO_ACTION", "ACK_REVIEWED", "ACK_UPDATED", "ACK_ESCALATED"],
    )
    changes_ack.add_argument("--actor", default="cli")
    changes_ack.set_defaults(func=_cmd_changes_ack)

    check_parser = subparsers.add_parser("check", help="Check one source now")
    check_parser.add_argument("source_id")
    check_parser.set_defaults(func=_cmd_check)

    run_parser = subparsers.add_parser("run", help="Run one scheduling pass over due sources")
    run_parser.add_argument("--concurrency", type=int, default=None)
    run_parser.set_defaults(func=_cmd_run)

    serve_parser = subparsers.add_parser("serve", help="Serve the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
