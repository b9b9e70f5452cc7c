from __future__ import annotations

import argparse
import logging
import os
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from functools import partial

from .config import ConfigError, load_runtime_config
from .notifier import build_notifier
from .pipeline import CheckResult, EngineContext, check_source
from .storage import get_setting, init_db, list_due_sources, set_setting
from .utils import SystemClock, configure_logging, log_event, to_iso

HEARTBEAT_KEY = "scheduler.last_run_at"


def _setup_logging() -> logging.Logger:
    return configure_logging("deadlineshield.scheduler")


def build_context(concurrency: int | None = None, db_path: str | None = None) -> EngineContext:
    logger = _setup_logging()
    conn = init_db(db_path)
    try:
        config = load_runtime_config(conn)
    finally:
        conn.close()
    if concurrency:
        config = replace(config, scheduler=replace(config.scheduler, concurrency=max(1, concurrency)))
    return EngineContext(
        connect=partial(init_db, db_path),
        notifier=build_notifier(config.alerts, logger),
        clock=SystemClock(),
        config=config,
        logger=logger,
    )


def run_once(ctx: EngineContext) -> dict[str, int]:
    """Check every due source once, at most ``concurrency`` at a time.

    Each check runs on its own connection. A failing check is logged and
    counted; it never stops the rest of the batch.
    """
    conn = ctx.connect()
    try:
        now = ctx.clock.now()
        due = list_due_sources(conn, now)
        log_event(ctx.logger, logging.INFO, "scheduler_tick", due=len(due), at=to_iso(now))
        counts: Counter[str] = Counter()
        if due:
            workers = max(1, min(ctx.config.scheduler.concurrency, len(due)))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {executor.submit(_check_in_thread, ctx, source.id): source.id for source in due}
                for future in as_completed(futures):
                    try:
                        result = future.result()
                    except Exception as exc:  # noqa: BLE001
                        counts["error"] += 1
                        log_event(
                            ctx.logger,
                            logging.ERROR,
                            "scheduler_source_error",
                            source_id=futures[future],
                            error=str(exc),
                        )
                        continue
                    counts[result.outcome] += 1
        summary = dict(counts)
        set_setting(
            conn,
            HEARTBEAT_KEY,
            {"last_run_at": to_iso(now), "due": len(due), "outcomes": summary},
        )
        log_event(ctx.logger, logging.INFO, "scheduler_done", due=len(due), **summary)
        return summary
    finally:
        conn.close()


def _check_in_thread(ctx: EngineContext, source_id: str) -> CheckResult:
    conn = ctx.connect()
    try:
        return check_source(conn, source_id, ctx, require_due=True)
    finally:
        conn.close()


def last_heartbeat(conn) -> dict[str, object] | None:
    value = get_setting(conn, HEARTBEAT_KEY, None)
    return value if isinstance(value, dict) else None


def run_loop(ctx: EngineContext, sleep_seconds: int) -> int:
    while True:
        try:
            run_once(ctx)
        except Exception as exc:  # noqa: BLE001
            log_event(ctx.logger, logging.ERROR, "scheduler_run_failed", error=str(exc))
        time.sleep(sleep_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deadlineshield-scheduler")
    parser.add_argument("--once", action="store_true", help="Run a single scheduling pass and exit")
    parser.add_argument("--sleep", type=int, default=None, help="Sleep seconds between passes")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("DS_SCHEDULER_CONCURRENCY", "0") or 0),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    try:
        ctx = build_context(args.concurrency or None)
    except ConfigError as exc:
        log_event(_setup_logging(), logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.once:
        run_once(ctx)
        return 0
    sleep_seconds = args.sleep or ctx.config.scheduler.interval_minutes * 60
    return run_loop(ctx, sleep_seconds)


if __name__ == "__main__":
    raise SystemExit(main())
