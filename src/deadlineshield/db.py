from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations
from .migrations_pg import apply_migrations_pg

_MIGRATED: set[str] = set()
_MIGRATION_LOCK = threading.Lock()


def get_db_url() -> str | None:
    url = os.environ.get("DS_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


def default_db_path() -> str:
    data_dir = os.environ.get("DS_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


class DBConn:
    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend
        self._in_transaction = False

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        if self._in_transaction:
            yield self
            return
        self._in_transaction = True
        try:
            if self.backend == "postgres":
                with self._conn.transaction():
                    yield self
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
        finally:
            self._in_transaction = False

    def commit(self) -> None:
        # Statements inside transaction() commit together at block exit.
        if self._in_transaction:
            return
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str | None = None) -> DBConn:
    url = get_db_url()
    if url and is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        raw = psycopg.connect(url, autocommit=True)
        conn = DBConn(raw, "postgres")
        _migrate_once(url, lambda: apply_migrations_pg(conn))
        return conn

    path = path or default_db_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    # Autocommit; multi-statement work goes through DBConn.transaction().
    raw = sqlite3.connect(path, isolation_level=None, timeout=5.0, check_same_thread=False)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    _migrate_once(os.path.abspath(path), lambda: apply_migrations(raw))
    return DBConn(raw, "sqlite")


def _migrate_once(key: str, migrate) -> None:
    with _MIGRATION_LOCK:
        if key in _MIGRATED:
            return
        migrate()
        _MIGRATED.add(key)


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return _strip_row_locks(sql)
    return _convert_qmark_to_percent(sql)


def _strip_row_locks(sql: str) -> str:
    # SQLite serializes writers with BEGIN IMMEDIATE instead of row locks.
    idx = sql.upper().rfind("FOR UPDATE")
    if idx == -1:
        return sql
    return sql[:idx] + sql[idx + len("FOR UPDATE") :]


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    in_double = False
    escape = False
    for ch in sql:
        if ch == "\\" and not escape:
            escape = True
            out.append(ch)
            continue
        if ch == "'" and not in_double and not escape:
            in_single = not in_single
        elif ch == '"' and not in_single and not escape:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        else:
            out.append(ch)
        escape = False
    return "".join(out)
