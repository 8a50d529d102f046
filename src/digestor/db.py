from __future__ import annotations

import os
import re
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations

_MIGRATIONS_APPLIED: set[str] = set()

_ROW_LOCK_RE = re.compile(r"\s+FOR\s+UPDATE\s+SKIP\s+LOCKED", re.IGNORECASE)


def get_db_url() -> str | None:
    url = os.environ.get("DG_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        sql = _normalize_sql(sql, self.backend)
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
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

    def commit(self) -> None:
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
        if url not in _MIGRATIONS_APPLIED:
            apply_migrations(conn)
            _MIGRATIONS_APPLIED.add(url)
        return conn

    if path is None:
        from .config import get_state_db_path

        path = get_state_db_path()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    raw = sqlite3.connect(path, isolation_level=None, check_same_thread=False, timeout=5.0)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    conn = DBConn(raw, "sqlite")
    key = os.path.abspath(path)
    if key not in _MIGRATIONS_APPLIED:
        apply_migrations(conn)
        _MIGRATIONS_APPLIED.add(key)
    return conn


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return _ROW_LOCK_RE.sub("", sql)
    normalized = _replace_insert_or_ignore(sql)
    normalized = normalized.replace("BEGIN IMMEDIATE", "BEGIN")
    normalized = _convert_qmark_to_percent(normalized)
    return normalized


def _replace_insert_or_ignore(sql: str) -> str:
    upper = sql.upper()
    if "INSERT OR IGNORE" not in upper:
        return sql
    idx = upper.find("INSERT OR IGNORE")
    replaced = sql[:idx] + "INSERT" + sql[idx + len("INSERT OR IGNORE") :]
    if "ON CONFLICT" in replaced.upper():
        return replaced
    stripped = replaced.rstrip().rstrip(";")
    return stripped + " ON CONFLICT DO NOTHING"


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    in_double = False
    for ch in sql:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        elif ch == "%" and not in_single and not in_double:
            out.append("%%")
        else:
            out.append(ch)
    return "".join(out)
