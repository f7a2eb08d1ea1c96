"""
Database helpers for SQLite (local) and Postgres.
"""

from __future__ import annotations

import os
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from agent_adk.config import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency for Postgres
    psycopg = None
    dict_row = None

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class DbInfo:
    dialect: str  # "sqlite" or "postgres"
    database_url: Optional[str]
    db_path: str


def _database_url() -> Optional[str]:
    return os.getenv("DATABASE_URL") or None


def get_db_info() -> DbInfo:
    database_url = _database_url()
    db_path = get_settings().db_path
    if database_url:
        return DbInfo(dialect="postgres", database_url=database_url, db_path=db_path)
    return DbInfo(dialect="sqlite", database_url=None, db_path=db_path)


def is_postgres() -> bool:
    return get_db_info().dialect == "postgres"


def connect() -> Any:
    info = get_db_info()
    if info.dialect == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres connections")
        return psycopg.connect(info.database_url, row_factory=dict_row)
    conn = sqlite3.connect(info.db_path)
    conn.row_factory = sqlite3.Row
    return conn


def sql(query: str) -> str:
    """
    Convert parameter placeholders for the active dialect.
    SQLite uses '?', Postgres uses '%s'.
    """
    if is_postgres():
        return query.replace("?", "%s")
    return query


def serial_pk() -> str:
    """Auto-increment primary key column type for the active dialect."""
    if is_postgres():
        return "BIGSERIAL PRIMARY KEY"
    return "INTEGER PRIMARY KEY AUTOINCREMENT"


def ensure_sqlite_dir() -> None:
    if is_postgres():
        return
    Path(get_settings().db_path).parent.mkdir(parents=True, exist_ok=True)


def apply_pragmas(conn: Any) -> None:
    if is_postgres():
        return
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=3000")


def now_iso(offset_seconds: float = 0.0) -> str:
    """UTC timestamp string; offset may be negative (cutoffs) or positive (expiry)."""
    return time.strftime(TIMESTAMP_FORMAT, time.gmtime(time.time() + offset_seconds))


def user_scope(column: str, value: Optional[str]) -> str:
    """WHERE fragment matching a nullable user column; NULL means the anonymous scope."""
    if value is None:
        return f"{column} IS NULL"
    return f"{column} = ?"
