"""
Trace span store.

agent_trace_spans: (span_id, trace_id, parent_span_id, session_id, agent_name,
                    type, name, input, output, metadata, error, status,
                    start_time, end_time, duration_ms)
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from agent_adk.storage.db import apply_pragmas, connect, ensure_sqlite_dir, sql

_COLUMNS = (
    "span_id, trace_id, parent_span_id, session_id, agent_name, type, name, input, output, metadata, "
    "error, status, start_time, end_time, duration_ms"
)


def init_trace_db() -> None:
    ensure_sqlite_dir()
    with connect() as conn:
        apply_pragmas(conn)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_trace_spans (
                span_id TEXT PRIMARY KEY,
                trace_id TEXT NOT NULL,
                parent_span_id TEXT,
                session_id TEXT,
                agent_name TEXT,
                type TEXT NOT NULL,
                name TEXT NOT NULL,
                input TEXT,
                output TEXT,
                metadata TEXT,
                error TEXT,
                status TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                duration_ms REAL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_trace_spans_trace ON agent_trace_spans (trace_id)")
        conn.commit()


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads(raw: Any) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


def insert_span(span: Dict[str, Any]) -> None:
    init_trace_db()
    with connect() as conn:
        conn.execute(
            sql(
                """
                INSERT INTO agent_trace_spans
                    (span_id, trace_id, parent_span_id, session_id, agent_name, type, name, input, metadata,
                     status, start_time)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """
            ),
            (
                span["span_id"],
                span["trace_id"],
                span.get("parent_span_id"),
                span.get("session_id"),
                span.get("agent_name"),
                span["type"],
                span["name"],
                _dumps(span.get("input")),
                _dumps(span.get("metadata")),
                span.get("status", "running"),
                span["start_time"],
            ),
        )
        conn.commit()


def finish_span(
    span_id: str,
    status: str,
    end_time: str,
    duration_ms: float,
    output: Any = None,
    error: Optional[Dict[str, Any]] = None,
) -> None:
    init_trace_db()
    with connect() as conn:
        conn.execute(
            sql(
                """
                UPDATE agent_trace_spans
                SET status = ?, end_time = ?, duration_ms = ?, output = ?, error = ?
                WHERE span_id = ?
                """
            ),
            (status, end_time, duration_ms, _dumps(output), _dumps(error), span_id),
        )
        conn.commit()


def get_spans(trace_id: str) -> List[Dict[str, Any]]:
    init_trace_db()
    with connect() as conn:
        rows = conn.execute(
            sql(f"SELECT {_COLUMNS} FROM agent_trace_spans WHERE trace_id = ? ORDER BY start_time ASC"),
            (trace_id,),
        ).fetchall()
    return [
        {
            "span_id": r["span_id"],
            "trace_id": r["trace_id"],
            "parent_span_id": r["parent_span_id"],
            "session_id": r["session_id"],
            "agent_name": r["agent_name"],
            "type": r["type"],
            "name": r["name"],
            "input": _loads(r["input"]),
            "output": _loads(r["output"]),
            "metadata": _loads(r["metadata"]),
            "error": _loads(r["error"]),
            "status": r["status"],
            "start_time": r["start_time"],
            "end_time": r["end_time"],
            "duration_ms": r["duration_ms"],
        }
        for r in rows
    ]


def delete_before(cutoff: str) -> int:
    init_trace_db()
    with connect() as conn:
        cur = conn.execute(sql("DELETE FROM agent_trace_spans WHERE start_time < ?"), (cutoff,))
        conn.commit()
        return cur.rowcount or 0
