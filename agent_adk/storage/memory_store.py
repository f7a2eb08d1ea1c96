"""
Memory store: long-term memory rows keyed by (agent_name, user_id).

agent_memories: (id, agent_name, user_id, summary, key_learnings, memory_data,
                 total_sessions, last_session_at, created_at, updated_at)
A NULL user_id is the anonymous scope of an agent.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, Optional

from agent_adk.storage.db import apply_pragmas, connect, ensure_sqlite_dir, now_iso, sql, user_scope

_COLUMNS = (
    "id, agent_name, user_id, summary, key_learnings, memory_data, total_sessions, "
    "last_session_at, created_at, updated_at"
)


def init_memory_db() -> None:
    ensure_sqlite_dir()
    with connect() as conn:
        apply_pragmas(conn)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_memories (
                id TEXT PRIMARY KEY,
                agent_name TEXT NOT NULL,
                user_id TEXT,
                summary TEXT,
                key_learnings TEXT NOT NULL,
                memory_data TEXT NOT NULL,
                total_sessions INTEGER NOT NULL DEFAULT 0,
                last_session_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_memories_owner ON agent_memories (agent_name, user_id)")
        conn.commit()


def _loads(raw: Any, default: Any) -> Any:
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default
    return value if isinstance(value, type(default)) else default


def _row_to_memory(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "agent_name": row["agent_name"],
        "user_id": row["user_id"],
        "summary": row["summary"],
        "key_learnings": _loads(row["key_learnings"], []),
        "memory_data": _loads(row["memory_data"], {}),
        "total_sessions": int(row["total_sessions"] or 0),
        "last_session_at": row["last_session_at"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def find_memory(agent_name: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    init_memory_db()
    params: tuple = (agent_name,) if user_id is None else (agent_name, user_id)
    with connect() as conn:
        row = conn.execute(
            sql(f"SELECT {_COLUMNS} FROM agent_memories WHERE agent_name = ? AND {user_scope('user_id', user_id)}"),
            params,
        ).fetchone()
    return _row_to_memory(row) if row is not None else None


def get_memory_by_id(memory_id: str) -> Optional[Dict[str, Any]]:
    init_memory_db()
    with connect() as conn:
        row = conn.execute(sql(f"SELECT {_COLUMNS} FROM agent_memories WHERE id = ?"), (memory_id,)).fetchone()
    return _row_to_memory(row) if row is not None else None


def create_memory(agent_name: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    init_memory_db()
    ts = now_iso()
    memory_id = str(uuid.uuid4())
    with connect() as conn:
        conn.execute(
            sql(
                "INSERT INTO agent_memories (id, agent_name, user_id, summary, key_learnings, memory_data, "
                "total_sessions, last_session_at, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (memory_id, agent_name, user_id, None, "[]", "{}", 0, None, ts, ts),
        )
        conn.commit()
    memory = get_memory_by_id(memory_id)
    assert memory is not None
    return memory


def update_memory(memory_id: str, fields: Dict[str, Any]) -> None:
    """Write selected columns of one memory row; list/dict values are JSON-encoded."""
    if not fields:
        return
    assignments = []
    values = []
    for column, value in fields.items():
        if column not in {"summary", "key_learnings", "memory_data", "total_sessions", "last_session_at"}:
            raise ValueError(f"Unknown memory column: {column}")
        if isinstance(value, (list, dict)):
            value = json.dumps(value, default=str)
        assignments.append(f"{column} = ?")
        values.append(value)
    assignments.append("updated_at = ?")
    values.append(now_iso())
    values.append(memory_id)
    with connect() as conn:
        conn.execute(sql(f"UPDATE agent_memories SET {', '.join(assignments)} WHERE id = ?"), tuple(values))
        conn.commit()
