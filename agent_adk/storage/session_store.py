"""
Session store: SQLite- or Postgres-backed agent sessions and messages.

agent_sessions: (id, session_id, agent_name, user_id, state_data, memory_id, created_at, updated_at)
agent_messages: (id, session_ref, role, content, tool_name, meta, created_at)
One row per (session_id, agent_name). One connection per call; DB_PATH from env.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from agent_adk.exceptions import SessionStateError
from agent_adk.storage.db import apply_pragmas, connect, ensure_sqlite_dir, is_postgres, now_iso, serial_pk, sql

logger = logging.getLogger("agent-adk")


def init_db() -> None:
    """
    Create tables and set PRAGMAs.
    Call at app startup (lifespan or startup event).
    """
    ensure_sqlite_dir()
    with connect() as conn:
        apply_pragmas(conn)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_sessions (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                agent_name TEXT NOT NULL,
                user_id TEXT,
                state_data TEXT NOT NULL,
                memory_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (session_id, agent_name)
            )
            """
        )
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS agent_messages (
                id {serial_pk()},
                session_ref TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                tool_name TEXT,
                meta TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (session_ref) REFERENCES agent_sessions(id)
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_messages_session_ref ON agent_messages (session_ref)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_sessions_agent ON agent_sessions (agent_name, updated_at)")
        conn.commit()


def _row_to_session(row: Any) -> Dict[str, Any]:
    try:
        state = json.loads(row["state_data"]) if row["state_data"] else {}
    except (json.JSONDecodeError, TypeError) as exc:
        logger.error("Corrupt state_data for session_id=%s agent=%s", row["session_id"], row["agent_name"])
        raise SessionStateError(
            f"Stored state for session '{row['session_id']}' is not valid JSON",
            details={"session_id": row["session_id"], "agent_name": row["agent_name"]},
        ) from exc
    if not isinstance(state, dict):
        raise SessionStateError(
            f"Stored state for session '{row['session_id']}' is not an object",
            details={"session_id": row["session_id"], "agent_name": row["agent_name"]},
        )
    return {
        "id": row["id"],
        "session_id": row["session_id"],
        "agent_name": row["agent_name"],
        "user_id": row["user_id"],
        "state_data": state,
        "memory_id": row["memory_id"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


_SESSION_COLUMNS = "id, session_id, agent_name, user_id, state_data, memory_id, created_at, updated_at"


def get_session(session_id: str, agent_name: str) -> Optional[Dict[str, Any]]:
    """Return the session row for (session_id, agent_name) or None."""
    init_db()  # Idempotent; ensures tables exist when TestClient doesn't run lifespan before first request
    with connect() as conn:
        row = conn.execute(
            sql(f"SELECT {_SESSION_COLUMNS} FROM agent_sessions WHERE session_id = ? AND agent_name = ?"),
            (session_id, agent_name),
        ).fetchone()
    return _row_to_session(row) if row is not None else None


def find_sessions(session_id: str) -> List[Dict[str, Any]]:
    """All agent rows sharing one session id."""
    init_db()
    with connect() as conn:
        rows = conn.execute(
            sql(f"SELECT {_SESSION_COLUMNS} FROM agent_sessions WHERE session_id = ? ORDER BY created_at"),
            (session_id,),
        ).fetchall()
    return [_row_to_session(r) for r in rows]


def get_or_create_session(session_id: str, agent_name: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Return the session row, inserting an empty one when missing.

    The returned dict carries `created: True` when the row was just inserted.
    """
    existing = get_session(session_id, agent_name)
    if existing is not None:
        existing["created"] = False
        return existing

    ts = now_iso()
    row_id = str(uuid.uuid4())
    with connect() as conn:
        insert = (
            "INSERT INTO agent_sessions (id, session_id, agent_name, user_id, state_data, memory_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        if is_postgres():
            insert += " ON CONFLICT (session_id, agent_name) DO NOTHING"
        else:
            insert = insert.replace("INSERT INTO", "INSERT OR IGNORE INTO", 1)
        cur = conn.execute(sql(insert), (row_id, session_id, agent_name, user_id, "{}", None, ts, ts))
        created = cur.rowcount == 1
        conn.commit()

    session = get_session(session_id, agent_name)
    if session is None:  # pragma: no cover - row vanished between insert and read
        raise RuntimeError(f"Failed to create session {session_id} for agent {agent_name}")
    session["created"] = created
    return session


def set_memory_id(session_ref: str, memory_id: str) -> None:
    with connect() as conn:
        conn.execute(sql("UPDATE agent_sessions SET memory_id = ? WHERE id = ?"), (memory_id, session_ref))
        conn.commit()


def get_messages(session_ref: str) -> List[Dict[str, Any]]:
    """Messages of one session row in insertion order."""
    with connect() as conn:
        rows = conn.execute(
            sql("SELECT role, content, tool_name, meta, created_at FROM agent_messages WHERE session_ref = ? ORDER BY id"),
            (session_ref,),
        ).fetchall()
    out: List[Dict[str, Any]] = []
    for r in rows:
        message: Dict[str, Any] = {
            "role": r["role"],
            "content": r["content"],
            "tool_name": r["tool_name"],
            "timestamp": r["created_at"],
        }
        if r["meta"]:
            try:
                message.update(json.loads(r["meta"]))
            except (json.JSONDecodeError, TypeError):
                pass
        out.append(message)
    return out


def _encode_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)


def save_session(
    session_id: str,
    agent_name: str,
    state_data: Dict[str, Any],
    messages: List[Dict[str, Any]],
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Upsert the session row and replace its messages in a single transaction.

    Either the new state and history are both committed or neither is.
    """
    init_db()
    session = get_or_create_session(session_id, agent_name, user_id)
    state_json = json.dumps(state_data, default=str)
    ts = now_iso()
    with connect() as conn:
        try:
            conn.execute(
                sql("UPDATE agent_sessions SET state_data = ?, user_id = COALESCE(?, user_id), updated_at = ? WHERE id = ?"),
                (state_json, user_id, ts, session["id"]),
            )
            conn.execute(sql("DELETE FROM agent_messages WHERE session_ref = ?"), (session["id"],))
            for message in messages:
                meta = {k: message[k] for k in ("turn_uuid", "variant_index") if message.get(k) is not None}
                conn.execute(
                    sql(
                        "INSERT INTO agent_messages (session_ref, role, content, tool_name, meta, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?)"
                    ),
                    (
                        session["id"],
                        message.get("role", "user"),
                        _encode_content(message.get("content")),
                        message.get("tool_name"),
                        json.dumps(meta) if meta else None,
                        message.get("timestamp") or ts,
                    ),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    session["state_data"] = state_data
    session["updated_at"] = ts
    return session


def delete_sessions_older_than(agent_name: str, cutoff: str) -> int:
    """Delete sessions of one agent not updated since `cutoff`, messages first. Returns sessions deleted."""
    init_db()
    with connect() as conn:
        rows = conn.execute(
            sql("SELECT id FROM agent_sessions WHERE agent_name = ? AND updated_at < ?"),
            (agent_name, cutoff),
        ).fetchall()
        ids = [r["id"] for r in rows]
        for row_id in ids:
            conn.execute(sql("DELETE FROM agent_messages WHERE session_ref = ?"), (row_id,))
            conn.execute(sql("DELETE FROM agent_sessions WHERE id = ?"), (row_id,))
        conn.commit()
    return len(ids)


def list_sessions_for_memory(memory_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Most recently updated sessions linked to one memory row."""
    init_db()
    with connect() as conn:
        rows = conn.execute(
            sql(f"SELECT {_SESSION_COLUMNS} FROM agent_sessions WHERE memory_id = ? ORDER BY updated_at DESC LIMIT ?"),
            (memory_id, limit),
        ).fetchall()
    return [_row_to_session(r) for r in rows]
