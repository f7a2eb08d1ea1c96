"""
Interrupt store: human-in-the-loop pause records.

agent_interrupts: (id, session_id, agent_name, type, reason, data, status,
                   expires_at, resolved_at, resolved_by, modifications,
                   rejection_reason, user_response, created_at, updated_at)
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from agent_adk.storage.db import apply_pragmas, connect, ensure_sqlite_dir, now_iso, sql

_COLUMNS = (
    "id, session_id, agent_name, type, reason, data, status, expires_at, resolved_at, resolved_by, "
    "modifications, rejection_reason, user_response, created_at, updated_at"
)

_UPDATABLE = {"status", "resolved_at", "resolved_by", "modifications", "rejection_reason", "user_response"}


def init_interrupt_db() -> None:
    ensure_sqlite_dir()
    with connect() as conn:
        apply_pragmas(conn)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_interrupts (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                agent_name TEXT NOT NULL,
                type TEXT NOT NULL,
                reason TEXT NOT NULL,
                data TEXT,
                status TEXT NOT NULL,
                expires_at TEXT,
                resolved_at TEXT,
                resolved_by TEXT,
                modifications TEXT,
                rejection_reason TEXT,
                user_response TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_interrupts_session ON agent_interrupts (session_id, agent_name)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_interrupts_status ON agent_interrupts (status, expires_at)")
        conn.commit()


def _loads(raw: Any) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


def _row_to_interrupt(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "session_id": row["session_id"],
        "agent_name": row["agent_name"],
        "type": row["type"],
        "reason": row["reason"],
        "data": _loads(row["data"]) or {},
        "status": row["status"],
        "expires_at": row["expires_at"],
        "resolved_at": row["resolved_at"],
        "resolved_by": row["resolved_by"],
        "modifications": _loads(row["modifications"]),
        "rejection_reason": row["rejection_reason"],
        "user_response": row["user_response"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def create_interrupt(
    session_id: str,
    agent_name: str,
    interrupt_type: str,
    reason: str,
    data: Optional[Dict[str, Any]],
    expires_at: Optional[str],
) -> Dict[str, Any]:
    init_interrupt_db()
    interrupt_id = str(uuid.uuid4())
    now = now_iso()
    with connect() as conn:
        conn.execute(
            sql(
                """
                INSERT INTO agent_interrupts
                    (id, session_id, agent_name, type, reason, data, status, expires_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """
            ),
            (interrupt_id, session_id, agent_name, interrupt_type, reason, json.dumps(data or {}), expires_at, now, now),
        )
        conn.commit()
    created = get_interrupt(interrupt_id)
    assert created is not None
    return created


def get_interrupt(interrupt_id: str) -> Optional[Dict[str, Any]]:
    init_interrupt_db()
    with connect() as conn:
        row = conn.execute(sql(f"SELECT {_COLUMNS} FROM agent_interrupts WHERE id = ?"), (interrupt_id,)).fetchone()
    return _row_to_interrupt(row) if row is not None else None


def update_interrupt(interrupt_id: str, fields: Dict[str, Any], expected_status: str = "pending") -> bool:
    """
    Apply a status transition. Only rows still in `expected_status` are touched,
    so a concurrent resolution cannot be overwritten. Returns True if a row changed.
    """
    init_interrupt_db()
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Unknown interrupt fields: {sorted(unknown)}")
    assignments = []
    params: List[Any] = []
    for key, value in fields.items():
        assignments.append(f"{key} = ?")
        params.append(json.dumps(value) if key == "modifications" and value is not None else value)
    assignments.append("updated_at = ?")
    params.append(now_iso())
    params.extend([interrupt_id, expected_status])
    with connect() as conn:
        cur = conn.execute(
            sql(f"UPDATE agent_interrupts SET {', '.join(assignments)} WHERE id = ? AND status = ?"),
            tuple(params),
        )
        conn.commit()
        return (cur.rowcount or 0) > 0


def list_interrupts(
    session_id: Optional[str] = None,
    agent_name: Optional[str] = None,
    status: Optional[str] = "pending",
) -> List[Dict[str, Any]]:
    init_interrupt_db()
    clauses = []
    params: List[Any] = []
    if session_id is not None:
        clauses.append("session_id = ?")
        params.append(session_id)
    if agent_name is not None:
        clauses.append("agent_name = ?")
        params.append(agent_name)
    if status is not None:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect() as conn:
        rows = conn.execute(
            sql(f"SELECT {_COLUMNS} FROM agent_interrupts {where} ORDER BY created_at ASC, id ASC"),
            tuple(params),
        ).fetchall()
    return [_row_to_interrupt(r) for r in rows]


def expire_pending_before(now: str) -> int:
    init_interrupt_db()
    with connect() as conn:
        cur = conn.execute(
            sql(
                """
                UPDATE agent_interrupts SET status = 'expired', resolved_at = ?, updated_at = ?
                WHERE status = 'pending' AND expires_at IS NOT NULL AND expires_at <= ?
                """
            ),
            (now, now, now),
        )
        conn.commit()
        return cur.rowcount or 0


def delete_resolved_before(cutoff: str) -> int:
    init_interrupt_db()
    with connect() as conn:
        cur = conn.execute(
            sql("DELETE FROM agent_interrupts WHERE status != 'pending' AND COALESCE(resolved_at, updated_at) < ?"),
            (cutoff,),
        )
        conn.commit()
        return cur.rowcount or 0
