"""
Durable job queue for async agent runs.

agent_jobs: (id, queue, agent_name, payload, status, attempts, max_tries,
             timeout, available_at, reserved_at, result, error, created_at,
             updated_at)
status: queued -> running -> completed | failed (or back to queued for a retry)
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, Optional

from agent_adk.storage.db import apply_pragmas, connect, ensure_sqlite_dir, now_iso, sql

_COLUMNS = (
    "id, queue, agent_name, payload, status, attempts, max_tries, timeout, available_at, reserved_at, "
    "result, error, created_at, updated_at"
)


def init_job_db() -> None:
    ensure_sqlite_dir()
    with connect() as conn:
        apply_pragmas(conn)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_jobs (
                id TEXT PRIMARY KEY,
                queue TEXT NOT NULL,
                agent_name TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_tries INTEGER NOT NULL DEFAULT 1,
                timeout INTEGER,
                available_at TEXT NOT NULL,
                reserved_at TEXT,
                result TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_jobs_queue ON agent_jobs (queue, status, available_at)")
        conn.commit()


def _row_to_job(row: Any) -> Dict[str, Any]:
    result = row["result"]
    return {
        "id": row["id"],
        "queue": row["queue"],
        "agent_name": row["agent_name"],
        "payload": json.loads(row["payload"]),
        "status": row["status"],
        "attempts": int(row["attempts"] or 0),
        "max_tries": int(row["max_tries"] or 1),
        "timeout": row["timeout"],
        "available_at": row["available_at"],
        "reserved_at": row["reserved_at"],
        "result": json.loads(result) if result is not None else None,
        "error": row["error"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def enqueue_job(
    queue: str,
    agent_name: str,
    payload: Dict[str, Any],
    delay_seconds: int = 0,
    max_tries: int = 1,
    timeout: Optional[int] = None,
) -> str:
    init_job_db()
    job_id = str(uuid.uuid4())
    now = now_iso()
    with connect() as conn:
        conn.execute(
            sql(
                """
                INSERT INTO agent_jobs
                    (id, queue, agent_name, payload, status, attempts, max_tries, timeout, available_at,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, 'queued', 0, ?, ?, ?, ?, ?)
                """
            ),
            (
                job_id,
                queue,
                agent_name,
                json.dumps(payload, default=str),
                max(1, int(max_tries)),
                timeout,
                now_iso(delay_seconds),
                now,
                now,
            ),
        )
        conn.commit()
    return job_id


def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    init_job_db()
    with connect() as conn:
        row = conn.execute(sql(f"SELECT {_COLUMNS} FROM agent_jobs WHERE id = ?"), (job_id,)).fetchone()
    return _row_to_job(row) if row is not None else None


def claim_next_job(queue: str) -> Optional[Dict[str, Any]]:
    """
    Reserve the oldest available job on `queue`.

    The conditional UPDATE makes the claim safe against other workers: if it
    touches no row someone else won and we try the next candidate.
    """
    init_job_db()
    now = now_iso()
    with connect() as conn:
        candidates = conn.execute(
            sql(
                """
                SELECT id FROM agent_jobs
                WHERE queue = ? AND status = 'queued' AND available_at <= ?
                ORDER BY available_at ASC, created_at ASC
                LIMIT 5
                """
            ),
            (queue, now),
        ).fetchall()
        for candidate in candidates:
            cur = conn.execute(
                sql(
                    """
                    UPDATE agent_jobs
                    SET status = 'running', attempts = attempts + 1, reserved_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'queued'
                    """
                ),
                (now, now, candidate["id"]),
            )
            conn.commit()
            if (cur.rowcount or 0) > 0:
                row = conn.execute(sql(f"SELECT {_COLUMNS} FROM agent_jobs WHERE id = ?"), (candidate["id"],)).fetchone()
                return _row_to_job(row)
    return None


def complete_job(job_id: str, result: Any) -> None:
    init_job_db()
    now = now_iso()
    with connect() as conn:
        conn.execute(
            sql("UPDATE agent_jobs SET status = 'completed', result = ?, error = NULL, updated_at = ? WHERE id = ?"),
            (json.dumps(result, default=str), now, job_id),
        )
        conn.commit()


def fail_job(job_id: str, error: str, retry_delay_seconds: Optional[int] = None) -> None:
    """Record a failure; with a retry delay the job goes back to the queue."""
    init_job_db()
    now = now_iso()
    with connect() as conn:
        if retry_delay_seconds is None:
            conn.execute(
                sql("UPDATE agent_jobs SET status = 'failed', error = ?, updated_at = ? WHERE id = ?"),
                (error, now, job_id),
            )
        else:
            conn.execute(
                sql(
                    """
                    UPDATE agent_jobs SET status = 'queued', error = ?, reserved_at = NULL,
                        available_at = ?, updated_at = ?
                    WHERE id = ?
                    """
                ),
                (error, now_iso(retry_delay_seconds), now, job_id),
            )
        conn.commit()
