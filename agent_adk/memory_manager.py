"""
MemoryManager: long-term, cross-session memory per (agent, user).

Memory rows outlive sessions. Session cleanup here only ever deletes session
and message rows.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from .storage import memory_store, session_store
from .storage.db import now_iso

logger = logging.getLogger("agent-adk")

SUMMARY_MAX_CHARS = 2000


class MemoryManager:
    def get_or_create_memory(self, agent_name: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        memory = memory_store.find_memory(agent_name, user_id)
        if memory is None:
            memory = memory_store.create_memory(agent_name, user_id)
            logger.info("memory created agent=%s user_id=%s memory_id=%s", agent_name, user_id, memory["id"])
        return memory

    def add_learning(self, agent_name: str, learning: str, user_id: Optional[str] = None) -> bool:
        """Append a learning unless it is already recorded. Returns True when added."""
        memory = self.get_or_create_memory(agent_name, user_id)
        learnings: List[str] = memory["key_learnings"]
        if learning in learnings:
            return False
        learnings.append(learning)
        memory_store.update_memory(memory["id"], {"key_learnings": learnings})
        return True

    def update_memory_data(self, agent_name: str, data: Dict[str, Any], user_id: Optional[str] = None) -> None:
        memory = self.get_or_create_memory(agent_name, user_id)
        merged = dict(memory["memory_data"])
        merged.update(data)
        memory_store.update_memory(memory["id"], {"memory_data": merged})

    def add_fact(self, agent_name: str, key: str, value: Any, user_id: Optional[str] = None) -> None:
        self.update_memory_data(agent_name, {key: value}, user_id)

    def update_summary(self, agent_name: str, summary: str, user_id: Optional[str] = None) -> None:
        memory = self.get_or_create_memory(agent_name, user_id)
        memory_store.update_memory(memory["id"], {"summary": summary})

    def increment_session_count(self, agent_name: str, user_id: Optional[str] = None) -> None:
        memory = self.get_or_create_memory(agent_name, user_id)
        memory_store.update_memory(
            memory["id"],
            {"total_sessions": memory["total_sessions"] + 1, "last_session_at": now_iso()},
        )

    def apply_memory_updates(self, agent_name: str, updates: Any, user_id: Optional[str] = None) -> None:
        """
        Apply a `memory_updates` instruction: {learnings: [...], facts: {...}, summary?: str}.

        Malformed parts are skipped with a warning.
        """
        if not isinstance(updates, dict):
            logger.warning("Ignoring memory_updates for agent=%s: expected mapping, got %s", agent_name, type(updates).__name__)
            return
        learnings = updates.get("learnings") or []
        if isinstance(learnings, str):
            learnings = [learnings]
        for learning in learnings:
            if isinstance(learning, str) and learning.strip():
                self.add_learning(agent_name, learning, user_id)
        facts = updates.get("facts") or {}
        if isinstance(facts, dict) and facts:
            self.update_memory_data(agent_name, facts, user_id)
        elif facts:
            logger.warning("Ignoring non-mapping memory_updates.facts for agent=%s", agent_name)
        summary = updates.get("summary")
        if isinstance(summary, str) and summary:
            self.update_summary(agent_name, summary, user_id)

    def get_memory_context_array(self, agent_name: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        memory = memory_store.find_memory(agent_name, user_id)
        if memory is None:
            return {"summary": None, "key_learnings": [], "facts": {}, "total_sessions": 0}
        return {
            "summary": memory["summary"],
            "key_learnings": list(memory["key_learnings"]),
            "facts": dict(memory["memory_data"]),
            "total_sessions": memory["total_sessions"],
        }

    def get_memory_context(self, agent_name: str, user_id: Optional[str] = None, max_length: int = 1000) -> str:
        """Render memory as prompt text; empty string when there is nothing worth injecting."""
        snapshot = self.get_memory_context_array(agent_name, user_id)
        parts: List[str] = []
        if snapshot["summary"]:
            parts.append(f"Previous Knowledge: {snapshot['summary']}\n")
        if snapshot["key_learnings"]:
            lines = ["Key Learnings:"]
            lines.extend(f"- {learning}" for learning in snapshot["key_learnings"][-5:])
            parts.append("\n".join(lines) + "\n")
        if snapshot["facts"]:
            lines = ["Important Facts:"]
            for key, value in list(snapshot["facts"].items())[:10]:
                rendered = value if isinstance(value, str) else json.dumps(value, default=str)
                lines.append(f"- {key}: {rendered}")
            parts.append("\n".join(lines))
        text = "\n".join(parts)
        if len(text) > max_length:
            text = text[: max_length - 3] + "..."
        return text.strip()

    def summarize_memory(self, agent_name: str, user_id: Optional[str] = None, recent_sessions_count: int = 10) -> Optional[str]:
        """Replace the summary with digests of the most recent linked sessions."""
        memory = self.get_or_create_memory(agent_name, user_id)
        sessions = session_store.list_sessions_for_memory(memory["id"], limit=recent_sessions_count)
        digests = [d for d in (self._session_digest(s) for s in sessions) if d]
        if not digests:
            return None
        summary = "\n\n".join(digests[:5])
        if len(summary) > SUMMARY_MAX_CHARS:
            summary = summary[: SUMMARY_MAX_CHARS - 3] + "..."
        memory_store.update_memory(memory["id"], {"summary": summary})
        return summary

    def _session_digest(self, session: Dict[str, Any]) -> str:
        messages = session_store.get_messages(session["id"])
        if not messages:
            return ""
        first_user = next((m for m in messages if m["role"] == "user"), None)
        last_assistant = next((m for m in reversed(messages) if m["role"] == "assistant"), None)
        lines = [f"Session {session['session_id']} ({(session['updated_at'] or '')[:10]}):"]
        if first_user is not None:
            lines.append("User: " + _clip(first_user["content"], 100))
        if last_assistant is not None:
            lines.append("Agent: " + _clip(last_assistant["content"], 100))
        return "\n".join(lines)

    def cleanup_old_sessions(self, agent_name: str, days_old: int = 30) -> int:
        """Delete sessions (and their messages) idle for more than `days_old` days. Memory is untouched."""
        cutoff = now_iso(-days_old * 86400)
        deleted = session_store.delete_sessions_older_than(agent_name, cutoff)
        logger.info("session cleanup agent=%s days_old=%s deleted=%s", agent_name, days_old, deleted)
        return deleted


def _clip(text: Any, limit: int) -> str:
    value = text if isinstance(text, str) else "Complex interaction"
    return value[:limit] + ("..." if len(value) > limit else "")
