"""
StateManager: load and save AgentContext through the session store.

Reserved state keys:
- memory_context: rendered long-term memory, injected on load, never persisted.
- memory_updates: {learnings, facts, summary} instruction, forwarded to
  MemoryManager on save and then dropped.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from .context import AgentContext
from .memory_manager import MemoryManager
from .storage import session_store

logger = logging.getLogger("agent-adk")

MEMORY_CONTEXT_KEY = "memory_context"
MEMORY_UPDATES_KEY = "memory_updates"


class StateManager:
    def __init__(self, memory_manager: Optional[MemoryManager] = None) -> None:
        self.memory_manager = memory_manager

    def load_context(
        self,
        agent_name: str,
        session_id: Optional[str] = None,
        user_input: Any = None,
        user_id: Optional[str] = None,
    ) -> AgentContext:
        """
        Load (or start) a session and return its context.

        Storage errors propagate; there is no silent empty-context fallback.
        """
        session_id = session_id or str(uuid.uuid4())
        session = session_store.get_or_create_session(session_id, agent_name, user_id)
        history = session_store.get_messages(session["id"])
        state = dict(session["state_data"])
        state.pop(MEMORY_CONTEXT_KEY, None)

        effective_user = user_id or state.get("user_id") or session["user_id"]
        if effective_user is not None:
            effective_user = str(effective_user)
            state["user_id"] = effective_user

        if self.memory_manager is not None:
            memory = self.memory_manager.get_or_create_memory(agent_name, effective_user)
            if session["memory_id"] is None:
                session_store.set_memory_id(session["id"], memory["id"])
            if session.get("created"):
                self.memory_manager.increment_session_count(agent_name, effective_user)
            memory_text = self.memory_manager.get_memory_context(agent_name, effective_user)
            if memory_text:
                state[MEMORY_CONTEXT_KEY] = memory_text

        logger.debug(
            "context loaded agent=%s session_id=%s messages=%d new=%s",
            agent_name,
            session_id,
            len(history),
            session.get("created"),
        )
        return AgentContext(session_id, user_input, state, history)

    def save_context(self, context: AgentContext, agent_name: str, apply_memory_updates: bool = True) -> None:
        """
        Persist state and history atomically.

        memory_updates never reaches storage. With apply_memory_updates=False a
        pending instruction stays on the in-memory context so a later save can
        apply it.
        """
        state = context.get_all_state()
        state.pop(MEMORY_CONTEXT_KEY, None)
        user_id = state.get("user_id")
        user_id = str(user_id) if user_id is not None else None

        updates = state.pop(MEMORY_UPDATES_KEY, None)
        if apply_memory_updates and context.has_state(MEMORY_UPDATES_KEY):
            if self.memory_manager is not None and updates:
                self.memory_manager.apply_memory_updates(agent_name, updates, user_id)
            context.forget_state(MEMORY_UPDATES_KEY)

        session_store.save_session(
            context.session_id,
            agent_name,
            state,
            context.get_conversation_history(),
            user_id=user_id,
        )
