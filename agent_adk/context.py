"""
AgentContext: per-turn working state for one agent execution.

Holds the session id, the user input, a key/value state map and the ordered
conversation history. Persistence is explicit (see StateManager).
"""

from __future__ import annotations

import copy
import time
import uuid
from typing import Any, Dict, List, Optional


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class AgentContext:
    def __init__(
        self,
        session_id: str,
        user_input: Any = None,
        state: Optional[Dict[str, Any]] = None,
        conversation_history: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self._session_id = session_id
        self.user_input = user_input
        self.state: Dict[str, Any] = dict(state or {})
        self.conversation_history: List[Dict[str, Any]] = list(conversation_history or [])
        self._current_turn_uuid: Optional[str] = None
        self._current_variant_index = 0

    @property
    def session_id(self) -> str:
        return self._session_id

    def get_state(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    def set_state(self, key: str, value: Any) -> None:
        self.state[key] = value

    def has_state(self, key: str) -> bool:
        return key in self.state

    def forget_state(self, key: str) -> None:
        self.state.pop(key, None)

    def load_state(self, state: Dict[str, Any]) -> None:
        """Merge persisted state into the current state (incoming keys win)."""
        self.state.update(state)

    def get_all_state(self) -> Dict[str, Any]:
        return dict(self.state)

    @property
    def delegation_depth(self) -> int:
        try:
            return int(self.state.get("delegation_depth", 0) or 0)
        except (TypeError, ValueError):
            return 0

    def add_message(self, message: Dict[str, Any]) -> None:
        """
        Append a message {role, content, tool_name?} to the history.

        User messages start a new turn; later messages of the same turn share
        its turn_uuid so alternate responses can be grouped.
        """
        msg = dict(message)
        msg.setdefault("role", "user")
        msg.setdefault("content", "")
        msg.setdefault("tool_name", None)
        msg.setdefault("timestamp", _now_iso())

        if msg["role"] == "user":
            self._current_turn_uuid = str(uuid.uuid4())
            self._current_variant_index = 0
        if self._current_turn_uuid is not None:
            msg.setdefault("turn_uuid", self._current_turn_uuid)
            msg.setdefault("variant_index", self._current_variant_index)

        self.conversation_history.append(msg)

    def get_conversation_history(self) -> List[Dict[str, Any]]:
        return list(self.conversation_history)

    def set_conversation_history(self, history: List[Dict[str, Any]]) -> None:
        self.conversation_history = list(history)

    def copy(self) -> "AgentContext":
        """Deep copy, used where a caller must not observe later mutations."""
        clone = AgentContext(
            self._session_id,
            copy.deepcopy(self.user_input),
            copy.deepcopy(self.state),
            copy.deepcopy(self.conversation_history),
        )
        return clone

    def __repr__(self) -> str:
        return (
            f"AgentContext(session_id={self._session_id!r}, state_keys={sorted(self.state)!r}, "
            f"messages={len(self.conversation_history)})"
        )
