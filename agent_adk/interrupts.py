"""
InterruptManager: pause an agent run for a human decision and resolve it later.

States: pending -> approved | rejected | cancelled | expired. Terminal states
never change again (only cleanup deletes them).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from agent_adk.context import AgentContext
from agent_adk.exceptions import InterruptException, InterruptStateError
from agent_adk.storage import interrupt_store
from agent_adk.storage.db import now_iso

logger = logging.getLogger("agent-adk")

TYPE_APPROVAL = "approval"
TYPE_CONFIRMATION = "confirmation"
TYPE_INPUT = "input"
TYPE_FEEDBACK = "feedback"
INTERRUPT_TYPES = (TYPE_APPROVAL, TYPE_CONFIRMATION, TYPE_INPUT, TYPE_FEEDBACK)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_EXPIRED = "expired"
STATUS_CANCELLED = "cancelled"

CONSUMED_STATE_KEY = "consumed_interrupts"


class InterruptManager:
    def __init__(self, tool_permissions: Optional[Dict[str, Any]] = None, default_ttl_hours: int = 24) -> None:
        self.tool_permissions = dict(tool_permissions or {})
        self.default_ttl_hours = default_ttl_hours

    # -- raising -------------------------------------------------------------

    def interrupt(
        self,
        context: AgentContext,
        reason: str,
        data: Optional[Dict[str, Any]] = None,
        type: str = TYPE_APPROVAL,
        ttl_hours: Optional[int] = None,
        agent_name: Optional[str] = None,
    ) -> None:
        """Persist a pending interrupt and raise InterruptException. Never returns."""
        if type not in INTERRUPT_TYPES:
            raise ValueError(f"Unknown interrupt type '{type}'")
        hours = self.default_ttl_hours if ttl_hours is None else ttl_hours
        record = interrupt_store.create_interrupt(
            session_id=context.session_id,
            agent_name=agent_name or context.get_state("agent_name") or "unknown",
            interrupt_type=type,
            reason=reason,
            data=data,
            expires_at=now_iso(hours * 3600),
        )
        logger.info("Interrupt requested id=%s session=%s type=%s", record["id"], context.session_id, type)
        raise InterruptException(record["id"], reason, data)

    def request_approval(self, context: AgentContext, reason: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.interrupt(context, reason, data, TYPE_APPROVAL)

    def request_confirmation(self, context: AgentContext, reason: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.interrupt(context, reason, data, TYPE_CONFIRMATION)

    def request_input(self, context: AgentContext, reason: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.interrupt(context, reason, data, TYPE_INPUT)

    def request_feedback(self, context: AgentContext, reason: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.interrupt(context, reason, data, TYPE_FEEDBACK)

    # -- resolving -----------------------------------------------------------

    def _load(self, interrupt_id: str) -> Dict[str, Any]:
        record = interrupt_store.get_interrupt(interrupt_id)
        if record is None:
            raise InterruptStateError(f"Interrupt '{interrupt_id}' not found", details={"interrupt_id": interrupt_id})
        return record

    @staticmethod
    def _ensure_pending(record: Dict[str, Any]) -> None:
        if record["status"] != STATUS_PENDING:
            raise InterruptStateError(
                "Interrupt has already been resolved.",
                details={"interrupt_id": record["id"], "status": record["status"]},
            )

    def _ensure_not_expired(self, record: Dict[str, Any]) -> None:
        expires_at = record.get("expires_at")
        now = now_iso()
        if expires_at and expires_at <= now:
            interrupt_store.update_interrupt(record["id"], {"status": STATUS_EXPIRED, "resolved_at": now})
            logger.info("Interrupt expired on resolve id=%s", record["id"])
            raise InterruptStateError(
                "Interrupt has expired and cannot be approved.",
                details={"interrupt_id": record["id"], "status": STATUS_EXPIRED},
            )

    def _transition(self, record: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
        fields = dict(fields, resolved_at=now_iso())
        if not interrupt_store.update_interrupt(record["id"], fields):
            # Lost a race with another resolver.
            raise InterruptStateError("Interrupt has already been resolved.", details={"interrupt_id": record["id"]})
        logger.info("Interrupt resolved id=%s status=%s", record["id"], fields["status"])
        return self._load(record["id"])

    def approve(
        self,
        interrupt_id: str,
        modifications: Optional[Dict[str, Any]] = None,
        resolved_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = self._load(interrupt_id)
        self._ensure_pending(record)
        self._ensure_not_expired(record)
        return self._transition(
            record,
            {"status": STATUS_APPROVED, "modifications": modifications, "resolved_by": resolved_by},
        )

    def respond(self, interrupt_id: str, user_response: str, resolved_by: Optional[str] = None) -> Dict[str, Any]:
        record = self._load(interrupt_id)
        self._ensure_pending(record)
        self._ensure_not_expired(record)
        return self._transition(
            record,
            {"status": STATUS_APPROVED, "user_response": user_response, "resolved_by": resolved_by},
        )

    def reject(self, interrupt_id: str, reason: Optional[str] = None, resolved_by: Optional[str] = None) -> Dict[str, Any]:
        record = self._load(interrupt_id)
        self._ensure_pending(record)
        return self._transition(
            record,
            {"status": STATUS_REJECTED, "rejection_reason": reason, "resolved_by": resolved_by},
        )

    def cancel(self, interrupt_id: str, resolved_by: Optional[str] = None) -> Dict[str, Any]:
        record = self._load(interrupt_id)
        self._ensure_pending(record)
        return self._transition(record, {"status": STATUS_CANCELLED, "resolved_by": resolved_by})

    # -- queries -------------------------------------------------------------

    def get(self, interrupt_id: str) -> Optional[Dict[str, Any]]:
        return interrupt_store.get_interrupt(interrupt_id)

    def get_pending(self, session_id: Optional[str] = None, agent_name: Optional[str] = None) -> List[Dict[str, Any]]:
        return interrupt_store.list_interrupts(session_id=session_id, agent_name=agent_name, status=STATUS_PENDING)

    def get_for_session(self, session_id: str, pending_only: bool = False) -> List[Dict[str, Any]]:
        status = STATUS_PENDING if pending_only else None
        return interrupt_store.list_interrupts(session_id=session_id, status=status)

    def check_status(self, interrupt_id: str) -> Dict[str, Any]:
        record = interrupt_store.get_interrupt(interrupt_id)
        if record is None:
            return {"approved": False, "modifications": None, "response": None, "status": "not_found"}
        return {
            "approved": record["status"] == STATUS_APPROVED,
            "modifications": record["modifications"],
            "response": record["user_response"],
            "status": record["status"],
        }

    def tool_requires_approval(self, tool_name: str) -> bool:
        """Config lookup: `tool_permissions[tool]`, then `tool_permissions['*']`, else False."""
        entry = self.tool_permissions.get(tool_name, self.tool_permissions.get("*"))
        if isinstance(entry, dict):
            return bool(entry.get("require_approval", False))
        return bool(entry)

    def approved_for_tool(self, context: AgentContext, agent_name: str, tool_name: str) -> Optional[Dict[str, Any]]:
        """
        Return an approved, not yet used interrupt for this tool in this session.

        Each approval authorises one call; used ids are remembered in context state.
        """
        consumed = list(context.get_state(CONSUMED_STATE_KEY) or [])
        for record in interrupt_store.list_interrupts(
            session_id=context.session_id, agent_name=agent_name, status=STATUS_APPROVED
        ):
            if record["id"] in consumed:
                continue
            if (record.get("data") or {}).get("tool") != tool_name:
                continue
            consumed.append(record["id"])
            context.set_state(CONSUMED_STATE_KEY, consumed)
            return record
        return None

    # -- maintenance ---------------------------------------------------------

    def expire_overdue(self) -> int:
        count = interrupt_store.expire_pending_before(now_iso())
        if count:
            logger.info("Expired %d overdue interrupts", count)
        return count

    def cleanup(self, older_than_days: int = 30) -> int:
        return interrupt_store.delete_resolved_before(now_iso(-older_than_days * 86400))
