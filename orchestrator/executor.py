"""Action executor: one handler per action type, idempotent per decision slot."""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from . import calendar_store, ledger, metrics
from .audit import log_exception
from .calendar_store import BookingConflict, EventNotFound
from .notifications import AutomationRunner, CollaboratorError, Notifier, get_automation_runner, get_notifier
from .schemas import ActionOutcome, ActionProposal, ActionType, AgentConfig, OrchestratorError

log = logging.getLogger(__name__)


class ExecutionFailure(OrchestratorError):
    def __init__(self, action_type: ActionType, index: int, message: str) -> None:
        self.action_type = action_type
        self.index = index
        super().__init__(f"{action_type.value}[{index}]: {message}")


@dataclass
class ExecutionContext:
    decision_id: str
    agent: AgentConfig
    subject_id: Optional[str] = None
    # Set when a reviewer approved the decision knowing about any overlap.
    allow_overlap: bool = False

    def idempotency_key(self, index: int) -> str:
        return f"{self.decision_id}:{index}"


@dataclass
class ActionResult:
    index: int
    type: ActionType
    fate: str
    idempotency_key: str
    data: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    replayed: bool = False
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.fate == "executed"

    def to_outcome(self) -> ActionOutcome:
        data = dict(self.data)
        if self.replayed:
            data["replayed"] = True
        return ActionOutcome(
            index=self.index,
            type=self.type,
            fate=self.fate,
            reason=self.message,
            idempotency_key=self.idempotency_key,
            data=data,
        )


HandlerResult = Tuple[str, Dict[str, Any], Optional[str]]


def resolve_subject(action: ActionProposal, fallback: Optional[str]) -> Optional[str]:
    """Whose calendar a CREATE_EVENT or UPDATE_EVENT touches."""
    payload = action.payload
    if action.type is ActionType.CREATE_EVENT:
        return payload.subject_id or fallback
    if action.type is ActionType.UPDATE_EVENT:
        event = calendar_store.get_event(payload.event_id)
        return event.subject_id if event else None
    return None


class ActionExecutor:
    def __init__(self, notifier: Optional[Notifier] = None, automation: Optional[AutomationRunner] = None) -> None:
        self.notifier = notifier or get_notifier()
        self.automation = automation or get_automation_runner()
        self._handlers: Dict[ActionType, Callable[[ActionProposal, ExecutionContext, str], HandlerResult]] = {
            ActionType.ASSIGN_PIPELINE: self._assign_pipeline,
            ActionType.CREATE_EVENT: self._create_event,
            ActionType.UPDATE_EVENT: self._update_event,
            ActionType.CANCEL_EVENT: self._cancel_event,
            ActionType.SEND_NOTIFICATION: self._send_notification,
            ActionType.TRIGGER_AUTOMATION: self._trigger_automation,
            ActionType.ESCALATE: self._escalate,
            ActionType.NO_ACTION: self._no_action,
        }

    def execute(self, action: ActionProposal, context: ExecutionContext, index: int) -> ActionResult:
        """
        Run one action. A slot that already succeeded is replayed from the ledger.

        Raises BookingConflict when a calendar write would double-book and
        ExecutionFailure for any other hard failure.
        """
        key = context.idempotency_key(index)
        stored = ledger.get_action_result(key)
        if stored is not None:
            metrics.incr("action_replayed")
            return ActionResult(index, action.type, stored["fate"], key, stored["result"], "replayed", replayed=True)

        handler = self._handlers.get(action.type)
        if handler is None:
            log.warning("No handler for action type, treating as NO_ACTION", extra={"extra_data": {"type": str(action.type)}})
            handler = self._no_action

        start = time.perf_counter()
        try:
            fate, data, message = handler(action, context, key)
        except BookingConflict:
            metrics.incr("action_booking_conflict")
            raise
        except (EventNotFound, CollaboratorError, ValueError, sqlite3.Error) as exc:
            metrics.incr("action_failed")
            log_exception("action_failed", error=exc, decision_id=context.decision_id, index=index, type=action.type.value)
            raise ExecutionFailure(action.type, index, str(exc)) from exc
        duration_ms = int((time.perf_counter() - start) * 1000)

        metrics.incr(f"action_{fate}")
        if fate == "executed":
            ledger.save_action_result(key, context.decision_id, index, action.type.value, fate, data)
        return ActionResult(index, action.type, fate, key, data, message, duration_ms=duration_ms)

    # ------------------------------------------------------------------ handlers

    def _assign_pipeline(self, action: ActionProposal, context: ExecutionContext, key: str) -> HandlerResult:
        assignment = action.payload.model_dump(by_alias=True, exclude_none=True)
        assignment["orgId"] = context.agent.org_id
        return "executed", self.automation.assign_pipeline(assignment, idempotency_key=key), None

    def _create_event(self, action: ActionProposal, context: ExecutionContext, key: str) -> HandlerResult:
        payload = action.payload
        subject_id = payload.subject_id or context.subject_id
        if not subject_id:
            raise ValueError("no calendar subject for CREATE_EVENT")
        event, created = calendar_store.book_event(
            subject_id,
            payload.title,
            payload.start_time,
            payload.end_time,
            participants=payload.participants,
            location=payload.location,
            description=payload.description,
            idempotency_key=key,
            decision_id=context.decision_id,
            allow_overlap=context.allow_overlap,
        )
        return "executed", {"event": event.to_dict(), "created": created}, None

    def _update_event(self, action: ActionProposal, context: ExecutionContext, key: str) -> HandlerResult:
        payload = action.payload
        event = calendar_store.update_event(
            payload.event_id,
            title=payload.title,
            start=payload.start_time,
            end=payload.end_time,
            participants=payload.participants,
            location=payload.location,
            allow_overlap=context.allow_overlap,
        )
        return "executed", {"event": event.to_dict()}, None

    def _cancel_event(self, action: ActionProposal, context: ExecutionContext, key: str) -> HandlerResult:
        event = calendar_store.cancel_event(action.payload.event_id, action.payload.reason)
        return "executed", {"event": event.to_dict()}, None

    def _send_notification(self, action: ActionProposal, context: ExecutionContext, key: str) -> HandlerResult:
        payload = action.payload
        try:
            receipt = self.notifier.send(
                payload.recipients,
                payload.subject,
                payload.body,
                channel=payload.channel,
                priority=payload.priority,
                metadata={"decision_id": context.decision_id, "idempotency_key": key},
            )
        except CollaboratorError as exc:
            log.warning("Notification delivery failed", extra={"extra_data": {"decision_id": context.decision_id, "error": str(exc)}})
            return "partial", {}, f"notification not delivered: {exc}"
        return "executed", receipt, None

    def _trigger_automation(self, action: ActionProposal, context: ExecutionContext, key: str) -> HandlerResult:
        payload = action.payload
        try:
            run = self.automation.trigger(payload.workflow_id, payload.payload, idempotency_key=key)
        except CollaboratorError as exc:
            log.warning("Automation trigger failed", extra={"extra_data": {"decision_id": context.decision_id, "error": str(exc)}})
            return "partial", {}, f"automation not triggered: {exc}"
        return "executed", run, None

    def _escalate(self, action: ActionProposal, context: ExecutionContext, key: str) -> HandlerResult:
        payload = action.payload
        recipient = payload.escalate_to_email or context.agent.escalation_email
        if not recipient:
            return "partial", {}, "no escalation recipient configured"
        try:
            receipt = self.notifier.send(
                [recipient],
                f"[Escalation L{payload.level}] {payload.reason[:120]}",
                payload.reason,
                priority="urgent" if payload.priority == "urgent" else "high",
                metadata={"decision_id": context.decision_id, "related": payload.related_entity_ids},
            )
        except CollaboratorError as exc:
            log.warning("Escalation delivery failed", extra={"extra_data": {"decision_id": context.decision_id, "error": str(exc)}})
            return "partial", {}, f"escalation not delivered: {exc}"
        return "executed", {"escalated_to": recipient, **receipt}, None

    def _no_action(self, action: ActionProposal, context: ExecutionContext, key: str) -> HandlerResult:
        reason = getattr(action.payload, "reason", None)
        return "executed", {"reason": reason} if reason else {}, None
