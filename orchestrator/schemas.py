"""Pydantic models shared by the decision engine, its stores and the HTTP API.

Attributes are snake_case; every model also accepts and emits the camelCase
names used on the wire (``rawContent``, ``autoExecuteThreshold`` ...).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel


class OrchestratorError(RuntimeError):
    """Base class for every error raised by the decision engine."""


class EnvelopeValidationError(OrchestratorError, ValueError):
    """Raised when an input envelope cannot be constructed."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_aware(value: Optional[datetime], field: str) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{field} must carry timezone information")
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InputSource(str, Enum):
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"
    DB_TRIGGER = "DB_TRIGGER"
    WORKER = "WORKER"
    API = "API"
    SCHEDULE = "SCHEDULE"


class ActionType(str, Enum):
    ASSIGN_PIPELINE = "ASSIGN_PIPELINE"
    CREATE_EVENT = "CREATE_EVENT"
    UPDATE_EVENT = "UPDATE_EVENT"
    CANCEL_EVENT = "CANCEL_EVENT"
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    TRIGGER_AUTOMATION = "TRIGGER_AUTOMATION"
    ESCALATE = "ESCALATE"
    NO_ACTION = "NO_ACTION"


CALENDAR_ACTIONS = frozenset({ActionType.CREATE_EVENT, ActionType.UPDATE_EVENT})


class DecisionStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"


ActionFate = Literal["executed", "deferred", "rejected", "failed", "partial", "simulated", "skipped"]
Severity = Literal["low", "medium", "high"]
ConflictType = Literal["double_booking", "tentative_overlap", "adjacent_buffer_violation"]


# --------------------------------------------------------------------------- envelope


class EnvelopeMetadata(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    sender_email: Optional[str] = Field(None, max_length=320)
    sender_name: Optional[str] = Field(None, max_length=200)
    related_entity_ids: Dict[str, str] = Field(default_factory=dict)
    priority_hint: Optional[int] = Field(None, ge=1, le=5)
    tags: List[str] = Field(default_factory=list)


class InputEnvelope(CamelModel):
    """Normalized inbound event. Immutable once constructed."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    source: InputSource
    type: str = Field(..., min_length=1, max_length=120)
    raw_content: str = Field("", max_length=100_000)
    structured_data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: EnvelopeMetadata = Field(default_factory=EnvelopeMetadata)
    correlation_id: Optional[str] = Field(None, max_length=120)

    @field_validator("type")
    @classmethod
    def _strip_type(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("type must not be blank")
        return value

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return _require_aware(value, "timestamp")

    def subject_hint(self) -> Optional[str]:
        """Best guess at whose calendar this envelope concerns."""
        for key in ("user_id", "userId", "subject_id", "subjectId"):
            value = self.metadata.related_entity_ids.get(key)
            if value:
                return value
        for key in ("subject_id", "subjectId", "user_id", "userId"):
            value = self.structured_data.get(key)
            if isinstance(value, str) and value:
                return value
        return None


def parse_envelope(data: Dict[str, Any]) -> InputEnvelope:
    try:
        return InputEnvelope.model_validate(data)
    except ValidationError as exc:
        raise EnvelopeValidationError(str(exc)) from exc


# --------------------------------------------------------------------------- action payloads


class AssignPipelinePayload(CamelModel):
    intake_id: str = Field(..., min_length=1)
    pipeline_id: str = Field(..., min_length=1)
    stage_id: Optional[str] = None
    assignee_id: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=5)
    notes: Optional[str] = None


class CreateEventPayload(CamelModel):
    title: str = Field(..., min_length=1, max_length=300)
    start_time: datetime
    end_time: datetime
    participants: List[str] = Field(default_factory=list)
    subject_id: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coalesce_attendees(cls, values: Any) -> Any:
        if isinstance(values, dict) and "participants" not in values and "attendees" in values:
            values = dict(values)
            values["participants"] = values.pop("attendees")
        return values

    @model_validator(mode="after")
    def _check_window(self) -> "CreateEventPayload":
        _require_aware(self.start_time, "start_time")
        _require_aware(self.end_time, "end_time")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class UpdateEventPayload(CamelModel):
    event_id: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    participants: Optional[List[str]] = None
    location: Optional[str] = None

    @model_validator(mode="after")
    def _check_window(self) -> "UpdateEventPayload":
        _require_aware(self.start_time, "start_time")
        _require_aware(self.end_time, "end_time")
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class CancelEventPayload(CamelModel):
    event_id: str = Field(..., min_length=1)
    reason: Optional[str] = None


class SendNotificationPayload(CamelModel):
    recipients: List[str] = Field(..., min_length=1)
    channel: Literal["email", "in_app", "push", "sms"] = "email"
    subject: str = Field(..., min_length=1, max_length=500)
    body: str = Field(..., min_length=1)
    priority: Literal["low", "normal", "high", "urgent"] = "normal"

    @model_validator(mode="before")
    @classmethod
    def _coalesce_recipients(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        if "recipients" not in values:
            merged: List[str] = []
            for key in ("recipientIds", "recipientEmails", "recipient_ids", "recipient_emails"):
                merged.extend(values.pop(key, None) or [])
            if merged:
                values["recipients"] = merged
        if "channel" not in values and "type" in values:
            values["channel"] = values.pop("type")
        return values


class TriggerAutomationPayload(CamelModel):
    workflow_id: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    wait_for_completion: bool = False


class EscalatePayload(CamelModel):
    reason: str = Field(..., min_length=1)
    level: int = Field(1, ge=1)
    priority: Literal["normal", "high", "urgent"] = "normal"
    escalate_to_email: Optional[str] = None
    related_entity_ids: Dict[str, str] = Field(default_factory=dict)


class NoActionPayload(CamelModel):
    reason: Optional[str] = None


ActionPayload = Union[
    AssignPipelinePayload,
    CreateEventPayload,
    UpdateEventPayload,
    CancelEventPayload,
    SendNotificationPayload,
    TriggerAutomationPayload,
    EscalatePayload,
    NoActionPayload,
]

PAYLOAD_MODELS: Dict[ActionType, type] = {
    ActionType.ASSIGN_PIPELINE: AssignPipelinePayload,
    ActionType.CREATE_EVENT: CreateEventPayload,
    ActionType.UPDATE_EVENT: UpdateEventPayload,
    ActionType.CANCEL_EVENT: CancelEventPayload,
    ActionType.SEND_NOTIFICATION: SendNotificationPayload,
    ActionType.TRIGGER_AUTOMATION: TriggerAutomationPayload,
    ActionType.ESCALATE: EscalatePayload,
    ActionType.NO_ACTION: NoActionPayload,
}


class ActionProposal(CamelModel):
    type: ActionType
    payload: ActionPayload = Field(default_factory=NoActionPayload)
    priority: int = Field(3, ge=1, le=5)
    requires_confirmation: bool = False

    @model_validator(mode="before")
    @classmethod
    def _payload_for_type(cls, values: Any) -> Any:
        # Parse the payload with the model matching ``type`` so the union never guesses.
        if not isinstance(values, dict):
            return values
        values = dict(values)
        if "payload" not in values and "params" in values:
            values["payload"] = values.pop("params")
        try:
            action_type = ActionType(values.get("type"))
        except ValueError:
            return values
        payload = values.get("payload")
        model = PAYLOAD_MODELS[action_type]
        if payload is None:
            values["payload"] = model() if action_type is ActionType.NO_ACTION else payload
        elif isinstance(payload, dict):
            values["payload"] = model.model_validate(payload)
        return values

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "ActionProposal":
        if not isinstance(self.payload, PAYLOAD_MODELS[self.type]):
            raise ValueError(f"payload does not match action type {self.type.value}")
        return self


# --------------------------------------------------------------------------- classifier boundary


class ClassifierRequest(CamelModel):
    system_prompt: str
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(2000, ge=1)
    model_id: str
    input_envelope: InputEnvelope


class ClassifierResult(CamelModel):
    intent: str = "unknown"
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    actions: List[ActionProposal] = Field(default_factory=list)
    requires_approval: bool = False
    priority: Optional[int] = Field(None, ge=1, le=5)
    anomalies: List[str] = Field(default_factory=list)

    @property
    def decision_type(self) -> ActionType:
        return self.actions[0].type if self.actions else ActionType.NO_ACTION

    @classmethod
    def unusable(cls, reason: str, *, intent: str = "unknown", anomalies: Optional[List[str]] = None) -> "ClassifierResult":
        """A zero-confidence result, which the policy always rejects."""
        return cls(intent=intent, confidence=0.0, reasoning=reason, anomalies=list(anomalies or []))


# --------------------------------------------------------------------------- configuration & decisions


class AgentConfig(CamelModel):
    agent_id: str = Field(default_factory=lambda: f"agent_{uuid4().hex[:12]}")
    org_id: str = Field(..., min_length=1, max_length=120)
    name: str = Field("Orchestration Agent", max_length=200)
    model_id: str = "llama3.1:8b"
    system_prompt: Optional[str] = None
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(2000, ge=1, le=32000)
    auto_execute_threshold: float = Field(0.85, ge=0.0, le=1.0)
    require_approval_threshold: float = Field(0.5, ge=0.0, le=1.0)
    max_actions_per_minute: int = Field(60, ge=1)
    max_actions_per_hour: int = Field(500, ge=1)
    enabled_actions: List[ActionType] = Field(default_factory=lambda: list(ActionType))
    notify_on_high_priority: bool = True
    notify_on_failure: bool = True
    escalation_email: Optional[str] = None
    dry_run: bool = False
    is_active: bool = True
    total_decisions: int = 0
    successful_decisions: int = 0
    last_active_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _ordered_thresholds(self) -> "AgentConfig":
        if self.require_approval_threshold > self.auto_execute_threshold:
            raise ValueError("require_approval_threshold must not exceed auto_execute_threshold")
        return self

    def action_enabled(self, action_type: ActionType) -> bool:
        return action_type in self.enabled_actions


class ActionOutcome(CamelModel):
    index: int
    type: ActionType
    fate: ActionFate
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class AgentDecision(CamelModel):
    id: str
    agent_id: str
    org_id: str
    input_source: InputSource
    input_type: str
    input_data: Dict[str, Any] = Field(default_factory=dict)
    llm_prompt: Optional[str] = None
    llm_response: Optional[Dict[str, Any]] = None
    confidence: float = 0.0
    reasoning: Optional[str] = None
    decision_type: ActionType = ActionType.NO_ACTION
    actions: List[ActionProposal] = Field(default_factory=list)
    status: DecisionStatus = DecisionStatus.PENDING
    execution_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    dry_run: bool = False
    action_outcomes: List[ActionOutcome] = Field(default_factory=list)
    correlation_id: Optional[str] = None
    reviewer: Optional[str] = None
    review_notes: Optional[str] = None
    created_at: datetime
    executed_at: Optional[datetime] = None


# --------------------------------------------------------------------------- conflicts


class ConflictDetail(CamelModel):
    event_id: str
    event_title: str
    start_time: datetime
    end_time: datetime
    conflict_type: ConflictType
    conflict_score: int = Field(..., ge=0, le=100)


class AvailabilityIssue(CamelModel):
    message: str
    affected_time: str


class ConflictReport(CamelModel):
    has_conflict: bool = False
    conflicts: List[ConflictDetail] = Field(default_factory=list)
    availability_issues: List[AvailabilityIssue] = Field(default_factory=list)
    severity: Severity = "low"

    def summary(self) -> str:
        parts = [f"{c.conflict_type} with '{c.event_title}' ({c.event_id})" for c in self.conflicts]
        parts.extend(issue.message for issue in self.availability_issues)
        return "; ".join(parts) if parts else "no conflict"


class TimeSlot(CamelModel):
    start_time: datetime
    end_time: datetime


# --------------------------------------------------------------------------- HTTP bodies


class CreateDecisionRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", str_strip_whitespace=True)

    input_source: InputSource
    input_type: str = Field(..., min_length=1, max_length=120)
    input_data: Dict[str, Any]
    raw_content: Optional[str] = Field(None, max_length=100_000)
    org_id: Optional[str] = Field(None, max_length=120)
    correlation_id: Optional[str] = Field(None, max_length=120)


class ApproveDecisionRequest(CamelModel):
    reviewer: str = Field("api", min_length=1, max_length=120)
    notes: Optional[str] = Field(None, max_length=2000)


class RejectDecisionRequest(CamelModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    reviewer: str = Field("api", min_length=1, max_length=120)


class AvailabilityCheckRequest(CamelModel):
    subject_id: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime
    exclude_event_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_window(self) -> "AvailabilityCheckRequest":
        _require_aware(self.start_time, "start_time")
        _require_aware(self.end_time, "end_time")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self
