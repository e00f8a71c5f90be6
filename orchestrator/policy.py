"""Decision policy: what happens to a classified envelope.

``decide`` is a pure function of the classifier result, the agent config,
the per-action gate results and the rate admission. It never performs I/O;
``evaluate_gates`` gathers the gate inputs beforehand.

Order of evaluation:

1. confidence below ``require_approval_threshold``: REJECTED, nothing runs.
2. the classifier (or any action) asks for confirmation: REQUIRES_APPROVAL.
3. confidence at or above ``auto_execute_threshold``: every action must be
   enabled, calendar writes must not hit a high-severity conflict, and the
   rate limiter must admit the batch. Any hold turns the whole decision into
   REQUIRES_APPROVAL; otherwise it executes (or is simulated when dry-run).
4. anything in between: REQUIRES_APPROVAL.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .calendar_store import get_event
from .conflicts import ConflictDetector
from .executor import resolve_subject
from .rate_limiter import Admission, RateLimits
from .schemas import (
    CALENDAR_ACTIONS,
    ActionOutcome,
    ActionProposal,
    ActionType,
    AgentConfig,
    ClassifierResult,
    ConflictReport,
    DecisionStatus,
)

log = logging.getLogger(__name__)

REJECT = "reject"
REVIEW = "review"
AUTO = "auto"

# Outcome fates that mean the action's side effect happened.
RAN = ("executed", "partial")


@dataclass
class ActionGate:
    index: int
    action: ActionProposal
    hold: Optional[str] = None
    conflict: Optional[ConflictReport] = None


@dataclass
class PolicyVerdict:
    status: DecisionStatus
    reason: str
    execute: bool = False
    outcomes: List[ActionOutcome] = field(default_factory=list)


def threshold_band(confidence: float, agent: AgentConfig) -> str:
    if confidence < agent.require_approval_threshold:
        return REJECT
    if confidence >= agent.auto_execute_threshold:
        return AUTO
    return REVIEW


def approval_requested(result: ClassifierResult) -> Optional[str]:
    if result.requires_approval:
        return "classifier requested human approval"
    for index, action in enumerate(result.actions):
        if action.requires_confirmation:
            return f"action[{index}] {action.type.value} requires confirmation"
    return None


def rate_limits_for(agent: AgentConfig) -> RateLimits:
    return RateLimits(per_minute=agent.max_actions_per_minute, per_hour=agent.max_actions_per_hour)


def counted_actions(actions: Sequence[ActionProposal]) -> int:
    """Actions that draw on the rate budget; NO_ACTION is free."""
    return sum(1 for action in actions if action.type is not ActionType.NO_ACTION)


def executed_actions(outcomes: Sequence[ActionOutcome]) -> int:
    """Counted actions whose side effect actually happened."""
    return sum(1 for outcome in outcomes if outcome.type is not ActionType.NO_ACTION and outcome.fate in RAN)


def evaluate_gates(
    result: ClassifierResult,
    agent: AgentConfig,
    detector: ConflictDetector,
    subject_hint: Optional[str] = None,
) -> List[ActionGate]:
    """Run the enabled-action and conflict checks for every proposed action."""
    gates: List[ActionGate] = []
    for index, action in enumerate(result.actions):
        gate = ActionGate(index=index, action=action)
        gates.append(gate)
        if not agent.action_enabled(action.type):
            gate.hold = f"action type {action.type.value} is not enabled for this agent"
            continue
        if action.type not in CALENDAR_ACTIONS:
            continue

        subject_id = resolve_subject(action, subject_hint)
        if not subject_id:
            gate.hold = "could not resolve whose calendar to change"
            continue
        payload = action.payload
        start, end, exclude = getattr(payload, "start_time", None), getattr(payload, "end_time", None), None
        if action.type is ActionType.UPDATE_EVENT:
            existing = get_event(payload.event_id)
            if existing is None:
                gate.hold = f"event {payload.event_id} not found"
                continue
            start, end, exclude = start or existing.start_time, end or existing.end_time, existing.id
        try:
            report = detector.detect_conflicts(subject_id, start, end, exclude_event_id=exclude)
        except ValueError as exc:
            gate.hold = f"invalid event window: {exc}"
            continue
        gate.conflict = report
        if report.severity == "high":
            gate.hold = f"calendar conflict: {report.summary()}"
    return gates


def needs_admission(result: ClassifierResult, agent: AgentConfig, gates: Sequence[ActionGate]) -> bool:
    """True when only the rate limiter stands between the decision and execution."""
    return (
        threshold_band(result.confidence, agent) == AUTO
        and approval_requested(result) is None
        and not any(gate.hold for gate in gates)
    )


def _all(result: ClassifierResult, fate: str, reason: str) -> List[ActionOutcome]:
    return [ActionOutcome(index=i, type=action.type, fate=fate, reason=reason) for i, action in enumerate(result.actions)]


def decide(
    result: ClassifierResult,
    agent: AgentConfig,
    gates: Sequence[ActionGate],
    admission: Optional[Admission],
) -> PolicyVerdict:
    band = threshold_band(result.confidence, agent)
    if band == REJECT:
        reason = f"confidence {result.confidence:.2f} below approval threshold {agent.require_approval_threshold:.2f}"
        return PolicyVerdict(DecisionStatus.REJECTED, reason, outcomes=_all(result, "rejected", reason))

    requested = approval_requested(result)
    if requested:
        return PolicyVerdict(DecisionStatus.REQUIRES_APPROVAL, requested, outcomes=_all(result, "deferred", requested))

    if band == REVIEW:
        reason = f"confidence {result.confidence:.2f} below auto-execute threshold {agent.auto_execute_threshold:.2f}"
        return PolicyVerdict(DecisionStatus.REQUIRES_APPROVAL, reason, outcomes=_all(result, "deferred", reason))

    held = [gate for gate in gates if gate.hold]
    if held:
        first = held[0]
        outcomes = [
            ActionOutcome(
                index=gate.index,
                type=gate.action.type,
                fate="deferred",
                reason=gate.hold or f"held with action[{first.index}]",
                data={"conflict": gate.conflict.model_dump(by_alias=True, mode="json")} if gate.conflict and gate.hold else {},
            )
            for gate in gates
        ]
        return PolicyVerdict(DecisionStatus.REQUIRES_APPROVAL, first.hold, outcomes=outcomes)

    if admission is None or not admission.admitted:
        retry = admission.retry_after if admission else 0.0
        reason = f"rate limit exceeded; retry after {retry:.0f}s"
        return PolicyVerdict(DecisionStatus.REQUIRES_APPROVAL, reason, outcomes=_all(result, "deferred", reason))

    if agent.dry_run:
        reason = "dry run: actions simulated"
        return PolicyVerdict(DecisionStatus.EXECUTED, reason, outcomes=_all(result, "simulated", reason))

    return PolicyVerdict(DecisionStatus.EXECUTED, "auto-executed", execute=True)
