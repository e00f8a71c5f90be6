import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from orchestrator import calendar_store, ledger, metrics
from orchestrator.classifier import ClassifierUnavailable
from orchestrator.conflicts import ConflictDetector
from orchestrator.ledger import AgentNotFound, DecisionNotFound, InvalidTransition
from orchestrator.schemas import ActionType, ClassifierResult, ConflictReport, DecisionStatus
from tests.stubs import (
    MONDAY_10,
    StubClassifier,
    build_agent,
    create_event_result,
    make_agent,
    make_envelope,
    notification_result,
)


@pytest.fixture
def agent_factory():
    created = []

    def _factory(classifier, **kwargs):
        agent = build_agent(classifier, **kwargs)
        created.append(agent)
        return agent

    yield _factory
    for agent in created:
        agent.close()


def test_high_confidence_on_free_slot_executes(agent_factory):
    make_agent()
    agent = agent_factory(StubClassifier(create_event_result(0.92)))

    outcome = agent.process(make_envelope(), "org-1")
    decision = outcome.decision

    assert decision.status is DecisionStatus.EXECUTED
    assert decision.decision_type is ActionType.CREATE_EVENT
    assert decision.executed_at is not None
    assert [o.fate for o in decision.action_outcomes] == ["executed"]
    assert decision.action_outcomes[0].idempotency_key == f"{decision.id}:0"

    events = calendar_store.list_events("user-1")
    assert len(events) == 1
    assert events[0].start_time == MONDAY_10
    assert events[0].participants == ["customer@example.com"]

    stored = ledger.get_decision(decision.id)
    assert stored.status is DecisionStatus.EXECUTED
    assert stored.llm_prompt and "meeting_request" in stored.llm_prompt
    agent_row = ledger.get_agent_config("org-1")
    assert agent_row.total_decisions == 1
    assert agent_row.successful_decisions == 1


def test_high_confidence_on_booked_slot_requires_approval(agent_factory):
    make_agent()
    existing, _ = calendar_store.book_event("user-1", "Board meeting", MONDAY_10, MONDAY_10 + timedelta(hours=1))
    agent = agent_factory(StubClassifier(create_event_result(0.92)))

    decision = agent.process(make_envelope(), "org-1").decision

    assert decision.status is DecisionStatus.REQUIRES_APPROVAL
    outcome = decision.action_outcomes[0]
    assert outcome.fate == "deferred"
    assert "calendar conflict" in outcome.reason
    assert outcome.data["conflict"]["severity"] == "high"
    assert outcome.data["conflict"]["conflicts"][0]["eventId"] == existing.id
    assert len(calendar_store.list_events("user-1")) == 1
    assert agent.executor.calls == 0


def test_low_confidence_is_rejected_without_execution(agent_factory):
    make_agent()
    agent = agent_factory(StubClassifier(create_event_result(0.3)))

    decision = agent.process(make_envelope(), "org-1").decision

    assert decision.status is DecisionStatus.REJECTED
    assert agent.executor.calls == 0
    assert [o.fate for o in decision.action_outcomes] == ["rejected"]
    assert calendar_store.list_events("user-1") == []


def test_middle_band_requires_approval(agent_factory):
    make_agent()
    agent = agent_factory(StubClassifier(create_event_result(0.7)))

    decision = agent.process(make_envelope(), "org-1").decision

    assert decision.status is DecisionStatus.REQUIRES_APPROVAL
    assert "auto-execute threshold" in decision.action_outcomes[0].reason
    assert agent.executor.calls == 0


def test_classifier_requested_approval_holds_decision(agent_factory):
    make_agent()
    result = create_event_result(0.95).model_copy(update={"requires_approval": True})
    agent = agent_factory(StubClassifier(result))

    decision = agent.process(make_envelope(), "org-1").decision

    assert decision.status is DecisionStatus.REQUIRES_APPROVAL
    assert decision.action_outcomes[0].reason == "classifier requested human approval"


def test_classifier_timeout_fails_decision(agent_factory):
    make_agent()
    agent = agent_factory(StubClassifier(create_event_result(0.95), delay=0.5), classifier_timeout=0.05)

    outcome = agent.process(make_envelope(), "org-1")

    assert outcome.result is None
    assert outcome.decision.status is DecisionStatus.FAILED
    assert outcome.decision.error_message.startswith("timeout:")
    assert metrics.snapshot()["counters"]["classifier_timeout"] == 1
    assert calendar_store.list_events("user-1") == []


def test_unavailable_classifier_is_rejected(agent_factory):
    make_agent()
    agent = agent_factory(StubClassifier(error=ClassifierUnavailable("connection refused")))

    outcome = agent.process(make_envelope(), "org-1")

    assert outcome.decision.status is DecisionStatus.REJECTED
    assert outcome.result.confidence == 0.0
    assert "unavailable" in outcome.result.reasoning


def test_unknown_org_raises_before_recording(agent_factory):
    agent = agent_factory(StubClassifier())
    with pytest.raises(AgentNotFound):
        agent.process(make_envelope(), "org-missing")
    assert ledger.list_decisions()[1] == 0


def test_dry_run_simulates_without_side_effects(agent_factory):
    make_agent(dry_run=True)
    agent = agent_factory(StubClassifier(create_event_result(0.95)))

    decision = agent.process(make_envelope(), "org-1").decision

    assert decision.status is DecisionStatus.EXECUTED
    assert decision.dry_run is True
    assert [o.fate for o in decision.action_outcomes] == ["simulated"]
    assert agent.executor.calls == 0
    assert calendar_store.list_events("user-1") == []
    assert agent.rate_limit_status("org-1")["actions_this_minute"] == 0


def test_disabled_action_type_is_held(agent_factory):
    make_agent(enabled_actions=[ActionType.SEND_NOTIFICATION])
    agent = agent_factory(StubClassifier(create_event_result(0.95)))

    decision = agent.process(make_envelope(), "org-1").decision

    assert decision.status is DecisionStatus.REQUIRES_APPROVAL
    assert "not enabled" in decision.action_outcomes[0].reason


def test_rate_limit_admits_exactly_the_budget(agent_factory):
    make_agent(max_actions_per_minute=3)
    agent = agent_factory(StubClassifier(notification_result()))

    with ThreadPoolExecutor(max_workers=4) as pool:
        decisions = list(pool.map(lambda _: agent.process(make_envelope("ticket"), "org-1").decision, range(4)))

    statuses = sorted(d.status.value for d in decisions)
    assert statuses.count("EXECUTED") == 3
    assert statuses.count("REQUIRES_APPROVAL") == 1
    held = next(d for d in decisions if d.status is DecisionStatus.REQUIRES_APPROVAL)
    assert "rate limit" in held.action_outcomes[0].reason
    assert len(agent.executor.notifier.sent) == 3


def test_concurrent_bookings_for_one_slot_book_once(agent_factory):
    make_agent()
    agent = agent_factory(StubClassifier(create_event_result(0.95)))

    with ThreadPoolExecutor(max_workers=2) as pool:
        decisions = list(pool.map(lambda _: agent.process(make_envelope(), "org-1").decision, range(2)))

    statuses = sorted(d.status.value for d in decisions)
    assert statuses == ["EXECUTED", "REQUIRES_APPROVAL"]
    booked = [e for e in calendar_store.list_events("user-1") if e.status in calendar_store.HARD_STATUSES]
    assert len(booked) == 1


def test_first_failure_skips_remaining_actions(agent_factory):
    make_agent()
    result = ClassifierResult.model_validate(
        {
            "intent": "SCHEDULING",
            "confidence": 0.95,
            "reasoning": "cancel then notify",
            "actions": [
                {"type": "CANCEL_EVENT", "params": {"eventId": "evt_missing"}},
                {"type": "SEND_NOTIFICATION", "params": {"recipientIds": ["u1"], "subject": "s", "body": "b"}},
            ],
        }
    )
    agent = agent_factory(StubClassifier(result))

    decision = agent.process(make_envelope(), "org-1").decision

    assert decision.status is DecisionStatus.FAILED
    assert [o.fate for o in decision.action_outcomes] == ["failed", "skipped"]
    assert "evt_missing" in decision.error_message
    assert len(agent.executor.notifier.sent) == 0


def test_escalation_without_recipient_is_partial(agent_factory):
    make_agent()
    result = ClassifierResult.model_validate(
        {
            "intent": "SUPPORT_REQUEST",
            "confidence": 0.95,
            "reasoning": "outage",
            "actions": [{"type": "ESCALATE", "params": {"reason": "Production outage"}}],
        }
    )
    agent = agent_factory(StubClassifier(result))

    decision = agent.process(make_envelope("outage"), "org-1").decision

    assert decision.status is DecisionStatus.EXECUTED
    assert decision.action_outcomes[0].fate == "partial"
    assert decision.error_message.startswith("partial failure:")


def test_approve_books_held_event_despite_overlap(agent_factory):
    make_agent()
    calendar_store.book_event("user-1", "Board meeting", MONDAY_10, MONDAY_10 + timedelta(hours=1))
    agent = agent_factory(StubClassifier(create_event_result(0.92)))
    held = agent.process(make_envelope(), "org-1").decision
    assert held.status is DecisionStatus.REQUIRES_APPROVAL

    approved = agent.approve(held.id, reviewer="dana", notes="customer insisted").decision

    assert approved.status is DecisionStatus.EXECUTED
    assert approved.reviewer == "dana"
    assert approved.review_notes == "customer insisted"
    assert len(calendar_store.list_events("user-1")) == 2

    with pytest.raises(InvalidTransition):
        agent.approve(held.id, reviewer="dana")


def test_reject_records_reviewer_and_reason(agent_factory):
    make_agent()
    agent = agent_factory(StubClassifier(create_event_result(0.7)))
    held = agent.process(make_envelope(), "org-1").decision

    rejected = agent.reject(held.id, reviewer="sam", reason="wrong customer").decision

    assert rejected.status is DecisionStatus.REJECTED
    assert rejected.error_message == "Rejected by sam: wrong customer"
    assert [o.fate for o in rejected.action_outcomes] == ["rejected"]
    assert calendar_store.list_events("user-1") == []


def test_review_of_unknown_decision_raises(agent_factory):
    agent = agent_factory(StubClassifier())
    with pytest.raises(DecisionNotFound):
        agent.approve("dec_missing", reviewer="dana")


def test_high_priority_hold_notifies_escalation_contact(agent_factory):
    make_agent(escalation_email="lead@example.com")
    result = create_event_result(0.7).model_copy(update={"priority": 5})
    agent = agent_factory(StubClassifier(result))

    agent.process(make_envelope(), "org-1")

    sent = agent.executor.notifier.sent
    assert len(sent) == 1
    assert sent[0]["recipients"] == ["lead@example.com"]
    assert sent[0]["subject"].startswith("Approval needed")


def test_stats_report_success_rate(agent_factory):
    make_agent()
    agent = agent_factory(StubClassifier(notification_result()))
    agent.process(make_envelope("one"), "org-1")
    agent.classifier.result = notification_result(confidence=0.1)
    agent.process(make_envelope("two"), "org-1")

    stats = agent.stats("org-1")

    assert stats["total_decisions"] == 2
    assert stats["successful_decisions"] == 1
    assert stats["success_rate"] == 0.5
    assert stats["rate_limit"]["actions_this_minute"] == 1


class BlindDetector(ConflictDetector):
    """Sees no conflicts, so overlaps only surface when the booking commits."""

    def detect_conflicts(self, subject_id, start_time, end_time, exclude_event_id=None):
        return ConflictReport()


class LockedDetector(ConflictDetector):
    def detect_conflicts(self, subject_id, start_time, end_time, exclude_event_id=None):
        raise sqlite3.OperationalError("database is locked")


def _cancel_missing_event() -> ClassifierResult:
    return ClassifierResult.model_validate(
        {
            "intent": "SCHEDULING",
            "confidence": 0.95,
            "reasoning": "cancel the old slot",
            "actions": [{"type": "CANCEL_EVENT", "params": {"eventId": "evt_missing"}}],
        }
    )


def test_failed_decision_gives_back_rate_budget(agent_factory):
    make_agent(max_actions_per_minute=1)
    failing = agent_factory(StubClassifier(_cancel_missing_event()))

    failed = failing.process(make_envelope(), "org-1").decision
    assert failed.status is DecisionStatus.FAILED
    assert failing.rate_limit_status("org-1")["actions_this_minute"] == 0

    notifying = agent_factory(StubClassifier(notification_result()), rate_limiter=failing.rate_limiter)
    decision = notifying.process(make_envelope("ticket"), "org-1").decision

    assert decision.status is DecisionStatus.EXECUTED
    assert notifying.rate_limit_status("org-1")["actions_this_minute"] == 1


def test_commit_time_conflict_is_counted_once_after_approval(agent_factory):
    make_agent(max_actions_per_minute=5)
    calendar_store.book_event("user-1", "Board meeting", MONDAY_10, MONDAY_10 + timedelta(hours=1))
    agent = agent_factory(StubClassifier(create_event_result(0.95)), detector=BlindDetector(buffer_minutes=0))

    held = agent.process(make_envelope(), "org-1").decision
    assert held.status is DecisionStatus.REQUIRES_APPROVAL
    assert held.action_outcomes[0].fate == "deferred"
    assert agent.rate_limit_status("org-1")["actions_this_minute"] == 0

    approved = agent.approve(held.id, reviewer="dana").decision

    assert approved.status is DecisionStatus.EXECUTED
    assert agent.rate_limit_status("org-1")["actions_this_minute"] == 1


def test_unexpected_policy_error_fails_the_decision(agent_factory):
    make_agent()
    agent = agent_factory(StubClassifier(create_event_result(0.95)), detector=LockedDetector(buffer_minutes=0))

    decision = agent.process(make_envelope(), "org-1").decision

    assert decision.status is DecisionStatus.FAILED
    assert decision.error_message == "OperationalError: database is locked"
    assert ledger.get_decision(decision.id).status is DecisionStatus.FAILED
    assert agent.executor.calls == 0
    assert metrics.snapshot()["counters"]["decision_failed"] == 1
