from datetime import datetime, timedelta, timezone

import pytest

from orchestrator import ledger
from orchestrator.ledger import InvalidTransition
from orchestrator.schemas import AgentConfig, DecisionStatus, InputSource
from tests.stubs import make_agent, make_envelope


def _decision(agent, source=InputSource.API, text="hello"):
    return ledger.record_decision(agent, make_envelope(text, source=source))


def test_agent_config_round_trip_and_duplicate_org():
    agent = make_agent(escalation_email="lead@example.com", max_actions_per_minute=7)
    loaded = ledger.get_agent_config("org-1")
    assert loaded.agent_id == agent.agent_id
    assert loaded.max_actions_per_minute == 7
    assert loaded.escalation_email == "lead@example.com"

    with pytest.raises(ValueError):
        ledger.create_agent_config(AgentConfig(org_id="org-1"))


def test_update_agent_config_validates_merged_thresholds():
    make_agent()
    updated = ledger.update_agent_config("org-1", {"autoExecuteThreshold": 0.9, "dry_run": True})
    assert updated.auto_execute_threshold == 0.9
    assert updated.dry_run is True

    with pytest.raises(ValueError):
        ledger.update_agent_config("org-1", {"require_approval_threshold": 0.95})


def test_update_ignores_counters():
    agent = make_agent()
    _decision(agent)
    updated = ledger.update_agent_config("org-1", {"total_decisions": 999, "is_active": False})
    assert updated.total_decisions == 1
    assert updated.is_active is False


def test_pending_moves_once_to_a_final_status():
    agent = make_agent()
    decision = _decision(agent)
    assert decision.status is DecisionStatus.PENDING

    final = ledger.finalize_decision(decision.id, DecisionStatus.REJECTED, error_message="low confidence")
    assert final.status is DecisionStatus.REJECTED
    assert final.executed_at is None

    with pytest.raises(InvalidTransition):
        ledger.finalize_decision(decision.id, DecisionStatus.EXECUTED)


def test_held_decision_needs_a_reviewer():
    agent = make_agent()
    decision = _decision(agent)
    ledger.finalize_decision(decision.id, DecisionStatus.REQUIRES_APPROVAL)

    with pytest.raises(InvalidTransition):
        ledger.finalize_decision(decision.id, DecisionStatus.EXECUTED)

    final = ledger.finalize_decision(decision.id, DecisionStatus.EXECUTED, reviewer="dana", review_notes="ok")
    assert final.reviewer == "dana"
    assert final.executed_at is not None
    assert ledger.get_agent_config("org-1").successful_decisions == 1


def test_list_decisions_filters_and_paginates():
    agent = make_agent()
    other = make_agent("org-2")
    ids = []
    for i in range(5):
        source = InputSource.EMAIL if i % 2 else InputSource.API
        decision = _decision(agent, source=source, text=f"msg {i}")
        ids.append(decision.id)
    _decision(other)
    ledger.finalize_decision(ids[0], DecisionStatus.EXECUTED)

    page, total = ledger.list_decisions(org_id="org-1", limit=2, offset=0)
    assert total == 5
    assert [d.id for d in page] == [ids[4], ids[3]]

    page, _ = ledger.list_decisions(org_id="org-1", limit=2, offset=4)
    assert [d.id for d in page] == [ids[0]]

    emails, total = ledger.list_decisions(org_id="org-1", input_source="EMAIL")
    assert total == 2
    assert all(d.input_source is InputSource.EMAIL for d in emails)

    executed, total = ledger.list_decisions(status=DecisionStatus.EXECUTED)
    assert total == 1 and executed[0].id == ids[0]


def test_list_decisions_date_range():
    agent = make_agent()
    decision = _decision(agent)
    now = datetime.now(timezone.utc)

    _, inside = ledger.list_decisions(start_date=now - timedelta(minutes=5), end_date=now + timedelta(minutes=5))
    _, future = ledger.list_decisions(start_date=now + timedelta(minutes=5))

    assert inside == 1
    assert future == 0
    assert ledger.get_decision(decision.id).input_data["rawContent"] == "hello"


def test_status_counts_cover_every_status():
    agent = make_agent()
    ledger.finalize_decision(_decision(agent).id, DecisionStatus.FAILED, error_message="boom")
    _decision(agent)

    counts = ledger.status_counts("org-1")

    assert counts["FAILED"] == 1
    assert counts["PENDING"] == 1
    assert counts["EXECUTED"] == 0


def test_action_results_are_written_once():
    assert ledger.save_action_result("dec_x:0", "dec_x", 0, "NO_ACTION", "executed", {"a": 1}) is True
    assert ledger.save_action_result("dec_x:0", "dec_x", 0, "NO_ACTION", "executed", {"a": 2}) is False
    assert ledger.get_action_result("dec_x:0")["result"] == {"a": 1}
