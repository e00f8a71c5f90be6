import json
import logging
from pathlib import Path

from orchestrator import JsonFormatter, config, metrics
from orchestrator.audit import log_decision, log_event
from tests.stubs import StubClassifier, build_agent, create_event_result, make_agent, make_envelope


def _read_audit_entries(path: Path) -> list[dict]:
    if not path.exists():
        return []
    entries = []
    for line in path.read_text(encoding='utf-8').splitlines():
        line = line.strip()
        if not line:
            continue
        entries.append(json.loads(line))
    return entries


def test_decision_lifecycle_is_audited():
    make_agent()
    agent = build_agent(StubClassifier(create_event_result(0.92)))
    try:
        decision = agent.process(make_envelope(), "org-1").decision
    finally:
        agent.close()

    entries = _read_audit_entries(Path(config.AUDIT_LOG_PATH))
    assert any(
        entry.get('event') == 'function_call'
        and entry['details'].get('function') == 'OrchestrationAgent.process'
        and entry['details'].get('decision_id') == decision.id
        for entry in entries
    )
    assert any(
        entry.get('event') == 'decision'
        and entry['details'].get('decision_id') == decision.id
        and entry['details'].get('status') == 'EXECUTED'
        for entry in entries
    )


def test_rejections_are_warnings(tmp_path, monkeypatch):
    audit_path = tmp_path / 'other-audit.log'
    monkeypatch.setattr(config, 'AUDIT_LOG_PATH', str(audit_path))

    log_decision('dec_1', 'REJECTED', confidence=0.1)
    log_decision('dec_2', 'EXECUTED')

    entries = _read_audit_entries(audit_path)
    assert [entry['severity'] for entry in entries] == ['warning', 'info']
    assert entries[0]['details']['confidence'] == 0.1
    assert entries[0]['timestamp'].endswith('Z')


def test_audit_disabled_without_path(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'AUDIT_LOG_PATH', '')
    log_event('noop', details={'a': 1})
    assert list(tmp_path.iterdir()) == []


def test_json_formatter_merges_extra_data():
    record = logging.LogRecord('orchestrator.agent', logging.INFO, __file__, 1, 'Decision finalized', None, None)
    record.extra_data = {'decision_id': 'dec_1', 'status': 'EXECUTED'}

    line = json.loads(JsonFormatter().format(record))

    assert line['message'] == 'Decision finalized'
    assert line['decision_id'] == 'dec_1'
    assert line['level'] == 'INFO'


def test_metrics_snapshot_flags_failure_spike():
    metrics.incr('decision_failed', 7)
    metrics.incr('decision_executed', 1)
    metrics.timing('decision_latency', 0.25)

    snap = metrics.snapshot()

    assert snap['spikes']['decision_failure_spike'] is True
    assert snap['timings']['decision_latency']['count'] == 1
    assert snap['timings']['decision_latency']['p50_ms'] == 250.0


def test_reviews_are_attributed_to_reviewer():
    make_agent()
    agent = build_agent(StubClassifier(create_event_result(0.7)))
    try:
        held = agent.process(make_envelope(), "org-1").decision
        agent.reject(held.id, reviewer='sam', reason='not ours')
    finally:
        agent.close()

    reviews = [e for e in _read_audit_entries(Path(config.AUDIT_LOG_PATH)) if e.get('event') == 'review']
    assert len(reviews) == 1
    assert reviews[0]['user'] == 'sam'
    assert reviews[0]['details'] == {'decision_id': held.id, 'verdict': 'rejected', 'notes': 'not ours'}
