import json

import pytest
import requests

from orchestrator import config
from orchestrator.actions import decode_actions
from orchestrator.classifier import (
    ClassifierTimeout,
    ClassifierUnavailable,
    HeuristicClassifier,
    OllamaClassifier,
    build_request,
    get_classifier,
    parse_classifier_output,
)
from orchestrator.schemas import ActionType, AgentConfig, InputSource
from tests.stubs import make_envelope

GOOD_ANSWER = {
    "intent": "SCHEDULING",
    "confidence": 0.91,
    "reasoning": "customer asked for a demo",
    "priority": 3,
    "actions": [
        {
            "type": "create_event",
            "params": {
                "title": "Demo",
                "startTime": "2030-01-07T10:00:00+00:00",
                "endTime": "2030-01-07T11:00:00+00:00",
                "subjectId": "user-1",
            },
        }
    ],
}


class FakeResponse:
    def __init__(self, status_code=200, content=None):
        self.status_code = status_code
        self._content = content

    def json(self):
        return {"message": {"role": "assistant", "content": self._content}}


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _request():
    return build_request(AgentConfig(org_id="org-1", model_id="llama3.1:8b"), make_envelope("Can we book a demo?"))


def test_llm_answer_is_parsed_into_actions():
    session = FakeSession(FakeResponse(content=json.dumps(GOOD_ANSWER)))
    result = OllamaClassifier("http://ollama:11434", session=session, max_attempts=1).classify(_request())

    assert result.confidence == 0.91
    assert result.decision_type is ActionType.CREATE_EVENT
    assert result.actions[0].payload.subject_id == "user-1"
    sent = session.calls[0]
    assert sent["url"] == "http://ollama:11434/api/chat"
    assert sent["json"]["format"] == "json"
    assert sent["json"]["options"]["num_predict"] == 2000


def test_malformed_answer_is_retried_then_accepted():
    session = FakeSession(
        FakeResponse(content="Sure! here you go: not json"),
        FakeResponse(content="```json\n" + json.dumps(GOOD_ANSWER) + "\n```"),
    )
    result = OllamaClassifier(session=session, max_attempts=2).classify(_request())

    assert result.confidence == 0.91
    assert len(session.calls) == 2
    assert "Previous answer was rejected" in session.calls[1]["json"]["messages"][1]["content"]


def test_persistently_malformed_answer_scores_zero():
    session = FakeSession(FakeResponse(content='{"intent": "x"}'), FakeResponse(content='{"intent": "x"}'))
    result = OllamaClassifier(session=session, max_attempts=2).classify(_request())
    assert result.confidence == 0.0
    assert result.actions == []
    assert "malformed" in result.reasoning


def test_transport_timeout_raises_classifier_timeout():
    session = FakeSession(requests.Timeout("read timed out"))
    with pytest.raises(ClassifierTimeout):
        OllamaClassifier(session=session, timeout=1).classify(_request())


def test_missing_model_is_unavailable():
    session = FakeSession(FakeResponse(status_code=404))
    with pytest.raises(ClassifierUnavailable) as excinfo:
        OllamaClassifier(session=session).classify(_request())
    assert "ollama pull" in str(excinfo.value)


def test_output_missing_required_fields_scores_zero():
    result = parse_classifier_output({"intent": "x", "actions": []})
    assert result.confidence == 0.0
    assert result.anomalies


def test_fixer_normalises_percent_confidence_and_aliases():
    result = parse_classifier_output(
        {"intent": "BILLING_QUESTION", "confidence": "85%", "reason": "invoice question", "decisions": [], "requires_approval": True}
    )
    assert result.confidence == pytest.approx(0.85)
    assert result.reasoning == "invoice question"
    assert result.requires_approval is True


def test_unknown_and_invalid_actions_become_no_action():
    actions, anomalies = decode_actions(
        [
            {"type": "LAUNCH_ROCKET", "params": {}},
            {"type": "SEND_NOTIFICATION", "params": {"subject": "missing recipients", "body": "b"}},
            "not even an object",
            {"type": "escalate", "params": {"reason": "angry customer"}, "priority": 5},
        ]
    )
    assert [a.type for a in actions] == [
        ActionType.NO_ACTION,
        ActionType.NO_ACTION,
        ActionType.NO_ACTION,
        ActionType.ESCALATE,
    ]
    assert len(anomalies) == 3
    assert "LAUNCH_ROCKET" in anomalies[0]
    assert actions[3].priority == 5


def test_heuristic_routes_urgent_intake_for_review():
    envelope = make_envelope(
        "URGENT: our integration is down and the API is broken",
        source=InputSource.EMAIL,
        structured_data={"intakeId": "in-42", "pipelineId": "pipe-support"},
    )
    request = build_request(AgentConfig(org_id="org-1"), envelope)

    result = HeuristicClassifier().classify(request)

    assert result.confidence == 0.3
    assert result.requires_approval is True
    assert [a.type for a in result.actions] == [ActionType.ASSIGN_PIPELINE, ActionType.ESCALATE]
    assert result.actions[0].payload.intake_id == "in-42"
    assert result.priority == 5


def test_heuristic_without_intake_proposes_nothing():
    result = HeuristicClassifier().classify(_request())
    assert [a.type for a in result.actions] == [ActionType.NO_ACTION]


def test_mode_switch_selects_heuristic(monkeypatch):
    monkeypatch.setattr(config, "CLASSIFIER_MODE", "heuristic")
    assert isinstance(get_classifier(), HeuristicClassifier)
    monkeypatch.setattr(config, "CLASSIFIER_MODE", "llm")
    assert isinstance(get_classifier(), OllamaClassifier)
