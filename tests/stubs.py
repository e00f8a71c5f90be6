from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from orchestrator import ledger
from orchestrator.conflicts import ConflictDetector
from orchestrator.executor import ActionExecutor
from orchestrator.notifications import LogAutomationRunner, LogNotifier
from orchestrator.rate_limiter import InMemoryCounterStore, RateLimiter
from orchestrator.schemas import AgentConfig, ClassifierResult, InputEnvelope, InputSource

# A Monday, far enough ahead that nothing else in the suite books it.
MONDAY_10 = datetime(2030, 1, 7, 10, 0, tzinfo=timezone.utc)


class StubClassifier:
    def __init__(self, result: Optional[ClassifierResult] = None, delay: float = 0.0, error: Optional[Exception] = None):
        self.result = result or ClassifierResult(intent="noop", confidence=0.9, reasoning="stub")
        self.delay = delay
        self.error = error
        self.requests: List[Any] = []
        self._lock = threading.Lock()

    def classify(self, request):
        with self._lock:
            self.requests.append(request)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class CountingExecutor(ActionExecutor):
    def __init__(self) -> None:
        super().__init__(LogNotifier(), LogAutomationRunner())
        self.calls = 0
        self._lock = threading.Lock()

    def execute(self, action, context, index):
        with self._lock:
            self.calls += 1
        return super().execute(action, context, index)


def make_agent(org_id: str = "org-1", **overrides: Any) -> AgentConfig:
    return ledger.create_agent_config(AgentConfig(org_id=org_id, **overrides))


def build_agent(classifier: StubClassifier, **kwargs: Any):
    from orchestrator.agent import OrchestrationAgent

    kwargs.setdefault("executor", CountingExecutor())
    kwargs.setdefault("rate_limiter", RateLimiter(InMemoryCounterStore()))
    kwargs.setdefault("detector", ConflictDetector(buffer_minutes=0))
    kwargs.setdefault("classifier_timeout", 5.0)
    return OrchestrationAgent(classifier, **kwargs)


def make_envelope(text: str = "Please book a meeting", **overrides: Any) -> InputEnvelope:
    data: Dict[str, Any] = {
        "source": InputSource.API,
        "type": "meeting_request",
        "raw_content": text,
        "structured_data": {},
    }
    data.update(overrides)
    return InputEnvelope(**data)


def create_event_result(
    confidence: float,
    subject_id: str = "user-1",
    start: datetime = MONDAY_10,
    minutes: int = 60,
    title: str = "Intro call",
) -> ClassifierResult:
    return ClassifierResult.model_validate(
        {
            "intent": "SCHEDULING",
            "confidence": confidence,
            "reasoning": "customer asked for a call",
            "actions": [
                {
                    "type": "CREATE_EVENT",
                    "params": {
                        "title": title,
                        "startTime": start.isoformat(),
                        "endTime": (start + timedelta(minutes=minutes)).isoformat(),
                        "subjectId": subject_id,
                        "attendees": ["customer@example.com"],
                    },
                }
            ],
        }
    )


def notification_result(confidence: float = 0.95) -> ClassifierResult:
    return ClassifierResult.model_validate(
        {
            "intent": "SUPPORT_REQUEST",
            "confidence": confidence,
            "reasoning": "acknowledge the ticket",
            "actions": [
                {
                    "type": "SEND_NOTIFICATION",
                    "params": {"recipientEmails": ["ops@example.com"], "subject": "New ticket", "body": "A ticket arrived"},
                }
            ],
        }
    )
