"""Outbound collaborators: notifications, escalations and automation runs.

Each collaborator either posts to a configured webhook with ``requests`` or,
when no URL is configured, writes the request to the log and audit trail.
Failures surface as ``CollaboratorError``; callers decide whether that is
fatal.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, Optional, Protocol, Sequence

import requests

from . import config
from .audit import log_event
from .schemas import OrchestratorError

log = logging.getLogger(__name__)

# Log-only collaborators remember this many recent requests for inspection.
KEEP_RECENT = 100


class CollaboratorError(OrchestratorError):
    pass


class Notifier(Protocol):
    def send(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        *,
        channel: str = "email",
        priority: str = "normal",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...


class AutomationRunner(Protocol):
    def trigger(self, workflow_id: str, payload: Dict[str, Any], *, idempotency_key: str) -> Dict[str, Any]:
        ...

    def assign_pipeline(self, assignment: Dict[str, Any], *, idempotency_key: str) -> Dict[str, Any]:
        ...


def _post(url: str, body: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
    headers = {"Content-Type": "application/json"}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    try:
        resp = requests.post(url, json=body, headers=headers, timeout=config.COLLABORATOR_TIMEOUT)
    except requests.RequestException as exc:
        raise CollaboratorError(f"{url}: {exc}") from exc
    if resp.status_code >= 400:
        raise CollaboratorError(f"{url}: HTTP {resp.status_code}")
    try:
        data = resp.json()
    except ValueError:
        data = {}
    return data if isinstance(data, dict) else {"response": data}


class WebhookNotifier:
    def __init__(self, url: str) -> None:
        self.url = url

    def send(self, recipients, subject, body, *, channel="email", priority="normal", metadata=None):
        response = _post(
            self.url,
            {
                "recipients": list(recipients),
                "subject": subject,
                "body": body,
                "channel": channel,
                "priority": priority,
                "metadata": metadata or {},
            },
        )
        return {"delivered": True, "channel": channel, "recipients": len(recipients), "response": response}


class LogNotifier:
    """Records notifications instead of delivering them."""

    def __init__(self, keep: int = KEEP_RECENT) -> None:
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=keep)

    def send(self, recipients, subject, body, *, channel="email", priority="normal", metadata=None):
        message = {
            "recipients": list(recipients),
            "subject": subject,
            "channel": channel,
            "priority": priority,
            "metadata": metadata or {},
        }
        self.sent.append({**message, "body": body})
        log.info("Notification queued", extra={"extra_data": message})
        log_event("notification", details=message)
        return {"delivered": True, "channel": channel, "recipients": len(message["recipients"])}


class WebhookAutomationRunner:
    def __init__(self, url: str) -> None:
        self.url = url.rstrip("/")

    def trigger(self, workflow_id, payload, *, idempotency_key):
        response = _post(f"{self.url}/workflows/{workflow_id}/runs", {"payload": payload}, idempotency_key)
        return {"workflow_id": workflow_id, "run": response}

    def assign_pipeline(self, assignment, *, idempotency_key):
        response = _post(f"{self.url}/pipelines/assignments", assignment, idempotency_key)
        return {"assignment": assignment, "response": response}


class LogAutomationRunner:
    """Accepts automation requests and records them; nothing runs."""

    def __init__(self, keep: int = KEEP_RECENT) -> None:
        self.runs: Deque[Dict[str, Any]] = deque(maxlen=keep)
        self.assignments: Deque[Dict[str, Any]] = deque(maxlen=keep)

    def trigger(self, workflow_id, payload, *, idempotency_key):
        run = {"workflow_id": workflow_id, "payload": payload, "idempotency_key": idempotency_key}
        self.runs.append(run)
        log_event("automation_triggered", details=run)
        return {"workflow_id": workflow_id, "run_id": idempotency_key, "status": "queued"}

    def assign_pipeline(self, assignment, *, idempotency_key):
        record = {**assignment, "idempotency_key": idempotency_key}
        self.assignments.append(record)
        log_event("pipeline_assigned", details=record)
        return {"assignment": assignment, "status": "assigned"}


def get_notifier() -> Notifier:
    if config.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(config.NOTIFY_WEBHOOK_URL)
    return LogNotifier()


def get_automation_runner() -> AutomationRunner:
    if config.AUTOMATION_WEBHOOK_URL:
        return WebhookAutomationRunner(config.AUTOMATION_WEBHOOK_URL)
    return LogAutomationRunner()
