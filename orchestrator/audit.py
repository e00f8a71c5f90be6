"""Append-only audit trail: one JSON object per line in ``config.AUDIT_LOG_PATH``.

Records carry who acted (the OS user, or the reviewer for review events),
what happened and the ids needed to find the decision again. Writing is
best effort; a full disk never fails a decision.
"""

from __future__ import annotations

import getpass
import json
import os
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from . import config

_WRITE_LOCK = threading.Lock()

_WARN_STATUSES = {"FAILED", "REJECTED"}


def _plain(value: Any) -> Any:
    """Reduce a value to something ``json.dumps`` accepts without a default hook."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(item) for item in value]
    return str(value)


def _actor() -> str:
    try:
        return getpass.getuser() or "unknown"
    except (KeyError, OSError):
        return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"


def _append(record: Dict[str, Any]) -> None:
    target = getattr(config, "AUDIT_LOG_PATH", "")
    if not target:
        return
    path = Path(target)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record, ensure_ascii=False)
        with _WRITE_LOCK, path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError:
        return


def log_event(event: str, *, details: Optional[Dict[str, Any]] = None, severity: str = "info", actor: Optional[str] = None) -> None:
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "event": event,
        "severity": severity,
        "user": actor or _actor(),
    }
    if details:
        record["details"] = _plain(details)
    _append(record)


def log_function_call(function: str, **metadata: Any) -> None:
    log_event("function_call", details={"function": function, **metadata})


def log_decision(decision_id: str, status: str, **metadata: Any) -> None:
    severity = "warning" if status in _WARN_STATUSES else "info"
    log_event("decision", details={"decision_id": decision_id, "status": status, **metadata}, severity=severity)


def log_review(decision_id: str, reviewer: str, verdict: str, notes: Optional[str] = None) -> None:
    """A human approved or rejected a held decision."""
    log_event("review", details={"decision_id": decision_id, "verdict": verdict, "notes": notes}, actor=reviewer)


def log_exception(event: str, *, error: BaseException, **metadata: Any) -> None:
    log_event(event, details={"error": type(error).__name__, "message": str(error), **metadata}, severity="error")
