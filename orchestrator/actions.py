"""Strict decoding of the action list proposed by the classifier."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from pydantic import ValidationError

from .schemas import ActionProposal, ActionType, NoActionPayload

log = logging.getLogger(__name__)


def _fallback(reason: str, priority: Any = 3) -> ActionProposal:
    if not isinstance(priority, int) or not 1 <= priority <= 5:
        priority = 3
    return ActionProposal(type=ActionType.NO_ACTION, payload=NoActionPayload(reason=reason), priority=priority)


def decode_action(raw: Any, index: int) -> Tuple[ActionProposal, List[str]]:
    """Decode one proposed action; anything unrecognised becomes NO_ACTION."""
    if not isinstance(raw, dict):
        note = f"action[{index}] is not an object"
        return _fallback(note), [note]

    entry: Dict[str, Any] = dict(raw)
    type_name = str(entry.get("type") or "").strip().upper()
    try:
        ActionType(type_name)
    except ValueError:
        note = f"action[{index}] has unknown type {entry.get('type')!r}"
        return _fallback(note, entry.get("priority")), [note]

    entry["type"] = type_name
    if "payload" not in entry and "params" not in entry:
        entry["payload"] = {}
    try:
        return ActionProposal.model_validate(entry), []
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        note = f"action[{index}] {type_name} payload invalid: {', '.join(fields) or 'unknown field'}"
        return _fallback(note, entry.get("priority")), [note]


def decode_actions(raw_actions: Any) -> Tuple[List[ActionProposal], List[str]]:
    if raw_actions is None:
        return [], []
    if not isinstance(raw_actions, list):
        return [_fallback("actions is not a list")], ["actions is not a list"]

    decoded: List[ActionProposal] = []
    anomalies: List[str] = []
    for index, raw in enumerate(raw_actions):
        action, notes = decode_action(raw, index)
        decoded.append(action)
        anomalies.extend(notes)
    if anomalies:
        log.warning("Classifier proposed malformed actions", extra={"extra_data": {"anomalies": anomalies}})
    return decoded, anomalies
