"""Decision ledger and agent configuration repository (SQLite).

Decisions are append-only: a row is inserted as PENDING and later receives
exactly one status transition. The only exception is a decision held for
approval, which a reviewer may move on to a final status once.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from . import db
from .audit import log_decision
from .schemas import (
    ActionOutcome,
    AgentConfig,
    AgentDecision,
    ClassifierResult,
    DecisionStatus,
    InputEnvelope,
    OrchestratorError,
)


class InvalidTransition(OrchestratorError, ValueError):
    pass


class AgentNotFound(OrchestratorError, LookupError):
    pass


class DecisionNotFound(OrchestratorError, LookupError):
    pass


ALLOWED_STATUS_TRANSITIONS = {
    DecisionStatus.PENDING: {
        DecisionStatus.EXECUTED,
        DecisionStatus.FAILED,
        DecisionStatus.REJECTED,
        DecisionStatus.REQUIRES_APPROVAL,
    },
    # Held decisions move on only through a reviewer.
    DecisionStatus.REQUIRES_APPROVAL: {
        DecisionStatus.EXECUTED,
        DecisionStatus.FAILED,
        DecisionStatus.REJECTED,
    },
}

_AGENT_STAT_FIELDS = {"total_decisions", "successful_decisions", "last_active_at", "created_at"}


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


# --------------------------------------------------------------------------- agent configs


def _row_to_agent(row: sqlite3.Row) -> AgentConfig:
    data = _loads(row["config_json"], {})
    data.update(
        {
            "agent_id": row["agent_id"],
            "org_id": row["org_id"],
            "is_active": bool(row["is_active"]),
            "total_decisions": row["total_decisions"] or 0,
            "successful_decisions": row["successful_decisions"] or 0,
            "last_active_at": db.parse_iso(row["last_active_at"]),
            "created_at": db.parse_iso(row["created_at"]),
        }
    )
    return AgentConfig.model_validate(data)


def _config_json(agent: AgentConfig) -> str:
    body = agent.model_dump(mode="json", exclude=_AGENT_STAT_FIELDS | {"agent_id", "org_id", "is_active"})
    return json.dumps(body, ensure_ascii=False)


def create_agent_config(agent: AgentConfig) -> AgentConfig:
    now = db.now_iso()
    conn = db.get_connection()
    try:
        conn.execute(
            """
            INSERT INTO agents (agent_id, org_id, config_json, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (agent.agent_id, agent.org_id, _config_json(agent), 1 if agent.is_active else 0, db.to_iso(agent.created_at), now),
        )
        conn.commit()
    except sqlite3.IntegrityError as exc:
        raise ValueError(f"An agent already exists for organization {agent.org_id}") from exc
    finally:
        conn.close()
    return agent


def find_agent_config(org_id: str) -> Optional[AgentConfig]:
    conn = db.get_connection()
    try:
        row = conn.execute("SELECT * FROM agents WHERE org_id = ?", (org_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_agent(row) if row else None


def get_agent_config(org_id: str) -> AgentConfig:
    agent = find_agent_config(org_id)
    if agent is None:
        raise AgentNotFound(f"No orchestration agent configured for organization {org_id}")
    return agent


def get_agent_by_id(agent_id: str) -> AgentConfig:
    conn = db.get_connection()
    try:
        row = conn.execute("SELECT * FROM agents WHERE agent_id = ?", (agent_id,)).fetchone()
    finally:
        conn.close()
    if row is None:
        raise AgentNotFound(f"Agent {agent_id} not found")
    return _row_to_agent(row)


def update_agent_config(org_id: str, changes: Dict[str, Any]) -> AgentConfig:
    """Apply a partial update; the merged config is re-validated before it is stored."""
    current = get_agent_config(org_id)
    by_alias = {field.alias: name for name, field in AgentConfig.model_fields.items() if field.alias}
    merged = current.model_dump()
    for key, value in changes.items():
        name = by_alias.get(key, key)
        if name in merged and name not in _AGENT_STAT_FIELDS | {"agent_id", "org_id"}:
            merged[name] = value
    updated = AgentConfig.model_validate(merged)
    conn = db.get_connection()
    try:
        conn.execute(
            "UPDATE agents SET config_json = ?, is_active = ?, updated_at = ? WHERE agent_id = ?",
            (_config_json(updated), 1 if updated.is_active else 0, db.now_iso(), updated.agent_id),
        )
        conn.commit()
    finally:
        conn.close()
    return updated


# --------------------------------------------------------------------------- decisions


def _row_to_decision(row: sqlite3.Row) -> AgentDecision:
    data = db.row_to_dict(row)
    return AgentDecision.model_validate(
        {
            "id": data["id"],
            "agent_id": data["agent_id"],
            "org_id": data["org_id"],
            "input_source": data["input_source"],
            "input_type": data["input_type"],
            "input_data": _loads(data.get("input_data"), {}),
            "llm_prompt": data.get("llm_prompt"),
            "llm_response": _loads(data.get("llm_response"), None),
            "confidence": data.get("confidence") or 0.0,
            "reasoning": data.get("reasoning"),
            "decision_type": data.get("decision_type") or "NO_ACTION",
            "actions": _loads(data.get("actions"), []),
            "status": data["status"],
            "execution_time_ms": data.get("execution_time_ms"),
            "error_message": data.get("error_message"),
            "dry_run": bool(data.get("dry_run")),
            "action_outcomes": _loads(data.get("action_outcomes"), []),
            "correlation_id": data.get("correlation_id"),
            "reviewer": data.get("reviewer"),
            "review_notes": data.get("review_notes"),
            "created_at": db.parse_iso(data["created_at"]),
            "executed_at": db.parse_iso(data.get("executed_at")),
        }
    )


def record_decision(
    agent: AgentConfig,
    envelope: InputEnvelope,
    *,
    llm_prompt: Optional[str] = None,
    dry_run: bool = False,
) -> AgentDecision:
    """Insert a PENDING decision for ``envelope`` and bump the agent's counters."""
    decision_id = f"dec_{uuid4().hex}"
    created_at = datetime.now(timezone.utc)
    input_data = envelope.model_dump(by_alias=True, mode="json")
    conn = db.get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            """
            INSERT INTO decisions (
                id, agent_id, org_id, input_source, input_type, input_data, llm_prompt,
                status, dry_run, correlation_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                decision_id,
                agent.agent_id,
                agent.org_id,
                envelope.source.value,
                envelope.type,
                _dumps(input_data),
                llm_prompt,
                DecisionStatus.PENDING.value,
                1 if dry_run else 0,
                envelope.correlation_id,
                db.to_iso(created_at),
            ),
        )
        conn.execute(
            "UPDATE agents SET total_decisions = total_decisions + 1, last_active_at = ? WHERE agent_id = ?",
            (db.to_iso(created_at), agent.agent_id),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    return AgentDecision(
        id=decision_id,
        agent_id=agent.agent_id,
        org_id=agent.org_id,
        input_source=envelope.source,
        input_type=envelope.type,
        input_data=input_data,
        llm_prompt=llm_prompt,
        dry_run=dry_run,
        correlation_id=envelope.correlation_id,
        created_at=created_at,
    )


def finalize_decision(
    decision_id: str,
    status: DecisionStatus,
    *,
    result: Optional[ClassifierResult] = None,
    llm_response: Optional[Dict[str, Any]] = None,
    action_outcomes: Optional[Iterable[ActionOutcome]] = None,
    error_message: Optional[str] = None,
    execution_time_ms: Optional[int] = None,
    dry_run: Optional[bool] = None,
    reviewer: Optional[str] = None,
    review_notes: Optional[str] = None,
) -> AgentDecision:
    """Apply the decision's status transition and everything learned along the way."""
    status = DecisionStatus(status)
    conn = db.get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT * FROM decisions WHERE id = ?", (decision_id,)).fetchone()
        if row is None:
            raise DecisionNotFound(f"Decision {decision_id} not found")
        current = DecisionStatus(row["status"])
        if status not in ALLOWED_STATUS_TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Invalid status transition {current.value} -> {status.value}")
        if current is DecisionStatus.REQUIRES_APPROVAL and not reviewer:
            raise InvalidTransition("Decisions awaiting approval can only be resolved by a reviewer")

        updates: Dict[str, Any] = {"status": status.value}
        if result is not None:
            updates.update(
                {
                    "confidence": result.confidence,
                    "reasoning": result.reasoning,
                    "decision_type": result.decision_type.value,
                    "actions": _dumps([action.model_dump(by_alias=True, mode="json") for action in result.actions]),
                }
            )
        if llm_response is not None:
            updates["llm_response"] = _dumps(llm_response)
        if action_outcomes is not None:
            updates["action_outcomes"] = _dumps([outcome.model_dump(by_alias=True, mode="json") for outcome in action_outcomes])
        if error_message is not None:
            updates["error_message"] = error_message
        if execution_time_ms is not None:
            updates["execution_time_ms"] = int(execution_time_ms)
        if dry_run is not None:
            updates["dry_run"] = 1 if dry_run else 0
        if reviewer:
            updates["reviewer"] = reviewer
            updates["review_notes"] = review_notes
        if status is DecisionStatus.EXECUTED or (status is DecisionStatus.FAILED and action_outcomes is not None):
            updates["executed_at"] = db.now_iso()

        assignments = ", ".join(f"{column} = ?" for column in updates)
        conn.execute(f"UPDATE decisions SET {assignments} WHERE id = ?", (*updates.values(), decision_id))
        if status is DecisionStatus.EXECUTED:
            conn.execute(
                "UPDATE agents SET successful_decisions = successful_decisions + 1 WHERE agent_id = ?",
                (row["agent_id"],),
            )
        conn.commit()
        refreshed = conn.execute("SELECT * FROM decisions WHERE id = ?", (decision_id,)).fetchone()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()

    decision = _row_to_decision(refreshed)
    log_decision(
        decision.id,
        decision.status.value,
        org_id=decision.org_id,
        confidence=decision.confidence,
        decision_type=decision.decision_type.value,
        error_message=decision.error_message,
        reviewer=reviewer,
    )
    return decision


def get_decision(decision_id: str) -> Optional[AgentDecision]:
    conn = db.get_connection()
    try:
        row = conn.execute("SELECT * FROM decisions WHERE id = ?", (decision_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_decision(row) if row else None


def list_decisions(
    *,
    org_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    status: Optional[str] = None,
    input_source: Optional[str] = None,
    decision_type: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[AgentDecision], int]:
    """Filtered page of decisions, newest first, plus the total matching count."""
    clauses: List[str] = []
    params: List[Any] = []
    for column, value in (
        ("org_id", org_id),
        ("agent_id", agent_id),
        ("status", status),
        ("input_source", input_source),
        ("decision_type", decision_type),
    ):
        if value:
            clauses.append(f"{column} = ?")
            params.append(getattr(value, "value", value))
    if start_date:
        clauses.append("created_at >= ?")
        params.append(db.to_iso(start_date))
    if end_date:
        clauses.append("created_at <= ?")
        params.append(db.to_iso(end_date))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    conn = db.get_connection()
    try:
        total = conn.execute(f"SELECT COUNT(*) FROM decisions {where}", params).fetchone()[0]
        rows = conn.execute(
            f"SELECT * FROM decisions {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        ).fetchall()
    finally:
        conn.close()
    return [_row_to_decision(row) for row in rows], int(total)


def status_counts(org_id: Optional[str] = None) -> Dict[str, int]:
    sql = "SELECT status, COUNT(*) AS n FROM decisions"
    params: Tuple[Any, ...] = ()
    if org_id:
        sql += " WHERE org_id = ?"
        params = (org_id,)
    sql += " GROUP BY status"
    conn = db.get_connection()
    try:
        rows = conn.execute(sql, params).fetchall()
    finally:
        conn.close()
    counts = {status.value: 0 for status in DecisionStatus}
    counts.update({row["status"]: row["n"] for row in rows})
    return counts


# --------------------------------------------------------------------------- action results


def get_action_result(idempotency_key: str) -> Optional[Dict[str, Any]]:
    conn = db.get_connection()
    try:
        row = conn.execute("SELECT * FROM action_results WHERE idempotency_key = ?", (idempotency_key,)).fetchone()
    finally:
        conn.close()
    if row is None:
        return None
    data = db.row_to_dict(row)
    data["result"] = _loads(data.pop("result_json", None), {})
    return data


def save_action_result(
    idempotency_key: str,
    decision_id: str,
    action_index: int,
    action_type: str,
    fate: str,
    result: Dict[str, Any],
) -> bool:
    """Store an action's result once; returns False when the key was already recorded."""
    conn = db.get_connection()
    try:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO action_results (idempotency_key, decision_id, action_index, action_type, fate, result_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (idempotency_key, decision_id, action_index, action_type, fate, _dumps(result), db.now_iso()),
        )
        conn.commit()
        return cursor.rowcount == 1
    finally:
        conn.close()
