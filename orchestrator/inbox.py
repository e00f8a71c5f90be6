"""Durable inbox of envelopes waiting for the agent worker."""

from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, Optional, Tuple

from . import db
from .schemas import InputEnvelope

ALLOWED_STATUS_TRANSITIONS = {
    "queued": {"processing"},
    "processing": {"done", "error", "queued"},
    "error": {"queued"},
}


def enqueue(org_id: str, envelope: InputEnvelope) -> Tuple[int, bool]:
    """Queue an envelope; a repeated correlation id returns the first row with ``created`` False."""
    conn = db.get_connection()
    try:
        if envelope.correlation_id:
            row = conn.execute(
                "SELECT id FROM envelope_inbox WHERE correlation_id = ?", (envelope.correlation_id,)
            ).fetchone()
            if row:
                return int(row["id"]), False
        try:
            cursor = conn.execute(
                "INSERT INTO envelope_inbox (org_id, correlation_id, envelope_json, status, created_at) VALUES (?, ?, ?, 'queued', ?)",
                (org_id, envelope.correlation_id, envelope.model_dump_json(by_alias=True), db.now_iso()),
            )
        except sqlite3.IntegrityError:
            row = conn.execute(
                "SELECT id FROM envelope_inbox WHERE correlation_id = ?", (envelope.correlation_id,)
            ).fetchone()
            return int(row["id"]), False
        conn.commit()
        return int(cursor.lastrowid), True
    finally:
        conn.close()


def claim(processor_id: str) -> Optional[Dict[str, Any]]:
    """
    Atomically claim the oldest queued envelope.
    Returns the row (with a parsed ``envelope``) or None when nothing is queued.
    """
    conn = db.get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(
            "SELECT * FROM envelope_inbox WHERE status = 'queued' ORDER BY created_at ASC, id ASC LIMIT 1"
        ).fetchone()
        if not row:
            conn.rollback()
            return None
        now = db.now_iso()
        conn.execute(
            "UPDATE envelope_inbox SET status = 'processing', processor_id = ?, started_at = ?, attempts = attempts + 1 WHERE id = ?",
            (processor_id, now, row["id"]),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    data = db.row_to_dict(row)
    data.update({"status": "processing", "processor_id": processor_id, "started_at": now})
    data["envelope"] = InputEnvelope.model_validate(json.loads(data.pop("envelope_json")))
    return data


def mark(row_id: int, status: str, **fields: Any) -> None:
    allowed_fields = {"decision_id", "decision_status", "error_message"}
    conn = db.get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT status FROM envelope_inbox WHERE id = ?", (row_id,)).fetchone()
        if row is None:
            raise ValueError(f"Inbox row {row_id} not found")
        current = row["status"]
        if status != current and status not in ALLOWED_STATUS_TRANSITIONS.get(current, set()):
            raise ValueError(f"Invalid status transition {current} -> {status}")
        updates = {"status": status, **{k: v for k, v in fields.items() if k in allowed_fields}}
        if status in {"done", "error"}:
            updates["finished_at"] = db.now_iso()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        conn.execute(f"UPDATE envelope_inbox SET {assignments} WHERE id = ?", (*updates.values(), row_id))
        conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def get(row_id: int) -> Optional[Dict[str, Any]]:
    conn = db.get_connection()
    try:
        row = conn.execute("SELECT * FROM envelope_inbox WHERE id = ?", (row_id,)).fetchone()
    finally:
        conn.close()
    return db.row_to_dict(row) if row else None


def count_by_status() -> Dict[str, int]:
    conn = db.get_connection()
    try:
        rows = conn.execute("SELECT status, COUNT(*) AS n FROM envelope_inbox GROUP BY status").fetchall()
    finally:
        conn.close()
    return {row["status"]: row["n"] for row in rows}
