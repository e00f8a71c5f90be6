from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Set

from . import config

DB_PATH = Path(config.DB_PATH)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    agent_id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL UNIQUE,
    config_json TEXT NOT NULL,
    is_active INTEGER DEFAULT 1,
    total_decisions INTEGER DEFAULT 0,
    successful_decisions INTEGER DEFAULT 0,
    last_active_at TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS decisions (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    org_id TEXT NOT NULL,
    input_source TEXT NOT NULL,
    input_type TEXT NOT NULL,
    input_data TEXT,
    llm_prompt TEXT,
    llm_response TEXT,
    confidence REAL DEFAULT 0,
    reasoning TEXT,
    decision_type TEXT DEFAULT 'NO_ACTION',
    actions TEXT,
    status TEXT DEFAULT 'PENDING',
    execution_time_ms INTEGER,
    error_message TEXT,
    dry_run INTEGER DEFAULT 0,
    action_outcomes TEXT,
    correlation_id TEXT,
    reviewer TEXT,
    review_notes TEXT,
    created_at TEXT NOT NULL,
    executed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_decisions_org_created ON decisions(org_id, created_at);
CREATE INDEX IF NOT EXISTS idx_decisions_agent_created ON decisions(agent_id, created_at);
CREATE INDEX IF NOT EXISTS idx_decisions_status ON decisions(status);

CREATE TABLE IF NOT EXISTS action_results (
    idempotency_key TEXT PRIMARY KEY,
    decision_id TEXT NOT NULL,
    action_index INTEGER NOT NULL,
    action_type TEXT NOT NULL,
    fate TEXT NOT NULL,
    result_json TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL,
    title TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    status TEXT DEFAULT 'SCHEDULED',
    participants TEXT,
    location TEXT,
    description TEXT,
    cancel_reason TEXT,
    idempotency_key TEXT UNIQUE,
    decision_id TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_subject_start ON calendar_events(subject_id, start_time);

CREATE TABLE IF NOT EXISTS availability_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id TEXT NOT NULL,
    day_of_week INTEGER NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    timezone TEXT DEFAULT 'UTC',
    is_active INTEGER DEFAULT 1,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_availability_subject ON availability_rules(subject_id);

CREATE TABLE IF NOT EXISTS rate_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    recorded_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rate_events_agent ON rate_events(agent_id, recorded_at);

CREATE TABLE IF NOT EXISTS envelope_inbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    org_id TEXT NOT NULL,
    correlation_id TEXT UNIQUE,
    envelope_json TEXT NOT NULL,
    status TEXT DEFAULT 'queued',
    processor_id TEXT,
    attempts INTEGER DEFAULT 0,
    decision_id TEXT,
    decision_status TEXT,
    error_message TEXT,
    created_at TEXT,
    started_at TEXT,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_inbox_status ON envelope_inbox(status, created_at);
"""

_INITIALISED: Set[str] = set()
_INIT_LOCK = threading.Lock()


def to_iso(value: datetime) -> str:
    """Fixed-width UTC timestamp so stored values sort lexicographically."""
    if value.tzinfo is None:
        raise ValueError("timestamps must carry timezone information")
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys()}


def get_connection() -> sqlite3.Connection:
    """Create a connection with sane defaults for concurrent access."""
    path = Path(DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    key = str(path.resolve())
    if key not in _INITIALISED:
        with _INIT_LOCK:
            if key not in _INITIALISED:
                conn.executescript(SCHEMA)
                conn.commit()
                _INITIALISED.add(key)
    return conn


def init_db() -> None:
    """Ensure every table and index exists."""
    conn = get_connection()
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()
