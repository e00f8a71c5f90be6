"""SQLite calendar store: events, availability rules and no-overlap booking.

Overlap is the half-open test ``existing.start < end AND existing.end > start``,
so back-to-back events never collide. ``book_event`` and ``update_event``
re-run that test inside a ``BEGIN IMMEDIATE`` transaction while holding the
subject's in-process lock, which closes the window between a conflict check
and the write.
"""

from __future__ import annotations

import json
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from . import db
from .schemas import OrchestratorError

_CLOCK_RE = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$|^24:00$")

HARD_STATUSES: Tuple[str, ...] = ("SCHEDULED", "CONFIRMED")
ACTIVE_STATUSES: Tuple[str, ...] = ("SCHEDULED", "CONFIRMED", "TENTATIVE")
EVENT_STATUSES = frozenset(ACTIVE_STATUSES + ("CANCELLED",))


class BookingConflict(OrchestratorError):
    """A write would overlap a committed event for the same subject."""

    def __init__(self, subject_id: str, conflicting_ids: Sequence[str]) -> None:
        self.subject_id = subject_id
        self.conflicting_ids = list(conflicting_ids)
        super().__init__(f"subject {subject_id} already booked: {', '.join(self.conflicting_ids)}")


class EventNotFound(OrchestratorError, LookupError):
    pass


@dataclass
class CalendarEvent:
    id: str
    subject_id: str
    title: str
    start_time: datetime
    end_time: datetime
    status: str = "SCHEDULED"
    participants: List[str] = field(default_factory=list)
    location: Optional[str] = None
    description: Optional[str] = None
    idempotency_key: Optional[str] = None
    decision_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "title": self.title,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "status": self.status,
            "participants": list(self.participants),
            "location": self.location,
        }


@dataclass
class AvailabilityRule:
    id: int
    subject_id: str
    day_of_week: int  # 0 = Monday, as datetime.weekday()
    start_time: str  # "HH:MM" local to ``timezone``
    end_time: str  # "HH:MM", "24:00" allowed
    timezone: str = "UTC"
    is_active: bool = True


class SubjectLocks:
    """One lock per subject id, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, subject_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(subject_id)
            if lock is None:
                lock = self._locks[subject_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, subject_id: str) -> Iterator[None]:
        lock = self.lock_for(subject_id)
        with lock:
            yield


SUBJECT_LOCKS = SubjectLocks()


def _row_to_event(row: Any) -> CalendarEvent:
    data = db.row_to_dict(row)
    return CalendarEvent(
        id=data["id"],
        subject_id=data["subject_id"],
        title=data["title"],
        start_time=db.parse_iso(data["start_time"]),
        end_time=db.parse_iso(data["end_time"]),
        status=data.get("status") or "SCHEDULED",
        participants=json.loads(data.get("participants") or "[]"),
        location=data.get("location"),
        description=data.get("description"),
        idempotency_key=data.get("idempotency_key"),
        decision_id=data.get("decision_id"),
    )


def _check_window(start: datetime, end: datetime) -> None:
    if start.tzinfo is None or end.tzinfo is None:
        raise ValueError("event times must carry timezone information")
    if end <= start:
        raise ValueError("end_time must be after start_time")


def _overlapping(
    conn,
    subject_id: str,
    start: datetime,
    end: datetime,
    statuses: Sequence[str],
    exclude_event_id: Optional[str] = None,
) -> List[CalendarEvent]:
    placeholders = ",".join("?" for _ in statuses)
    sql = (
        f"SELECT * FROM calendar_events WHERE subject_id = ? AND status IN ({placeholders}) "
        "AND start_time < ? AND end_time > ?"
    )
    params: List[Any] = [subject_id, *statuses, db.to_iso(end), db.to_iso(start)]
    if exclude_event_id:
        sql += " AND id != ?"
        params.append(exclude_event_id)
    sql += " ORDER BY start_time ASC"
    return [_row_to_event(row) for row in conn.execute(sql, params).fetchall()]


def find_overlapping(
    subject_id: str,
    start: datetime,
    end: datetime,
    *,
    statuses: Sequence[str] = ACTIVE_STATUSES,
    exclude_event_id: Optional[str] = None,
) -> List[CalendarEvent]:
    """Events for ``subject_id`` intersecting ``[start, end)``."""
    _check_window(start, end)
    conn = db.get_connection()
    try:
        return _overlapping(conn, subject_id, start, end, statuses, exclude_event_id)
    finally:
        conn.close()


def get_event(event_id: str) -> Optional[CalendarEvent]:
    conn = db.get_connection()
    try:
        row = conn.execute("SELECT * FROM calendar_events WHERE id = ?", (event_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_event(row) if row else None


def list_events(subject_id: str) -> List[CalendarEvent]:
    conn = db.get_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM calendar_events WHERE subject_id = ? ORDER BY start_time ASC", (subject_id,)
        ).fetchall()
    finally:
        conn.close()
    return [_row_to_event(row) for row in rows]


def book_event(
    subject_id: str,
    title: str,
    start: datetime,
    end: datetime,
    *,
    participants: Sequence[str] = (),
    location: Optional[str] = None,
    description: Optional[str] = None,
    status: str = "SCHEDULED",
    idempotency_key: Optional[str] = None,
    decision_id: Optional[str] = None,
    allow_overlap: bool = False,
) -> Tuple[CalendarEvent, bool]:
    """
    Insert an event unless it would double-book the subject.

    Returns ``(event, created)``; a repeated ``idempotency_key`` returns the
    event written the first time with ``created`` False.
    Raises BookingConflict when a scheduled or confirmed event overlaps.
    """
    _check_window(start, end)
    if status not in EVENT_STATUSES:
        raise ValueError(f"Unknown event status {status}")

    with SUBJECT_LOCKS.hold(subject_id):
        conn = db.get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            if idempotency_key:
                existing = conn.execute(
                    "SELECT * FROM calendar_events WHERE idempotency_key = ?", (idempotency_key,)
                ).fetchone()
                if existing:
                    conn.rollback()
                    return _row_to_event(existing), False

            if not allow_overlap and status in HARD_STATUSES:
                clashes = _overlapping(conn, subject_id, start, end, HARD_STATUSES)
                if clashes:
                    conn.rollback()
                    raise BookingConflict(subject_id, [event.id for event in clashes])

            event = CalendarEvent(
                id=f"evt_{uuid4().hex[:16]}",
                subject_id=subject_id,
                title=title,
                start_time=start,
                end_time=end,
                status=status,
                participants=list(participants),
                location=location,
                description=description,
                idempotency_key=idempotency_key,
                decision_id=decision_id,
            )
            now = db.now_iso()
            conn.execute(
                """
                INSERT INTO calendar_events (
                    id, subject_id, title, start_time, end_time, status, participants,
                    location, description, idempotency_key, decision_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    subject_id,
                    title,
                    db.to_iso(start),
                    db.to_iso(end),
                    status,
                    json.dumps(event.participants),
                    location,
                    description,
                    idempotency_key,
                    decision_id,
                    now,
                    now,
                ),
            )
            conn.commit()
            return event, True
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()


def update_event(
    event_id: str,
    *,
    title: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    participants: Optional[Sequence[str]] = None,
    location: Optional[str] = None,
    allow_overlap: bool = False,
) -> CalendarEvent:
    current = get_event(event_id)
    if current is None:
        raise EventNotFound(f"Event {event_id} not found")

    with SUBJECT_LOCKS.hold(current.subject_id):
        conn = db.get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM calendar_events WHERE id = ?", (event_id,)).fetchone()
            if row is None:
                raise EventNotFound(f"Event {event_id} not found")
            event = _row_to_event(row)
            if event.status == "CANCELLED":
                raise ValueError(f"Event {event_id} is cancelled")

            new_start = start or event.start_time
            new_end = end or event.end_time
            _check_window(new_start, new_end)
            if not allow_overlap and event.status in HARD_STATUSES:
                clashes = _overlapping(conn, event.subject_id, new_start, new_end, HARD_STATUSES, exclude_event_id=event_id)
                if clashes:
                    raise BookingConflict(event.subject_id, [clash.id for clash in clashes])

            event.title = title or event.title
            event.start_time = new_start
            event.end_time = new_end
            if participants is not None:
                event.participants = list(participants)
            if location is not None:
                event.location = location
            conn.execute(
                """
                UPDATE calendar_events
                SET title = ?, start_time = ?, end_time = ?, participants = ?, location = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    event.title,
                    db.to_iso(new_start),
                    db.to_iso(new_end),
                    json.dumps(event.participants),
                    event.location,
                    db.now_iso(),
                    event_id,
                ),
            )
            conn.commit()
            return event
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()


def cancel_event(event_id: str, reason: Optional[str] = None) -> CalendarEvent:
    conn = db.get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT * FROM calendar_events WHERE id = ?", (event_id,)).fetchone()
        if row is None:
            raise EventNotFound(f"Event {event_id} not found")
        conn.execute(
            "UPDATE calendar_events SET status = 'CANCELLED', cancel_reason = ?, updated_at = ? WHERE id = ?",
            (reason, db.now_iso(), event_id),
        )
        conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()
    event = _row_to_event(row)
    event.status = "CANCELLED"
    return event


def add_availability_rule(
    subject_id: str,
    day_of_week: int,
    start_time: str,
    end_time: str,
    *,
    timezone: str = "UTC",
    is_active: bool = True,
) -> AvailabilityRule:
    if not 0 <= day_of_week <= 6:
        raise ValueError("day_of_week must be between 0 (Monday) and 6 (Sunday)")
    for label, value in (("start_time", start_time), ("end_time", end_time)):
        if not _CLOCK_RE.match(value or ""):
            raise ValueError(f"{label} must be HH:MM (00:00 to 24:00), got {value!r}")
    if start_time >= end_time:
        raise ValueError("start_time must be before end_time")
    conn = db.get_connection()
    try:
        cursor = conn.execute(
            """
            INSERT INTO availability_rules (subject_id, day_of_week, start_time, end_time, timezone, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (subject_id, day_of_week, start_time, end_time, timezone, 1 if is_active else 0, db.now_iso()),
        )
        conn.commit()
        rule_id = cursor.lastrowid
    finally:
        conn.close()
    return AvailabilityRule(rule_id, subject_id, day_of_week, start_time, end_time, timezone, is_active)


def list_availability_rules(subject_id: str) -> List[AvailabilityRule]:
    conn = db.get_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM availability_rules WHERE subject_id = ? ORDER BY day_of_week, start_time", (subject_id,)
        ).fetchall()
    finally:
        conn.close()
    return [
        AvailabilityRule(
            id=row["id"],
            subject_id=row["subject_id"],
            day_of_week=row["day_of_week"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            timezone=row["timezone"] or "UTC",
            is_active=bool(row["is_active"]),
        )
        for row in rows
    ]
