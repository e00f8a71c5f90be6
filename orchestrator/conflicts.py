"""Conflict detection for calendar-mutating actions."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from . import calendar_store, config
from .calendar_store import AvailabilityRule, CalendarEvent
from .schemas import AvailabilityIssue, ConflictDetail, ConflictReport, TimeSlot

log = logging.getLogger(__name__)

Window = Tuple[datetime, datetime]


def score_conflict(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> int:
    """0 (no overlap) to 100 (one interval contains the other); 10 for back-to-back."""
    overlap_start = max(start1, start2)
    overlap_end = min(end1, end2)
    if overlap_start >= overlap_end:
        if end1 == start2 or end2 == start1:
            return 10
        return 0

    if (start2 <= start1 and end2 >= end1) or (start1 <= start2 and end1 >= end2):
        return 100

    shorter = min(end1 - start1, end2 - start2)
    pct = (overlap_end - overlap_start) / shorter * 100
    if pct >= 75:
        score = min(80 + (pct - 75) * 0.8, 99)
    elif pct >= 50:
        score = 50 + (pct - 50) * 1.2
    elif pct >= 25:
        score = 25 + (pct - 25)
    else:
        score = max(1, pct)
    return int(round(score))


def _clock(value: str) -> timedelta:
    hours, _, minutes = value.partition(":")
    return timedelta(hours=int(hours), minutes=int(minutes or 0))


def _zone(name: str):
    try:
        return ZoneInfo(name or "UTC")
    except (KeyError, ValueError):
        log.warning("Unknown time zone on availability rule, using UTC", extra={"extra_data": {"timezone": name}})
        return timezone.utc


def _rule_window_on(rule: AvailabilityRule, day: date) -> Window:
    tz = _zone(rule.timezone)
    midnight = datetime.combine(day, time(0), tzinfo=tz)
    # Wall-clock arithmetic on the local date, then normalise to UTC.
    opens = (midnight + _clock(rule.start_time)).astimezone(timezone.utc)
    closes = (midnight + _clock(rule.end_time)).astimezone(timezone.utc)
    return opens, closes


def _rule_windows(rule: AvailabilityRule, start: datetime, end: datetime) -> List[Window]:
    tz = _zone(rule.timezone)
    day = start.astimezone(tz).date() - timedelta(days=1)
    last = end.astimezone(tz).date()
    windows: List[Window] = []
    while day <= last:
        if day.weekday() == rule.day_of_week:
            opens, closes = _rule_window_on(rule, day)
            if closes > opens and opens < end and closes > start:
                windows.append((opens, closes))
        day += timedelta(days=1)
    return windows


def _uncovered(start: datetime, end: datetime, windows: Sequence[Window]) -> List[Window]:
    gaps: List[Window] = []
    cursor = start
    for opens, closes in sorted(windows):
        if closes <= cursor:
            continue
        if opens >= end:
            break
        if opens > cursor:
            gaps.append((cursor, opens))
        cursor = max(cursor, closes)
        if cursor >= end:
            break
    if cursor < end:
        gaps.append((cursor, end))
    return gaps


def _format_span(start: datetime, end: datetime, tz_name: str) -> str:
    tz = _zone(tz_name)
    return f"{start.astimezone(tz).isoformat()}/{end.astimezone(tz).isoformat()}"


class ConflictDetector:
    """Reports overlaps and availability violations for a proposed time window.

    Read-only: nothing here writes to the calendar store.
    """

    def __init__(self, buffer_minutes: Optional[int] = None) -> None:
        minutes = config.CONFLICT_BUFFER_MINUTES if buffer_minutes is None else buffer_minutes
        self.buffer = timedelta(minutes=max(0, minutes))

    def detect_conflicts(
        self,
        subject_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_event_id: Optional[str] = None,
    ) -> ConflictReport:
        if start_time.tzinfo is None or end_time.tzinfo is None:
            raise ValueError("start_time and end_time must carry timezone information")
        if end_time <= start_time:
            raise ValueError("end_time must be after start_time")

        nearby = calendar_store.find_overlapping(
            subject_id,
            start_time - self.buffer,
            end_time + self.buffer,
            exclude_event_id=exclude_event_id,
        )
        conflicts = [detail for detail in (self._classify(event, start_time, end_time) for event in nearby) if detail]
        issues = self._availability_issues(subject_id, start_time, end_time)

        if any(c.conflict_type == "double_booking" for c in conflicts):
            severity = "high"
        elif issues:
            severity = "medium"
        else:
            severity = "low"

        return ConflictReport(
            has_conflict=bool(conflicts or issues),
            conflicts=conflicts,
            availability_issues=issues,
            severity=severity,
        )

    def check_availability(self, subject_id: str, start_time: datetime, end_time: datetime) -> bool:
        return not self.detect_conflicts(subject_id, start_time, end_time).has_conflict

    def _classify(self, event: CalendarEvent, start: datetime, end: datetime) -> Optional[ConflictDetail]:
        overlaps = event.start_time < end and event.end_time > start
        if overlaps:
            conflict_type = "tentative_overlap" if event.status == "TENTATIVE" else "double_booking"
        elif self.buffer:
            conflict_type = "adjacent_buffer_violation"
        else:
            return None
        return ConflictDetail(
            event_id=event.id,
            event_title=event.title,
            start_time=event.start_time,
            end_time=event.end_time,
            conflict_type=conflict_type,
            conflict_score=score_conflict(start, end, event.start_time, event.end_time),
        )

    def _availability_issues(self, subject_id: str, start: datetime, end: datetime) -> List[AvailabilityIssue]:
        rules = calendar_store.list_availability_rules(subject_id)
        active = [rule for rule in rules if rule.is_active]
        blocked = [rule for rule in rules if not rule.is_active]
        issues: List[AvailabilityIssue] = []

        if active:
            windows = [window for rule in active for window in _rule_windows(rule, start, end)]
            for gap_start, gap_end in _uncovered(start, end, windows):
                issues.append(
                    AvailabilityIssue(
                        message="Time is outside of available hours",
                        affected_time=_format_span(gap_start, gap_end, active[0].timezone),
                    )
                )

        for rule in blocked:
            for opens, closes in _rule_windows(rule, start, end):
                issues.append(
                    AvailabilityIssue(
                        message=f"Time conflicts with unavailable period {rule.start_time}-{rule.end_time}",
                        affected_time=_format_span(max(start, opens), min(end, closes), rule.timezone),
                    )
                )
        return issues

    def find_alternative_slots(
        self,
        subject_id: str,
        duration: timedelta,
        day: date,
        step: Optional[timedelta] = None,
    ) -> List[TimeSlot]:
        """Free slots of ``duration`` on ``day`` inside the subject's active availability."""
        if duration <= timedelta(0):
            raise ValueError("duration must be positive")
        step = step or timedelta(minutes=config.SLOT_STEP_MINUTES)
        rules = [
            rule
            for rule in calendar_store.list_availability_rules(subject_id)
            if rule.is_active and rule.day_of_week == day.weekday()
        ]
        slots: List[TimeSlot] = []
        for rule in rules:
            opens, closes = _rule_window_on(rule, day)
            if closes <= opens:
                continue
            busy = calendar_store.find_overlapping(
                subject_id, opens, closes, statuses=calendar_store.HARD_STATUSES
            )
            slot_start = opens
            while slot_start + duration <= closes:
                slot_end = slot_start + duration
                if not any(event.start_time < slot_end and event.end_time > slot_start for event in busy):
                    slots.append(TimeSlot(start_time=slot_start, end_time=slot_end))
                slot_start += step
        return slots
