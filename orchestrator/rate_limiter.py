"""Per-agent sliding-window rate limiting.

Two trailing windows (60s and 3600s) must both have room before an action
may run. A denial never drops work; the policy turns it into a hold for
human approval.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, Dict, Optional, Protocol

from . import config, db

MINUTE = 60.0
HOUR = 3600.0


@dataclass(frozen=True)
class RateLimits:
    per_minute: int
    per_hour: int


@dataclass(frozen=True)
class Admission:
    admitted: bool
    retry_after: float = 0.0
    minute_count: int = 0
    hour_count: int = 0
    # Timestamp the admitted actions were recorded under; 0.0 when nothing was recorded.
    recorded_at: float = 0.0


def _evaluate(limits: RateLimits, stamps, now: float, count: int) -> Admission:
    """Decide admission from the timestamps recorded in the last hour."""
    minute_stamps = [stamp for stamp in stamps if stamp > now - MINUTE]
    hour_stamps = [stamp for stamp in stamps if stamp > now - HOUR]
    retry_after = 0.0
    if len(minute_stamps) + count > limits.per_minute:
        # Oldest stamps expire first; wait until enough of them leave the window.
        overflow = len(minute_stamps) + count - limits.per_minute
        idx = min(overflow, len(minute_stamps)) - 1
        retry_after = max(retry_after, sorted(minute_stamps)[idx] + MINUTE - now) if idx >= 0 else MINUTE
    if len(hour_stamps) + count > limits.per_hour:
        overflow = len(hour_stamps) + count - limits.per_hour
        idx = min(overflow, len(hour_stamps)) - 1
        retry_after = max(retry_after, sorted(hour_stamps)[idx] + HOUR - now) if idx >= 0 else HOUR
    return Admission(
        admitted=retry_after == 0.0,
        retry_after=max(retry_after, 0.0),
        minute_count=len(minute_stamps),
        hour_count=len(hour_stamps),
    )


class CounterStore(Protocol):
    def admit(self, agent_id: str, limits: RateLimits, count: int, now: float, *, record: bool) -> Admission:
        ...

    def record(self, agent_id: str, count: int, now: float) -> None:
        ...

    def release(self, agent_id: str, count: int, recorded_at: float) -> None:
        ...


class InMemoryCounterStore:
    """Single-process store: one deque of timestamps per agent."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: Dict[str, Deque[float]] = defaultdict(deque)

    def _prune(self, agent_id: str, now: float) -> Deque[float]:
        events = self._events[agent_id]
        while events and events[0] <= now - HOUR:
            events.popleft()
        return events

    def admit(self, agent_id: str, limits: RateLimits, count: int, now: float, *, record: bool) -> Admission:
        with self._lock:
            events = self._prune(agent_id, now)
            admission = _evaluate(limits, events, now, count)
            if record and admission.admitted:
                events.extend([now] * count)
                admission = replace(admission, recorded_at=now)
            return admission

    def record(self, agent_id: str, count: int, now: float) -> None:
        with self._lock:
            self._prune(agent_id, now).extend([now] * count)

    def release(self, agent_id: str, count: int, recorded_at: float) -> None:
        with self._lock:
            events = self._events[agent_id]
            for _ in range(count):
                if recorded_at not in events:
                    break
                events.remove(recorded_at)


class SqliteCounterStore:
    """Shared store for several worker processes; relies on BEGIN IMMEDIATE."""

    def admit(self, agent_id: str, limits: RateLimits, count: int, now: float, *, record: bool) -> Admission:
        conn = db.get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM rate_events WHERE agent_id = ? AND recorded_at <= ?", (agent_id, now - HOUR))
            stamps = [
                row["recorded_at"]
                for row in conn.execute("SELECT recorded_at FROM rate_events WHERE agent_id = ?", (agent_id,)).fetchall()
            ]
            admission = _evaluate(limits, stamps, now, count)
            if record and admission.admitted:
                conn.executemany(
                    "INSERT INTO rate_events (agent_id, recorded_at) VALUES (?, ?)",
                    [(agent_id, now)] * count,
                )
                admission = replace(admission, recorded_at=now)
            conn.commit()
            return admission
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def record(self, agent_id: str, count: int, now: float) -> None:
        conn = db.get_connection()
        try:
            conn.executemany(
                "INSERT INTO rate_events (agent_id, recorded_at) VALUES (?, ?)",
                [(agent_id, now)] * count,
            )
            conn.commit()
        finally:
            conn.close()

    def release(self, agent_id: str, count: int, recorded_at: float) -> None:
        conn = db.get_connection()
        try:
            conn.execute(
                "DELETE FROM rate_events WHERE id IN ("
                "SELECT id FROM rate_events WHERE agent_id = ? AND recorded_at = ? ORDER BY id DESC LIMIT ?)",
                (agent_id, recorded_at, count),
            )
            conn.commit()
        finally:
            conn.close()


class RateLimiter:
    def __init__(self, store: Optional[CounterStore] = None, clock: Callable[[], float] = time.time) -> None:
        self.store = store or InMemoryCounterStore()
        self.clock = clock

    def try_admit(self, agent_id: str, limits: RateLimits, count: int = 1) -> Admission:
        """Check whether ``count`` more actions fit, without consuming budget."""
        return self.store.admit(agent_id, limits, count, self.clock(), record=False)

    def try_acquire(self, agent_id: str, limits: RateLimits, count: int = 1) -> Admission:
        """Check and consume in one step; concurrent callers cannot both take the last slot."""
        return self.store.admit(agent_id, limits, count, self.clock(), record=True)

    def record_execution(self, agent_id: str, count: int = 1) -> None:
        if count > 0:
            self.store.record(agent_id, count, self.clock())

    def release(self, agent_id: str, admission: Admission, count: int) -> None:
        """Give back up to ``count`` slots reserved by ``try_acquire`` for actions that never ran."""
        if count > 0 and admission.recorded_at:
            self.store.release(agent_id, count, admission.recorded_at)

    def status(self, agent_id: str, limits: RateLimits) -> Dict[str, object]:
        admission = self.try_admit(agent_id, limits, 0)
        return {
            "actions_this_minute": admission.minute_count,
            "actions_this_hour": admission.hour_count,
            "max_per_minute": limits.per_minute,
            "max_per_hour": limits.per_hour,
            "can_execute": admission.minute_count < limits.per_minute and admission.hour_count < limits.per_hour,
        }


def get_rate_limiter() -> RateLimiter:
    if config.RATE_LIMIT_BACKEND == "sqlite":
        return RateLimiter(SqliteCounterStore())
    return RateLimiter(InMemoryCounterStore())
