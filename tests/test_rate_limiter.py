import threading

import pytest

from orchestrator.rate_limiter import InMemoryCounterStore, RateLimiter, RateLimits, SqliteCounterStore


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    return InMemoryCounterStore() if request.param == "memory" else SqliteCounterStore()


def test_minute_window_caps_and_recovers(store):
    clock = FakeClock()
    limiter = RateLimiter(store, clock=clock)
    limits = RateLimits(per_minute=2, per_hour=100)

    assert limiter.try_acquire("agent-a", limits).admitted is True
    assert limiter.try_acquire("agent-a", limits).admitted is True
    denied = limiter.try_acquire("agent-a", limits)
    assert denied.admitted is False
    assert denied.retry_after == pytest.approx(60.0)

    clock.now += 61
    assert limiter.try_acquire("agent-a", limits).admitted is True


def test_hour_window_is_independent_of_minute_window(store):
    clock = FakeClock()
    limiter = RateLimiter(store, clock=clock)
    limits = RateLimits(per_minute=10, per_hour=3)

    for _ in range(3):
        assert limiter.try_acquire("agent-a", limits).admitted is True
        clock.now += 120
    denied = limiter.try_acquire("agent-a", limits)
    assert denied.admitted is False
    assert 0 < denied.retry_after <= 3600


def test_agents_do_not_share_budget(store):
    limiter = RateLimiter(store, clock=FakeClock())
    limits = RateLimits(per_minute=1, per_hour=10)
    assert limiter.try_acquire("agent-a", limits).admitted is True
    assert limiter.try_acquire("agent-b", limits).admitted is True


def test_batch_is_admitted_whole_or_not_at_all(store):
    limiter = RateLimiter(store, clock=FakeClock())
    limits = RateLimits(per_minute=3, per_hour=10)
    assert limiter.try_acquire("agent-a", limits, count=2).admitted is True
    assert limiter.try_acquire("agent-a", limits, count=2).admitted is False
    assert limiter.status("agent-a", limits)["actions_this_minute"] == 2


def test_try_admit_does_not_consume(store):
    limiter = RateLimiter(store, clock=FakeClock())
    limits = RateLimits(per_minute=1, per_hour=10)
    for _ in range(3):
        assert limiter.try_admit("agent-a", limits).admitted is True
    assert limiter.status("agent-a", limits)["can_execute"] is True


def test_record_execution_counts_against_budget(store):
    limiter = RateLimiter(store, clock=FakeClock())
    limits = RateLimits(per_minute=2, per_hour=10)
    limiter.record_execution("agent-a", 2)
    assert limiter.try_acquire("agent-a", limits).admitted is False


def test_release_returns_unused_reservation(store):
    clock = FakeClock()
    limiter = RateLimiter(store, clock=clock)
    limits = RateLimits(per_minute=3, per_hour=10)
    limiter.record_execution("agent-a", 1)
    clock.now += 1

    reserved = limiter.try_acquire("agent-a", limits, 2)
    limiter.release("agent-a", reserved, 2)

    assert limiter.status("agent-a", limits)["actions_this_minute"] == 1
    assert limiter.try_acquire("agent-a", limits, 2).admitted is True


def test_release_of_denied_admission_is_a_noop(store):
    limiter = RateLimiter(store, clock=FakeClock())
    limits = RateLimits(per_minute=1, per_hour=10)
    limiter.record_execution("agent-a", 1)

    denied = limiter.try_acquire("agent-a", limits)
    limiter.release("agent-a", denied, 1)

    assert denied.admitted is False
    assert limiter.status("agent-a", limits)["actions_this_minute"] == 1


def test_concurrent_acquire_never_exceeds_limit():
    limiter = RateLimiter(InMemoryCounterStore(), clock=FakeClock())
    limits = RateLimits(per_minute=5, per_hour=100)
    results = []
    lock = threading.Lock()

    def worker():
        admission = limiter.try_acquire("agent-a", limits)
        with lock:
            results.append(admission.admitted)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 5
