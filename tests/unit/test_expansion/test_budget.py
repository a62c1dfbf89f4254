import threading
import time

import pytest

from expansion.budget import CostLedger, RateLimiter
from expansion.errors import CostCapExceeded


def test_reserve_and_settle():
    changes = []
    ledger = CostLedger(cap=0.01, on_change=lambda spent, tokens: changes.append((spent, tokens)))
    r = ledger.reserve(0.004)
    assert ledger.remaining == pytest.approx(0.006)

    charged = ledger.settle(r, 0.001, 120)
    assert charged == pytest.approx(0.001)
    assert ledger.spent == pytest.approx(0.001)
    assert ledger.tokens_used == 120
    assert ledger.remaining == pytest.approx(0.009)
    assert changes == [(pytest.approx(0.001), 120)]


def test_reserve_refused_past_cap():
    ledger = CostLedger(cap=0.005)
    ledger.reserve(0.003)
    with pytest.raises(CostCapExceeded) as exc:
        ledger.reserve(0.003)
    assert exc.value.remaining == pytest.approx(0.002)
    assert ledger.can_afford(0.002)
    assert not ledger.can_afford(0.0021)


def test_settle_never_charges_more_than_reserved():
    ledger = CostLedger(cap=0.01)
    r = ledger.reserve(0.002)
    assert ledger.settle(r, 0.5, 10) == pytest.approx(0.002)
    assert ledger.spent <= ledger.cap


def test_release_returns_budget_and_is_idempotent():
    ledger = CostLedger(cap=0.01)
    r = ledger.reserve(0.006)
    ledger.release(r)
    ledger.release(r)
    assert ledger.remaining == pytest.approx(0.01)
    assert ledger.settle(r, 0.006, 1) == 0.0
    assert ledger.spent == 0.0


def test_carried_spend_counts_against_cap():
    ledger = CostLedger(cap=1.0, spent=0.999, tokens_used=5000)
    assert not ledger.can_afford(0.002)
    assert ledger.snapshot() == {"cap": 1.0, "spent": 0.999, "reserved": 0.0, "tokens_used": 5000}


def test_concurrent_reservations_never_break_cap():
    """Many threads racing for budget: total spend stays within the cap."""
    ledger = CostLedger(cap=0.05)
    granted = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            try:
                r = ledger.reserve(0.002)
            except CostCapExceeded:
                continue
            ledger.settle(r, 0.0015, 1)
            with lock:
                granted.append(r.id)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert ledger.spent <= ledger.cap + 1e-9
    assert len(granted) == len(set(granted))
    assert ledger.tokens_used == len(granted)


def test_slow_persistence_sees_totals_in_settle_order():
    """Concurrent settles with a slow on_change never report a smaller total last."""
    seen = []

    def slow_persist(spent, tokens):
        time.sleep(0.001)
        seen.append((spent, tokens))

    ledger = CostLedger(cap=1.0, on_change=slow_persist)
    reservations = [ledger.reserve(0.002) for _ in range(40)]
    barrier = threading.Barrier(8)

    def worker(chunk):
        barrier.wait()
        for r in chunk:
            ledger.settle(r, 0.001, 10)

    threads = [threading.Thread(target=worker, args=(reservations[i::8],)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    totals = [spent for spent, _ in seen]
    assert len(seen) == 40
    assert totals == sorted(totals)
    assert [tokens for _, tokens in seen] == list(range(10, 410, 10))
    assert totals[-1] == pytest.approx(0.04)


def test_rate_limiter_concurrency():
    limiter = RateLimiter(max_concurrent=2, max_per_hour=100)
    assert limiter.try_acquire()
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    limiter.release()
    assert limiter.try_acquire()
    assert limiter.stats() == {"in_flight": 2, "calls_last_hour": 3, "refused": 1}


def test_rate_limiter_hourly_window(clock):
    limiter = RateLimiter(max_concurrent=10, max_per_hour=3, clock=clock)
    for _ in range(3):
        assert limiter.try_acquire()
        limiter.release()

    # Waiting never helps with an exhausted window
    assert not limiter.acquire(timeout=5)
    clock.advance(3599)
    assert not limiter.try_acquire()
    clock.advance(1)
    assert limiter.try_acquire()


def test_acquire_waits_for_released_slot():
    limiter = RateLimiter(max_concurrent=1, max_per_hour=100)
    assert limiter.try_acquire()

    timer = threading.Timer(0.05, limiter.release)
    timer.start()
    started = time.monotonic()
    try:
        assert limiter.acquire(timeout=2.0)
    finally:
        timer.cancel()
    assert time.monotonic() - started < 2.0


def test_acquire_times_out():
    limiter = RateLimiter(max_concurrent=1, max_per_hour=100)
    assert limiter.try_acquire()
    assert not limiter.acquire(timeout=0.05)
    assert limiter.stats()["refused"] == 1
