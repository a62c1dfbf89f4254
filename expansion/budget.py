"""
Cost and rate budgets for AI calls.

CostLedger belongs to one job and guarantees the job never spends past
its cap: every call reserves its worst-case price up front and settles
the real price afterwards, all under one lock.

RateLimiter is shared by every job a process runs. It caps calls in
flight and calls per rolling hour. A caller may wait a bounded time for
an in-flight slot; a refused acquire means "demote this candidate".
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional
import logging

from expansion.errors import CostCapExceeded

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# COST LEDGER
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class Reservation:
    """Budget held for one in-flight call."""
    id: int
    amount: float
    open: bool = True


class CostLedger:
    """
    Atomic per-job cost accumulator.

    Invariant: spent + reserved <= cap at every moment.

    Usage:
        ledger = CostLedger(cap=0.50)
        r = ledger.reserve(0.0002)       # raises CostCapExceeded if it won't fit
        ledger.settle(r, actual_cost, tokens)
    """

    def __init__(self, cap: float, spent: float = 0.0, tokens_used: int = 0,
                 on_change: Optional[Callable[[float, int], None]] = None):
        """
        Args:
            cap: Maximum USD this job may spend
            spent: Spend carried over from an earlier attempt
            tokens_used: Tokens carried over from an earlier attempt
            on_change: Called with (spent, tokens_used) after every settle,
                while the ledger lock is held. Must not call back into the ledger.
        """
        self.cap = cap
        self._spent = spent
        self._tokens = tokens_used
        self._reserved = 0.0
        self._next_id = 0
        self._on_change = on_change
        self._lock = threading.Lock()

    @property
    def spent(self) -> float:
        with self._lock:
            return self._spent

    @property
    def tokens_used(self) -> int:
        with self._lock:
            return self._tokens

    @property
    def remaining(self) -> float:
        with self._lock:
            return max(0.0, self.cap - self._spent - self._reserved)

    def can_afford(self, amount: float) -> bool:
        with self._lock:
            return self._spent + self._reserved + amount <= self.cap + 1e-12

    def reserve(self, amount: float) -> Reservation:
        """
        Hold amount for one call.

        Raises:
            CostCapExceeded: the reservation would break the cap
        """
        with self._lock:
            if self._spent + self._reserved + amount > self.cap + 1e-12:
                raise CostCapExceeded(amount, max(0.0, self.cap - self._spent - self._reserved))
            self._reserved += amount
            self._next_id += 1
            return Reservation(self._next_id, amount)

    def settle(self, reservation: Reservation, actual_cost: float, tokens: int) -> float:
        """
        Convert a reservation into real spend.

        Charges never exceed the reservation, so the cap holds even when a
        provider under-estimates its own worst case.

        Returns:
            The amount charged
        """
        with self._lock:
            if not reservation.open:
                return 0.0
            reservation.open = False
            self._reserved -= reservation.amount
            charged = actual_cost
            if actual_cost > reservation.amount:
                log.warning(f"Call cost ${actual_cost:.6f} exceeded its reservation "
                            f"${reservation.amount:.6f}; charging the reservation")
                charged = reservation.amount
            self._spent += charged
            self._tokens += tokens

            # Still under the lock so persisted totals arrive in order
            if self._on_change:
                self._on_change(self._spent, self._tokens)
        return charged

    def release(self, reservation: Reservation):
        """Return an unused reservation (call failed or was skipped)."""
        with self._lock:
            if reservation.open:
                reservation.open = False
                self._reserved -= reservation.amount

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {
                "cap": self.cap,
                "spent": round(self._spent, 8),
                "reserved": round(self._reserved, 8),
                "tokens_used": self._tokens,
            }


# ═══════════════════════════════════════════════════════════════════════════
# RATE LIMITER
# ═══════════════════════════════════════════════════════════════════════════
class RateLimiter:
    """
    Global limiter on AI calls.

    Usage:
        limiter = RateLimiter(max_concurrent=20, max_per_hour=1000)
        if limiter.try_acquire():
            try:
                call()
            finally:
                limiter.release()
    """

    WINDOW_SECONDS = 3600.0

    def __init__(self, max_concurrent: int, max_per_hour: int,
                 clock: Callable[[], float] = time.monotonic):
        self.max_concurrent = max_concurrent
        self.max_per_hour = max_per_hour
        self._clock = clock
        self._in_flight = 0
        self._window: Deque[float] = deque()
        self._refused = 0
        self._lock = threading.Condition()

    @classmethod
    def from_settings(cls, settings) -> "RateLimiter":
        return cls(settings.global_max_concurrent_calls, settings.global_max_calls_per_hour)

    def _trim(self, now: float):
        while self._window and now - self._window[0] >= self.WINDOW_SECONDS:
            self._window.popleft()

    def try_acquire(self) -> bool:
        """Take a slot if one is free. Never waits."""
        return self.acquire(timeout=0)

    def acquire(self, timeout: float = 0) -> bool:
        """
        Take a slot, waiting up to timeout seconds for a concurrent slot.

        An exhausted hourly window is refused at once; waiting would not
        free it within any reasonable call timeout.
        """
        deadline = time.monotonic() + max(0.0, timeout)
        with self._lock:
            while True:
                now = self._clock()
                self._trim(now)
                if len(self._window) >= self.max_per_hour:
                    self._refused += 1
                    return False
                if self._in_flight < self.max_concurrent:
                    self._in_flight += 1
                    self._window.append(now)
                    return True
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._refused += 1
                    return False
                self._lock.wait(remaining)

    def release(self):
        with self._lock:
            if self._in_flight > 0:
                self._in_flight -= 1
                self._lock.notify()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            self._trim(self._clock())
            return {
                "in_flight": self._in_flight,
                "calls_last_hour": len(self._window),
                "refused": self._refused,
            }
