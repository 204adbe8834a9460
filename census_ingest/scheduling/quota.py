"""
API quota admission control.

QuotaTracker keeps two counters against the upstream provider's budget:

- a daily counter that resets at UTC midnight, capped at
  ``daily_limit - reserve_for_users`` so interactive callers always keep their
  slice;
- a sliding burst window of ``burst_window_seconds`` capped at ``burst_limit``.

Reservations are charged on grant (pessimistic accounting); ``release`` only
corrects a reservation whose upstream call was never sent. All mutations are
serialized by one lock so concurrent workers never overshoot.
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import date, datetime, time, timedelta, timezone
from typing import Deque, Dict, Optional, Tuple

from census_ingest.config import ApiRateLimit
from census_ingest.domain.models import Clock, utc_now
from census_ingest.errors import QuotaExceeded
from census_ingest.utils.logging import get_logger

log = get_logger(__name__)


class QuotaTracker:
    def __init__(self, limits: ApiRateLimit, clock: Optional[Clock] = None) -> None:
        self.limits = limits
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._day: date = self._today()
        self._consumed_today = 0
        self._burst: Deque[Tuple[datetime, int]] = deque()

    @property
    def daily_budget(self) -> int:
        return self.limits.daily_limit - self.limits.reserve_for_users

    def _today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    def _roll(self, now: datetime) -> None:
        """Reset the daily counter on a new UTC day and expire old burst entries."""
        today = now.astimezone(timezone.utc).date()
        if today != self._day:
            log.info(
                "Daily API quota reset",
                extra={"previous_day": self._day.isoformat(), "consumed": self._consumed_today},
            )
            self._day = today
            self._consumed_today = 0
        horizon = now - timedelta(seconds=self.limits.burst_window_seconds)
        while self._burst and self._burst[0][0] <= horizon:
            self._burst.popleft()

    def _burst_used(self) -> int:
        return sum(cost for _, cost in self._burst)

    def reserve(self, cost: int = 1) -> bool:
        """Charge ``cost`` calls if both windows allow it; return whether granted."""
        if cost < 0:
            raise ValueError(f"cost must be non-negative, got {cost}")
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._consumed_today + cost > self.daily_budget:
                return False
            if self._burst_used() + cost > self.limits.burst_limit:
                return False
            self._consumed_today += cost
            if cost:
                self._burst.append((now, cost))
            return True

    def reserve_or_raise(self, cost: int = 1) -> None:
        if not self.reserve(cost):
            raise QuotaExceeded(
                f"API quota cannot cover {cost} call(s)", details=self.snapshot()
            )

    def release(self, cost: int) -> None:
        """Return ``cost`` unsent calls; never drives a counter below zero."""
        if cost <= 0:
            return
        with self._lock:
            self._roll(self._clock())
            self._consumed_today = max(0, self._consumed_today - cost)
            remaining = cost
            while remaining and self._burst:
                ts, charged = self._burst.pop()
                if charged > remaining:
                    self._burst.append((ts, charged - remaining))
                    remaining = 0
                else:
                    remaining -= charged

    def remaining(self) -> int:
        with self._lock:
            self._roll(self._clock())
            return max(0, self.daily_budget - self._consumed_today)

    @property
    def consumed_today(self) -> int:
        with self._lock:
            self._roll(self._clock())
            return self._consumed_today

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            now = self._clock()
            self._roll(now)
            reset_at = datetime.combine(
                self._day + timedelta(days=1), time.min, tzinfo=timezone.utc
            )
            return {
                "consumedToday": self._consumed_today,
                "dailyBudget": self.daily_budget,
                "remainingToday": max(0, self.daily_budget - self._consumed_today),
                "burstInWindow": self._burst_used(),
                "burstLimit": self.limits.burst_limit,
                "resetAt": reset_at.isoformat(),
            }


__all__ = ["QuotaTracker"]
