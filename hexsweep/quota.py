"""Daily/per-second call budget and the FIFO gate that spends it."""
from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from . import config
from .errors import QuotaExceededError

logger = logging.getLogger(__name__)

LOW = "low"
MEDIUM = "medium"
HIGH = "high"
CRITICAL = "critical"


@dataclass
class QuotaEstimate:
    estimated_calls: int
    current_daily_usage: int
    remaining_quota: int
    can_process: bool
    risk_level: str
    recommendations: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estimated_calls": self.estimated_calls,
            "current_daily_usage": self.current_daily_usage,
            "remaining_quota": self.remaining_quota,
            "can_process": self.can_process,
            "risk_level": self.risk_level,
            "recommendations": list(self.recommendations),
        }


def classify_risk(estimated_calls: int, remaining: int) -> str:
    if estimated_calls > remaining * config.RISK_CRITICAL_SHARE:
        return CRITICAL
    if estimated_calls > remaining * config.RISK_HIGH_SHARE:
        return HIGH
    if estimated_calls > remaining * config.RISK_MEDIUM_SHARE:
        return MEDIUM
    return LOW


_RECOMMENDATIONS = {
    CRITICAL: [
        "Request exceeds 80% of remaining quota",
        "Consider processing in smaller batches",
        "Wait for daily quota reset",
    ],
    HIGH: ["Request uses significant portion of remaining quota", "Monitor usage closely"],
    MEDIUM: ["Request uses moderate portion of remaining quota", "Proceed with caution"],
    LOW: ["Request well within quota limits", "Safe to proceed"],
}


class QuotaBudget:
    """Call ceilings shared by every worker.

    ``try_reserve`` is the only way to spend quota and is atomic. The daily
    counter resets once ``DAILY_RESET_SECONDS`` have passed since the last
    reset; the per-second count covers admissions in the trailing second.
    """

    def __init__(
        self,
        daily_limit: Optional[int] = None,
        per_second_limit: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        daily_reset_seconds: Optional[float] = None,
    ) -> None:
        self.daily_limit = int(daily_limit if daily_limit is not None else config.DAILY_CALL_LIMIT)
        self.per_second_limit = int(
            per_second_limit if per_second_limit is not None else config.PER_SECOND_CALL_LIMIT
        )
        if self.daily_limit < 0 or self.per_second_limit <= 0:
            raise ValueError("daily_limit must be >= 0 and per_second_limit must be > 0")
        self.daily_reset_seconds = float(
            daily_reset_seconds if daily_reset_seconds is not None else config.DAILY_RESET_SECONDS
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._daily_used = 0
        self._window: Deque[float] = deque()
        self._daily_started = clock()
        self.last_daily_reset = datetime.now(timezone.utc)

    @property
    def daily_used(self) -> int:
        with self._lock:
            self._roll(self._clock())
            return self._daily_used

    def _roll(self, now: float) -> None:
        if now - self._daily_started >= self.daily_reset_seconds:
            self._daily_used = 0
            self._daily_started = now
            self.last_daily_reset = datetime.now(timezone.utc)
            logger.info("Daily API quota reset")
        while self._window and now - self._window[0] >= 1.0:
            self._window.popleft()

    def try_reserve(self) -> bool:
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._daily_used >= self.daily_limit:
                return False
            if len(self._window) >= self.per_second_limit:
                return False
            self._daily_used += 1
            self._window.append(now)
            return True

    def daily_exhausted(self) -> bool:
        with self._lock:
            self._roll(self._clock())
            return self._daily_used >= self.daily_limit

    def seconds_until_window_reset(self) -> float:
        with self._lock:
            now = self._clock()
            self._roll(now)
            if len(self._window) < self.per_second_limit:
                return 0.0
            return max(0.0, 1.0 - (now - self._window[0]))

    def status(self) -> Dict[str, Any]:
        with self._lock:
            self._roll(self._clock())
            daily_used = self._daily_used
            per_second_used = len(self._window)
        return {
            "daily_used": daily_used,
            "daily_remaining": max(0, self.daily_limit - daily_used),
            "daily_usage_percentage": (daily_used / self.daily_limit * 100.0) if self.daily_limit else 100.0,
            "per_second_used": per_second_used,
            "per_second_remaining": max(0, self.per_second_limit - per_second_used),
            "last_daily_reset": self.last_daily_reset.replace(microsecond=0).isoformat(),
        }

    def estimate(
        self,
        cell_count: int,
        avg_probes_per_cell: Optional[float] = None,
        avg_pages_per_probe: Optional[float] = None,
    ) -> QuotaEstimate:
        if avg_probes_per_cell is None:
            avg_probes_per_cell = config.EST_PROBES_PER_CELL
        if avg_pages_per_probe is None:
            avg_pages_per_probe = config.EST_PAGES_PER_PROBE
        estimated_calls = int(math.ceil(cell_count * avg_probes_per_cell * avg_pages_per_probe))
        status = self.status()
        remaining = status["daily_remaining"]
        risk = classify_risk(estimated_calls, remaining)
        can_process = risk != CRITICAL and estimated_calls <= remaining
        logger.info(
            "Quota estimate for %s cells: calls=%s remaining=%s risk=%s",
            cell_count,
            estimated_calls,
            remaining,
            risk,
        )
        return QuotaEstimate(
            estimated_calls=estimated_calls,
            current_daily_usage=status["daily_used"],
            remaining_quota=remaining,
            can_process=can_process,
            risk_level=risk,
            recommendations=list(_RECOMMENDATIONS[risk]),
        )

    def usage_trends(self) -> Dict[str, float]:
        with self._lock:
            now = self._clock()
            self._roll(now)
            elapsed = now - self._daily_started
            used = self._daily_used
        hours = elapsed / 3600.0
        hourly_rate = used / max(hours, 1.0)
        return {
            "current_hour": float(math.floor(hours)),
            "estimated_hourly_rate": hourly_rate,
            "projected_daily_usage": hourly_rate * 24.0,
            "seconds_to_reset": max(0.0, self.daily_reset_seconds - elapsed),
        }

    def detailed_report(self) -> str:
        status = self.status()
        trends = self.usage_trends()
        lines = [
            "API quota report",
            f"Daily usage: {status['daily_used']}/{self.daily_limit} ({status['daily_usage_percentage']:.1f}%)",
            f"Remaining: {status['daily_remaining']} calls",
            f"Per-second: {status['per_second_used']}/{self.per_second_limit}",
            f"Hourly rate: {trends['estimated_hourly_rate']:.1f} calls/hour",
            f"Projected daily: {trends['projected_daily_usage']:.0f} calls",
            f"Time to reset: {trends['seconds_to_reset'] / 3600.0:.1f} hours",
            f"Last reset: {status['last_daily_reset']}",
        ]
        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._daily_used = 0
            self._window.clear()
            self._daily_started = self._clock()
            self.last_daily_reset = datetime.now(timezone.utc)


class RateGate:
    """Strict FIFO admission over a QuotaBudget.

    Only the caller at the head of the queue can be admitted, and consecutive
    admissions are at least ``min_interval`` seconds apart.
    """

    def __init__(
        self,
        budget: QuotaBudget,
        min_interval: Optional[float] = None,
        jitter: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.budget = budget
        self.min_interval = float(
            min_interval if min_interval is not None else 1.0 / budget.per_second_limit
        )
        self.jitter = float(jitter if jitter is not None else config.RATE_GATE_JITTER_SECONDS)
        self._clock = clock
        self._cond = threading.Condition()
        self._waiters: Deque[object] = deque()
        self._last_admit: Optional[float] = None
        self.admitted_count = 0

    def queue_length(self) -> int:
        with self._cond:
            return len(self._waiters)

    def wait_for_slot(self, timeout: Optional[float] = None) -> None:
        token = object()
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            self._waiters.append(token)
            try:
                while True:
                    wait: Optional[float] = None
                    if self._waiters[0] is token:
                        if self.budget.daily_exhausted():
                            raise QuotaExceededError(
                                "Daily API quota exhausted",
                                remaining=0,
                            )
                        now = self._clock()
                        spacing = 0.0
                        if self._last_admit is not None:
                            spacing = self._last_admit + self.min_interval - now
                        if spacing <= 0 and self.budget.try_reserve():
                            self._last_admit = now
                            self.admitted_count += 1
                            return
                        if spacing > 0:
                            wait = spacing
                        else:
                            wait = self.budget.seconds_until_window_reset() + random.uniform(0, self.jitter)
                    if deadline is not None:
                        remaining = deadline - self._clock()
                        if remaining <= 0:
                            raise QuotaExceededError(
                                "Timed out waiting for a rate gate slot",
                                remaining=self.budget.status()["daily_remaining"],
                            )
                        wait = remaining if wait is None else min(wait, remaining)
                    self._cond.wait(timeout=wait)
            finally:
                self._waiters.remove(token)
                self._cond.notify_all()
