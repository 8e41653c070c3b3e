import threading
import time

import pytest

from hexsweep.errors import QuotaExceededError
from hexsweep.quota import QuotaBudget, RateGate


class RecordingBudget(QuotaBudget):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.admissions = []
        self.closed = False

    def try_reserve(self):
        if self.closed:
            return False
        ok = super().try_reserve()
        if ok:
            self.admissions.append((threading.current_thread().name, self._window[-1]))
        return ok

    def seconds_until_window_reset(self):
        if self.closed:
            return 0.01
        return super().seconds_until_window_reset()


def test_no_rolling_second_exceeds_limit():
    budget = RecordingBudget(daily_limit=1000, per_second_limit=5)
    gate = RateGate(budget, min_interval=0.0, jitter=0.0)

    threads = [threading.Thread(target=gate.wait_for_slot, kwargs={"timeout": 10}) for _ in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    times = sorted(ts for _, ts in budget.admissions)
    assert len(times) == 12
    for i in range(len(times) - 5):
        assert times[i + 5] - times[i] >= 1.0 - 1e-6


def test_waiters_are_admitted_in_arrival_order():
    budget = RecordingBudget(daily_limit=1000, per_second_limit=1000)
    budget.closed = True
    gate = RateGate(budget, min_interval=0.0, jitter=0.0)

    threads = []
    for i in range(5):
        t = threading.Thread(target=gate.wait_for_slot, kwargs={"timeout": 10}, name=f"waiter-{i}")
        t.start()
        threads.append(t)
        deadline = time.monotonic() + 5
        while gate.queue_length() < i + 1 and time.monotonic() < deadline:
            time.sleep(0.005)

    budget.closed = False
    for t in threads:
        t.join()

    assert [name for name, _ in budget.admissions] == [f"waiter-{i}" for i in range(5)]
    assert gate.admitted_count == 5
    assert gate.queue_length() == 0


def test_min_interval_spaces_admissions():
    budget = RecordingBudget(daily_limit=1000, per_second_limit=1000)
    gate = RateGate(budget, min_interval=0.05, jitter=0.0)

    for _ in range(3):
        gate.wait_for_slot(timeout=5)

    times = [ts for _, ts in budget.admissions]
    assert times[1] - times[0] >= 0.04
    assert times[2] - times[1] >= 0.04


def test_exhausted_daily_budget_raises_immediately():
    gate = RateGate(QuotaBudget(daily_limit=0, per_second_limit=10), jitter=0.0)

    with pytest.raises(QuotaExceededError):
        gate.wait_for_slot(timeout=5)
    assert gate.queue_length() == 0


def test_wait_times_out():
    budget = RecordingBudget(daily_limit=10, per_second_limit=10)
    budget.closed = True
    gate = RateGate(budget, min_interval=0.0, jitter=0.0)

    started = time.monotonic()
    with pytest.raises(QuotaExceededError):
        gate.wait_for_slot(timeout=0.1)
    assert time.monotonic() - started < 2.0
    assert gate.queue_length() == 0
