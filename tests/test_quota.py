import threading

from hexsweep.quota import CRITICAL, HIGH, LOW, MEDIUM, QuotaBudget, classify_risk


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_concurrent_reservations_never_overspend():
    budget = QuotaBudget(daily_limit=100, per_second_limit=10000)
    admitted = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            if budget.try_reserve():
                with lock:
                    admitted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(admitted) == 100
    assert budget.daily_used == 100
    assert budget.try_reserve() is False


def test_per_second_window_is_rolling():
    clock = FakeClock()
    budget = QuotaBudget(daily_limit=1000, per_second_limit=3, clock=clock)

    assert [budget.try_reserve() for _ in range(3)] == [True, True, True]
    assert budget.try_reserve() is False

    clock.now = 0.5
    assert budget.try_reserve() is False
    assert abs(budget.seconds_until_window_reset() - 0.5) < 1e-9

    clock.now = 1.0
    assert budget.try_reserve() is True


def test_daily_counter_resets_lazily():
    clock = FakeClock()
    budget = QuotaBudget(daily_limit=2, per_second_limit=10, clock=clock, daily_reset_seconds=10)

    assert budget.try_reserve() and budget.try_reserve()
    assert budget.try_reserve() is False
    assert budget.daily_exhausted()

    clock.now = 10.0
    assert budget.try_reserve() is True
    assert budget.daily_used == 1


def test_estimate_near_exhaustion_is_critical():
    budget = QuotaBudget(daily_limit=100, per_second_limit=1000)
    for _ in range(95):
        assert budget.try_reserve()

    estimate = budget.estimate(1, avg_probes_per_cell=10, avg_pages_per_probe=1.0)

    assert estimate.estimated_calls == 10
    assert estimate.remaining_quota == 5
    assert estimate.risk_level == CRITICAL
    assert estimate.can_process is False
    assert estimate.recommendations


def test_estimate_within_budget():
    budget = QuotaBudget(daily_limit=1000, per_second_limit=10)

    estimate = budget.estimate(4, avg_probes_per_cell=3, avg_pages_per_probe=1.5)

    assert estimate.estimated_calls == 18
    assert estimate.risk_level == LOW
    assert estimate.can_process is True


def test_classify_risk_tiers():
    assert classify_risk(90, 100) == CRITICAL
    assert classify_risk(70, 100) == HIGH
    assert classify_risk(50, 100) == MEDIUM
    assert classify_risk(10, 100) == LOW


def test_status_and_reset():
    clock = FakeClock()
    budget = QuotaBudget(daily_limit=10, per_second_limit=5, clock=clock)
    budget.try_reserve()
    budget.try_reserve()

    status = budget.status()
    assert status["daily_used"] == 2
    assert status["daily_remaining"] == 8
    assert status["daily_usage_percentage"] == 20.0
    assert status["per_second_used"] == 2
    assert status["per_second_remaining"] == 3
    assert "last_daily_reset" in status

    budget.reset()
    assert budget.status()["daily_used"] == 0
    assert budget.status()["per_second_used"] == 0
    assert "Daily usage: 0/10" in budget.detailed_report()
