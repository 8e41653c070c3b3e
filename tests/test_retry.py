import pytest

from hexsweep.errors import QuotaExceededError, TransientAPIError
from hexsweep.retry import RetryPolicy, with_retry


class Flaky:
    def __init__(self, failures, exc=TransientAPIError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("boom")
        return "ok"


def test_retries_with_exponential_backoff():
    sleeps = []
    policy = RetryPolicy(max_attempts=3, base_delay=1.0, jitter=0.0, sleep=sleeps.append)
    op = Flaky(failures=2)

    assert policy.call(op) == "ok"
    assert op.calls == 3
    assert sleeps == [1.0, 2.0]


def test_delay_is_capped():
    policy = RetryPolicy(base_delay=10.0, max_delay=15.0, jitter=0.0)

    assert policy.delay_for(1) == 10.0
    assert policy.delay_for(3) == 15.0


def test_gives_up_after_max_attempts():
    sleeps = []
    op = Flaky(failures=5)

    with pytest.raises(TransientAPIError):
        with_retry(op, max_attempts=2, base_delay=0.0, jitter=0.0, sleep=sleeps.append)
    assert op.calls == 2
    assert len(sleeps) == 1


def test_give_up_on_is_not_retried():
    op = Flaky(failures=1, exc=QuotaExceededError)

    with pytest.raises(QuotaExceededError):
        with_retry(op, max_attempts=5, base_delay=0.0, jitter=0.0, give_up_on=(QuotaExceededError,), sleep=lambda s: None)
    assert op.calls == 1


def test_only_listed_exceptions_are_retried():
    op = Flaky(failures=1, exc=KeyError)

    with pytest.raises(KeyError):
        with_retry(op, max_attempts=3, retry_on=(TransientAPIError,), sleep=lambda s: None)
    assert op.calls == 1


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
