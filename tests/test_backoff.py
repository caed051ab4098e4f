import pytest

from jobpool.handlers.base import Handler
from jobpool.workers.backoff import RetryPolicy, backoff


def test_backoff_doubles_until_cap():
    policy = RetryPolicy(base_delay=2, multiplier=2, max_delay=60)
    assert [policy.delay(n) for n in range(1, 8)] == [2, 4, 8, 16, 32, 60, 60]


def test_backoff_is_non_decreasing_and_capped():
    policy = RetryPolicy(base_delay=1.5, multiplier=3, max_delay=500)
    delays = [policy.delay(n) for n in range(1, 200)]
    assert delays == sorted(delays)
    assert max(delays) == 500


def test_default_policy():
    assert backoff(1) == 2
    assert backoff(2) == 4
    assert backoff(10_000) == 1440


def test_invalid_policy():
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=10, max_delay=5)
    with pytest.raises(ValueError):
        RetryPolicy(multiplier=0.5)


def test_handler_uses_its_own_policy():
    class Slow(Handler):
        retry_policy = RetryPolicy(base_delay=10, multiplier=3, max_delay=100)

    assert Slow().backoff(1) == 10
    assert Slow().backoff(2) == 30
    assert Slow().backoff(4) == 100
    assert Handler().backoff(1) == 2
