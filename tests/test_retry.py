"""Tests for retry policies."""

import pytest

from app.services.retry import RetryPolicy, exponential_backoff, fixed_backoff


def test_exponential_backoff_doubles():
    """Test delays of base, 2*base, 4*base."""
    assert [exponential_backoff(2.0, attempt) for attempt in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_policy_delays():
    policy = RetryPolicy(max_attempts=3, base_delay=2.0)
    assert policy.delay_for(1) == 2.0
    assert policy.delay_for(2) == 4.0


def test_fixed_backoff_policy():
    policy = RetryPolicy(max_attempts=2, base_delay=1.5, backoff=fixed_backoff)
    assert policy.delay_for(1) == policy.delay_for(5) == 1.5


def test_should_retry_until_attempts_exhausted():
    """Test that the final attempt is not retried."""
    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    assert policy.should_retry(1)
    assert policy.should_retry(2)
    assert not policy.should_retry(3)


@pytest.mark.parametrize("max_attempts, base_delay", [(0, 1.0), (1, -1.0)])
def test_invalid_policy_rejected(max_attempts, base_delay):
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=max_attempts, base_delay=base_delay)
