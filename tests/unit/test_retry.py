from datetime import datetime, timedelta, timezone

import pytest

from flowtrack.utils.retry import RetryPolicy, compute_backoff, plan_retry

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_exponential_backoff_doubles_each_retry():
    assert [compute_backoff(n, 1000, "exponential") for n in range(4)] == [
        1000,
        2000,
        4000,
        8000,
    ]


def test_linear_backoff_grows_by_base():
    assert [compute_backoff(n, 500, "linear") for n in range(3)] == [500, 1000, 1500]


def test_unknown_backoff_rejected():
    with pytest.raises(ValueError):
        compute_backoff(0, 1000, "fibonacci")


def test_first_failure_is_retried_with_base_delay():
    decision = plan_retry(RetryPolicy(), now=NOW)
    assert decision.retryable is True
    assert decision.retry_count == 1
    assert decision.delay_ms == 1000
    assert decision.next_retry_at == NOW + timedelta(milliseconds=1000)


def test_third_retry_uses_exponential_schedule():
    decision = plan_retry(RetryPolicy(current_retry=2), now=NOW)
    assert decision.retryable is True
    assert decision.retry_count == 3
    assert decision.next_retry_at == NOW + timedelta(milliseconds=4000)


def test_retries_exhausted_after_max():
    decision = plan_retry(RetryPolicy(max_retries=3, current_retry=3), now=NOW)
    assert decision.retryable is False
    assert decision.retry_count == 4


def test_non_retryable_error_is_never_retried():
    decision = plan_retry(RetryPolicy(), non_retryable=True, now=NOW)
    assert decision.retryable is False


def test_zero_max_retries_fails_immediately():
    assert plan_retry(RetryPolicy(max_retries=0), now=NOW).retryable is False
