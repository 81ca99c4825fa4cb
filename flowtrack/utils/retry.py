from __future__ import annotations

from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, Field

from ..models import utcnow

BackoffType = Literal["exponential", "linear"]


class RetryPolicy(BaseModel):
    """Retry configuration for a tracked step.

    ``current_retry`` is the number of retries already attempted.
    """

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    backoff: BackoffType = "exponential"
    current_retry: int = Field(default=0, ge=0)


class RetryDecision(BaseModel):
    """Outcome of a failed attempt: whether and when to try again."""

    retry_count: int
    retryable: bool
    delay_ms: int
    next_retry_at: datetime


def compute_backoff(
    current_retry: int, base_delay_ms: int = 1000, backoff: BackoffType = "exponential"
) -> int:
    """Compute the delay in milliseconds before the next attempt.

    Exponential: ``base * 2 ** current_retry``. Linear: ``base * (current_retry + 1)``.
    """
    if backoff == "exponential":
        return base_delay_ms * 2**current_retry
    if backoff == "linear":
        return base_delay_ms * (current_retry + 1)
    raise ValueError(f"Unsupported backoff type: {backoff}")


def plan_retry(
    policy: RetryPolicy,
    non_retryable: bool = False,
    now: Optional[datetime] = None,
) -> RetryDecision:
    """Decide whether a failed attempt is retried and schedule it."""
    retry_count = policy.current_retry + 1
    delay_ms = compute_backoff(policy.current_retry, policy.base_delay_ms, policy.backoff)
    return RetryDecision(
        retry_count=retry_count,
        retryable=not non_retryable and retry_count <= policy.max_retries,
        delay_ms=delay_ms,
        next_retry_at=(now or utcnow()) + timedelta(milliseconds=delay_ms),
    )
