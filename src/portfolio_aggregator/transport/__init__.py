"""Transport layer with client-side rate limiting and retry logic."""

from portfolio_aggregator.transport.rate_limit import RateLimitDecision, RateLimiter, RateLimitPolicy
from portfolio_aggregator.transport.retry import (
    BackoffStrategy,
    RetryableStatusError,
    RetryPolicy,
    raise_for_retryable_status,
)

__all__ = [
    "BackoffStrategy",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimiter",
    "RetryPolicy",
    "RetryableStatusError",
    "raise_for_retryable_status",
]
