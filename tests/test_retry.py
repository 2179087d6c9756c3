"""Tests for retry logic with backoff."""

import httpx
import pytest

from portfolio_aggregator.integrations.errors import (
    AuthenticationError,
    ProviderUnavailableError,
    RateLimitExceededError,
)
from portfolio_aggregator.transport.retry import (
    BackoffStrategy,
    RetryableStatusError,
    RetryPolicy,
    raise_for_retryable_status,
)


class RecordingSleep:
    """Sleep replacement recording requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class Flaky:
    """Callable failing with the given errors before succeeding."""

    def __init__(self, *errors: Exception, result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.mark.parametrize(
    ("strategy", "expected"),
    [
        (BackoffStrategy.EXPONENTIAL, [1.0, 2.0, 4.0, 8.0, 10.0]),
        (BackoffStrategy.FIXED, [1.0, 1.0, 1.0, 1.0, 1.0]),
    ],
)
def test_get_delay(strategy, expected):
    """Test backoff growth and the max_delay cap."""
    policy = RetryPolicy(base_delay=1.0, max_delay=10.0, strategy=strategy)

    assert [policy.get_delay(attempt) for attempt in range(5)] == expected


@pytest.mark.asyncio
async def test_retries_transient_failures_then_succeeds():
    """5xx and transport errors are retried with backoff."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=3, base_delay=2.0, sleep=sleep)
    func = Flaky(RetryableStatusError(503), httpx.ConnectTimeout("slow"))

    assert await policy.execute(func) == "ok"
    assert func.calls == 3
    assert sleep.delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_unavailable():
    """Persistent 5xx ends in ProviderUnavailableError."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=3, sleep=sleep, provider="zerion")
    func = Flaky(*(RetryableStatusError(502) for _ in range(3)))

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await policy.execute(func)

    assert exc_info.value.provider == "zerion"
    assert func.calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_exhausted_429_raises_rate_limit_with_hint():
    """Persistent 429 ends in RateLimitExceededError carrying the provider hints."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=2, max_delay=30.0, sleep=sleep)
    func = Flaky(
        RetryableStatusError(429, retry_after=5.0, remaining=0),
        RetryableStatusError(429, retry_after=7.0, remaining=0),
    )

    with pytest.raises(RateLimitExceededError) as exc_info:
        await policy.execute(func)

    assert exc_info.value.retry_after == 7.0
    assert exc_info.value.remaining == 0
    assert sleep.delays == [5.0]


@pytest.mark.asyncio
async def test_retry_after_is_capped():
    """Retry-After hints never exceed max_delay."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=2, max_delay=30.0, sleep=sleep)

    await policy.execute(Flaky(RetryableStatusError(429, retry_after=3600.0)))

    assert sleep.delays == [30.0]


@pytest.mark.asyncio
async def test_non_retryable_errors_propagate_immediately():
    """Errors other than transient ones are never retried."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=5, sleep=sleep)
    func = Flaky(AuthenticationError("bad key"))

    with pytest.raises(AuthenticationError):
        await policy.execute(func)

    assert func.calls == 1
    assert sleep.delays == []


@pytest.mark.parametrize(
    ("status", "retryable"),
    [(200, False), (400, False), (401, False), (404, False), (429, True), (500, True), (503, True)],
)
def test_raise_for_retryable_status(status, retryable):
    """Only 5xx and 429 responses are retryable."""
    response = httpx.Response(status, headers={"Retry-After": "12", "X-RateLimit-Remaining": "0"})

    if retryable:
        with pytest.raises(RetryableStatusError) as exc_info:
            raise_for_retryable_status(response)
        assert exc_info.value.status_code == status
        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.remaining == 0
    else:
        raise_for_retryable_status(response)
