"""Retry logic with fixed or exponential backoff for provider calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TypeVar

import httpx

from portfolio_aggregator.integrations.errors import ProviderUnavailableError, RateLimitExceededError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackoffStrategy(StrEnum):
    """Delay growth between attempts."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class RetryableStatusError(Exception):
    """
    Raised by a request function for a response worth retrying (5xx or 429).

    Parameters
    ----------
    status_code : int
        HTTP status code
    retry_after : float | None
        ``Retry-After`` hint in seconds, if the provider sent one
    remaining : int | None
        ``X-RateLimit-Remaining`` value, if the provider sent one

    """

    def __init__(self, status_code: int, retry_after: float | None = None, remaining: int | None = None) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.retry_after = retry_after
        self.remaining = remaining


class RetryPolicy:
    """
    Bounded retries for transient provider failures.

    Only ``RetryableStatusError`` and httpx transport errors (timeouts included)
    are retried. Anything else propagates on the first attempt.

    Parameters
    ----------
    max_attempts : int
        Total attempts, including the first one
    base_delay : float
        Delay in seconds before the first retry
    max_delay : float
        Upper bound for any single delay, ``Retry-After`` hints included
    strategy : BackoffStrategy
        Fixed or exponential backoff
    exponential_base : float
        Base for exponential backoff calculation
    sleep : Callable[[float], Awaitable[None]] | None
        Sleep function; defaults to ``asyncio.sleep``
    provider : str
        Provider name attached to raised errors

    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
        exponential_base: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        provider: str = "",
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.strategy = strategy
        self.exponential_base = exponential_base
        self.provider = provider
        self._sleep = sleep or asyncio.sleep

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay for a given retry attempt.

        Parameters
        ----------
        attempt : int
            Current attempt number (0-indexed)

        Returns
        -------
        float
            Delay in seconds

        """
        if self.strategy == BackoffStrategy.FIXED:
            delay = self.base_delay
        else:
            delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``func`` until it succeeds or the attempts run out.

        Parameters
        ----------
        func : Callable[[], Awaitable[T]]
            Zero-argument coroutine function performing one attempt

        Returns
        -------
        T
            Result of the first successful attempt

        Raises
        ------
        RateLimitExceededError
            If attempts ran out and the last failure was HTTP 429
        ProviderUnavailableError
            If attempts ran out on 5xx or transport errors

        """
        last_exception: Exception | None = None

        for attempt in range(self.max_attempts):
            try:
                return await func()
            except (RetryableStatusError, httpx.TransportError) as e:
                last_exception = e

            # Don't sleep after the last attempt
            if attempt == self.max_attempts - 1:
                break

            delay = self._delay_for(attempt, last_exception)
            logger.warning(
                "%s request failed (%s), retrying in %.1fs (attempt %d/%d)",
                self.provider or "Provider",
                _describe(last_exception),
                delay,
                attempt + 1,
                self.max_attempts,
            )
            await self._sleep(delay)

        if isinstance(last_exception, RetryableStatusError) and last_exception.status_code == 429:
            msg = f"Rate limit exceeded after {self.max_attempts} attempts"
            raise RateLimitExceededError(
                msg,
                provider=self.provider,
                retry_after=last_exception.retry_after,
                remaining=last_exception.remaining,
            ) from last_exception

        msg = f"Provider unavailable after {self.max_attempts} attempts: {_describe(last_exception)}"
        raise ProviderUnavailableError(msg, provider=self.provider) from last_exception

    def _delay_for(self, attempt: int, error: Exception | None) -> float:
        if isinstance(error, RetryableStatusError) and error.status_code == 429 and error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self.max_delay)
        return self.get_delay(attempt)


def raise_for_retryable_status(response: httpx.Response) -> None:
    """
    Raise ``RetryableStatusError`` for 5xx and 429 responses.

    Parameters
    ----------
    response : httpx.Response
        Provider response

    Raises
    ------
    RetryableStatusError
        If the status is worth retrying

    """
    status = response.status_code
    if status != 429 and status < 500:
        return

    retry_after = _header_number(response.headers.get("Retry-After"))
    remaining = _header_number(response.headers.get("X-RateLimit-Remaining"))
    raise RetryableStatusError(
        status,
        retry_after=retry_after,
        remaining=int(remaining) if remaining is not None else None,
    )


def _header_number(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _describe(error: Exception | None) -> str:
    if isinstance(error, RetryableStatusError):
        return f"HTTP {error.status_code}"
    return type(error).__name__
