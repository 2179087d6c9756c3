"""Client-side rate limiting for the primary discovery provider."""

import logging
import threading
from collections import deque
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel

logger = logging.getLogger(__name__)

MINUTE_WINDOW = timedelta(seconds=60)


class RateLimitPolicy(StrEnum):
    """What to do when the local budget is exhausted."""

    THROW = "throw"
    WARN = "warn"


class RateLimitDecision(BaseModel, frozen=True):
    """
    Outcome of one ``RateLimiter.acquire`` call.

    Attributes
    ----------
    allowed : bool
        Whether the request may be sent
    retry_after : float | None
        Seconds until the budget frees up, when the request was over budget
    reason : str | None
        Which budget was exceeded ('minute', 'day' or 'provider')

    """

    allowed: bool
    retry_after: float | None = None
    reason: str | None = None


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RateLimiter:
    """
    Sliding per-minute window plus a calendar-day counter.

    The check and the record happen in one critical section, so concurrent
    callers can never both take the last slot. The lock guards only in-memory
    counters and is never held across an await.

    Parameters
    ----------
    requests_per_minute : int
        Maximum requests in any 60 second window
    requests_per_day : int
        Maximum requests per UTC calendar day
    policy : RateLimitPolicy
        ``throw`` denies over-budget requests, ``warn`` logs and lets them through
    enabled : bool
        When False every request is allowed and nothing is counted
    clock : Callable[[], datetime] | None
        Returns the current time as an aware UTC datetime

    """

    def __init__(
        self,
        requests_per_minute: int = 100,
        requests_per_day: int = 3000,
        policy: RateLimitPolicy = RateLimitPolicy.THROW,
        enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.requests_per_day = requests_per_day
        self.policy = policy
        self.enabled = enabled
        self._clock = clock or _utc_now
        self._lock = threading.Lock()
        self._window: deque[datetime] = deque()
        self._daily_count = 0
        self._day = self._clock().date()
        self._provider_blocked_until: datetime | None = None

    def acquire(self) -> RateLimitDecision:
        """
        Check the budgets and, if the request may proceed, record it.

        Returns
        -------
        RateLimitDecision
            ``allowed=False`` only under the ``throw`` policy

        """
        if not self.enabled:
            return RateLimitDecision(allowed=True)

        with self._lock:
            now = self._clock()
            self._roll(now)

            reason, retry_after = self._check(now)
            if reason is not None:
                if self.policy == RateLimitPolicy.THROW:
                    return RateLimitDecision(allowed=False, retry_after=retry_after, reason=reason)
                logger.warning(
                    "Rate limit exceeded (%s budget), proceeding under warn policy; retry after %.1fs",
                    reason,
                    retry_after,
                )

            self._window.append(now)
            self._daily_count += 1
            return RateLimitDecision(allowed=True, retry_after=retry_after, reason=reason)

    def observe_headers(self, headers: Mapping[str, str]) -> None:
        """
        Record the budget reported by the provider on a response.

        ``X-RateLimit-Remaining`` of zero blocks further requests until
        ``X-RateLimit-Reset`` seconds from now (60 when absent).

        Parameters
        ----------
        headers : Mapping[str, str]
            Response headers

        """
        remaining = _parse_number(headers.get("X-RateLimit-Remaining"))
        if remaining is None:
            return

        with self._lock:
            if remaining > 0:
                self._provider_blocked_until = None
                return
            reset = _parse_number(headers.get("X-RateLimit-Reset"))
            wait = reset if reset is not None and reset > 0 else MINUTE_WINDOW.total_seconds()
            self._provider_blocked_until = self._clock() + timedelta(seconds=wait)
            logger.warning("Provider reports an exhausted rate budget; blocking for %.0fs", wait)

    @property
    def daily_count(self) -> int:
        """Requests recorded today (UTC)."""
        with self._lock:
            self._roll(self._clock())
            return self._daily_count

    @property
    def daily_remaining(self) -> int:
        """Requests left in today's budget (UTC)."""
        return max(0, self.requests_per_day - self.daily_count)

    def _roll(self, now: datetime) -> None:
        while self._window and now - self._window[0] >= MINUTE_WINDOW:
            self._window.popleft()

        today = now.date()
        if today != self._day:
            self._day = today
            self._daily_count = 0

    def _check(self, now: datetime) -> tuple[str | None, float | None]:
        if self._provider_blocked_until is not None:
            if now < self._provider_blocked_until:
                return "provider", (self._provider_blocked_until - now).total_seconds()
            self._provider_blocked_until = None

        if self._daily_count >= self.requests_per_day:
            tomorrow = datetime.combine(now.date() + timedelta(days=1), datetime.min.time(), tzinfo=UTC)
            return "day", (tomorrow - now).total_seconds()

        if len(self._window) >= self.requests_per_minute:
            return "minute", (MINUTE_WINDOW - (now - self._window[0])).total_seconds()

        return None, None


def _parse_number(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
