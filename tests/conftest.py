"""Pytest configuration and shared fixtures for portfolio-aggregator tests."""

import asyncio
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest

from portfolio_aggregator.core.models import TokenMetadata, TokenReference


def make_raw(
    position_id: str,
    value: str | int,
    position_type: str = "deposit",
    protocol_module: str | None = None,
    group_id: str | None = None,
    protocol_id: str = "aave-v3",
    network: str = "ethereum",
    **extra: Any,
) -> dict[str, Any]:
    """Build a raw position mapping in the normalized provider layout."""
    raw = {
        "id": position_id,
        "protocol_id": protocol_id,
        "network": network,
        "position_type": position_type,
        "protocol_module": protocol_module,
        "correlation_key": group_id,
        "value_usd": str(value),
    }
    raw.update(extra)
    return raw


def make_token(symbol: str, address: str, amount: str, value: str, role: str = "supplied", **extra: Any) -> dict:
    """Build a position token mapping."""
    token = {
        "role": role,
        "symbol": symbol,
        "address": address,
        "network": "ethereum",
        "amount": amount,
        "value_usd": value,
    }
    token.update(extra)
    return token


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMetadataProvider:
    """
    In-memory metadata provider recording concurrency.

    Parameters
    ----------
    prices : dict[str, str] | None
        Unit prices keyed by token key; unknown tokens get 1.00
    delay : float
        Seconds each call sleeps
    fail_every : int
        Every n-th call raises (0 = never)

    """

    def __init__(self, prices: dict[str, str] | None = None, delay: float = 0.0, fail_every: int = 0) -> None:
        self.prices = prices or {}
        self.delay = delay
        self.fail_every = fail_every
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_metadata(self, token_ref: TokenReference) -> TokenMetadata:
        self.calls.append(token_ref.key)
        call_number = len(self.calls)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_every and call_number % self.fail_every == 0:
                msg = f"boom {token_ref.key}"
                raise RuntimeError(msg)
            return TokenMetadata(
                symbol=token_ref.address[:6].upper(),
                decimals=18,
                price_usd=Decimal(self.prices.get(token_ref.key, "1.00")),
                as_of=datetime(2024, 1, 1, tzinfo=UTC),
            )
        finally:
            self.in_flight -= 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def farming_raw() -> list[dict[str, Any]]:
    """Staked A=$60, staked B=$40 and reward C=$5 sharing group G1."""
    return [
        make_raw("A", 60, "staked", "farming", "G1", protocol_id="curve"),
        make_raw("B", 40, "staked", "farming", "G1", protocol_id="curve"),
        make_raw("C", 5, "reward", "farming", "G1", protocol_id="curve"),
    ]
