"""Tests for the DeFiLlama metadata provider."""

from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from portfolio_aggregator.core.models import TokenReference
from portfolio_aggregator.integrations.errors import MetadataUnavailableError, ProviderUnavailableError
from portfolio_aggregator.pricing.defillama import DeFiLlamaMetadataProvider
from portfolio_aggregator.transport.retry import RetryPolicy

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


async def _no_sleep(delay: float) -> None:
    return None


def make_provider(handler) -> DeFiLlamaMetadataProvider:
    return DeFiLlamaMetadataProvider(
        retry=RetryPolicy(max_attempts=2, sleep=_no_sleep, provider="defillama"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def price_response(coin_id: str, price: float, **extra) -> httpx.Response:
    coin = {"price": price, "symbol": "USDC", "decimals": 6, "timestamp": 1704067200, "confidence": 0.99}
    coin.update(extra)
    return httpx.Response(200, json={"coins": {coin_id: coin}})


@pytest.mark.asyncio
async def test_fetch_metadata_parses_price():
    """Price, symbol, decimals, confidence and timestamp are read from the coin entry."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return price_response(f"ethereum:{USDC.lower()}", 0.9998)

    metadata = await make_provider(handler).fetch_metadata(TokenReference(address=USDC, network="ethereum"))

    assert seen == [f"/prices/current/ethereum:{USDC.lower()}"]
    assert metadata.symbol == "USDC"
    assert metadata.decimals == 6
    assert metadata.price_usd == Decimal("0.9998")
    assert metadata.confidence == 0.99
    assert metadata.as_of == datetime(2024, 1, 1, tzinfo=UTC)


@pytest.mark.asyncio
async def test_native_token_uses_coingecko_id():
    """Gas tokens are priced through the network's native coin id."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return price_response("coingecko:ethereum", 3200.5, symbol="ETH", decimals=18)

    metadata = await make_provider(handler).fetch_metadata(TokenReference(address="native", network="base"))

    assert seen == ["/prices/current/coingecko:ethereum"]
    assert metadata.price_usd == Decimal("3200.5")


@pytest.mark.asyncio
async def test_network_prefix_is_translated():
    """DeFiLlama chain prefixes differ from network names on some chains."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return price_response(f"avax:{USDC.lower()}", 1.0)

    await make_provider(handler).fetch_metadata(TokenReference(address=USDC, network="avalanche"))

    assert seen == [f"/prices/current/avax:{USDC.lower()}"]


@pytest.mark.asyncio
async def test_unknown_coin_raises_unavailable():
    """An empty coins map means DeFiLlama does not price the token."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"coins": {}})

    with pytest.raises(MetadataUnavailableError, match="No price"):
        await make_provider(handler).fetch_metadata(TokenReference(address=USDC, network="ethereum"))


@pytest.mark.asyncio
async def test_native_token_on_unknown_network():
    """A native token on an unsupported network cannot be priced."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(MetadataUnavailableError):
        await make_provider(handler).fetch_metadata(TokenReference(address="native", network="fantom"))


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries():
    """Persistent 5xx responses surface as ProviderUnavailableError."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502)

    with pytest.raises(ProviderUnavailableError):
        await make_provider(handler).fetch_metadata(TokenReference(address=USDC, network="ethereum"))

    assert len(calls) == 2
