"""Tests for the Zerion discovery client."""

from decimal import Decimal

import httpx
import pytest

from portfolio_aggregator.core.aggregator import PositionAggregator
from portfolio_aggregator.core.models import DiscoveryFilter, PositionTag, ProtocolModule, RawPosition, TokenRole
from portfolio_aggregator.integrations.errors import (
    AuthenticationError,
    ProviderRequestError,
    ProviderUnavailableError,
    RateLimitExceededError,
)
from portfolio_aggregator.integrations.zerion import ZerionClient
from portfolio_aggregator.transport.rate_limit import RateLimiter
from portfolio_aggregator.transport.retry import RetryPolicy

WALLET = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"


async def _no_sleep(delay: float) -> None:
    return None


def zerion_item(
    position_id: str,
    value: float | None,
    position_type: str = "deposit",
    protocol_module: str | None = "lending",
    group_id: str | None = None,
    chain: str = "ethereum",
    address: str | None = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",
) -> dict:
    """Build a Zerion position resource."""
    return {
        "type": "positions",
        "id": position_id,
        "attributes": {
            "parent": None,
            "protocol": "Aave V3",
            "protocol_module": protocol_module,
            "pool_address": None,
            "group_id": group_id,
            "name": "Asset",
            "position_type": position_type,
            "quantity": {"int": "1500000000", "decimals": 6, "float": 1500.0, "numeric": "1500.000000"},
            "value": value,
            "price": 1.0001,
            "fungible_info": {
                "name": "USD Coin",
                "symbol": "USDC",
                "implementations": [
                    {"chain_id": "polygon", "address": "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359", "decimals": 6},
                    {"chain_id": chain, "address": address, "decimals": 6},
                ],
            },
            "application_metadata": {"name": "Aave V3"},
        },
        "relationships": {
            "chain": {"data": {"type": "chains", "id": chain}},
            "dapp": {"data": {"type": "dapps", "id": "aave-v3"}},
        },
    }


def make_client(handler, **kwargs) -> ZerionClient:
    transport = httpx.MockTransport(handler)
    kwargs.setdefault("retry", RetryPolicy(max_attempts=3, sleep=_no_sleep, provider="zerion"))
    return ZerionClient(
        api_key="zk_dev_test",
        client=httpx.AsyncClient(transport=transport, auth=("zk_dev_test", "")),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_fetch_positions_builds_query():
    """The request carries the filter, chain ids, trash filter and page size."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [zerion_item("p1", 1500.15)], "links": {}})

    client = make_client(handler)
    result = await client.fetch_positions(WALLET, ["ethereum", "bsc"], DiscoveryFilter.ONLY_COMPLEX)

    request = seen[0]
    assert request.url.path == f"/v1/wallets/{WALLET.lower()}/positions/"
    assert request.url.params["filter[positions]"] == "only_complex"
    assert request.url.params["filter[chain_ids]"] == "ethereum,binance-smart-chain"
    assert request.url.params["filter[trash]"] == "only_non_trash"
    assert request.url.params["currency"] == "usd"
    assert request.url.params["page[size]"] == "100"
    assert request.headers["authorization"].startswith("Basic ")
    assert result.pages == 1
    assert len(result.positions) == 1


@pytest.mark.asyncio
async def test_normalized_position_validates():
    """Zerion resources normalize into valid raw positions."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [zerion_item("p1", 1500.15, "loan", group_id="g-1")]})

    result = await make_client(handler).fetch_positions(WALLET, ["ethereum"])
    position = RawPosition.model_validate(result.positions[0])

    assert position.id == "p1"
    assert position.protocol_id == "aave-v3"
    assert position.protocol_name == "Aave V3"
    assert position.network == "ethereum"
    assert position.position_type == PositionTag.LOAN
    assert position.protocol_module == ProtocolModule.LENDING
    assert position.correlation_key == "g-1"
    assert position.market == "Aave V3"
    assert position.value_usd == Decimal("1500.15")

    token = position.tokens[0]
    assert token.role == TokenRole.BORROWED
    assert token.symbol == "USDC"
    assert token.address == "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
    assert token.amount == Decimal("1500.000000")
    assert token.decimals == 6
    assert token.unit_price_usd == Decimal("1.0001")


@pytest.mark.asyncio
async def test_native_token_and_chain_translation():
    """Null implementation addresses become 'native' and chain ids map to network names."""

    def handler(request: httpx.Request) -> httpx.Response:
        item = zerion_item("p1", 10.0, "staked", "staking", chain="binance-smart-chain", address=None)
        return httpx.Response(200, json={"data": [item]})

    result = await make_client(handler).fetch_positions(WALLET, ["bsc"])
    position = RawPosition.model_validate(result.positions[0])

    assert position.network == "bsc"
    assert position.tokens[0].address == "native"
    assert position.tokens[0].network == "bsc"


@pytest.mark.asyncio
async def test_pagination_follows_cursor():
    """Pages are followed through links.next until it disappears."""
    cursors = []

    def handler(request: httpx.Request) -> httpx.Response:
        cursor = request.url.params.get("page[after]")
        cursors.append(cursor)
        if cursor is None:
            next_link = f"https://api.zerion.io/v1/wallets/{WALLET}/positions/?page%5Bafter%5D=abc123"
            return httpx.Response(200, json={"data": [zerion_item("p1", 1.0)], "links": {"next": next_link}})
        return httpx.Response(200, json={"data": [zerion_item("p2", 2.0)], "links": {}})

    result = await make_client(handler).fetch_positions(WALLET, ["ethereum"])

    assert cursors == [None, "abc123"]
    assert result.pages == 2
    assert [p["id"] for p in result.positions] == ["p1", "p2"]


@pytest.mark.asyncio
async def test_not_found_returns_empty():
    """HTTP 404 means Zerion does not know the wallet."""
    result = await make_client(lambda request: httpx.Response(404)).fetch_positions(WALLET, ["ethereum"])

    assert result.positions == []
    assert result.pages == 0


@pytest.mark.parametrize("status", [401, 403])
@pytest.mark.asyncio
async def test_auth_errors_are_fatal(status):
    """Rejected credentials are never retried."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status)

    with pytest.raises(AuthenticationError):
        await make_client(handler).fetch_positions(WALLET, ["ethereum"])

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_bad_request_is_not_retried():
    """Other 4xx responses raise ProviderRequestError on the first attempt."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"errors": [{"title": "Parameter error"}]})

    with pytest.raises(ProviderRequestError) as exc_info:
        await make_client(handler).fetch_positions(WALLET, ["ethereum"])

    assert exc_info.value.status_code == 400
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_succeed():
    """Transient 5xx responses are retried."""
    responses = [httpx.Response(503), httpx.Response(200, json={"data": []})]

    result = await make_client(lambda request: responses.pop(0)).fetch_positions(WALLET, ["ethereum"])

    assert result.pages == 1


@pytest.mark.asyncio
async def test_persistent_server_errors_raise_unavailable():
    """5xx after all attempts surfaces as ProviderUnavailableError."""
    with pytest.raises(ProviderUnavailableError):
        await make_client(lambda request: httpx.Response(500)).fetch_positions(WALLET, ["ethereum"])


@pytest.mark.asyncio
async def test_persistent_429_raises_rate_limit():
    """429 after all attempts surfaces as RateLimitExceededError with Retry-After."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "42", "X-RateLimit-Remaining": "0"})

    with pytest.raises(RateLimitExceededError) as exc_info:
        await make_client(handler).fetch_positions(WALLET, ["ethereum"])

    assert exc_info.value.retry_after == 42.0
    assert exc_info.value.remaining == 0


@pytest.mark.asyncio
async def test_local_rate_limit_denies_before_sending():
    """An exhausted local budget raises without touching the network."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"data": []})

    limiter = RateLimiter(requests_per_minute=1)
    client = make_client(handler, rate_limiter=limiter)

    await client.fetch_positions(WALLET, ["ethereum"])
    with pytest.raises(RateLimitExceededError) as exc_info:
        await client.fetch_positions(WALLET, ["ethereum"])

    assert len(calls) == 1
    assert exc_info.value.retry_after is not None


@pytest.mark.asyncio
async def test_malformed_positions_are_skipped_by_aggregator():
    """Positions without a value reach the aggregator and are counted as skipped."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [zerion_item("p1", 10.0), zerion_item("p2", None)]})

    result = await make_client(handler).fetch_positions(WALLET, ["ethereum"])
    aggregation = PositionAggregator().aggregate(result.positions)

    assert [p.id for p in aggregation.positions] == ["p1"]
    assert aggregation.skipped_count == 1
