"""DeFiLlama metadata provider for fetching token USD prices."""

import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from portfolio_aggregator.core.models import TokenMetadata, TokenReference
from portfolio_aggregator.data.loader import get_price_coin_id
from portfolio_aggregator.integrations.errors import MetadataUnavailableError, ProviderRequestError
from portfolio_aggregator.transport.retry import RetryPolicy, raise_for_retryable_status

logger = logging.getLogger(__name__)


class DeFiLlamaMetadataProvider:
    """
    Fetches token prices and metadata from the DeFiLlama coins API.

    DeFiLlama provides free, decentralized price data for thousands of tokens
    across multiple chains. One request is made per token so that the
    enrichment pipeline controls concurrency.

    Parameters
    ----------
    base_url : str
        DeFiLlama API base URL
    timeout : float
        Request timeout in seconds
    retry : RetryPolicy | None
        Retry policy for transient failures
    client : httpx.AsyncClient | None
        HTTP client to use. A new one is created (and owned) if None.

    """

    NAME = "defillama"
    BASE_URL = "https://coins.llama.fi"

    def __init__(
        self,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.retry = retry or RetryPolicy(max_attempts=2, base_delay=0.5, provider=self.NAME)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch_metadata(self, token_ref: TokenReference) -> TokenMetadata:
        """
        Fetch price and metadata for a single token.

        Parameters
        ----------
        token_ref : TokenReference
            Token to look up

        Returns
        -------
        TokenMetadata
            Symbol, decimals, USD price, confidence and price timestamp

        Raises
        ------
        MetadataUnavailableError
            If DeFiLlama has no price for the token
        ProviderUnavailableError
            If the API keeps failing after retries

        """
        try:
            coin_id = get_price_coin_id(token_ref.network, token_ref.address)
        except KeyError as e:
            msg = f"No price coin id for native token on {token_ref.network}"
            raise MetadataUnavailableError(msg, provider=self.NAME) from e

        data = await self.retry.execute(lambda: self._get_price(coin_id))
        coin = data.get("coins", {}).get(coin_id)
        if not coin or coin.get("price") is None:
            msg = f"No price for {coin_id}"
            raise MetadataUnavailableError(msg, provider=self.NAME)

        return self._parse_coin(coin)

    async def _get_price(self, coin_id: str) -> dict[str, Any]:
        url = f"{self.base_url}/prices/current/{coin_id}"
        response = await self.client.get(url)

        raise_for_retryable_status(response)
        if response.status_code >= 400:
            msg = f"HTTP error {response.status_code} for {coin_id}"
            raise ProviderRequestError(msg, provider=self.NAME, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            msg = f"Malformed response for {coin_id}"
            raise ProviderRequestError(msg, provider=self.NAME, status_code=response.status_code) from e

    @staticmethod
    def _parse_coin(coin: dict[str, Any]) -> TokenMetadata:
        try:
            price = Decimal(str(coin["price"]))
        except (InvalidOperation, ValueError) as e:
            msg = f"Unparseable price {coin['price']!r}"
            raise MetadataUnavailableError(msg, provider=DeFiLlamaMetadataProvider.NAME) from e

        timestamp = coin.get("timestamp")
        as_of = datetime.fromtimestamp(timestamp, UTC) if timestamp else datetime.now(UTC)

        return TokenMetadata(
            symbol=coin.get("symbol", ""),
            decimals=coin.get("decimals"),
            price_usd=price,
            confidence=coin.get("confidence"),
            as_of=as_of,
        )

    async def close(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "DeFiLlamaMetadataProvider":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object | None) -> None:
        """Async context manager exit."""
        await self.close()
