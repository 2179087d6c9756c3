"""Zerion API client for wallet position discovery."""

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from portfolio_aggregator.core.models import NATIVE_ADDRESS, DiscoveryFilter, PositionTag, TokenRole
from portfolio_aggregator.data.loader import from_zerion_chain_id, get_default_networks, to_zerion_chain_id
from portfolio_aggregator.integrations.errors import (
    AuthenticationError,
    ProviderRequestError,
    RateLimitExceededError,
)
from portfolio_aggregator.transport.rate_limit import RateLimiter
from portfolio_aggregator.transport.retry import RetryPolicy, raise_for_retryable_status

logger = logging.getLogger(__name__)

TOKEN_ROLES = {
    PositionTag.LOAN: TokenRole.BORROWED,
    PositionTag.BORROW: TokenRole.BORROWED,
    PositionTag.REWARD: TokenRole.REWARD,
    PositionTag.CLAIMABLE: TokenRole.REWARD,
    PositionTag.DEPOSIT: TokenRole.SUPPLIED,
    PositionTag.STAKED: TokenRole.SUPPLIED,
    PositionTag.STAKING: TokenRole.SUPPLIED,
    PositionTag.LOCKED: TokenRole.SUPPLIED,
}


class DiscoveryResult(BaseModel):
    """
    Positions returned by one discovery call.

    Attributes
    ----------
    positions : list[dict[str, Any]]
        Positions normalized to the ``RawPosition`` field layout, not yet validated
    pages : int
        Number of pages fetched

    """

    positions: list[dict[str, Any]] = Field(default_factory=list)
    pages: int = 0


class DiscoveryProvider(Protocol):
    """Primary provider listing a wallet's positions."""

    async def fetch_positions(
        self,
        wallet: str,
        networks: list[str] | None = None,
        position_filter: DiscoveryFilter = DiscoveryFilter.ONLY_COMPLEX,
    ) -> DiscoveryResult: ...


class ZerionClient:
    """
    Async client for the Zerion API.

    Every page request passes through the rate limiter and the retry policy.
    Pagination follows the ``page[after]`` cursor of ``links.next``.

    Parameters
    ----------
    api_key : str
        Zerion API key (format: zk_dev_xxx or zk_prod_xxx)
    base_url : str
        API base URL
    timeout : float
        Request timeout in seconds
    page_size : int
        Positions per page (capped at 100)
    max_pages : int
        Safety bound on the number of pages followed
    rate_limiter : RateLimiter | None
        Client-side rate limiter. A default one is created if None.
    retry : RetryPolicy | None
        Retry policy for transient failures
    client : httpx.AsyncClient | None
        HTTP client to use. A new one is created (and owned) if None.

    """

    NAME = "zerion"
    BASE_URL = "https://api.zerion.io/v1"
    MAX_PAGE_SIZE = 100

    def __init__(
        self,
        api_key: str,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        page_size: int = MAX_PAGE_SIZE,
        max_pages: int = 50,
        rate_limiter: RateLimiter | None = None,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.page_size = max(1, min(page_size, self.MAX_PAGE_SIZE))
        self.max_pages = max_pages
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry = retry or RetryPolicy(provider=self.NAME)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            auth=(api_key, ""),  # Zerion uses HTTP basic auth with key as username
        )

    async def fetch_positions(
        self,
        wallet: str,
        networks: list[str] | None = None,
        position_filter: DiscoveryFilter = DiscoveryFilter.ONLY_COMPLEX,
    ) -> DiscoveryResult:
        """
        Fetch all positions for a wallet across the given networks.

        Parameters
        ----------
        wallet : str
            Wallet address
        networks : list[str] | None
            Network names to query (None = default networks)
        position_filter : DiscoveryFilter
            Which kinds of positions to return

        Returns
        -------
        DiscoveryResult
            Normalized positions across all pages; empty if Zerion does not know the wallet

        Raises
        ------
        AuthenticationError
            If the API key is rejected
        RateLimitExceededError
            If the local or provider rate budget is exhausted
        ProviderUnavailableError
            If Zerion keeps failing after retries
        ProviderRequestError
            If Zerion rejects the request or returns a malformed payload

        """
        chain_ids = self._chain_ids(networks)
        url = f"{self.base_url}/wallets/{wallet.lower()}/positions/"
        params = {
            "filter[positions]": str(position_filter),
            "filter[trash]": "only_non_trash",
            "currency": "usd",
            "sort": "-value",
            "page[size]": str(self.page_size),
        }
        if chain_ids:
            params["filter[chain_ids]"] = ",".join(chain_ids)

        result = DiscoveryResult()
        while result.pages < self.max_pages:
            page_params = dict(params)
            payload = await self.retry.execute(lambda: self._get_page(url, page_params))
            if payload is None:
                logger.debug("Zerion has no positions for %s", wallet)
                break

            result.pages += 1
            items = payload.get("data") or []
            result.positions.extend(self._parse_position(item) for item in items)
            logger.debug("Fetched Zerion page %d with %d position(s)", result.pages, len(items))

            cursor = self._next_cursor(payload)
            if not cursor:
                break
            params["page[after]"] = cursor
        else:
            logger.warning("Stopped Zerion pagination for %s after %d pages", wallet, self.max_pages)

        return result

    def _chain_ids(self, networks: list[str] | None) -> list[str]:
        chain_ids = []
        for network in networks or get_default_networks():
            chain_id = to_zerion_chain_id(network)
            if chain_id is None:
                logger.warning("Skipping unsupported network %r", network)
                continue
            chain_ids.append(chain_id)
        return chain_ids

    async def _get_page(self, url: str, params: dict[str, str]) -> dict[str, Any] | None:
        decision = self.rate_limiter.acquire()
        if not decision.allowed:
            msg = f"Local rate limit reached ({decision.reason} budget)"
            raise RateLimitExceededError(msg, provider=self.NAME, retry_after=decision.retry_after)

        response = await self.client.get(url, params=params)
        # 429s are paced by the retry policy through Retry-After
        if response.status_code != 429:
            self.rate_limiter.observe_headers(response.headers)

        if response.status_code in (401, 403):
            msg = f"Zerion rejected the API key (HTTP {response.status_code})"
            raise AuthenticationError(msg, provider=self.NAME)
        if response.status_code == 404:
            return None

        raise_for_retryable_status(response)
        if response.status_code >= 400:
            msg = f"HTTP error {response.status_code}: {response.text[:200]}"
            raise ProviderRequestError(msg, provider=self.NAME, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            msg = "Malformed JSON in Zerion response"
            raise ProviderRequestError(msg, provider=self.NAME, status_code=response.status_code) from e

    @staticmethod
    def _next_cursor(payload: dict[str, Any]) -> str | None:
        next_link = (payload.get("links") or {}).get("next")
        if not next_link:
            return None
        return httpx.URL(next_link).params.get("page[after]")

    def _parse_position(self, item: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a Zerion position into the ``RawPosition`` field layout.

        Missing required values are passed through as None so that validation
        rejects (and counts) the position instead of this method guessing.

        Parameters
        ----------
        item : dict[str, Any]
            Raw position data from Zerion

        Returns
        -------
        dict[str, Any]
            Mapping ready for ``RawPosition.model_validate``

        """
        attributes = item.get("attributes") or {}
        relationships = item.get("relationships") or {}

        zerion_chain_id = ((relationships.get("chain") or {}).get("data") or {}).get("id")
        network = from_zerion_chain_id(zerion_chain_id) if zerion_chain_id else None

        position_type = PositionTag.parse(attributes.get("position_type"))
        app = attributes.get("application_metadata") or {}
        dapp_id = ((relationships.get("dapp") or {}).get("data") or {}).get("id")
        protocol_name = app.get("name") or attributes.get("protocol") or ""
        protocol_id = dapp_id or (protocol_name.lower().replace(" ", "-") if protocol_name else None)
        if protocol_id is None and position_type == PositionTag.WALLET:
            protocol_id = "wallet"

        pool_address = attributes.get("pool_address")
        tokens = []
        fungible_info = attributes.get("fungible_info")
        if fungible_info:
            tokens.append(self._parse_token(attributes, fungible_info, position_type, network, zerion_chain_id))

        return {
            "id": item.get("id"),
            "protocol_id": protocol_id,
            "protocol_name": protocol_name,
            "network": network,
            "position_type": position_type,
            "protocol_module": attributes.get("protocol_module"),
            "correlation_key": attributes.get("group_id"),
            "market": pool_address or protocol_name or None,
            "pool_address": pool_address,
            "name": attributes.get("name") or "",
            "tokens": tokens,
            "value_usd": _decimal_str(attributes.get("value")),
        }

    @staticmethod
    def _parse_token(
        attributes: dict[str, Any],
        fungible_info: dict[str, Any],
        position_type: PositionTag,
        network: str | None,
        zerion_chain_id: str | None,
    ) -> dict[str, Any]:
        quantity = attributes.get("quantity") or {}
        implementations = fungible_info.get("implementations") or []

        # Implementation matching the chain, falling back to the first one
        implementation = next(
            (impl for impl in implementations if impl.get("chain_id") == zerion_chain_id),
            implementations[0] if implementations else {},
        )

        amount = quantity.get("numeric") or quantity.get("float") or "0"
        decimals = quantity.get("decimals")
        if decimals is None:
            decimals = implementation.get("decimals", 18)
        return {
            "role": TOKEN_ROLES.get(position_type, TokenRole.UNDERLYING),
            "symbol": fungible_info.get("symbol") or "UNKNOWN",
            "name": fungible_info.get("name") or "",
            "address": implementation.get("address") or NATIVE_ADDRESS,
            "network": network or "",
            "amount": str(amount),
            "decimals": decimals,
            "unit_price_usd": _decimal_str(attributes.get("price")),
            "value_usd": _decimal_str(attributes.get("value")),
        }

    async def close(self) -> None:
        """Close the HTTP client if this client created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "ZerionClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object | None) -> None:
        """Async context manager exit."""
        await self.close()


def _decimal_str(value: Any) -> Any:
    # Floats go through str() so Decimal keeps the provider's digits
    if isinstance(value, float):
        return str(value)
    return value
