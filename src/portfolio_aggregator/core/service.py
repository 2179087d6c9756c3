"""Portfolio service combining cached wallet structure with live prices."""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

from portfolio_aggregator.cache.keys import normalize_networks
from portfolio_aggregator.cache.tiered import TieredCache
from portfolio_aggregator.core.aggregator import PositionAggregator
from portfolio_aggregator.core.categorizer import PositionCategorizer
from portfolio_aggregator.core.models import (
    DiscoveryFilter,
    EnrichmentStats,
    PortfolioSummary,
    PricedPosition,
    PriceSnapshot,
    PriceSource,
    StructureSnapshot,
)
from portfolio_aggregator.data.loader import get_default_networks
from portfolio_aggregator.integrations.zerion import DiscoveryProvider
from portfolio_aggregator.pricing.enrichment import MetadataEnrichmentPipeline
from portfolio_aggregator.pricing.valuation import apply_prices, build_price_snapshot

logger = logging.getLogger(__name__)


class PortfolioService:
    """
    Answers "what does this wallet hold and what is it worth now".

    Workflow:
    1. Read the wallet structure from the cache, or discover it (primary
       provider → aggregator → categorizer) and cache it for the long TTL
    2. Read prices for the structure's tokens from the cache, or enrich them
       through the bulkhead pipeline and cache them for the short TTL
    3. Value every position with the latest prices and build the summary

    Parameters
    ----------
    discovery : DiscoveryProvider
        Primary position discovery provider
    enrichment : MetadataEnrichmentPipeline
        Secondary price/metadata pipeline
    cache : TieredCache | None
        Structure/price cache. An in-memory one is created if None.
    aggregator : PositionAggregator | None
        Position aggregator
    categorizer : PositionCategorizer | None
        Position categorizer
    default_networks : list[str] | None
        Networks used when a request names none
    position_filter : DiscoveryFilter
        Filter passed to the discovery provider
    clock : Callable[[], datetime] | None
        Returns the current time as an aware UTC datetime

    """

    def __init__(
        self,
        discovery: DiscoveryProvider,
        enrichment: MetadataEnrichmentPipeline,
        cache: TieredCache | None = None,
        aggregator: PositionAggregator | None = None,
        categorizer: PositionCategorizer | None = None,
        default_networks: list[str] | None = None,
        position_filter: DiscoveryFilter = DiscoveryFilter.ONLY_COMPLEX,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.discovery = discovery
        self.enrichment = enrichment
        self.cache = cache or TieredCache()
        self.aggregator = aggregator or PositionAggregator()
        self.categorizer = categorizer or PositionCategorizer()
        self.default_networks = default_networks or get_default_networks()
        self.position_filter = position_filter
        self._clock = clock or (lambda: datetime.now(UTC))

    async def get_portfolio(
        self,
        wallet: str,
        networks: list[str] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> PortfolioSummary:
        """
        Build the portfolio summary for a wallet.

        Parameters
        ----------
        wallet : str
            Wallet address
        networks : list[str] | None
            Networks to cover (None = default networks)
        cancel_event : asyncio.Event | None
            Set by the caller to cut price enrichment short

        Returns
        -------
        PortfolioSummary
            Positions valued with the latest prices, with totals and cache flags

        Raises
        ------
        AuthenticationError
            If the discovery provider rejects the credentials
        RateLimitExceededError
            If the discovery rate budget is exhausted
        ProviderUnavailableError
            If the discovery provider is down

        """
        wallet = wallet.strip().lower()
        networks = normalize_networks(networks or self.default_networks)

        structure, structure_from_cache = await self.cache.get_or_refresh_structure(
            wallet,
            networks,
            lambda: self.discover(wallet, networks),
        )

        token_refs = structure.token_references()
        enrichment_stats: EnrichmentStats | None = None

        async def refresh_prices() -> PriceSnapshot:
            nonlocal enrichment_stats
            result = await self.enrichment.enrich_missing(token_refs, cancel_event=cancel_event)
            enrichment_stats = result.stats
            return build_price_snapshot(structure, result)

        prices, prices_from_cache = await self.cache.get_or_refresh_prices(token_refs, refresh_prices)

        summary = self._summarize(structure, prices)
        summary.structure_from_cache = structure_from_cache
        summary.prices_from_cache = prices_from_cache
        summary.enrichment = enrichment_stats

        logger.info(
            "Portfolio for %s: %d position(s) worth $%s (structure %s, prices %s)",
            wallet,
            len(summary.positions),
            summary.total_value_usd,
            "cached" if structure_from_cache else "fresh",
            "cached" if prices_from_cache else "fresh",
        )
        return summary

    async def discover(self, wallet: str, networks: list[str]) -> StructureSnapshot:
        """
        Discover, aggregate and categorize a wallet's positions, bypassing the cache.

        Parameters
        ----------
        wallet : str
            Wallet address
        networks : list[str]
            Networks to cover

        Returns
        -------
        StructureSnapshot
            Categorized positions with per-network grouping

        """
        result = await self.discovery.fetch_positions(wallet, networks, self.position_filter)
        aggregation = self.aggregator.aggregate(result.positions)
        positions = self.categorizer.categorize_all(aggregation.positions)

        by_network: dict[str, list[str]] = {}
        for position in positions:
            by_network.setdefault(position.network, []).append(position.id)

        logger.debug(
            "Discovered %d raw position(s) for %s across %d page(s), %d composite(s)",
            len(result.positions),
            wallet,
            result.pages,
            len(positions),
        )
        return StructureSnapshot(
            wallet=wallet,
            networks=networks,
            positions=positions,
            by_network=by_network,
            skipped_count=aggregation.skipped_count,
            discovered_at=self._clock(),
        )

    @staticmethod
    def _summarize(structure: StructureSnapshot, prices: PriceSnapshot) -> PortfolioSummary:
        positions: list[PricedPosition] = [apply_prices(position, prices) for position in structure.positions]

        by_category: dict[str, Decimal] = {}
        by_network: dict[str, Decimal] = {}
        by_protocol: dict[str, Decimal] = {}
        for position in positions:
            by_category[position.category] = by_category.get(position.category, Decimal("0")) + position.value_usd
            by_network[position.network] = by_network.get(position.network, Decimal("0")) + position.value_usd
            by_protocol[position.protocol_id] = by_protocol.get(position.protocol_id, Decimal("0")) + position.value_usd

        fallback_tokens = sum(
            1 for position in positions for token in position.tokens if token.price_source == PriceSource.FALLBACK
        )

        return PortfolioSummary(
            wallet=structure.wallet,
            networks=structure.networks,
            positions=positions,
            total_value_usd=sum((position.value_usd for position in positions), Decimal("0")),
            by_category=by_category,
            by_network=by_network,
            by_protocol=by_protocol,
            skipped_count=structure.skipped_count,
            fallback_token_count=fallback_tokens,
            discovered_at=structure.discovered_at,
        )
