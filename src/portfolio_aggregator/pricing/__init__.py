"""Pricing services for token metadata enrichment and position valuation."""

from portfolio_aggregator.pricing.defillama import DeFiLlamaMetadataProvider
from portfolio_aggregator.pricing.enrichment import (
    EnrichmentOutcome,
    EnrichmentResult,
    EnrichmentStatus,
    MetadataEnrichmentPipeline,
    MetadataProvider,
)
from portfolio_aggregator.pricing.valuation import apply_prices, build_price_snapshot

__all__ = [
    "DeFiLlamaMetadataProvider",
    "EnrichmentOutcome",
    "EnrichmentResult",
    "EnrichmentStatus",
    "MetadataEnrichmentPipeline",
    "MetadataProvider",
    "apply_prices",
    "build_price_snapshot",
]
