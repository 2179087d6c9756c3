"""Core functionality including models, aggregator, and categorizer."""

from portfolio_aggregator.core.aggregator import PositionAggregator
from portfolio_aggregator.core.categorizer import PositionCategorizer
from portfolio_aggregator.core.models import (
    AggregatedPosition,
    AggregationResult,
    CategorizedPosition,
    Category,
    PortfolioSummary,
    PositionTag,
    PositionToken,
    PricedPosition,
    ProtocolModule,
    RawPosition,
    StructureSnapshot,
    TokenReference,
)

__all__ = [
    "AggregatedPosition",
    "AggregationResult",
    "CategorizedPosition",
    "Category",
    "PortfolioSummary",
    "PositionAggregator",
    "PositionCategorizer",
    "PositionTag",
    "PositionToken",
    "PricedPosition",
    "ProtocolModule",
    "RawPosition",
    "StructureSnapshot",
    "TokenReference",
]
