"""Valuation of categorized positions with live price quotes."""

from decimal import Decimal

from portfolio_aggregator.core.models import (
    CategorizedPosition,
    FarmingDetails,
    LendingDetails,
    PositionToken,
    PriceQuote,
    PricedPosition,
    PriceSnapshot,
    PriceSource,
    StructureSnapshot,
    TokenRole,
)
from portfolio_aggregator.pricing.enrichment import EnrichmentResult, EnrichmentStatus

# Worst source wins when a position mixes sources
SOURCE_RANK = {PriceSource.SECONDARY: 0, PriceSource.PRIMARY: 1, PriceSource.FALLBACK: 2}


def build_price_snapshot(structure: StructureSnapshot, result: EnrichmentResult) -> PriceSnapshot:
    """
    Turn enrichment outcomes into price quotes for every token of a structure.

    A successful secondary lookup gives a ``secondary`` quote. Otherwise the unit
    price reported by the discovery provider gives a ``primary`` quote dated at
    discovery time. Tokens with neither get no quote and are valued as fallback.

    Parameters
    ----------
    structure : StructureSnapshot
        Structure whose tokens need prices
    result : EnrichmentResult
        Outcome of the enrichment batch

    Returns
    -------
    PriceSnapshot
        Quotes keyed by token key; ``complete`` is False when the batch was cut short

    """
    primary_prices = _primary_unit_prices(structure)
    quotes: dict[str, PriceQuote] = {}

    for ref in structure.token_references():
        outcome = result.get(ref)
        if (
            outcome is not None
            and outcome.status == EnrichmentStatus.OK
            and outcome.metadata is not None
            and outcome.metadata.price_usd is not None
        ):
            quotes[ref.key] = PriceQuote(
                unit_price_usd=outcome.metadata.price_usd,
                as_of=outcome.metadata.as_of,
                source=PriceSource.SECONDARY,
            )
        elif ref.key in primary_prices:
            quotes[ref.key] = PriceQuote(
                unit_price_usd=primary_prices[ref.key],
                as_of=structure.discovered_at,
                source=PriceSource.PRIMARY,
            )

    complete = not result.timed_out and result.cancelled == 0
    return PriceSnapshot(quotes=quotes, complete=complete)


def _primary_unit_prices(structure: StructureSnapshot) -> dict[str, Decimal]:
    prices: dict[str, Decimal] = {}
    for position in structure.positions:
        for token in position.tokens:
            if token.unit_price_usd is not None:
                prices.setdefault(token.ref.key, token.unit_price_usd)
    return prices


def price_token(token: PositionToken, snapshot: PriceSnapshot) -> PositionToken:
    """Apply the snapshot's quote to one token, or mark it as fallback."""
    quote = snapshot.get(token.ref)
    if quote is None:
        return token.model_copy(update={"price_source": PriceSource.FALLBACK})

    return token.model_copy(
        update={
            "unit_price_usd": quote.unit_price_usd,
            "value_usd": token.amount * quote.unit_price_usd,
            "price_source": quote.source,
        },
    )


def apply_prices(position: CategorizedPosition, snapshot: PriceSnapshot) -> PricedPosition:
    """
    Value a categorized position with the latest quotes.

    Farming composites are worth staked plus rewards, lending composites
    supplied minus borrowed, and everything else the sum of its tokens.
    Tokens without a quote keep their discovery-time value.

    Parameters
    ----------
    position : CategorizedPosition
        Position from the structure snapshot
    snapshot : PriceSnapshot
        Latest price quotes

    Returns
    -------
    PricedPosition
        Position with live ``value_usd``, re-priced tokens and details

    """
    tokens = [price_token(token, snapshot) for token in position.tokens]
    details = position.details

    if not tokens:
        value = position.total_value_usd
        source = PriceSource.FALLBACK
    else:
        source = max((token.price_source or PriceSource.FALLBACK for token in tokens), key=SOURCE_RANK.__getitem__)

        if isinstance(details, LendingDetails):
            supplied = _sum_values(t for t in tokens if t.role != TokenRole.BORROWED)
            borrowed = _sum_values(t for t in tokens if t.role == TokenRole.BORROWED)
            value = supplied - borrowed
            details = details.model_copy(
                update={
                    "supplied_value_usd": supplied,
                    "borrowed_value_usd": borrowed,
                    "net_value_usd": value,
                    "is_debt": borrowed > 0 and supplied == 0,
                },
            )
        elif isinstance(details, FarmingDetails):
            staked = _sum_values(t for t in tokens if t.role != TokenRole.REWARD)
            rewards = _sum_values(t for t in tokens if t.role == TokenRole.REWARD)
            value = staked + rewards
            details = details.model_copy(update={"staked_value_usd": staked, "rewards_value_usd": rewards})
        else:
            value = _sum_values(tokens)

    return PricedPosition(
        **position.model_dump(exclude={"tokens", "details"}),
        tokens=tokens,
        details=details,
        value_usd=value,
        price_source=source,
    )


def _sum_values(tokens) -> Decimal:
    return sum((abs(token.value_usd) for token in tokens if token.value_usd is not None), Decimal("0"))
