"""Rule-based classification of aggregated positions into portfolio categories."""

from collections.abc import Iterable

from portfolio_aggregator.core.models import (
    AggregatedPosition,
    CategorizedPosition,
    Category,
    PositionTag,
    ProtocolModule,
)

STAKING_TAGS = frozenset({PositionTag.STAKED, PositionTag.STAKING})
POOL_TAGS = frozenset({PositionTag.LIQUIDITY, PositionTag.DEPOSIT})


class PositionCategorizer:
    """
    Assigns exactly one category to each aggregated position.

    Rules are evaluated in order and the first match wins:

    1. Lending: module ``lending``
    2. Staking: module ``staking`` with a staked/staking tag
    3. Farming: module ``farming``
    4. LiquidityPool: liquidity/deposit tag and a pool address
    5. Vault: module ``vault``
    6. Yield: ``yield`` tag
    7. Rewards: ``reward`` tag without a staked/staking tag
    8. Other

    The result depends only on (module, tags, pool address), so the same
    position always lands in the same category.

    """

    def categorize(self, position: AggregatedPosition) -> Category:
        module = position.protocol_module
        tags = set(position.position_tags) or {position.position_type}

        if module == ProtocolModule.LENDING:
            return Category.LENDING
        if module == ProtocolModule.STAKING and tags & STAKING_TAGS:
            return Category.STAKING
        if module == ProtocolModule.FARMING:
            return Category.FARMING
        if tags & POOL_TAGS and position.pool_address:
            return Category.LIQUIDITY_POOL
        if module == ProtocolModule.VAULT:
            return Category.VAULT
        if PositionTag.YIELD in tags:
            return Category.YIELD
        if PositionTag.REWARD in tags and not tags & STAKING_TAGS:
            return Category.REWARDS
        return Category.OTHER

    def categorize_all(self, positions: Iterable[AggregatedPosition]) -> list[CategorizedPosition]:
        """Categorize positions, preserving input order."""
        return [
            CategorizedPosition(**position.model_dump(exclude={"category"}), category=self.categorize(position))
            for position in positions
        ]
