"""Position aggregator for grouping raw provider positions into composite positions."""

import logging
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from portfolio_aggregator.core.models import (
    AggregatedPosition,
    AggregationResult,
    FarmingDetails,
    LendingDetails,
    PositionTag,
    ProtocolModule,
    RawPosition,
)

logger = logging.getLogger(__name__)

FARMING_TAGS = frozenset({PositionTag.STAKED, PositionTag.REWARD})
REWARD_TAGS = frozenset({PositionTag.REWARD, PositionTag.CLAIMABLE})
SUPPLY_TAGS = frozenset({PositionTag.DEPOSIT})
BORROW_TAGS = frozenset({PositionTag.LOAN, PositionTag.BORROW})
LENDING_TAGS = SUPPLY_TAGS | BORROW_TAGS


class PositionAggregator:
    """
    Groups raw positions into domain composites.

    Workflow:
    1. Validate raw input once (malformed items are counted, never raised)
    2. Partition by correlation key (``group_id``); uncorrelated positions are
       singletons, except lending legs sharing (protocol, network, market)
    3. Apply the merge rule selected by the group's protocol module
    4. Emit composites in order of first appearance

    The aggregator never looks at live prices: ``total_value_usd`` is always
    derived from the provider-reported ``value_usd`` of the members.

    """

    def aggregate(self, raw_positions: Iterable[RawPosition | Mapping[str, Any]]) -> AggregationResult:
        """
        Aggregate raw positions into composites.

        Parameters
        ----------
        raw_positions : Iterable[RawPosition | Mapping[str, Any]]
            Provider positions, either validated models or raw mappings

        Returns
        -------
        AggregationResult
            Composites in input order and the number of skipped malformed items

        """
        positions, skipped = self._validate(raw_positions)

        aggregated: list[AggregatedPosition] = []
        for members in self._partition(positions).values():
            aggregated.extend(self._merge_group(members))

        if skipped:
            logger.warning("Skipped %d malformed raw position(s)", skipped)

        return AggregationResult(positions=aggregated, skipped_count=skipped)

    def _validate(
        self,
        raw_positions: Iterable[RawPosition | Mapping[str, Any]],
    ) -> tuple[list[RawPosition], int]:
        positions: list[RawPosition] = []
        skipped = 0
        for item in raw_positions:
            if isinstance(item, RawPosition):
                positions.append(item)
                continue
            try:
                positions.append(RawPosition.model_validate(item))
            except (ValidationError, TypeError) as e:
                skipped += 1
                item_id = item.get("id") if isinstance(item, Mapping) else None
                logger.debug("Rejecting raw position %s: %s", item_id, e)
        return positions, skipped

    def _partition(self, positions: list[RawPosition]) -> dict[tuple[str, ...], list[RawPosition]]:
        """
        Partition positions into correlation groups.

        Dicts preserve insertion order, so groups come out in order of first appearance.

        """
        groups: dict[tuple[str, ...], list[RawPosition]] = {}
        for position in positions:
            groups.setdefault(self._group_key(position), []).append(position)
        return groups

    @staticmethod
    def _group_key(position: RawPosition) -> tuple[str, ...]:
        if position.correlation_key:
            return ("group", position.correlation_key)
        if (
            position.protocol_module == ProtocolModule.LENDING
            and position.market
            and position.position_type in LENDING_TAGS
        ):
            return ("market", position.network, position.protocol_id, position.market)
        return ("single", position.id)

    def _merge_group(self, members: list[RawPosition]) -> list[AggregatedPosition]:
        tags = {member.position_type for member in members}
        module = self._group_module(members)

        # Module hint decides the merge rule; no (or conflicting) hint means no merge.
        if module == ProtocolModule.FARMING and tags & FARMING_TAGS:
            return [self._merge_farming(members)]

        if module == ProtocolModule.LENDING and tags & LENDING_TAGS:
            markets: dict[tuple[str, str], list[RawPosition]] = {}
            for member in members:
                markets.setdefault((member.protocol_id, member.market or ""), []).append(member)
            return [self._merge_lending(market_members) for market_members in markets.values()]

        return [self._passthrough(member) for member in members]

    @staticmethod
    def _group_module(members: list[RawPosition]) -> ProtocolModule:
        modules = {member.protocol_module for member in members}
        if len(modules) != 1:
            return ProtocolModule.UNKNOWN
        return modules.pop()

    def _merge_farming(self, members: list[RawPosition]) -> AggregatedPosition:
        staked = [m for m in members if m.position_type not in REWARD_TAGS]
        rewards = [m for m in members if m.position_type in REWARD_TAGS]

        staked_value = sum((m.value_usd for m in staked), Decimal("0"))
        rewards_value = sum((m.value_usd for m in rewards), Decimal("0"))

        anchor = staked[0] if staked else rewards[0]
        return self._build(
            anchor,
            staked + rewards,
            label="Farming",
            total_value_usd=staked_value + rewards_value,
            details=FarmingDetails(
                staked_value_usd=staked_value,
                rewards_value_usd=rewards_value,
                staked_count=len(staked),
                rewards_count=len(rewards),
            ),
        )

    def _merge_lending(self, members: list[RawPosition]) -> AggregatedPosition:
        supplied = [m for m in members if m.position_type not in BORROW_TAGS]
        borrowed = [m for m in members if m.position_type in BORROW_TAGS]

        supplied_value = sum((m.value_usd for m in supplied), Decimal("0"))
        borrowed_value = sum((abs(m.value_usd) for m in borrowed), Decimal("0"))
        net_value = supplied_value - borrowed_value

        anchor = supplied[0] if supplied else borrowed[0]
        return self._build(
            anchor,
            supplied + borrowed,
            label="Lending",
            total_value_usd=net_value,
            details=LendingDetails(
                supplied_value_usd=supplied_value,
                borrowed_value_usd=borrowed_value,
                net_value_usd=net_value,
                is_debt=borrowed_value > 0 and supplied_value == 0,
            ),
        )

    def _passthrough(self, position: RawPosition) -> AggregatedPosition:
        return self._build(
            position,
            [position],
            label=position.name or position.position_type.value.capitalize(),
            total_value_usd=position.value_usd,
            details=None,
        )

    @staticmethod
    def _build(
        anchor: RawPosition,
        members: list[RawPosition],
        *,
        label: str,
        total_value_usd: Decimal,
        details: FarmingDetails | LendingDetails | None,
    ) -> AggregatedPosition:
        # Account-level fields come from whichever member reports them
        health_factor = next((m.health_factor for m in members if m.health_factor is not None), None)
        net_apy = next((m.net_apy for m in members if m.net_apy is not None), None)

        return AggregatedPosition(
            id=anchor.id,
            protocol_id=anchor.protocol_id,
            protocol_name=anchor.protocol_name,
            network=anchor.network,
            label=label,
            protocol_module=anchor.protocol_module,
            position_type=anchor.position_type,
            position_tags=sorted({m.position_type for m in members}),
            correlation_key=anchor.correlation_key,
            market=anchor.market,
            pool_address=next((m.pool_address for m in members if m.pool_address), None),
            member_ids=[m.id for m in members],
            total_value_usd=total_value_usd,
            tokens=[token.model_copy() for m in members for token in m.tokens],
            details=details,
            health_factor=health_factor,
            net_apy=net_apy,
        )
