"""Data loading and network configuration."""

from portfolio_aggregator.data.loader import (
    from_zerion_chain_id,
    get_all_supported_networks,
    get_default_networks,
    get_network_config,
    get_price_coin_id,
    load_networks,
    to_zerion_chain_id,
)

__all__ = [
    "from_zerion_chain_id",
    "get_all_supported_networks",
    "get_default_networks",
    "get_network_config",
    "get_price_coin_id",
    "load_networks",
    "to_zerion_chain_id",
]
