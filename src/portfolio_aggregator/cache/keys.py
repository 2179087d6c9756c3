"""Cache key construction for the structure and price namespaces."""

import hashlib
import json
from collections.abc import Iterable

from portfolio_aggregator.core.models import TokenReference

STRUCTURE_NAMESPACE = "structure"
PRICE_NAMESPACE = "price"


def _digest(items: Iterable[str]) -> str:
    # Deterministic representation, hashed for consistent key length
    key_str = json.dumps(sorted(items))
    return hashlib.sha256(key_str.encode()).hexdigest()


def normalize_networks(networks: Iterable[str]) -> list[str]:
    """Lower-case, de-duplicate and sort network names."""
    return sorted({network.strip().lower() for network in networks if network.strip()})


def structure_key(wallet: str, networks: Iterable[str]) -> str:
    """
    Build the structure cache key for a wallet and network set.

    Parameters
    ----------
    wallet : str
        Wallet address (case-insensitive)
    networks : Iterable[str]
        Networks covered; order and duplicates do not matter

    Returns
    -------
    str
        Key of the form ``structure:{wallet}:{sha256}``

    """
    return f"{STRUCTURE_NAMESPACE}:{wallet.strip().lower()}:{_digest(normalize_networks(networks))}"


def price_key(token_refs: Iterable[TokenReference]) -> str:
    """Build the price cache key for a set of token references."""
    return f"{PRICE_NAMESPACE}:{_digest({ref.key for ref in token_refs})}"
