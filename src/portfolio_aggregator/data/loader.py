"""Network configuration loader."""

from pathlib import Path
from typing import Any

import yaml


def load_networks() -> dict[str, Any]:
    """
    Load bundled network configuration from networks.yaml.

    Returns
    -------
    dict[str, Any]
        Network configuration including provider chain identifiers

    """
    path = Path(__file__).parent / "networks.yaml"
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f)


def get_network_config(network: str) -> dict[str, Any]:
    """
    Get configuration for a specific network.

    Parameters
    ----------
    network : str
        Network name (e.g., 'ethereum', 'base')

    Returns
    -------
    dict[str, Any]
        Network configuration

    Raises
    ------
    KeyError
        If network is not found in configuration

    """
    return load_networks()["networks"][network.lower()]


def get_all_supported_networks() -> list[str]:
    """
    Get list of all supported network names.

    Returns
    -------
    list[str]
        List of network names

    """
    return list(load_networks()["networks"].keys())


def get_default_networks() -> list[str]:
    """Networks queried when the caller does not name any."""
    return list(load_networks()["default_networks"])


def to_zerion_chain_id(network: str) -> str | None:
    """
    Translate a network name to Zerion's chain identifier.

    Parameters
    ----------
    network : str
        Network name

    Returns
    -------
    str | None
        Zerion chain id, or None for unsupported networks

    """
    try:
        return get_network_config(network)["zerion_chain_id"]
    except KeyError:
        return None


def from_zerion_chain_id(chain_id: str) -> str:
    """
    Translate a Zerion chain identifier back to a network name.

    Unknown identifiers are returned unchanged.

    """
    for name, config in load_networks()["networks"].items():
        if config["zerion_chain_id"] == chain_id:
            return name
    return chain_id


def get_price_coin_id(network: str, address: str) -> str:
    """
    Build the DeFiLlama coin id for a token.

    Parameters
    ----------
    network : str
        Network name
    address : str
        Token contract address, or ``"native"`` for the gas token

    Returns
    -------
    str
        Coin id (e.g., "ethereum:0x...", "coingecko:ethereum")

    Raises
    ------
    KeyError
        If a native token is requested on an unsupported network

    """
    if address == "native":
        return get_network_config(network)["native_coin_id"]

    try:
        llama_chain = get_network_config(network)["llama_chain"]
    except KeyError:
        llama_chain = network.lower()
    return f"{llama_chain}:{address.lower()}"
