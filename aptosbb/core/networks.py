"""Supported Aptos network configurations."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for a public Aptos network."""

    name: str
    chain_id: int
    node_url: str
    explorer_url: str
    is_testnet: bool = False


# ── Network Registry ─────────────────────────────────────────────────────────

NETWORKS: dict[str, NetworkConfig] = {
    "mainnet": NetworkConfig(
        name="mainnet",
        chain_id=1,
        node_url="https://api.mainnet.aptoslabs.com/v1",
        explorer_url="https://explorer.aptoslabs.com/?network=mainnet",
    ),
    "testnet": NetworkConfig(
        name="testnet",
        chain_id=2,
        node_url="https://api.testnet.aptoslabs.com/v1",
        explorer_url="https://explorer.aptoslabs.com/?network=testnet",
        is_testnet=True,
    ),
    "devnet": NetworkConfig(
        name="devnet",
        chain_id=3,  # reset on every devnet wipe; the fetched ledger info wins
        node_url="https://api.devnet.aptoslabs.com/v1",
        explorer_url="https://explorer.aptoslabs.com/?network=devnet",
        is_testnet=True,
    ),
    "local": NetworkConfig(
        name="local",
        chain_id=4,
        node_url="http://127.0.0.1:8080/v1",
        explorer_url="https://explorer.aptoslabs.com/?network=local",
        is_testnet=True,
    ),
}


def get_network_config(name: str) -> NetworkConfig | None:
    """Get network configuration by name."""
    return NETWORKS.get(name.lower())


def resolve_node_url(network: str, override: str = "") -> str:
    """Return the fullnode URL for ``network`` unless ``override`` is set."""
    if override:
        return override.rstrip("/")
    config = get_network_config(network)
    if config is None:
        raise ValueError(f"Unsupported network: {network}")
    return config.node_url
