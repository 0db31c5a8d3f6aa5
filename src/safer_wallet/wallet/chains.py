"""Network definitions for supported EVM chains."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Network:
    """An EVM-compatible network a Safe can live on."""

    name: str
    chain_id: int
    label: str
    explorer_url: str
    native_symbol: str = "ETH"


NETWORKS: dict[int, Network] = {
    1: Network(
        name="mainnet",
        chain_id=1,
        label="Ethereum Mainnet",
        explorer_url="https://etherscan.io",
    ),
    5: Network(
        name="goerli",
        chain_id=5,
        label="Goerli Testnet",
        explorer_url="https://goerli.etherscan.io",
    ),
    11155111: Network(
        name="sepolia",
        chain_id=11155111,
        label="Sepolia Testnet",
        explorer_url="https://sepolia.etherscan.io",
    ),
    137: Network(
        name="polygon",
        chain_id=137,
        label="Polygon Mainnet",
        explorer_url="https://polygonscan.com",
        native_symbol="POL",
    ),
    10: Network(
        name="optimism",
        chain_id=10,
        label="Optimism Mainnet",
        explorer_url="https://optimistic.etherscan.io",
    ),
    42161: Network(
        name="arbitrum",
        chain_id=42161,
        label="Arbitrum One",
        explorer_url="https://arbiscan.io",
    ),
    8453: Network(
        name="base",
        chain_id=8453,
        label="Base Mainnet",
        explorer_url="https://basescan.org",
    ),
}

def parse_chain(chain: int | str) -> tuple[str, int | None]:
    """Resolve a chain name or id into ``(network_name, chain_id)``.

    Unknown numeric ids get a generated ``chain-<id>`` name so they still map
    to a stable storage directory. Unknown names return ``None`` for the id.
    """
    text = str(chain).strip()
    if text.isdigit():
        chain_id = int(text)
        network = NETWORKS.get(chain_id)
        if network is not None:
            return network.name, chain_id
        return f"chain-{chain_id}", chain_id

    name = text.lower()
    for network in NETWORKS.values():
        if network.name == name:
            return name, network.chain_id
    return name, None


def get_network(chain: int | str) -> Network:
    """Get a network by name or id. Raises ``KeyError`` if not found."""
    _, chain_id = parse_chain(chain)
    if chain_id is None or chain_id not in NETWORKS:
        raise KeyError(
            f"Unknown chain '{chain}'. Available: {list_network_names()}"
        )
    return NETWORKS[chain_id]


def list_network_names() -> list[str]:
    """Return the names of all built-in networks."""
    return [n.name for n in NETWORKS.values()]
