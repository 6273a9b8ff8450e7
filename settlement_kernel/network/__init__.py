"""Asset network boundary: the client contract and an in-memory implementation."""

from settlement_kernel.network.contract import (
    AssetNetworkClient,
    Keypair,
    NetworkReceipt,
    SecretStore,
    format_amount,
    parse_amount,
)
from settlement_kernel.network.memory import InMemoryAssetNetwork, InMemorySecretStore

__all__ = [
    "AssetNetworkClient",
    "InMemoryAssetNetwork",
    "InMemorySecretStore",
    "Keypair",
    "NetworkReceipt",
    "SecretStore",
    "format_amount",
    "parse_amount",
]
