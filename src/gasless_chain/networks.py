"""
Static registry of supported networks.

Each entry maps a chain id to its RPC endpoint, the bundler and paymaster
endpoints used for sponsored user operations, and native-currency metadata.
Networks without bundler/paymaster endpoints are supported for direct
(wallet-signed) transactions only.

Adding a network means adding an entry here; nothing in the orchestration
layer refers to specific chain ids.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from .config import get_settings

logger = logging.getLogger(__name__)

BUNDLER_URL_TEMPLATE = "https://bundler.biconomy.io/api/v2/{chain_id}/{api_key}"
PAYMASTER_URL_TEMPLATE = "https://paymaster.biconomy.io/api/v1/{chain_id}/{api_key}"


@dataclass(frozen=True)
class NetworkDescriptor:
    """Immutable description of one supported chain."""
    chain_id: int
    display_name: str
    rpc_url: str
    native_symbol: str
    bundler_url: Optional[str] = None
    paymaster_url: Optional[str] = None
    explorer_url: str = ""
    is_testnet: bool = False
    native_decimals: int = 18

    @property
    def supports_gasless(self) -> bool:
        return bool(self.bundler_url and self.paymaster_url)

    @property
    def hex_chain_id(self) -> str:
        return hex(self.chain_id)

    def add_chain_params(self) -> Dict[str, object]:
        """Parameters for a wallet add-network request."""
        params: Dict[str, object] = {
            "chainId": self.hex_chain_id,
            "chainName": self.display_name,
            "rpcUrls": [self.rpc_url],
            "nativeCurrency": {
                "name": self.native_symbol,
                "symbol": self.native_symbol,
                "decimals": self.native_decimals,
            },
        }
        if self.explorer_url:
            params["blockExplorerUrls"] = [self.explorer_url]
        return params


class NetworkRegistry:
    """Lookup of NetworkDescriptor by chain id."""

    def __init__(self, networks: Optional[List[NetworkDescriptor]] = None):
        self._networks: Dict[int, NetworkDescriptor] = {}
        for network in networks or []:
            self.register(network)

    def register(self, network: NetworkDescriptor) -> None:
        if network.chain_id in self._networks:
            logger.debug(f"Replacing network entry for chain {network.chain_id}")
        self._networks[network.chain_id] = network

    def get(self, chain_id: Optional[int]) -> Optional[NetworkDescriptor]:
        """Descriptor for ``chain_id`` or None when unsupported."""
        if chain_id is None:
            return None
        return self._networks.get(int(chain_id))

    def is_supported(self, chain_id: Optional[int]) -> bool:
        return self.get(chain_id) is not None

    def chain_ids(self) -> List[int]:
        return sorted(self._networks)

    def __iter__(self) -> Iterator[NetworkDescriptor]:
        return iter(self._networks[cid] for cid in self.chain_ids())

    def __len__(self) -> int:
        return len(self._networks)

    def __contains__(self, chain_id: object) -> bool:
        return chain_id in self._networks


def _build_network(
    chain_id: int,
    display_name: str,
    default_rpc: str,
    native_symbol: str,
    explorer_url: str = "",
    gasless: bool = True,
    is_testnet: bool = False,
    bundler_api_key: str = "",
    paymaster_api_key: str = "",
) -> NetworkDescriptor:
    """Build a NetworkDescriptor with environment variable overrides."""
    rpc_url = os.getenv(f"GASLESS_{chain_id}_RPC_URL") or default_rpc

    bundler_url = os.getenv(f"GASLESS_{chain_id}_BUNDLER_URL")
    paymaster_url = os.getenv(f"GASLESS_{chain_id}_PAYMASTER_URL")
    if gasless:
        if not bundler_url and bundler_api_key:
            bundler_url = BUNDLER_URL_TEMPLATE.format(chain_id=chain_id, api_key=bundler_api_key)
        if not paymaster_url and paymaster_api_key:
            paymaster_url = PAYMASTER_URL_TEMPLATE.format(chain_id=chain_id, api_key=paymaster_api_key)

    return NetworkDescriptor(
        chain_id=chain_id,
        display_name=display_name,
        rpc_url=rpc_url,
        native_symbol=native_symbol,
        bundler_url=bundler_url or None,
        paymaster_url=paymaster_url or None,
        explorer_url=explorer_url,
        is_testnet=is_testnet,
    )


def build_default_registry() -> NetworkRegistry:
    """Build the default registry with all supported chains."""
    settings = get_settings()
    keys = {
        "bundler_api_key": settings.bundler_api_key,
        "paymaster_api_key": settings.paymaster_api_key,
    }

    return NetworkRegistry([
        _build_network(1, "Ethereum Mainnet", "https://eth.llamarpc.com", "ETH",
                       explorer_url="https://etherscan.io", **keys),
        _build_network(56, "BSC Mainnet", "https://bsc-dataseed.binance.org/", "BNB",
                       explorer_url="https://bscscan.com", **keys),
        _build_network(137, "Polygon", "https://polygon-rpc.com/", "MATIC",
                       explorer_url="https://polygonscan.com", **keys),
        _build_network(42161, "Arbitrum One", "https://arb1.arbitrum.io/rpc", "ETH",
                       explorer_url="https://arbiscan.io", **keys),
        _build_network(10, "Optimism", "https://mainnet.optimism.io", "ETH",
                       explorer_url="https://optimistic.etherscan.io", **keys),
        # No bundler coverage on these two; direct transactions only
        _build_network(324, "zkSync Era", "https://mainnet.era.zksync.io", "ETH",
                       explorer_url="https://explorer.zksync.io", gasless=False),
        _build_network(1351057110, "SKALE Calypso",
                       "https://mainnet.skalenodes.com/v1/honorable-steel-rasalhague", "sFUEL",
                       gasless=False),
        # Testnets
        _build_network(11155111, "Ethereum Sepolia", "https://rpc.sepolia.org", "ETH",
                       explorer_url="https://sepolia.etherscan.io", is_testnet=True, **keys),
        _build_network(84532, "Base Sepolia", "https://sepolia.base.org", "ETH",
                       explorer_url="https://sepolia.basescan.org", is_testnet=True, **keys),
    ])


_global_registry: Optional[NetworkRegistry] = None


def get_registry() -> NetworkRegistry:
    """Get the global registry instance."""
    global _global_registry
    if _global_registry is None:
        _global_registry = build_default_registry()
    return _global_registry


def set_registry(registry: Optional[NetworkRegistry]) -> None:
    """Set the global registry instance."""
    global _global_registry
    _global_registry = registry
