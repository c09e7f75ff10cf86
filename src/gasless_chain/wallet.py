"""Wallet provider boundary and a local-key implementation."""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

from eth_account import Account
from eth_account.messages import encode_defunct

from .exceptions import RPCError, WalletRequestError
from .models import CallRequest
from .networks import NetworkRegistry, get_registry
from .rpc_client import ChainRPCClient

logger = logging.getLogger(__name__)

# EIP-1193 / EIP-3326 error codes
USER_REJECTED_CODE = 4001
UNRECOGNIZED_CHAIN_CODE = 4902


@dataclass(frozen=True)
class AccountsChanged:
    """Wallet account list changed. Empty means access was removed."""
    accounts: Tuple[str, ...]


@dataclass(frozen=True)
class ChainChanged:
    """Wallet active chain changed."""
    chain_id: int


@dataclass(frozen=True)
class WalletDisconnected:
    """Wallet dropped the connection."""
    reason: str = ""


WalletEvent = Union[AccountsChanged, ChainChanged, WalletDisconnected]


class WalletProvider(ABC):
    """Abstract interface for wallet providers."""

    @abstractmethod
    async def request_accounts(self) -> List[str]:
        """Request account access; returns the authorized addresses."""

    @abstractmethod
    async def get_chain_id(self) -> int:
        """Active chain id."""

    @abstractmethod
    async def send_transaction(self, call: CallRequest) -> str:
        """Sign and broadcast ``call`` from the active account; returns the tx hash."""

    @abstractmethod
    async def sign_message(self, message: bytes) -> str:
        """Personal-sign ``message`` with the active account; returns 0x-hex signature."""

    @abstractmethod
    async def switch_chain(self, chain_id: int) -> None:
        """Change the active chain. Raises WalletRequestError(4902) if unknown."""

    @abstractmethod
    async def add_chain(self, params: Dict[str, Any]) -> None:
        """Register a chain with the wallet (wallet_addEthereumChain params)."""

    @abstractmethod
    def events(self) -> AsyncIterator[WalletEvent]:
        """Stream of account/chain notifications."""

    async def close(self) -> None:
        """Release wallet resources."""


WalletFactory = Callable[[], WalletProvider]


class LocalAccountWallet(WalletProvider):
    """Wallet backed by a local private key and per-chain JSON-RPC endpoints.

    Knows every chain in the registry at construction; other chains must be
    added with ``add_chain`` before switching to them.
    """

    def __init__(
        self,
        private_key: str,
        chain_id: int,
        registry: Optional[NetworkRegistry] = None,
        rpc_factory: Callable[[str], ChainRPCClient] = ChainRPCClient,
    ):
        self._account = Account.from_key(private_key)
        self._registry = registry or get_registry()
        self._rpc_factory = rpc_factory
        self._rpc_urls: Dict[int, str] = {n.chain_id: n.rpc_url for n in self._registry}
        self._rpc_clients: Dict[int, ChainRPCClient] = {}
        self._chain_id = chain_id
        self._queue: asyncio.Queue[Optional[WalletEvent]] = asyncio.Queue()
        self._closed = False

    @property
    def address(self) -> str:
        return self._account.address

    def _rpc(self) -> ChainRPCClient:
        if self._chain_id not in self._rpc_clients:
            url = self._rpc_urls.get(self._chain_id)
            if not url:
                raise WalletRequestError(
                    f"No RPC endpoint for chain {self._chain_id}",
                    code=UNRECOGNIZED_CHAIN_CODE,
                )
            self._rpc_clients[self._chain_id] = self._rpc_factory(url)
        return self._rpc_clients[self._chain_id]

    async def request_accounts(self) -> List[str]:
        return [self._account.address]

    async def get_chain_id(self) -> int:
        return self._chain_id

    async def send_transaction(self, call: CallRequest) -> str:
        rpc = self._rpc()
        sender = self._account.address

        nonce = await rpc.get_nonce(sender)
        gas_limit = await rpc.estimate_gas(call.to_rpc(sender))
        gas_price = await rpc.get_gas_price()
        priority_fee = await rpc.get_max_priority_fee()

        tx = {
            "chainId": self._chain_id,
            "nonce": nonce,
            "to": call.to,
            "value": call.value,
            "data": call.data,
            "gas": int(gas_limit * 1.2),  # 20% buffer
            "maxFeePerGas": gas_price + priority_fee,
            "maxPriorityFeePerGas": priority_fee,
            "type": 2,
        }
        signed = self._account.sign_transaction(tx)
        try:
            tx_hash = await rpc.send_raw_transaction("0x" + signed.raw_transaction.hex().removeprefix("0x"))
        except RPCError as e:
            raise WalletRequestError(str(e), code=e.code) from e

        logger.info(f"Broadcast transaction {tx_hash} on chain {self._chain_id}")
        return tx_hash

    async def sign_message(self, message: bytes) -> str:
        signed = self._account.sign_message(encode_defunct(primitive=message))
        return "0x" + signed.signature.hex().removeprefix("0x")

    async def switch_chain(self, chain_id: int) -> None:
        if chain_id not in self._rpc_urls:
            raise WalletRequestError(
                f"Unrecognized chain ID {hex(chain_id)}",
                code=UNRECOGNIZED_CHAIN_CODE,
            )
        if chain_id == self._chain_id:
            return
        self._chain_id = chain_id
        self._queue.put_nowait(ChainChanged(chain_id))

    async def add_chain(self, params: Dict[str, Any]) -> None:
        chain_id = int(params["chainId"], 16)
        rpc_urls = params.get("rpcUrls") or []
        if not rpc_urls:
            raise WalletRequestError("add_chain requires at least one RPC URL")
        self._rpc_urls[chain_id] = rpc_urls[0]
        logger.info(f"Added chain {chain_id} ({params.get('chainName', '')})")

    async def events(self) -> AsyncIterator[WalletEvent]:
        while not self._closed:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self._closed = True
        self._queue.put_nowait(None)
        for client in self._rpc_clients.values():
            await client.close()
        self._rpc_clients.clear()
