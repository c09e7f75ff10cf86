"""JSON-RPC client for node access (balances, gas, receipts)."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from .exceptions import RPCError
from .logging_utils import mask_url

logger = logging.getLogger(__name__)


def _hex_to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


class ChainRPCClient:
    """JSON-RPC client for blockchain interaction."""

    def __init__(
        self,
        rpc_url: str,
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._rpc_url = rpc_url
        self._timeout = timeout_seconds
        self._http_client = http_client
        self._request_id = 0

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Make JSON-RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        client = self._get_client()
        try:
            response = await client.post(
                self._rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RPCError(f"RPC transport error ({method}) at {mask_url(self._rpc_url)}: {e}") from e

        try:
            result = response.json()
        except ValueError as e:
            raise RPCError(f"RPC returned a non-JSON response ({method}) at {mask_url(self._rpc_url)}") from e
        if not isinstance(result, dict):
            raise RPCError(f"RPC returned a malformed response ({method})")
        if result.get("error"):
            error = result["error"]
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise RPCError(f"RPC error ({method}): {message}", code=code)

        return result.get("result")

    async def get_chain_id(self) -> int:
        return _hex_to_int(await self._call("eth_chainId"))

    async def get_gas_price(self) -> int:
        """Get current gas price in wei."""
        return _hex_to_int(await self._call("eth_gasPrice"))

    async def get_max_priority_fee(self) -> int:
        """Get max priority fee for EIP-1559."""
        try:
            return _hex_to_int(await self._call("eth_maxPriorityFeePerGas"))
        except RPCError:
            # Chains without EIP-1559 support
            return 1_000_000_000  # 1 gwei

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        """Estimate gas for a transaction."""
        return _hex_to_int(await self._call("eth_estimateGas", [tx]))

    async def get_balance(self, address: str) -> int:
        """Native balance in wei."""
        return _hex_to_int(await self._call("eth_getBalance", [address, "latest"]))

    async def get_nonce(self, address: str) -> int:
        """Get transaction count (nonce) for address."""
        return _hex_to_int(await self._call("eth_getTransactionCount", [address, "pending"]))

    async def get_code(self, address: str) -> str:
        return await self._call("eth_getCode", [address, "latest"]) or "0x"

    async def eth_call(self, tx: Dict[str, Any]) -> str:
        return await self._call("eth_call", [tx, "latest"]) or "0x"

    async def send_raw_transaction(self, signed_tx: str) -> str:
        """Broadcast signed transaction."""
        return await self._call("eth_sendRawTransaction", [signed_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_number(self) -> int:
        return _hex_to_int(await self._call("eth_blockNumber"))

    async def wait_for_confirmation(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout_seconds: float = 120.0,
        poll_seconds: float = 2.0,
    ) -> Dict[str, Any]:
        """Poll until ``tx_hash`` has the required confirmations.

        Raises TimeoutError if not confirmed in time and RPCError if the
        transaction reverted.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if loop.time() - start_time > timeout_seconds:
                raise TimeoutError(f"Transaction {tx_hash} not confirmed after {timeout_seconds}s")

            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt:
                if _hex_to_int(receipt.get("status", "0x0")) == 0:
                    raise RPCError(f"Transaction {tx_hash} failed on-chain")

                tx_block = _hex_to_int(receipt.get("blockNumber", "0x0"))
                current_block = await self.get_block_number()
                seen = current_block - tx_block + 1
                if seen >= confirmations:
                    logger.info(f"Transaction {tx_hash} confirmed with {seen} confirmations")
                    return receipt

                logger.debug(f"Transaction {tx_hash} has {seen} confirmations, waiting for {confirmations}")

            await asyncio.sleep(poll_seconds)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
