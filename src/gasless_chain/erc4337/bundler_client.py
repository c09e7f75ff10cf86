"""ERC-4337 bundler client.

Errors are split by what they tell us about the submitted operation:
BundlerError means the bundler answered and refused it; BundlerTimeout means
we cannot tell whether it was accepted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..exceptions import BundlerError, BundlerTimeout
from ..logging_utils import mask_url
from .user_operation import UserOperation

logger = logging.getLogger(__name__)


@dataclass
class BundlerConfig:
    url: str
    timeout_seconds: float = 30.0


class BundlerClient:
    def __init__(self, config: BundlerConfig, http_client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._request_id = 0

    @property
    def url(self) -> str:
        return self._config.url

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            response = await self._client.post(self._config.url, json=payload)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # request never reached the bundler
            raise BundlerError(f"Bundler unreachable ({method}) at {mask_url(self._config.url)}: {e}") from e
        except httpx.HTTPError as e:
            raise BundlerTimeout(f"Bundler did not answer ({method}): {e}") from e

        if response.status_code >= 500:
            raise BundlerTimeout(f"Bundler HTTP {response.status_code} ({method})")
        if response.status_code >= 400:
            raise BundlerError(f"Bundler HTTP {response.status_code} ({method})", code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            # answered with something other than JSON-RPC; acceptance unknown
            raise BundlerTimeout(f"Bundler returned a non-JSON response ({method})") from e
        if not isinstance(data, dict):
            raise BundlerTimeout(f"Bundler returned a malformed response ({method})")
        if data.get("error"):
            error = data["error"]
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise BundlerError(f"Bundler RPC error ({method}): {message}", code=code)
        return data.get("result")

    async def supported_entry_points(self) -> list[str]:
        result = await self._rpc("eth_supportedEntryPoints", [])
        if not isinstance(result, list):
            raise BundlerError("Bundler returned invalid entry point list")
        return result

    async def send_user_operation(self, user_op: UserOperation, entrypoint: str) -> str:
        result = await self._rpc("eth_sendUserOperation", [user_op.to_rpc(), entrypoint])
        if not isinstance(result, str):
            # answered, but without a hash we cannot track the operation
            raise BundlerTimeout("Bundler returned invalid user op hash")
        return result

    async def get_user_operation_receipt(self, user_op_hash: str) -> dict[str, Any] | None:
        result = await self._rpc("eth_getUserOperationReceipt", [user_op_hash])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise BundlerError("Bundler returned invalid receipt payload")
        return result

    async def wait_for_receipt(
        self,
        user_op_hash: str,
        timeout_seconds: float = 180,
        poll_seconds: float = 2.0,
    ) -> dict[str, Any]:
        waited = 0.0
        while waited < timeout_seconds:
            try:
                receipt = await self.get_user_operation_receipt(user_op_hash)
            except (BundlerError, BundlerTimeout) as e:
                logger.debug(f"Receipt poll for {user_op_hash} failed: {e}")
                receipt = None
            if receipt:
                return receipt
            await asyncio.sleep(poll_seconds)
            waited += poll_seconds
        raise BundlerTimeout(f"UserOperation not included within {timeout_seconds}s: {user_op_hash}")

    async def close(self) -> None:
        await self._client.aclose()
