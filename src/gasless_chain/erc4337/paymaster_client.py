"""ERC-4337 paymaster client (sponsor model)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..exceptions import PaymasterError
from ..logging_utils import mask_url
from .user_operation import UserOperation

logger = logging.getLogger(__name__)


@dataclass
class PaymasterConfig:
    url: str
    timeout_seconds: float = 30.0
    mode: str = "SPONSORED"


@dataclass
class SponsoredUserOperation:
    paymaster_and_data: str
    call_gas_limit: Optional[int] = None
    verification_gas_limit: Optional[int] = None
    pre_verification_gas: Optional[int] = None

    def as_fields(self) -> dict[str, Any]:
        """Field mapping consumed by UserOperation.apply_sponsorship."""
        return {
            "paymasterAndData": self.paymaster_and_data,
            "callGasLimit": self.call_gas_limit,
            "verificationGasLimit": self.verification_gas_limit,
            "preVerificationGas": self.pre_verification_gas,
        }


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16) if str(value).startswith("0x") else int(value)


class PaymasterClient:
    """Paymaster client for sponsored user operations."""

    def __init__(self, config: PaymasterConfig, http_client: Optional[httpx.AsyncClient] = None):
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
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise PaymasterError(f"Paymaster timed out ({method})") from e
        except httpx.HTTPStatusError as e:
            raise PaymasterError(
                f"Paymaster HTTP {e.response.status_code} ({method})",
                code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise PaymasterError(f"Paymaster unreachable ({method}) at {mask_url(self._config.url)}: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise PaymasterError(f"Paymaster returned a non-JSON response ({method})") from e
        if not isinstance(data, dict):
            raise PaymasterError(f"Paymaster returned a malformed response ({method})")
        if data.get("error"):
            error = data["error"]
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise PaymasterError(f"Paymaster RPC error ({method}): {message}", code=code)
        return data.get("result")

    async def sponsor_user_operation(
        self,
        user_op: UserOperation,
        entrypoint: str,
        expiry_seconds: int = 300,
    ) -> SponsoredUserOperation:
        """Request sponsorship; the paymaster also calculates gas limits."""
        result = await self._rpc(
            "pm_sponsorUserOperation",
            [
                user_op.to_rpc(),
                {
                    "mode": self._config.mode,
                    "calculateGasLimits": True,
                    "expiryDuration": expiry_seconds,
                    "entryPoint": entrypoint,
                },
            ],
        )
        if not isinstance(result, dict) or not isinstance(result.get("paymasterAndData"), str):
            raise PaymasterError("Paymaster returned invalid sponsorship payload")
        if result["paymasterAndData"] in ("", "0x"):
            raise PaymasterError("Paymaster declined to sponsor the operation")

        try:
            return SponsoredUserOperation(
                paymaster_and_data=result["paymasterAndData"],
                call_gas_limit=_optional_int(result.get("callGasLimit")),
                verification_gas_limit=_optional_int(result.get("verificationGasLimit")),
                pre_verification_gas=_optional_int(result.get("preVerificationGas")),
            )
        except (TypeError, ValueError) as e:
            raise PaymasterError(f"Paymaster returned malformed gas limits: {e}") from e

    async def get_balance(self) -> int:
        """Remaining sponsorship budget in wei."""
        result = await self._rpc("pm_getBalance", [])
        try:
            balance = _optional_int(result)
        except (TypeError, ValueError) as e:
            raise PaymasterError(f"Paymaster returned malformed balance: {result!r}") from e
        if balance is None:
            raise PaymasterError("Paymaster returned no balance")
        return balance

    async def close(self) -> None:
        await self._client.aclose()
