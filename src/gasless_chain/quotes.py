"""
Swap aggregator client.

Quotes and swap transactions come from a 1inch-style REST API. The only
thing the rest of the package consumes is the ready-to-send ``tx``
CallRequest, typically batched after an approval:

    approve = await quotes.get_approve_tx(chain_id, token, amount)
    swap = await quotes.get_swap(chain_id, token, WETH, amount, from_address=owner)
    await orchestrator.execute([approve, swap.tx])
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .exceptions import QuoteUnavailable
from .models import CallRequest

logger = logging.getLogger(__name__)

AGGREGATOR_API_BASE = "https://api.1inch.io/v5.0"

# Native token placeholder used by the aggregator
NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

SUPPORTED_CHAINS: Dict[int, str] = {
    1: "ethereum",
    56: "bsc",
    137: "polygon",
    42161: "arbitrum",
    10: "optimism",
    43114: "avalanche",
    100: "gnosis",
    250: "fantom",
}


def price_impact_percent(amount: int, to_amount: int) -> float:
    """Absolute relative difference between input and output amounts, in percent."""
    if amount == 0:
        return 0.0
    return abs(amount - to_amount) / amount * 100


@dataclass(frozen=True)
class SwapQuote:
    from_token: str
    to_token: str
    from_token_amount: int
    to_token_amount: int
    price_impact: float
    estimated_gas: Optional[int] = None
    protocols: Optional[List[Any]] = None
    tx: Optional[CallRequest] = None


class AggregatorQuoteClient:
    """REST client for swap quotes and swap calldata."""

    def __init__(
        self,
        base_url: str = AGGREGATOR_API_BASE,
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    @staticmethod
    def is_supported(chain_id: int) -> bool:
        return chain_id in SUPPORTED_CHAINS

    async def _get(self, chain_id: int, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_supported(chain_id):
            raise QuoteUnavailable(f"Chain {chain_id} not supported by the swap aggregator")

        # the API rejects empty optional parameters
        params = {k: v for k, v in params.items() if v not in (None, "", 0, False)}
        url = f"{self._base_url}/{chain_id}/{path}"
        try:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            try:
                body = e.response.json()
            except ValueError:
                body = {}
            message = (body.get("description") or body.get("message")) if isinstance(body, dict) else None
            raise QuoteUnavailable(
                f"Aggregator {path} failed ({e.response.status_code}): {message or e.response.text}",
                details={"chain_id": chain_id, "status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise QuoteUnavailable(f"Aggregator {path} request failed: {e}") from e

        return response.json()

    async def get_quote(
        self,
        chain_id: int,
        from_token: str,
        to_token: str,
        amount: int,
        slippage: float = 1,
        from_address: Optional[str] = None,
    ) -> SwapQuote:
        data = await self._get(chain_id, "quote", {
            "fromTokenAddress": from_token,
            "toTokenAddress": to_token,
            "amount": str(amount),
            "fromAddress": from_address,
            "slippage": slippage,
        })
        to_amount = int(data["toTokenAmount"])
        return SwapQuote(
            from_token=from_token,
            to_token=to_token,
            from_token_amount=int(data.get("fromTokenAmount", amount)),
            to_token_amount=to_amount,
            price_impact=price_impact_percent(amount, to_amount),
            estimated_gas=data.get("estimatedGas"),
            protocols=data.get("protocols") or [],
        )

    async def get_swap(
        self,
        chain_id: int,
        from_token: str,
        to_token: str,
        amount: int,
        from_address: str,
        slippage: float = 1,
        recipient: Optional[str] = None,
    ) -> SwapQuote:
        data = await self._get(chain_id, "swap", {
            "fromTokenAddress": from_token,
            "toTokenAddress": to_token,
            "amount": str(amount),
            "fromAddress": from_address,
            "slippage": slippage,
            "destReceiver": recipient or from_address,
        })
        if not isinstance(data.get("tx"), dict):
            raise QuoteUnavailable("Aggregator returned no swap transaction")

        to_amount = int(data["toTokenAmount"])
        tx = data["tx"]
        return SwapQuote(
            from_token=from_token,
            to_token=to_token,
            from_token_amount=int(data.get("fromTokenAmount", amount)),
            to_token_amount=to_amount,
            price_impact=price_impact_percent(amount, to_amount),
            estimated_gas=tx.get("gas"),
            protocols=data.get("protocols") or [],
            tx=CallRequest.from_dict(tx),
        )

    async def get_approve_tx(self, chain_id: int, token_address: str, amount: Optional[int] = None) -> CallRequest:
        """Approval call letting the aggregator router spend ``token_address``."""
        data = await self._get(chain_id, "approve/transaction", {
            "tokenAddress": token_address,
            "amount": str(amount) if amount is not None else None,
        })
        return CallRequest.from_dict(data)

    async def close(self) -> None:
        await self._client.aclose()
