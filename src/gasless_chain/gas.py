"""Display-only gas cost estimation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .config import GaslessSettings, get_settings
from .connection import ConnectionStateMachine
from .logging_utils import ChainLogger, OperationType, get_chain_logger
from .models import CallRequest
from .smart_account import SmartAccountManager

if TYPE_CHECKING:
    from .orchestrator import TransactionOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GasCostEstimate:
    """Expected cost of a call to the user.

    ``is_unknown`` is set when the estimate could not be computed; the
    numeric fields are then None.
    """
    gas_limit: Optional[int]
    gas_price_wei: Optional[int]
    gas_cost_wei: Optional[int]
    is_gasless: bool = False
    is_unknown: bool = False

    @classmethod
    def gasless(cls) -> "GasCostEstimate":
        return cls(gas_limit=0, gas_price_wei=0, gas_cost_wei=0, is_gasless=True)

    @classmethod
    def unknown(cls) -> "GasCostEstimate":
        return cls(gas_limit=None, gas_price_wei=None, gas_cost_wei=None, is_unknown=True)

    @property
    def gas_cost_native(self) -> Optional[float]:
        if self.gas_cost_wei is None:
            return None
        return self.gas_cost_wei / 10**18


class GasEstimator:
    """Estimates what a call will cost the user. Never raises."""

    def __init__(
        self,
        connection: ConnectionStateMachine,
        accounts: SmartAccountManager,
        orchestrator: Optional["TransactionOrchestrator"] = None,
        gas_limit_buffer_percent: int = 0,
        settings: Optional[GaslessSettings] = None,
        chain_logger: Optional[ChainLogger] = None,
    ):
        if gas_limit_buffer_percent < 0:
            raise ValueError("gas_limit_buffer_percent cannot be negative")
        self._connection = connection
        self._accounts = accounts
        self._orchestrator = orchestrator
        self._buffer_percent = gas_limit_buffer_percent
        self._settings = settings or get_settings()
        self._chain_logger = chain_logger or get_chain_logger()

    @property
    def gasless_enabled(self) -> bool:
        if self._orchestrator is not None:
            return self._orchestrator.gasless_enabled
        return self._settings.gasless_enabled

    async def estimate(self, call: CallRequest) -> GasCostEstimate:
        """Estimate the user-paid cost of ``call``.

        Zero when the call would be sponsored; otherwise the node's gas
        estimate times the current gas price.
        """
        chain_id = self._connection.state.chain_id

        if self.gasless_enabled and self._accounts.current_ready_session() is not None:
            self._chain_logger.log_gas_estimation(chain_id, 0, 0, is_gasless=True)
            return GasCostEstimate.gasless()

        state = self._connection.state
        if not state.is_connected:
            return GasCostEstimate.unknown()

        try:
            async with self._chain_logger.operation_context(OperationType.GAS_ESTIMATION, chain_id):
                provider = self._connection.provider
                gas_limit = await provider.estimate_gas(call.to_rpc(from_address=state.address))
                gas_price = await provider.get_gas_price()
        except Exception as e:
            logger.warning(f"Failed to estimate gas on chain {chain_id}: {e}")
            return GasCostEstimate.unknown()

        gas_limit = gas_limit * (100 + self._buffer_percent) // 100
        self._chain_logger.log_gas_estimation(chain_id, gas_limit, gas_price, is_gasless=False)
        return GasCostEstimate(
            gas_limit=gas_limit,
            gas_price_wei=gas_price,
            gas_cost_wei=gas_limit * gas_price,
        )
