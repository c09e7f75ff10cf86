"""
Structured logging for connection, session and execution operations.

Features:
- Operation context tracking with timing
- Transaction lifecycle logging (sponsored and direct)
- Audit trail support
- Address masking
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from .config import LoggingConfig, get_settings

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Types of tracked operations."""
    CONNECT = "connect"
    SWITCH_NETWORK = "switch_network"
    SESSION_INIT = "session_init"
    SPONSORSHIP = "sponsorship"
    BUNDLER_SUBMIT = "bundler_submit"
    DIRECT_SEND = "direct_send"
    GAS_ESTIMATION = "gas_estimation"


@dataclass
class OperationContext:
    """Context for a tracked operation."""
    operation_id: str
    operation_type: OperationType
    chain_id: Optional[int]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (
            (self.completed_at - self.started_at).total_seconds() * 1000
        )
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "chain_id": self.chain_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


def mask_address(address: Optional[str]) -> Optional[str]:
    """Mask middle portion of address for privacy."""
    if not address or len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def mask_url(url: str) -> str:
    """Strip anything after the path root that may carry an API key."""
    if "?" in url:
        return f"{url.split('?')[0]}?<params_masked>"
    return url


class ChainLogger:
    """
    Logger for gasless-chain operations.

    Provides structured logging with:
    - Operation context tracking
    - Transaction lifecycle logging
    - Audit trail support
    """

    def __init__(
        self,
        name: str = "gasless_chain",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or get_settings().logging
        self._operation_counter = 0

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    def _get_level(self, level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    def _address(self, address: Optional[str]) -> Optional[str]:
        return mask_address(address) if self._config.mask_addresses else address

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        chain_id: Optional[int],
        **metadata: Any,
    ) -> AsyncIterator[OperationContext]:
        """
        Context manager for tracking an operation.

        Usage:
            async with chain_logger.operation_context(OperationType.SPONSORSHIP, 137) as ctx:
                ctx.metadata["attempt"] = 1
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            chain_id=chain_id,
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {operation_type.value} on chain {chain_id}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)

        except BaseException as e:
            ctx.complete(success=False, error=str(e) or type(e).__name__)
            raise

        finally:
            level = (
                self._get_level(self._config.error_level)
                if not ctx.success
                else self._get_level(self._config.operation_level)
            )
            self._logger.log(
                level,
                f"Completed {operation_type.value} on chain {chain_id} in {ctx.duration_ms or 0:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_transaction_submitted(
        self,
        tx_hash: str,
        chain_id: int,
        from_address: str,
        sponsored: bool,
        call_count: int,
        user_op_hash: Optional[str] = None,
    ) -> None:
        """Log submission of a direct transaction or user operation."""
        entry = {
            "tx_hash": tx_hash,
            "user_op_hash": user_op_hash,
            "chain_id": chain_id,
            "from_address": self._address(from_address),
            "sponsored": sponsored,
            "call_count": call_count,
            "status": "submitted",
        }
        self._logger.info(
            f"{'User operation' if sponsored else 'Transaction'} submitted: "
            f"{user_op_hash or tx_hash} on chain {chain_id}",
            extra={"transaction": entry},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transaction_submitted", entry)

    def log_transaction_confirmed(
        self,
        tx_hash: str,
        chain_id: int,
        block_number: Optional[int],
        gas_used: Optional[int],
        sponsored: bool,
    ) -> None:
        """Log transaction confirmation."""
        entry = {
            "tx_hash": tx_hash,
            "chain_id": chain_id,
            "block_number": block_number,
            "gas_used": gas_used,
            "sponsored": sponsored,
            "status": "confirmed",
        }
        self._logger.info(
            f"Transaction confirmed: {tx_hash} in block {block_number} (sponsored={sponsored})",
            extra={"transaction": entry},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transaction_confirmed", entry)

    def log_transaction_failed(
        self,
        reference: str,
        chain_id: Optional[int],
        error: str,
        kind: str,
    ) -> None:
        """Log a failure on the path that was finally chosen."""
        entry = {
            "reference": reference,
            "chain_id": chain_id,
            "error": error,
            "kind": kind,
            "status": "failed",
        }
        self._logger.log(
            self._get_level(self._config.error_level),
            f"Transaction failed ({kind}): {reference} - {error}",
            extra={"transaction": entry},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transaction_failed", entry)

    def log_fallback(self, chain_id: Optional[int], reason: str) -> None:
        """Log a switch from the sponsored path to the direct path."""
        self._logger.warning(
            f"Gasless path unavailable on chain {chain_id}, falling back to direct: {reason}",
            extra={"fallback": {"chain_id": chain_id, "reason": reason}},
        )

    def log_gas_estimation(
        self,
        chain_id: Optional[int],
        gas_limit: Optional[int],
        gas_price_wei: Optional[int],
        is_gasless: bool,
    ) -> None:
        """Log gas estimation."""
        if not self._config.log_gas_prices:
            return

        self._logger.debug(
            f"Gas estimation for chain {chain_id}: limit={gas_limit}, "
            f"price={gas_price_wei} wei"
            + (" (GASLESS)" if is_gasless else ""),
            extra={
                "gas_estimation": {
                    "chain_id": chain_id,
                    "gas_limit": gas_limit,
                    "gas_price_wei": gas_price_wei,
                    "is_gasless": is_gasless,
                }
            },
        )

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": data,
        }

        if self._config.audit_log_path:
            try:
                with open(self._config.audit_log_path, "a") as f:
                    f.write(json.dumps(audit_entry, default=str) + "\n")
            except OSError as e:
                self._logger.error(f"Failed to write audit log: {e}")
        else:
            self._logger.info(
                f"AUDIT: {event_type}",
                extra={"audit": audit_entry},
            )


_chain_logger: Optional[ChainLogger] = None


def get_chain_logger(
    name: str = "gasless_chain",
    config: Optional[LoggingConfig] = None,
) -> ChainLogger:
    """Get the global chain logger instance."""
    global _chain_logger
    if _chain_logger is None:
        _chain_logger = ChainLogger(name, config)
    return _chain_logger


def setup_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    json_format: Optional[bool] = None,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level (defaults to settings)
        format_string: Custom format string
        json_format: Use JSON formatting (defaults to settings)
    """
    config = get_settings().logging
    level = (level or config.level).upper()
    if json_format is None:
        json_format = config.json_format

    if format_string is None:
        if json_format:
            format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level),
        format=format_string,
    )

    logging.getLogger("gasless_chain").setLevel(getattr(logging, level))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
