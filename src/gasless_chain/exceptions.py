"""Unified exception hierarchy for gasless-chain.

All package exceptions inherit from GaslessChainError, enabling:
- Consistent error handling across the connection, session and execution layers
- Structured error payloads with machine-readable codes
- A single ``kind`` attribute on execution failures so callers can branch on it

Failures that only mean "gasless mode is unavailable" (SessionInitFailed,
SponsorshipRejected, SubmissionFailed) are raised and caught inside the
package to feed the fallback path. The ones that escape ``execute`` are
AmbiguousOutcome, UnsupportedBatchInDirectMode and DirectSendFailed.

Usage:
    from gasless_chain.exceptions import ExecutionError, ErrorKind

    try:
        result = await orchestrator.execute([call])
    except ExecutionError as e:
        if e.kind is ErrorKind.AMBIGUOUS_OUTCOME:
            ...
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Machine-readable failure kinds."""
    WALLET_UNAVAILABLE = "WalletUnavailable"
    UNSUPPORTED_NETWORK = "UnsupportedNetwork"
    NETWORK_SWITCH_FAILED = "NetworkSwitchFailed"
    SESSION_INIT_FAILED = "SessionInitFailed"
    SPONSORSHIP_REJECTED = "SponsorshipRejected"
    SUBMISSION_FAILED = "SubmissionFailed"
    AMBIGUOUS_OUTCOME = "AmbiguousOutcome"
    UNSUPPORTED_BATCH_IN_DIRECT_MODE = "UnsupportedBatchInDirectMode"
    DIRECT_SEND_FAILED = "DirectSendFailed"


class GaslessChainError(Exception):
    """Base exception for all gasless-chain errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "GASLESS_CHAIN_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a response payload."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Connection errors
# =============================================================================

class WalletUnavailable(GaslessChainError):
    """No wallet of the requested kind, or the wallet refused access."""

    error_code = ErrorKind.WALLET_UNAVAILABLE.value


class UnsupportedNetwork(GaslessChainError):
    """The wallet's chain has no entry in the network registry."""

    error_code = ErrorKind.UNSUPPORTED_NETWORK.value

    def __init__(self, chain_id: Optional[int], details: Optional[dict[str, Any]] = None) -> None:
        details = details or {}
        details["chain_id"] = chain_id
        super().__init__(f"Unsupported network: {chain_id}", details=details)
        self.chain_id = chain_id


class NetworkSwitchFailed(GaslessChainError):
    """The wallet refused or failed to change its active chain."""

    error_code = ErrorKind.NETWORK_SWITCH_FAILED.value


class SessionInitFailed(GaslessChainError):
    """Smart-account session could not be provisioned. Non-fatal."""

    error_code = ErrorKind.SESSION_INIT_FAILED.value


# =============================================================================
# Execution errors
# =============================================================================

class ExecutionError(GaslessChainError):
    """Failure of an ``execute`` call, tagged with its kind."""

    kind: ErrorKind = ErrorKind.DIRECT_SEND_FAILED

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, error_code=self.kind.value, details=details)


class SponsorshipRejected(ExecutionError):
    """Paymaster declined or timed out. Drives fallback."""

    kind = ErrorKind.SPONSORSHIP_REJECTED


class SubmissionFailed(ExecutionError):
    """Bundler definitively rejected the user operation."""

    kind = ErrorKind.SUBMISSION_FAILED


class AmbiguousOutcome(ExecutionError):
    """Bundler outcome unknown; the batch may or may not land on-chain.

    Never retried and never followed by a direct-path resubmission.
    """

    kind = ErrorKind.AMBIGUOUS_OUTCOME

    def __init__(
        self,
        message: str,
        user_op_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if user_op_hash:
            details["user_op_hash"] = user_op_hash
        super().__init__(message, details=details)
        self.user_op_hash = user_op_hash


class UnsupportedBatchInDirectMode(ExecutionError):
    """Direct signing has no atomic multi-call primitive."""

    kind = ErrorKind.UNSUPPORTED_BATCH_IN_DIRECT_MODE


class DirectSendFailed(ExecutionError):
    """Wallet-signed transaction failed to send or confirm."""

    kind = ErrorKind.DIRECT_SEND_FAILED


# =============================================================================
# Transport errors
# =============================================================================

class RPCError(GaslessChainError):
    """JSON-RPC error payload or HTTP failure from a node."""

    error_code = "RPC_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if code is not None:
            details["code"] = code
        super().__init__(message, details=details)
        self.code = code


class WalletRequestError(RPCError):
    """Wallet rejected a request (EIP-1193 style error code)."""

    error_code = "WALLET_REQUEST_ERROR"


class BundlerError(RPCError):
    """Bundler returned an error payload: the operation was not accepted."""

    error_code = "BUNDLER_ERROR"


class BundlerTimeout(GaslessChainError):
    """Bundler did not answer, or did not report inclusion, in time."""

    error_code = "BUNDLER_TIMEOUT"


class PaymasterError(RPCError):
    """Paymaster rejected the sponsorship request."""

    error_code = "PAYMASTER_ERROR"


class QuoteUnavailable(GaslessChainError):
    """Swap aggregator has no quote for the request."""

    error_code = "QUOTE_UNAVAILABLE"
