"""Gasless transaction orchestration: connection state, smart-account sessions and sponsored execution."""

from .config import GaslessSettings, get_settings, set_settings
from .connection import ConnectionState, ConnectionStateMachine, ConnectionStatus
from .exceptions import (
    AmbiguousOutcome,
    DirectSendFailed,
    ErrorKind,
    ExecutionError,
    GaslessChainError,
    NetworkSwitchFailed,
    SessionInitFailed,
    SponsorshipRejected,
    SubmissionFailed,
    UnsupportedBatchInDirectMode,
    UnsupportedNetwork,
    WalletUnavailable,
)
from .gas import GasCostEstimate, GasEstimator
from .models import CallRequest, TransactionResult
from .networks import NetworkDescriptor, NetworkRegistry, build_default_registry, get_registry
from .orchestrator import TransactionOrchestrator
from .quotes import AggregatorQuoteClient, SwapQuote
from .smart_account import SessionReadiness, SmartAccountManager, SmartAccountSession
from .wallet import (
    AccountsChanged,
    ChainChanged,
    LocalAccountWallet,
    WalletDisconnected,
    WalletProvider,
)

__all__ = [
    "GaslessSettings",
    "get_settings",
    "set_settings",
    "ConnectionState",
    "ConnectionStateMachine",
    "ConnectionStatus",
    "AmbiguousOutcome",
    "DirectSendFailed",
    "ErrorKind",
    "ExecutionError",
    "GaslessChainError",
    "NetworkSwitchFailed",
    "SessionInitFailed",
    "SponsorshipRejected",
    "SubmissionFailed",
    "UnsupportedBatchInDirectMode",
    "UnsupportedNetwork",
    "WalletUnavailable",
    "GasCostEstimate",
    "GasEstimator",
    "CallRequest",
    "TransactionResult",
    "NetworkDescriptor",
    "NetworkRegistry",
    "build_default_registry",
    "get_registry",
    "TransactionOrchestrator",
    "AggregatorQuoteClient",
    "SwapQuote",
    "SessionReadiness",
    "SmartAccountManager",
    "SmartAccountSession",
    "AccountsChanged",
    "ChainChanged",
    "LocalAccountWallet",
    "WalletDisconnected",
    "WalletProvider",
]
