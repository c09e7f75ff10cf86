"""
Transaction orchestrator: sponsored execution with direct fallback.

``execute(calls)`` tries the gasless path first:

    ensure session -> build user operation -> paymaster sponsorship
        -> sign -> bundler submit -> await inclusion

Anything that only means "gasless is unavailable right now" produces a
fallback outcome and the batch goes through the wallet instead. Once the
bundler may have accepted the operation, falling back could send the same
calls twice, so an unknown bundler result raises AmbiguousOutcome.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from .config import GaslessSettings, get_settings
from .connection import ConnectionStateMachine
from .erc4337 import UserOperation, decode_nonce, encode_get_nonce
from .exceptions import (
    AmbiguousOutcome,
    BundlerError,
    BundlerTimeout,
    DirectSendFailed,
    GaslessChainError,
    PaymasterError,
    RPCError,
    SessionInitFailed,
    SponsorshipRejected,
    SubmissionFailed,
    UnsupportedBatchInDirectMode,
    WalletUnavailable,
)
from .logging_utils import ChainLogger, OperationType, get_chain_logger
from .models import CallRequest, TransactionResult
from .rpc_client import ChainRPCClient
from .smart_account import SmartAccountManager, SmartAccountSession

logger = logging.getLogger(__name__)


def _hex_to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16) if str(value).startswith("0x") else int(value)


def _receipt_succeeded(receipt: Dict[str, Any]) -> bool:
    success = receipt.get("success", True)
    if isinstance(success, str):
        return success.lower() == "true"
    return bool(success)


@dataclass(frozen=True)
class _Outcome:
    """Result of the gasless attempt: a finished transaction or a reason to fall back."""
    result: Optional[TransactionResult] = None
    fallback: Optional[GaslessChainError] = None

    @classmethod
    def done(cls, result: TransactionResult) -> "_Outcome":
        return cls(result=result)

    @classmethod
    def fall_back(cls, reason: GaslessChainError) -> "_Outcome":
        return cls(fallback=reason)


class TransactionOrchestrator:
    """Executes call batches, sponsored when possible."""

    def __init__(
        self,
        connection: ConnectionStateMachine,
        accounts: SmartAccountManager,
        settings: Optional[GaslessSettings] = None,
        chain_logger: Optional[ChainLogger] = None,
    ):
        self._connection = connection
        self._accounts = accounts
        self._settings = settings or get_settings()
        self._chain_logger = chain_logger or get_chain_logger()

        self._gasless_enabled = self._settings.gasless_enabled
        self._user_op_lock = asyncio.Lock()
        self._last_fallback_reason: Optional[str] = None

    @property
    def gasless_enabled(self) -> bool:
        return self._gasless_enabled

    def set_gasless_enabled(self, enabled: bool) -> None:
        self._gasless_enabled = enabled
        logger.info(f"Gasless mode {'enabled' if enabled else 'disabled'}")

    def toggle_gasless(self) -> bool:
        self.set_gasless_enabled(not self._gasless_enabled)
        return self._gasless_enabled

    @property
    def last_fallback_reason(self) -> Optional[str]:
        """Why the most recent ``execute`` did not use the sponsored path."""
        return self._last_fallback_reason

    async def execute(self, calls: Sequence[CallRequest], force_direct: bool = False) -> TransactionResult:
        """Execute ``calls`` in order as one unit.

        Args:
            calls: Ordered call batch; each call carries its own native value.
            force_direct: Skip the sponsored path.

        Raises:
            WalletUnavailable: no wallet connected
            AmbiguousOutcome: the bundler may have accepted the batch
            SubmissionFailed: the account or network changed before submission,
                or the sponsored operation reverted on-chain
            UnsupportedBatchInDirectMode: more than one call on the direct path
            DirectSendFailed: the wallet transaction failed
        """
        calls = list(calls)
        if not calls:
            raise ValueError("At least one call is required")
        if not self._connection.state.is_connected:
            raise WalletUnavailable("Connect a wallet before sending transactions")

        self._last_fallback_reason = None
        if force_direct:
            self._last_fallback_reason = "direct mode requested"
        elif not self._gasless_enabled:
            self._last_fallback_reason = "gasless mode disabled"
        else:
            outcome = await self._try_gasless(calls)
            if outcome.result is not None:
                return outcome.result
            self._last_fallback_reason = outcome.fallback.message
            self._chain_logger.log_fallback(self._connection.state.chain_id, outcome.fallback.message)

        return await self._execute_direct(calls)

    # ------------------------------------------------------------------
    # Sponsored path
    # ------------------------------------------------------------------

    async def _try_gasless(self, calls: Sequence[CallRequest]) -> _Outcome:
        session = await self._accounts.ensure_session()
        if session is None:
            return _Outcome.fall_back(SessionInitFailed("No smart account session for the current connection"))
        if not session.is_ready:
            return _Outcome.fall_back(SessionInitFailed(session.last_error or "Smart account session not ready"))

        # one user operation in flight per orchestrator: the EntryPoint nonce is
        # read here and only advances once the previous operation is included
        async with self._user_op_lock:
            self._check_session_current(session)
            provider = self._connection.provider
            try:
                user_op = await self._build_user_operation(session, calls, provider)
            except (RPCError, ValueError) as e:
                return _Outcome.fall_back(SubmissionFailed(f"Could not build user operation: {e}"))

            rejection = await self._request_sponsorship(session, user_op)
            if rejection is not None:
                return _Outcome.fall_back(rejection)

            return await self._submit(session, user_op, len(calls))

    async def _build_user_operation(
        self,
        session: SmartAccountSession,
        calls: Sequence[CallRequest],
        provider: ChainRPCClient,
    ) -> UserOperation:
        nonce = decode_nonce(await provider.eth_call({
            "to": session.entry_point,
            "data": encode_get_nonce(session.smart_account_address),
        }))
        gas_price = await provider.get_gas_price()
        priority_fee = await provider.get_max_priority_fee()

        return UserOperation.from_calls(
            sender=session.smart_account_address,
            nonce=nonce,
            calls=calls,
            max_fee_per_gas=max(gas_price, priority_fee),
            max_priority_fee_per_gas=priority_fee,
            init_code=session.init_code,
        )

    async def _request_sponsorship(
        self,
        session: SmartAccountSession,
        user_op: UserOperation,
    ) -> Optional[SponsorshipRejected]:
        """Fill in paymaster data, retrying once with the same operation."""
        attempts = self._settings.sponsorship_max_attempts
        last_error: Optional[PaymasterError] = None

        for attempt in range(1, attempts + 1):
            try:
                async with self._chain_logger.operation_context(
                    OperationType.SPONSORSHIP, session.chain_id, attempt=attempt,
                ):
                    sponsorship = await session.paymaster.sponsor_user_operation(
                        user_op,
                        session.entry_point,
                        expiry_seconds=self._settings.sponsorship_expiry_seconds,
                    )
            except PaymasterError as e:
                last_error = e
                logger.warning(f"Sponsorship attempt {attempt}/{attempts} failed: {e.message}")
                continue

            user_op.apply_sponsorship(sponsorship.as_fields())
            return None

        return SponsorshipRejected(
            f"Paymaster rejected sponsorship: {last_error.message if last_error else 'no attempts made'}",
        )

    def _check_session_current(self, session: SmartAccountSession) -> None:
        if not self._accounts.is_current(session) or self._connection.identity != session.identity:
            raise SubmissionFailed(
                "Account or network changed before submission; smart account session is stale",
                details={"owner": session.owner_address, "chain_id": session.chain_id},
            )

    async def _submit(self, session: SmartAccountSession, user_op: UserOperation, call_count: int) -> _Outcome:
        identity = session.identity
        self._check_session_current(session)
        wallet = self._connection.wallet

        try:
            user_op.signature = await wallet.sign_message(user_op.hash(session.entry_point, session.chain_id))
        except Exception as e:
            return _Outcome.fall_back(SubmissionFailed(f"Wallet did not sign the user operation: {e}"))

        self._check_session_current(session)

        try:
            async with self._chain_logger.operation_context(
                OperationType.BUNDLER_SUBMIT, session.chain_id, sender=user_op.sender,
            ):
                user_op_hash = await session.bundler.send_user_operation(user_op, session.entry_point)
        except BundlerError as e:
            return _Outcome.fall_back(SubmissionFailed(f"Bundler rejected user operation: {e.message}"))
        except BundlerTimeout as e:
            self._chain_logger.log_transaction_failed(
                user_op.sender, session.chain_id, e.message, AmbiguousOutcome.kind.value,
            )
            raise AmbiguousOutcome(
                f"Bundler outcome unknown; the batch may still be included: {e.message}"
            ) from e

        self._chain_logger.log_transaction_submitted(
            user_op_hash,
            session.chain_id,
            session.owner_address,
            sponsored=True,
            call_count=call_count,
            user_op_hash=user_op_hash,
        )

        try:
            receipt = await session.bundler.wait_for_receipt(
                user_op_hash,
                timeout_seconds=self._settings.inclusion_timeout_seconds,
                poll_seconds=self._settings.receipt_poll_seconds,
            )
        except BundlerTimeout as e:
            self._chain_logger.log_transaction_failed(
                user_op_hash, session.chain_id, e.message, AmbiguousOutcome.kind.value,
            )
            raise AmbiguousOutcome(
                f"User operation accepted but inclusion not observed: {e.message}",
                user_op_hash=user_op_hash,
            ) from e

        tx_receipt = receipt.get("receipt") or {}
        tx_hash = tx_receipt.get("transactionHash") or receipt.get("transactionHash") or user_op_hash
        block_number = _hex_to_int(tx_receipt.get("blockNumber"))
        gas_used = _hex_to_int(receipt.get("actualGasUsed") or tx_receipt.get("gasUsed"))

        if not _receipt_succeeded(receipt):
            error = SubmissionFailed(
                "User operation was included but reverted",
                details={"user_op_hash": user_op_hash, "transaction_hash": tx_hash},
            )
            self._chain_logger.log_transaction_failed(tx_hash, session.chain_id, error.message, error.kind.value)
            raise error

        session.mark_deployed()
        if self._connection.identity != identity:
            logger.warning(
                f"Account or network changed while awaiting inclusion of {user_op_hash}; "
                f"result belongs to {session.owner_address} on chain {session.chain_id}"
            )

        self._chain_logger.log_transaction_confirmed(
            tx_hash, session.chain_id, block_number, gas_used, sponsored=True,
        )
        return _Outcome.done(TransactionResult(
            transaction_hash=tx_hash,
            gas_used=gas_used,
            sponsored=True,
            block_confirmed=True,
            block_number=block_number,
            user_op_hash=user_op_hash,
        ))

    # ------------------------------------------------------------------
    # Direct path
    # ------------------------------------------------------------------

    async def _execute_direct(self, calls: Sequence[CallRequest]) -> TransactionResult:
        if len(calls) != 1:
            raise UnsupportedBatchInDirectMode(
                f"Direct mode sends exactly one call, got {len(calls)}",
                details={"call_count": len(calls)},
            )

        call = calls[0]
        state = self._connection.state
        wallet = self._connection.wallet
        provider = self._connection.provider

        try:
            async with self._chain_logger.operation_context(
                OperationType.DIRECT_SEND, state.chain_id, to=call.to,
            ):
                tx_hash = await wallet.send_transaction(call)
        except Exception as e:
            error = DirectSendFailed(f"Wallet failed to send transaction: {e}")
            self._chain_logger.log_transaction_failed(call.to, state.chain_id, error.message, error.kind.value)
            raise error from e

        self._chain_logger.log_transaction_submitted(
            tx_hash, state.chain_id, state.address, sponsored=False, call_count=1,
        )

        try:
            receipt = await provider.wait_for_confirmation(
                tx_hash,
                confirmations=self._settings.confirmations_required,
                timeout_seconds=self._settings.confirmation_timeout_seconds,
                poll_seconds=self._settings.receipt_poll_seconds,
            )
        except (TimeoutError, RPCError) as e:
            error = DirectSendFailed(
                f"Transaction {tx_hash} did not confirm: {e}",
                details={"transaction_hash": tx_hash},
            )
            self._chain_logger.log_transaction_failed(tx_hash, state.chain_id, error.message, error.kind.value)
            raise error from e

        block_number = _hex_to_int(receipt.get("blockNumber"))
        gas_used = _hex_to_int(receipt.get("gasUsed"))
        self._chain_logger.log_transaction_confirmed(
            tx_hash, state.chain_id, block_number, gas_used, sponsored=False,
        )
        return TransactionResult(
            transaction_hash=tx_hash,
            gas_used=gas_used,
            sponsored=False,
            block_confirmed=True,
            block_number=block_number,
        )
