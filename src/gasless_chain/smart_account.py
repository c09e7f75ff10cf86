"""
Smart-account session management.

A session binds one owner address on one chain to a bundler client, a
paymaster client and the owner's counterfactual smart-account address. It is
built lazily by ``ensure_session`` and torn down synchronously whenever the
connection's identity (address, chain) changes or the wallet disconnects.
Sessions are rebuilt, never retargeted.

Initialization failures are not errors for the caller: the session ends up
FAILED and the orchestrator uses the direct path.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Set, Tuple

from .config import GaslessSettings, get_settings
from .connection import ConnectionState, ConnectionStateMachine
from .erc4337 import (
    AccountFactoryConfig,
    BundlerClient,
    BundlerConfig,
    PaymasterClient,
    PaymasterConfig,
    build_init_code,
    decode_account_address,
    encode_get_address,
)
from .exceptions import GaslessChainError, SessionInitFailed
from .logging_utils import ChainLogger, OperationType, get_chain_logger
from .networks import NetworkDescriptor

logger = logging.getLogger(__name__)

UNKNOWN_BALANCE = None


class SessionReadiness(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass
class SmartAccountSession:
    """Smart-account session for one (owner, chain) pair."""
    chain_id: int
    owner_address: str
    generation: int
    factory: AccountFactoryConfig = field(default_factory=AccountFactoryConfig)
    smart_account_address: Optional[str] = None
    bundler: Optional[BundlerClient] = None
    paymaster: Optional[PaymasterClient] = None
    readiness: SessionReadiness = SessionReadiness.UNINITIALIZED
    init_code: str = "0x"
    last_error: Optional[str] = None

    @property
    def entry_point(self) -> str:
        return self.factory.entry_point

    @property
    def identity(self) -> Tuple[str, int]:
        return (self.owner_address, self.chain_id)

    @property
    def is_ready(self) -> bool:
        return self.readiness is SessionReadiness.READY

    @property
    def is_deployed(self) -> bool:
        return self.init_code in ("", "0x")

    def mark_deployed(self) -> None:
        self.init_code = "0x"

    async def close(self) -> None:
        for client in (self.bundler, self.paymaster):
            if client is not None:
                await client.close()


class SmartAccountManager:
    """Owns the smart-account session bound to the current connection."""

    def __init__(
        self,
        connection: ConnectionStateMachine,
        settings: Optional[GaslessSettings] = None,
        bundler_factory: Callable[[BundlerConfig], BundlerClient] = BundlerClient,
        paymaster_factory: Callable[[PaymasterConfig], PaymasterClient] = PaymasterClient,
        chain_logger: Optional[ChainLogger] = None,
    ):
        self._connection = connection
        self._settings = settings or get_settings()
        self._bundler_factory = bundler_factory
        self._paymaster_factory = paymaster_factory
        self._chain_logger = chain_logger or get_chain_logger()

        self._session: Optional[SmartAccountSession] = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._closing: Set[asyncio.Task] = set()

        self._unsubscribe = connection.subscribe(self._on_connection_change)

    @property
    def session(self) -> Optional[SmartAccountSession]:
        return self._session

    @property
    def is_ready(self) -> bool:
        return self.current_ready_session() is not None

    def _factory_config(self) -> AccountFactoryConfig:
        return AccountFactoryConfig(
            factory_address=self._settings.account_factory_address,
            entry_point=self._settings.entry_point_address,
            salt_index=self._settings.account_salt_index,
        )

    def current_ready_session(self) -> Optional[SmartAccountSession]:
        """The session if it is READY and still bound to the live identity."""
        session = self._session
        if session is None or not session.is_ready:
            return None
        if session.generation != self._generation:
            return None
        if session.identity != self._connection.identity or not self._connection.state.is_connected:
            return None
        return session

    def is_current(self, session: SmartAccountSession) -> bool:
        return self.current_ready_session() is session

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def ensure_session(self) -> Optional[SmartAccountSession]:
        """Return a READY session for the current identity, building one if needed.

        Returns None when no wallet is connected or the connection changed
        while initializing. A session whose initialization failed is
        returned with FAILED readiness.
        """
        async with self._lock:
            state = self._connection.state
            if not state.is_connected or state.address is None or state.network is None:
                return None

            ready = self.current_ready_session()
            if ready is not None:
                return ready

            generation = self._generation
            session = SmartAccountSession(
                chain_id=state.chain_id,
                owner_address=state.address,
                generation=generation,
                factory=self._factory_config(),
            )
            self._session = session
            session.readiness = SessionReadiness.INITIALIZING

            failure: Optional[Exception] = None
            try:
                async with self._chain_logger.operation_context(
                    OperationType.SESSION_INIT, state.chain_id, owner=state.address,
                ):
                    await self._initialize(session, state.network)
            except Exception as e:
                failure = e

            if generation != self._generation or session.identity != self._connection.identity:
                # identity changed or disconnect while initializing
                await session.close()
                logger.info(f"Discarding smart account session for {session.owner_address}: identity changed")
                return None

            if failure is not None:
                error = failure if isinstance(failure, SessionInitFailed) else SessionInitFailed(
                    f"Smart account initialization failed: {failure}"
                )
                session.readiness = SessionReadiness.FAILED
                session.last_error = error.message
                await session.close()
                logger.warning(
                    f"Gasless mode unavailable for {state.address} on chain {state.chain_id}: {error.message}"
                )
                return session

            session.readiness = SessionReadiness.READY
            logger.info(
                f"Smart account {session.smart_account_address} ready for {session.owner_address} "
                f"on chain {session.chain_id}"
            )
            return session

    async def _initialize(self, session: SmartAccountSession, network: NetworkDescriptor) -> None:
        if not network.supports_gasless:
            raise SessionInitFailed(f"No bundler/paymaster configured for {network.display_name}")

        timeout = self._settings.http_timeout_seconds
        session.bundler = self._bundler_factory(BundlerConfig(url=network.bundler_url, timeout_seconds=timeout))
        session.paymaster = self._paymaster_factory(PaymasterConfig(
            url=network.paymaster_url,
            timeout_seconds=timeout,
            mode=self._settings.sponsorship_mode,
        ))

        supported = await session.bundler.supported_entry_points()
        if session.entry_point.lower() not in {ep.lower() for ep in supported}:
            raise SessionInitFailed(
                f"Bundler does not support entry point {session.entry_point}"
            )

        provider = self._connection.provider
        session.smart_account_address = decode_account_address(await provider.eth_call({
            "to": session.factory.factory_address,
            "data": encode_get_address(session.owner_address, session.factory),
        }))

        code = await provider.get_code(session.smart_account_address)
        if code in ("", "0x", "0x0"):
            session.init_code = build_init_code(session.owner_address, session.factory)
        else:
            session.mark_deployed()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _on_connection_change(self, previous: ConnectionState, current: ConnectionState) -> None:
        if current.identity != previous.identity or (previous.is_connected and not current.is_connected):
            self.teardown()

    def teardown(self) -> None:
        """Drop the current session. Any in-flight initialization is discarded."""
        self._generation += 1
        session, self._session = self._session, None
        if session is None:
            return
        logger.info(f"Tearing down smart account session for {session.owner_address} on chain {session.chain_id}")
        task = asyncio.get_running_loop().create_task(session.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def close(self) -> None:
        self._unsubscribe()
        self.teardown()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------

    async def get_sponsorship_balance(self) -> Optional[int]:
        """Paymaster sponsorship budget in wei, or UNKNOWN_BALANCE."""
        session = self.current_ready_session()
        if session is None or session.paymaster is None:
            return UNKNOWN_BALANCE
        try:
            return await session.paymaster.get_balance()
        except (GaslessChainError, ValueError) as e:
            logger.warning(f"Failed to get paymaster balance: {e}")
            return UNKNOWN_BALANCE
