"""
Wallet/network connection state machine.

Owns the single ConnectionState of the process. Every transition produces a
new immutable snapshot and notifies subscribers with ``(previous, current)``.

States:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTING | CONNECTED -> ERROR
    any -> DISCONNECTED

User-initiated transitions (connect, switch_network) are serialized; wallet
notifications are applied as they arrive and may interleave with them. A
generation counter, bumped on every connect and disconnect, lets a
long-suspended operation detect that the connection it started on is gone.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Mapping, Optional, Set, Tuple

from .config import GaslessSettings, get_settings
from .exceptions import (
    GaslessChainError,
    NetworkSwitchFailed,
    RPCError,
    UnsupportedNetwork,
    WalletRequestError,
    WalletUnavailable,
)
from .logging_utils import ChainLogger, OperationType, get_chain_logger
from .networks import NetworkDescriptor, NetworkRegistry, get_registry
from .rpc_client import ChainRPCClient
from .wallet import (
    UNRECOGNIZED_CHAIN_CODE,
    AccountsChanged,
    ChainChanged,
    WalletDisconnected,
    WalletEvent,
    WalletFactory,
    WalletProvider,
)

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    """Immutable snapshot of the connection."""
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    address: Optional[str] = None
    chain_id: Optional[int] = None
    network: Optional[NetworkDescriptor] = None
    last_error: Optional[str] = None
    balance_wei: Optional[int] = None
    gas_price_wei: Optional[int] = None
    wallet_kind: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    @property
    def identity(self) -> Tuple[Optional[str], Optional[int]]:
        return (self.address, self.chain_id)


StateListener = Callable[[ConnectionState, ConnectionState], None]


class ConnectionStateMachine:
    """Explicit connection state machine with snapshot subscriptions."""

    def __init__(
        self,
        wallet_factories: Mapping[str, WalletFactory],
        registry: Optional[NetworkRegistry] = None,
        settings: Optional[GaslessSettings] = None,
        rpc_factory: Callable[[str], ChainRPCClient] = ChainRPCClient,
        chain_logger: Optional[ChainLogger] = None,
    ):
        self._wallet_factories = dict(wallet_factories)
        self._registry = registry or get_registry()
        self._settings = settings or get_settings()
        self._rpc_factory = rpc_factory
        self._chain_logger = chain_logger or get_chain_logger()

        self._state = ConnectionState()
        self._listeners: List[StateListener] = []
        self._lock = asyncio.Lock()
        self._generation = 0

        self._wallet: Optional[WalletProvider] = None
        self._provider: Optional[ChainRPCClient] = None
        self._event_task: Optional[asyncio.Task] = None
        self._gas_poll_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Snapshot access and subscriptions
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def identity(self) -> Tuple[Optional[str], Optional[int]]:
        return self._state.identity

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def registry(self) -> NetworkRegistry:
        return self._registry

    @property
    def wallet(self) -> WalletProvider:
        if self._wallet is None or not self._state.is_connected:
            raise WalletUnavailable("No connected wallet")
        return self._wallet

    @property
    def provider(self) -> ChainRPCClient:
        if self._provider is None or not self._state.is_connected:
            raise WalletUnavailable("No connected provider")
        return self._provider

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener(previous, current)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, new_state: ConnectionState) -> None:
        previous = self._state
        if new_state == previous:
            return
        self._state = new_state
        logger.debug(f"Connection state {previous.status.value} -> {new_state.status.value}")
        for listener in list(self._listeners):
            try:
                listener(previous, new_state)
            except Exception:
                logger.exception(f"Connection listener {listener!r} failed")

    def _fail(self, error: GaslessChainError, **changes) -> None:
        self._set_state(replace(
            self._state,
            status=ConnectionStatus.ERROR,
            last_error=error.message,
            **changes,
        ))

    # ------------------------------------------------------------------
    # User-initiated transitions
    # ------------------------------------------------------------------

    async def connect(self, wallet_kind: str = "local") -> ConnectionState:
        """Request account access and resolve the wallet's network.

        Raises:
            WalletUnavailable: unknown wallet kind, or the wallet refused access
            UnsupportedNetwork: the wallet's chain is not in the registry
        """
        async with self._lock:
            if self._wallet is not None:
                await self._teardown()

            self._generation += 1
            generation = self._generation
            self._set_state(ConnectionState(
                status=ConnectionStatus.CONNECTING,
                wallet_kind=wallet_kind,
            ))

            async with self._chain_logger.operation_context(
                OperationType.CONNECT, None, wallet_kind=wallet_kind,
            ) as ctx:
                wallet = self._create_wallet(wallet_kind)
                try:
                    accounts = await wallet.request_accounts()
                    chain_id = int(await wallet.get_chain_id())
                except Exception as e:
                    await wallet.close()
                    error = WalletUnavailable(f"Wallet refused account access: {e}")
                    if generation == self._generation:
                        self._fail(error)
                    raise error from e

                if generation != self._generation:
                    # disconnected while the wallet prompt was open
                    await wallet.close()
                    logger.info("Discarding connect result: connection was reset mid-flight")
                    return self._state

                if not accounts:
                    await wallet.close()
                    error = WalletUnavailable("Wallet returned no accounts")
                    self._fail(error)
                    raise error

                network = self._registry.get(chain_id)
                if network is None:
                    await wallet.close()
                    error = UnsupportedNetwork(chain_id)
                    self._fail(error, chain_id=chain_id)
                    raise error

                ctx.chain_id = chain_id
                self._wallet = wallet
                self._provider = self._rpc_factory(network.rpc_url)
                self._set_state(ConnectionState(
                    status=ConnectionStatus.CONNECTED,
                    address=accounts[0],
                    chain_id=chain_id,
                    network=network,
                    wallet_kind=wallet_kind,
                ))

            logger.info(f"Connected {accounts[0]} on {network.display_name} ({chain_id})")
            self._event_task = asyncio.create_task(self._consume_wallet_events(wallet, generation))
            self._restart_gas_poll()
            await self.refresh_balance()
            return self._state

    def _create_wallet(self, wallet_kind: str) -> WalletProvider:
        factory = self._wallet_factories.get(wallet_kind)
        if factory is None:
            error = WalletUnavailable(f"No wallet detected for kind '{wallet_kind}'")
            self._fail(error)
            raise error
        try:
            return factory()
        except Exception as e:
            error = WalletUnavailable(f"Wallet '{wallet_kind}' could not be opened: {e}")
            self._fail(error)
            raise error from e

    async def switch_network(self, chain_id: int) -> ConnectionState:
        """Ask the wallet to change chain, adding the network first if it is unknown to it.

        Raises:
            UnsupportedNetwork: ``chain_id`` is not in the registry (state unchanged)
            NetworkSwitchFailed: the wallet refused (state unchanged)
        """
        async with self._lock:
            if self._wallet is None:
                raise WalletUnavailable("Connect a wallet before switching networks")

            network = self._registry.get(chain_id)
            if network is None:
                raise UnsupportedNetwork(chain_id)

            wallet = self._wallet
            generation = self._generation

            async with self._chain_logger.operation_context(OperationType.SWITCH_NETWORK, chain_id):
                try:
                    await wallet.switch_chain(chain_id)
                except WalletRequestError as e:
                    if e.code != UNRECOGNIZED_CHAIN_CODE:
                        raise NetworkSwitchFailed(f"Failed to switch to chain {chain_id}: {e}") from e
                    logger.info(f"Chain {chain_id} unknown to wallet, adding {network.display_name}")
                    try:
                        await wallet.add_chain(network.add_chain_params())
                        await wallet.switch_chain(chain_id)
                    except Exception as add_error:
                        raise NetworkSwitchFailed(
                            f"Failed to add and switch to chain {chain_id}: {add_error}"
                        ) from add_error
                except Exception as e:
                    raise NetworkSwitchFailed(f"Failed to switch to chain {chain_id}: {e}") from e

            if generation != self._generation:
                return self._state

            await self._apply_chain(chain_id)
            return self._state

    async def disconnect(self) -> ConnectionState:
        """Reset to DISCONNECTED. Always succeeds."""
        await self._teardown()
        return self._state

    async def close(self) -> None:
        await self.disconnect()
        for task in list(self._background):
            task.cancel()

    async def _teardown(self) -> None:
        self._generation += 1
        wallet, provider = self._wallet, self._provider
        self._wallet = None
        self._provider = None
        self._stop_background_tasks()

        # listeners (smart account teardown) run synchronously here
        self._set_state(ConnectionState())

        if wallet is not None:
            logger.info("Wallet disconnected")
            await wallet.close()
        if provider is not None:
            await provider.close()

    def _stop_background_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._event_task, self._gas_poll_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._event_task = None
        self._gas_poll_task = None

    # ------------------------------------------------------------------
    # Wallet notifications
    # ------------------------------------------------------------------

    async def _consume_wallet_events(self, wallet: WalletProvider, generation: int) -> None:
        try:
            async for event in wallet.events():
                if generation != self._generation:
                    return
                try:
                    await self.apply_wallet_event(event)
                except GaslessChainError as e:
                    logger.warning(f"Wallet event {event!r} left connection in error: {e.message}")
                except Exception as e:
                    logger.error(f"Error handling wallet event {event!r}: {e}")
        except Exception as e:
            logger.error(f"Wallet event stream failed: {e}")

    async def apply_wallet_event(self, event: WalletEvent) -> None:
        """Apply one wallet notification. Idempotent."""
        if self._wallet is None:
            logger.debug(f"Ignoring wallet event {event!r}: no wallet attached")
            return

        if isinstance(event, WalletDisconnected):
            logger.info(f"Wallet reported disconnect {event.reason}".rstrip())
            await self.disconnect()

        elif isinstance(event, AccountsChanged):
            if not event.accounts:
                logger.info("Wallet removed account access")
                await self.disconnect()
                return
            address = event.accounts[0]
            if address == self._state.address:
                return
            logger.info(f"Active account changed to {address}")
            self._set_state(replace(self._state, address=address, balance_wei=None))
            await self.refresh_balance()

        elif isinstance(event, ChainChanged):
            await self._apply_chain(int(event.chain_id))

    async def _apply_chain(self, chain_id: int) -> None:
        if chain_id == self._state.chain_id and self._state.is_connected:
            return

        network = self._registry.get(chain_id)
        if network is None:
            self._stop_gas_poll()
            self._replace_provider(None)
            error = UnsupportedNetwork(chain_id)
            self._fail(error, chain_id=chain_id, network=None, balance_wei=None, gas_price_wei=None)
            logger.warning(f"Wallet moved to unsupported chain {chain_id}")
            return

        self._replace_provider(self._rpc_factory(network.rpc_url))
        self._set_state(replace(
            self._state,
            status=ConnectionStatus.CONNECTED,
            chain_id=chain_id,
            network=network,
            last_error=None,
            balance_wei=None,
            gas_price_wei=None,
        ))
        logger.info(f"Active network is now {network.display_name} ({chain_id})")
        self._restart_gas_poll()
        await self.refresh_balance()

    def _replace_provider(self, provider: Optional[ChainRPCClient]) -> None:
        old = self._provider
        self._provider = provider
        if old is not None:
            self._spawn(old.close())

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Balance and gas price
    # ------------------------------------------------------------------

    async def refresh_balance(self) -> Optional[int]:
        """Re-read the native balance of the active account. Best effort."""
        if not self._state.is_connected or self._provider is None:
            return None
        identity, generation, provider = self._state.identity, self._generation, self._provider
        try:
            balance = await provider.get_balance(identity[0])
        except RPCError as e:
            logger.warning(f"Failed to update balance: {e.message}")
            return None
        if identity != self._state.identity or generation != self._generation:
            return None
        self._set_state(replace(self._state, balance_wei=balance))
        return balance

    async def refresh_gas_price(self) -> Optional[int]:
        """Re-read the current gas price for display. Best effort."""
        if not self._state.is_connected or self._provider is None:
            return None
        identity, generation, provider = self._state.identity, self._generation, self._provider
        try:
            gas_price = await provider.get_gas_price()
        except RPCError as e:
            logger.warning(f"Failed to get gas price: {e.message}")
            return None
        if identity != self._state.identity or generation != self._generation:
            return None
        self._set_state(replace(self._state, gas_price_wei=gas_price))
        return gas_price

    def _restart_gas_poll(self) -> None:
        self._stop_gas_poll()
        self._gas_poll_task = asyncio.create_task(self._poll_gas_price(self._generation))

    def _stop_gas_poll(self) -> None:
        task = self._gas_poll_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._gas_poll_task = None

    async def _poll_gas_price(self, generation: int) -> None:
        interval = self._settings.gas_price_poll_interval_seconds
        while generation == self._generation and self._state.is_connected:
            await self.refresh_gas_price()
            await asyncio.sleep(interval)
