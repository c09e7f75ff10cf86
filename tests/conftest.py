"""
Pytest configuration for gasless-chain tests.

Provides a scripted wallet, a mocked JSON-RPC provider and mocked
bundler/paymaster clients so the connection, session and execution layers
can be driven without a network.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from eth_abi import decode, encode
from web3 import Web3

from gasless_chain.config import ENTRYPOINT_V06, GaslessSettings, LoggingConfig, set_settings
from gasless_chain.connection import ConnectionStateMachine
from gasless_chain.erc4337 import BundlerClient, PaymasterClient, SponsoredUserOperation
from gasless_chain.erc4337.account_factory import GET_ADDRESS_SELECTOR
from gasless_chain.exceptions import WalletRequestError
from gasless_chain.logging_utils import ChainLogger
from gasless_chain.models import CallRequest
from gasless_chain.networks import NetworkDescriptor, NetworkRegistry, set_registry
from gasless_chain.orchestrator import TransactionOrchestrator
from gasless_chain.rpc_client import ChainRPCClient
from gasless_chain.smart_account import SmartAccountManager
from gasless_chain.wallet import UNRECOGNIZED_CHAIN_CODE, WalletEvent, WalletProvider

GWEI = 10**9

OWNER = "0x1111111111111111111111111111111111111111"
OTHER_OWNER = "0x2222222222222222222222222222222222222222"
TARGET = "0x3333333333333333333333333333333333333333"

TX_HASH = "0x" + "cd" * 32
DIRECT_TX_HASH = "0x" + "ee" * 32
USER_OP_HASH = "0x" + "ab" * 32
PAYMASTER_DATA = "0x" + "99" * 20 + "00" * 64
WALLET_SIGNATURE = "0x" + "11" * 65

# smart accounts the factory reports for each owner
SMART_ACCOUNTS = {
    OWNER: "0x5555555555555555555555555555555555555555",
    OTHER_OWNER: "0x6666666666666666666666666666666666666666",
}
SMART_ACCOUNT = SMART_ACCOUNTS[OWNER]


async def settle(rounds: int = 10) -> None:
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def chain_reads(nonce: Union[int, Callable[[], int]] = 0):
    """eth_call responder for factory getAddress and EntryPoint getNonce reads."""

    async def eth_call(tx: Dict[str, Any]) -> str:
        data = bytes.fromhex(tx["data"].removeprefix("0x"))
        if data[:4] == bytes(GET_ADDRESS_SELECTOR):
            owner, _salt = decode(["address", "uint256"], data[4:])
            account = SMART_ACCOUNTS[Web3.to_checksum_address(owner)]
            return "0x" + encode(["address"], [account]).hex()
        value = nonce() if callable(nonce) else nonce
        return "0x" + value.to_bytes(32, "big").hex()

    return eth_call


def user_op_receipt(success: bool = True) -> Dict[str, Any]:
    return {
        "userOpHash": USER_OP_HASH,
        "success": success,
        "actualGasUsed": "0x186a0",
        "receipt": {"transactionHash": TX_HASH, "blockNumber": "0x64"},
    }


class FakeWallet(WalletProvider):
    """Scripted wallet that records what it was asked to do."""

    def __init__(
        self,
        accounts: Sequence[str] = (OWNER,),
        chain_id: int = 137,
        known_chains: Sequence[int] = (1, 137),
    ):
        self.accounts = list(accounts)
        self.chain_id = chain_id
        self.known_chains = set(known_chains)
        self.sent: List[CallRequest] = []
        self.signed: List[bytes] = []
        self.added: List[Dict[str, Any]] = []
        self.switch_error: Optional[Exception] = None
        self.closed = False
        self._queue: asyncio.Queue[Optional[WalletEvent]] = asyncio.Queue()

    async def request_accounts(self) -> List[str]:
        return list(self.accounts)

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def send_transaction(self, call: CallRequest) -> str:
        self.sent.append(call)
        return DIRECT_TX_HASH

    async def sign_message(self, message: bytes) -> str:
        self.signed.append(message)
        return WALLET_SIGNATURE

    async def switch_chain(self, chain_id: int) -> None:
        if self.switch_error is not None:
            raise self.switch_error
        if chain_id not in self.known_chains:
            raise WalletRequestError("Unrecognized chain", code=UNRECOGNIZED_CHAIN_CODE)
        self.chain_id = chain_id

    async def add_chain(self, params: Dict[str, Any]) -> None:
        self.added.append(params)
        self.known_chains.add(int(params["chainId"], 16))

    def emit(self, event: WalletEvent) -> None:
        self._queue.put_nowait(event)

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


@pytest.fixture
def settings():
    """Test settings with short timeouts and no audit file."""
    test_settings = GaslessSettings(
        _env_file=None,
        gasless_enabled=True,
        sponsorship_max_attempts=2,
        sponsorship_expiry_seconds=300,
        http_timeout_seconds=1.0,
        inclusion_timeout_seconds=0.05,
        receipt_poll_seconds=0.01,
        confirmation_timeout_seconds=0.05,
        gas_price_poll_interval_seconds=3600,
        logging=LoggingConfig(audit_log_enabled=False),
    )
    set_settings(test_settings)
    yield test_settings
    set_settings(None)
    set_registry(None)


@pytest.fixture
def chain_logger(settings):
    return ChainLogger("gasless_chain.test", settings.logging)


@pytest.fixture
def registry():
    return NetworkRegistry([
        NetworkDescriptor(
            chain_id=1,
            display_name="Ethereum Mainnet",
            rpc_url="https://eth.rpc.test",
            native_symbol="ETH",
            bundler_url="https://bundler.test/1",
            paymaster_url="https://paymaster.test/1",
        ),
        NetworkDescriptor(
            chain_id=137,
            display_name="Polygon",
            rpc_url="https://polygon.rpc.test",
            native_symbol="MATIC",
            bundler_url="https://bundler.test/137",
            paymaster_url="https://paymaster.test/137",
            explorer_url="https://polygonscan.com",
        ),
        NetworkDescriptor(
            chain_id=324,
            display_name="zkSync Era",
            rpc_url="https://zksync.rpc.test",
            native_symbol="ETH",
        ),
    ])


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def provider():
    rpc = AsyncMock(spec=ChainRPCClient)
    rpc.get_balance.return_value = 2 * 10**18
    rpc.get_gas_price.return_value = 30 * GWEI
    rpc.get_max_priority_fee.return_value = 2 * GWEI
    rpc.estimate_gas.return_value = 21_000
    rpc.get_code.return_value = "0x"
    rpc.eth_call.side_effect = chain_reads()
    rpc.wait_for_confirmation.return_value = {
        "transactionHash": DIRECT_TX_HASH,
        "blockNumber": "0x10",
        "gasUsed": "0x5208",
        "status": "0x1",
    }
    return rpc


@pytest.fixture
def bundler():
    client = AsyncMock(spec=BundlerClient)
    client.supported_entry_points.return_value = [ENTRYPOINT_V06]
    client.send_user_operation.return_value = USER_OP_HASH
    client.wait_for_receipt.return_value = user_op_receipt()
    return client


@pytest.fixture
def paymaster():
    client = AsyncMock(spec=PaymasterClient)
    client.sponsor_user_operation.return_value = SponsoredUserOperation(
        paymaster_and_data=PAYMASTER_DATA,
        call_gas_limit=120_000,
        verification_gas_limit=250_000,
        pre_verification_gas=55_000,
    )
    client.get_balance.return_value = 5 * 10**17
    return client


@pytest.fixture
def bundler_factory(bundler):
    return Mock(return_value=bundler)


@pytest.fixture
def paymaster_factory(paymaster):
    return Mock(return_value=paymaster)


@pytest_asyncio.fixture
async def connection(wallet, registry, provider, settings, chain_logger):
    machine = ConnectionStateMachine(
        {"local": lambda: wallet},
        registry=registry,
        settings=settings,
        rpc_factory=lambda url: provider,
        chain_logger=chain_logger,
    )
    yield machine
    await machine.close()


@pytest_asyncio.fixture
async def connected(connection):
    await connection.connect("local")
    return connection


@pytest_asyncio.fixture
async def accounts(connection, settings, bundler_factory, paymaster_factory, chain_logger):
    manager = SmartAccountManager(
        connection,
        settings=settings,
        bundler_factory=bundler_factory,
        paymaster_factory=paymaster_factory,
        chain_logger=chain_logger,
    )
    yield manager
    await manager.close()


@pytest.fixture
def orchestrator(connection, accounts, settings, chain_logger):
    return TransactionOrchestrator(connection, accounts, settings=settings, chain_logger=chain_logger)


@pytest.fixture
def call():
    return CallRequest(to=TARGET, data="0xa9059cbb", value=0)
