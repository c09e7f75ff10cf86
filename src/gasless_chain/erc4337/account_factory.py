"""Smart account helpers for counterfactual address lookup and deployment.

The account is deployed by SimpleAccountFactory through CREATE2, so its
address is known before the first user operation. The factory exposes the
same computation as a view:

- address = factory.getAddress(owner, saltIndex)

read with ``eth_call`` so the sender always matches what initCode deploys.
The first user operation carries initCode = factory ++ createAccount(owner, saltIndex).
"""

from __future__ import annotations

from dataclasses import dataclass

from eth_abi import decode, encode
from web3 import Web3

from ..config import ENTRYPOINT_V06, SIMPLE_ACCOUNT_FACTORY_V06

CREATE_ACCOUNT_SELECTOR = Web3.keccak(text="createAccount(address,uint256)")[:4]
GET_ADDRESS_SELECTOR = Web3.keccak(text="getAddress(address,uint256)")[:4]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class AccountFactoryConfig:
    factory_address: str = SIMPLE_ACCOUNT_FACTORY_V06
    entry_point: str = ENTRYPOINT_V06
    salt_index: int = 0


def _owner_and_salt(owner: str, config: AccountFactoryConfig) -> bytes:
    return encode(["address", "uint256"], [Web3.to_checksum_address(owner), config.salt_index])


def encode_get_address(owner: str, config: AccountFactoryConfig) -> str:
    """Calldata for SimpleAccountFactory.getAddress(owner, salt)."""
    return "0x" + bytes(GET_ADDRESS_SELECTOR + _owner_and_salt(owner, config)).hex()


def decode_account_address(result: str) -> str:
    """Decode the ``getAddress`` return value.

    Raises:
        ValueError: empty result (no factory at the address) or the zero address
    """
    raw = bytes.fromhex((result or "0x").removeprefix("0x"))
    if len(raw) < 32:
        raise ValueError("Account factory returned no address")
    (address,) = decode(["address"], raw[:32])
    address = Web3.to_checksum_address(address)
    if address == ZERO_ADDRESS:
        raise ValueError("Account factory returned the zero address")
    return address


def build_init_code(owner: str, config: AccountFactoryConfig) -> str:
    """initCode for the user operation that deploys the account."""
    calldata = CREATE_ACCOUNT_SELECTOR + _owner_and_salt(owner, config)
    return Web3.to_checksum_address(config.factory_address) + bytes(calldata).hex()
