"""UserOperation primitives for ERC-4337 (EntryPoint v0.6 layout)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from eth_abi import encode
from web3 import Web3

from ..models import CallRequest

EXECUTE_SELECTOR = Web3.keccak(text="execute(address,uint256,bytes)")[:4]
EXECUTE_BATCH_SELECTOR = Web3.keccak(text="executeBatch(address[],uint256[],bytes[])")[:4]

# Placeholder gas limits until the paymaster fills them in
DEFAULT_GAS_LIMITS = {
    "call": 300_000,
    "verification": 500_000,
    "pre_verification": 60_000,
}

# 65-byte ECDSA-shaped signature used for estimation before signing
DUMMY_SIGNATURE = "0x" + "ff" * 64 + "1c"


def zero_hex() -> str:
    return "0x"


def _to_hex_int(value: int) -> str:
    return hex(max(0, int(value)))


def _from_hex_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def _hex_bytes(value: str) -> bytes:
    return bytes.fromhex(value.removeprefix("0x"))


def encode_calls(calls: Sequence[CallRequest]) -> str:
    """Encode smart-account calldata for an ordered batch of calls.

    One call uses execute(address,uint256,bytes); more use
    executeBatch(address[],uint256[],bytes[]) with per-call values.
    """
    if not calls:
        raise ValueError("At least one call is required")

    if len(calls) == 1:
        call = calls[0]
        params = encode(["address", "uint256", "bytes"], [call.to, call.value, call.data])
        return "0x" + bytes(EXECUTE_SELECTOR + params).hex()

    params = encode(
        ["address[]", "uint256[]", "bytes[]"],
        [
            [c.to for c in calls],
            [c.value for c in calls],
            [c.data for c in calls],
        ],
    )
    return "0x" + bytes(EXECUTE_BATCH_SELECTOR + params).hex()


@dataclass
class UserOperation:
    sender: str
    nonce: int
    init_code: str
    call_data: str
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_and_data: str
    signature: str

    @classmethod
    def from_calls(
        cls,
        sender: str,
        nonce: int,
        calls: Sequence[CallRequest],
        max_fee_per_gas: int,
        max_priority_fee_per_gas: int,
        init_code: str = "0x",
    ) -> "UserOperation":
        """Unsigned, unsponsored operation for ``calls``."""
        return cls(
            sender=sender,
            nonce=nonce,
            init_code=init_code,
            call_data=encode_calls(calls),
            call_gas_limit=DEFAULT_GAS_LIMITS["call"],
            verification_gas_limit=DEFAULT_GAS_LIMITS["verification"],
            pre_verification_gas=DEFAULT_GAS_LIMITS["pre_verification"],
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
            paymaster_and_data=zero_hex(),
            signature=DUMMY_SIGNATURE,
        )

    def apply_sponsorship(self, sponsorship: Mapping[str, Any]) -> None:
        """Copy paymaster data and gas limits from a paymaster response."""
        self.paymaster_and_data = sponsorship["paymasterAndData"]
        if sponsorship.get("callGasLimit") is not None:
            self.call_gas_limit = _from_hex_int(sponsorship["callGasLimit"])
        if sponsorship.get("verificationGasLimit") is not None:
            self.verification_gas_limit = _from_hex_int(sponsorship["verificationGasLimit"])
        if sponsorship.get("preVerificationGas") is not None:
            self.pre_verification_gas = _from_hex_int(sponsorship["preVerificationGas"])

    @property
    def is_sponsored(self) -> bool:
        return self.paymaster_and_data not in ("", "0x")

    def hash(self, entrypoint: str, chain_id: int) -> bytes:
        """userOpHash as computed by EntryPoint v0.6."""
        packed = encode(
            [
                "address", "uint256", "bytes32", "bytes32",
                "uint256", "uint256", "uint256", "uint256", "uint256",
                "bytes32",
            ],
            [
                Web3.to_checksum_address(self.sender),
                self.nonce,
                Web3.keccak(_hex_bytes(self.init_code)),
                Web3.keccak(_hex_bytes(self.call_data)),
                self.call_gas_limit,
                self.verification_gas_limit,
                self.pre_verification_gas,
                self.max_fee_per_gas,
                self.max_priority_fee_per_gas,
                Web3.keccak(_hex_bytes(self.paymaster_and_data)),
            ],
        )
        return Web3.keccak(
            encode(
                ["bytes32", "address", "uint256"],
                [Web3.keccak(packed), Web3.to_checksum_address(entrypoint), chain_id],
            )
        )

    def to_rpc(self) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "nonce": _to_hex_int(self.nonce),
            "initCode": self.init_code,
            "callData": self.call_data,
            "callGasLimit": _to_hex_int(self.call_gas_limit),
            "verificationGasLimit": _to_hex_int(self.verification_gas_limit),
            "preVerificationGas": _to_hex_int(self.pre_verification_gas),
            "maxFeePerGas": _to_hex_int(self.max_fee_per_gas),
            "maxPriorityFeePerGas": _to_hex_int(self.max_priority_fee_per_gas),
            "paymasterAndData": self.paymaster_and_data,
            "signature": self.signature,
        }
