"""Shared request/result types."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from web3 import Web3


def _to_bytes(data: Union[bytes, str, None]) -> bytes:
    if data is None:
        return b""
    if isinstance(data, bytes):
        return data
    return bytes.fromhex(data[2:] if data.startswith("0x") else data)


@dataclass(frozen=True)
class CallRequest:
    """A single on-chain call: target, calldata and native value."""
    to: str
    data: bytes = b""
    value: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "to", Web3.to_checksum_address(self.to))
        object.__setattr__(self, "data", _to_bytes(self.data))
        object.__setattr__(self, "value", int(self.value or 0))
        if self.value < 0:
            raise ValueError("Call value cannot be negative")

    @classmethod
    def from_dict(cls, tx: Dict[str, Any]) -> "CallRequest":
        """Build from a JSON transaction object (hex or int value)."""
        value = tx.get("value", 0)
        if isinstance(value, str):
            value = int(value, 16) if value.startswith("0x") else int(value)
        return cls(to=tx["to"], data=tx.get("data") or b"", value=value)

    def to_rpc(self, from_address: Optional[str] = None) -> Dict[str, str]:
        tx = {
            "to": self.to,
            "data": "0x" + self.data.hex(),
            "value": hex(self.value),
        }
        if from_address:
            tx["from"] = from_address
        return tx


@dataclass(frozen=True)
class TransactionResult:
    """Normalized outcome of one ``execute`` call."""
    transaction_hash: str
    gas_used: Optional[int]
    sponsored: bool
    block_confirmed: bool
    block_number: Optional[int] = None
    user_op_hash: Optional[str] = None
