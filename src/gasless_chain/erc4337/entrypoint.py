"""EntryPoint v0.6 helpers: nonce lookup calldata and decoding."""

from __future__ import annotations

from eth_abi import decode, encode
from web3 import Web3

GET_NONCE_SELECTOR = Web3.keccak(text="getNonce(address,uint192)")[:4]


def encode_get_nonce(sender: str, key: int = 0) -> str:
    """Calldata for EntryPoint.getNonce(sender, key)."""
    params = encode(["address", "uint192"], [Web3.to_checksum_address(sender), key])
    return "0x" + bytes(GET_NONCE_SELECTOR + params).hex()


def decode_nonce(result: str) -> int:
    raw = bytes.fromhex(result.removeprefix("0x") or "00")
    if not raw.strip(b"\x00"):
        return 0
    return decode(["uint256"], raw)[0]
