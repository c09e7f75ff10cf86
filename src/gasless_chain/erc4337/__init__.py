"""ERC-4337 helpers for the gasless execution path."""

from .entrypoint import decode_nonce, encode_get_nonce
from .user_operation import UserOperation, encode_calls, zero_hex
from .account_factory import (
    AccountFactoryConfig,
    build_init_code,
    decode_account_address,
    encode_get_address,
)
from .bundler_client import BundlerClient, BundlerConfig
from .paymaster_client import PaymasterClient, PaymasterConfig, SponsoredUserOperation

__all__ = [
    "decode_nonce",
    "encode_get_nonce",
    "UserOperation",
    "encode_calls",
    "zero_hex",
    "AccountFactoryConfig",
    "build_init_code",
    "decode_account_address",
    "encode_get_address",
    "BundlerClient",
    "BundlerConfig",
    "PaymasterClient",
    "PaymasterConfig",
    "SponsoredUserOperation",
]
