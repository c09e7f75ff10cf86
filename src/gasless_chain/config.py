"""Canonical configuration surface for gasless-chain."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# EntryPoint v0.6 (canonical, same address on every EVM chain)
ENTRYPOINT_V06 = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"

# SimpleAccountFactory v0.6
SIMPLE_ACCOUNT_FACTORY_V06 = "0x9406Cc6185a346906296840746125a0E44976454"


class LoggingConfig(BaseSettings):
    """Logging configuration for chain operations."""
    model_config = SettingsConfigDict(env_prefix="GASLESS_LOG_", extra="ignore")

    level: str = "INFO"
    operation_level: str = "INFO"
    error_level: str = "ERROR"
    json_format: bool = False

    # Sensitive data handling
    mask_addresses: bool = False
    log_gas_prices: bool = True

    # Audit logging
    audit_log_enabled: bool = True
    audit_log_path: Optional[str] = None  # None = use default logger


class GaslessSettings(BaseSettings):
    """Main gasless-chain configuration."""
    model_config = SettingsConfigDict(
        env_prefix="GASLESS_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    # Gasless mode
    gasless_enabled: bool = True
    bundler_api_key: str = ""
    paymaster_api_key: str = ""
    entry_point_address: str = ENTRYPOINT_V06
    account_factory_address: str = SIMPLE_ACCOUNT_FACTORY_V06
    account_salt_index: int = 0

    # Sponsorship
    sponsorship_mode: Literal["SPONSORED", "ERC20"] = "SPONSORED"
    sponsorship_expiry_seconds: int = 300
    sponsorship_max_attempts: int = 2

    # Timeouts
    http_timeout_seconds: float = 30.0
    inclusion_timeout_seconds: float = 180.0
    receipt_poll_seconds: float = 2.0
    confirmation_timeout_seconds: float = 120.0
    confirmations_required: int = 1

    # Background polling
    gas_price_poll_interval_seconds: float = 30.0

    # Local key wallet (CLI)
    private_key: str = ""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("sponsorship_max_attempts")
    @classmethod
    def _bounded_attempts(cls, value: int) -> int:
        # one initial attempt plus at most one retry
        if value < 1 or value > 2:
            raise ValueError("sponsorship_max_attempts must be 1 or 2")
        return value


_settings: Optional[GaslessSettings] = None


@lru_cache
def _load_settings() -> GaslessSettings:
    return GaslessSettings()


def get_settings() -> GaslessSettings:
    """Get the process-wide settings instance."""
    if _settings is not None:
        return _settings
    return _load_settings()


def set_settings(settings: Optional[GaslessSettings]) -> None:
    """Override the process-wide settings (None restores env loading)."""
    global _settings
    _settings = settings
    _load_settings.cache_clear()
