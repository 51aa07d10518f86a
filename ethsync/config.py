"""Configuration management for ethsync."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChainConfig(BaseSettings):
    """Node connection configuration."""

    model_config = SettingsConfigDict(env_prefix="")

    rpc_url: str = Field(default="", alias="ETH_RPC_URL")
    rpc_timeout: float = Field(default=30.0, alias="ETH_RPC_TIMEOUT")  # seconds


class Settings(BaseSettings):
    """Global settings."""

    model_config = SettingsConfigDict(env_prefix="ETHSYNC_")

    # Block source
    confirmations: int = 0
    retry_delay: float = 4.0  # seconds

    # Gas price cache
    gas_price_interval: float = 4.0  # seconds

    # RPC
    receipt_batch_size: int = 500  # receipts per batch round trip

    # Log subscriptions
    log_poll_interval: float = 2.0  # seconds
    log_max_block_range: int = 2000  # max blocks per eth_getLogs call

    # Receipt waiting
    receipt_poll_interval: float = 4.0  # seconds

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


def resolve_rpc_url(rpc_url: str | None = None) -> str:
    """Return the explicit RPC URL or the configured one."""
    url = rpc_url or chain_config.rpc_url
    if not url:
        raise ValueError("RPC URL not configured (pass one or set ETH_RPC_URL)")
    return url


# Global instances
settings = Settings()
chain_config = ChainConfig()
