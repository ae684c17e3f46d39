"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from rbfwallet.constants import (
    DEFAULT_FALLBACK_FEE,
    DEFAULT_GAP_LIMIT,
    DEFAULT_KEYPOOL_SIZE,
    DEFAULT_MAX_MEMPOOL_SIZE_MB,
    DEFAULT_MAX_TX_FEE,
    DEFAULT_MIN_RELAY_TX_FEE,
    DEFAULT_MIN_TX_FEE,
    DEFAULT_SIGNATURE_SIZE_MARGIN,
    DEFAULT_TX_CONFIRM_TARGET,
)


class WalletSettings(BaseSettings):
    """Wallet fee policy and node connection settings.

    All fee rates are in sat/kvB, all amounts in satoshis.
    """

    model_config = SettingsConfigDict(
        env_prefix="RBFWALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    network: Literal["mainnet", "testnet", "signet", "regtest"] = "mainnet"

    # Fee policy
    pay_tx_fee: int = Field(default=0, ge=0, description="User-set fee rate, 0 = estimate")
    tx_confirm_target: int = Field(default=DEFAULT_TX_CONFIRM_TARGET, ge=1, le=1008)
    fallback_fee: int = Field(default=DEFAULT_FALLBACK_FEE, ge=0)
    min_relay_tx_fee: int = Field(default=DEFAULT_MIN_RELAY_TX_FEE, ge=0)
    min_tx_fee: int = Field(default=DEFAULT_MIN_TX_FEE, ge=0)
    max_tx_fee: int = Field(default=DEFAULT_MAX_TX_FEE, gt=0, description="Absolute fee cap")
    max_mempool_mb: int = Field(default=DEFAULT_MAX_MEMPOOL_SIZE_MB, ge=5)
    signature_size_margin: int = Field(
        default=DEFAULT_SIGNATURE_SIZE_MARGIN,
        ge=0,
        description="Bytes per input added to the size used for bumped fees",
    )
    wallet_rbf: bool = False

    # Key pool
    gap_limit: int = Field(default=DEFAULT_GAP_LIMIT, ge=1)
    keypool_size: int = Field(default=DEFAULT_KEYPOOL_SIZE, ge=1)

    # Bitcoin Core RPC
    rpc_url: str = "http://127.0.0.1:8332"
    rpc_user: str = ""
    rpc_password: str = ""

    log_level: str = "INFO"

    @property
    def max_mempool_bytes(self) -> int:
        return self.max_mempool_mb * 1_000_000


def get_settings() -> WalletSettings:
    return WalletSettings()
