"""
Configuration management using pydantic-settings.

Settings are passed explicitly into the wallet, builder and selector
constructors; nothing reads them from module globals.
"""

from __future__ import annotations

import sys
from enum import Enum

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from walletcore.constants import (
    COINBASE_MATURITY,
    DEFAULT_ANCESTOR_LIMIT,
    DEFAULT_CONFIRM_TARGET,
    DEFAULT_DESCENDANT_LIMIT,
    DEFAULT_DUST_RELAY_FEE,
    DEFAULT_FALLBACK_FEE,
    MAX_STANDARD_TX_WEIGHT,
    MIN_CHANGE,
    SUBSET_SUM_ITERATIONS,
)


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class WalletSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WALLETCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    network: NetworkType = NetworkType.MAINNET

    # Fee policy (sat/kvB)
    confirm_target: int = Field(default=DEFAULT_CONFIRM_TARGET, ge=1, le=1008)
    fallback_fee: int = Field(default=DEFAULT_FALLBACK_FEE, ge=0)
    dust_relay_fee: int = Field(default=DEFAULT_DUST_RELAY_FEE, ge=0)

    # Coin selection
    min_change: int = Field(default=MIN_CHANGE, ge=0)
    selection_iterations: int = Field(default=SUBSET_SUM_ITERATIONS, ge=1)
    spend_zero_conf_change: bool = True

    # Transaction policy
    signal_rbf: bool = True
    reject_long_chains: bool = True
    ancestor_limit: int = Field(default=DEFAULT_ANCESTOR_LIMIT, ge=1)
    descendant_limit: int = Field(default=DEFAULT_DESCENDANT_LIMIT, ge=1)
    max_tx_weight: int = Field(default=MAX_STANDARD_TX_WEIGHT, ge=1)
    coinbase_maturity: int = Field(default=COINBASE_MATURITY, ge=0)

    log_level: str = "INFO"

    @property
    def max_chain_length(self) -> int:
        return min(self.ancestor_limit, self.descendant_limit)


def get_settings() -> WalletSettings:
    return WalletSettings()


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )
