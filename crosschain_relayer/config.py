"""
Configuration management for the cross-chain relayer.

One RelayerConfig is built at startup and injected into every component.
"""

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

import pydantic
from pydantic_settings import BaseSettings, SettingsConfigDict

from .auction import AuctionCurve, AuctionPoint
from .errors import ConfigurationError


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # EVM network
    evm_rpc_url: str = "http://localhost:8545"
    evm_chain_id: int = 11155111
    evm_private_key: str = ""
    escrow_factory_address: str = ""
    # Additional escrow contracts to watch (comma-separated)
    evm_escrow_addresses: str = ""
    evm_poll_interval_seconds: float = 5.0
    evm_amount_tolerance: int = 100_000_000_000_000  # 0.0001 ETH

    # NEAR network
    near_rpc_url: str = "https://rpc.testnet.near.org"
    near_network_id: str = "testnet"
    near_account_id: str = ""
    near_private_key: str = ""
    near_escrow_contract_id: str = ""
    near_poll_interval_seconds: float = 5.0
    near_amount_tolerance: int = 1_000_000_000_000_000

    # Watcher
    batch_max: int = 10
    search_window_blocks: int = 10_000
    search_max_candidates: int = 100

    # Coordinator
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    sweep_interval_seconds: float = 30.0
    dest_timelock_offset_seconds: int = 1800
    safety_deposit_bps: int = 50_000  # 5%

    # Database
    database_url: str = "sqlite:///./relayer.db"
    ledger_retention_days: int = 7

    # Auction curve
    auction_duration: int = 180
    auction_initial_rate_bump: int = 50_000
    auction_points: Optional[list[AuctionPoint]] = None
    auction_gas_bump_estimate: int = 5_000
    auction_gas_price_estimate: Decimal = Decimal("20")
    auction_min_fill_percentage: Decimal = Decimal("0.1")
    auction_max_rate_bump: int = 500_000

    # Logging
    log_json: bool = False
    log_level: str = "info"


REQUIRED_SETTINGS = (
    "evm_rpc_url",
    "evm_private_key",
    "escrow_factory_address",
    "near_rpc_url",
    "near_account_id",
    "near_private_key",
    "near_escrow_contract_id",
)


@dataclass
class RelayerConfig:
    """Full relayer configuration."""

    settings: Settings
    curve: AuctionCurve

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "RelayerConfig":
        """Load configuration from environment."""
        try:
            settings = Settings(_env_file=env_path) if env_path else Settings()
        except pydantic.ValidationError as e:
            raise ConfigurationError(f"Invalid settings: {e}") from e
        return cls(settings=settings, curve=build_curve(settings))

    @property
    def evm_escrow_addresses(self) -> list[str]:
        raw = self.settings.evm_escrow_addresses
        return [a.strip() for a in raw.split(",") if a.strip()]

    def missing_settings(self) -> list[str]:
        return [key for key in REQUIRED_SETTINGS if not getattr(self.settings, key)]

    def validate_required(self) -> None:
        """Raise ConfigurationError naming every missing required setting."""
        missing = self.missing_settings()
        if missing:
            names = ", ".join(key.upper() for key in missing)
            raise ConfigurationError(f"Missing required settings: {names}", keys=missing)


def build_curve(settings: Settings) -> AuctionCurve:
    """Build the validated auction curve from flat settings."""
    values = {
        "duration": settings.auction_duration,
        "initial_rate_bump_bps": settings.auction_initial_rate_bump,
        "gas_bump_estimate_bps": settings.auction_gas_bump_estimate,
        "gas_price_estimate_gwei": settings.auction_gas_price_estimate,
        "min_fill_fraction": settings.auction_min_fill_percentage,
        "max_rate_bump_bps": settings.auction_max_rate_bump,
    }
    if settings.auction_points is not None:
        values["points"] = settings.auction_points
    try:
        return AuctionCurve(**values)
    except pydantic.ValidationError as e:
        raise ConfigurationError(f"Invalid auction curve: {e}", keys=["auction"]) from e
