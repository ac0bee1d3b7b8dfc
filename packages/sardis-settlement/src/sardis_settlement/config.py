"""Configuration surface for the settlement engine.

Network selection (mainnet vs testnet) is resolved once, when the settings
object is built, and the resulting ``NetworkConfig`` values are passed into
each chain adapter's constructor. Nothing in the engine reads the
environment after startup.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional, Tuple, Union

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


# CAIP-2 chain keys
BTC_MAINNET_KEY = "bip122:000000000019d6689c085ae165831e93"
BTC_TESTNET_KEY = "bip122:000000000933ea01ad0ee984209779ba"
ETH_MAINNET_KEY = "eip155:1"
ETH_SEPOLIA_KEY = "eip155:11155111"
BSC_MAINNET_KEY = "eip155:56"
BSC_TESTNET_KEY = "eip155:97"
POLYGON_MAINNET_KEY = "eip155:137"
SOLANA_MAINNET_KEY = "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"
SOLANA_TESTNET_KEY = "solana:4uhcVJyU9pJkvQyS88uRDiswHXSCkY3z"
SOLANA_DEVNET_KEY = "solana:EtWTRABZaYq6iMfeYKouRu166VU2xqa1"

ChainFamily = Literal["utxo", "evm", "solana"]


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for one settlement chain."""
    chain_key: str
    family: ChainFamily
    name: str
    rpc_url: str
    native_asset: str
    decimals: int

    # Confirmation requirements
    confirmations_required: int = 1
    finality_confirmations: int = 12
    poll_interval_seconds: float = 5.0

    # Balance withheld from native transfers to pay fees/rent
    fee_reserve: Decimal = Decimal("0")

    chain_id: Optional[int] = None
    timeout_seconds: float = 30.0


def default_networks(use_testnet: bool = False) -> List[NetworkConfig]:
    """Build the default settlement network set."""
    if use_testnet:
        return [
            NetworkConfig(
                chain_key=BTC_TESTNET_KEY,
                family="utxo",
                name="bitcoin_testnet",
                rpc_url="https://blockstream.info/testnet/api",
                native_asset="BTC",
                decimals=8,
                poll_interval_seconds=10.0,
                fee_reserve=Decimal("0.0001"),
            ),
            NetworkConfig(
                chain_key=ETH_SEPOLIA_KEY,
                family="evm",
                name="ethereum_sepolia",
                rpc_url="https://rpc.sepolia.org",
                native_asset="ETH",
                decimals=18,
                chain_id=11155111,
                poll_interval_seconds=3.0,
                fee_reserve=Decimal("0.002"),
            ),
            NetworkConfig(
                chain_key=BSC_TESTNET_KEY,
                family="evm",
                name="bsc_testnet",
                rpc_url="https://data-seed-prebsc-1-s1.binance.org:8545",
                native_asset="BNB",
                decimals=18,
                chain_id=97,
                poll_interval_seconds=3.0,
                fee_reserve=Decimal("0.002"),
            ),
            NetworkConfig(
                chain_key=SOLANA_DEVNET_KEY,
                family="solana",
                name="solana_devnet",
                rpc_url="https://api.devnet.solana.com",
                native_asset="SOL",
                decimals=9,
                poll_interval_seconds=0.5,
                fee_reserve=Decimal("0.01"),
            ),
        ]

    return [
        NetworkConfig(
            chain_key=BTC_MAINNET_KEY,
            family="utxo",
            name="bitcoin",
            rpc_url="https://blockstream.info/api",
            native_asset="BTC",
            decimals=8,
            poll_interval_seconds=10.0,
            fee_reserve=Decimal("0.0001"),
        ),
        NetworkConfig(
            chain_key=ETH_MAINNET_KEY,
            family="evm",
            name="ethereum",
            rpc_url="https://eth.llamarpc.com",
            native_asset="ETH",
            decimals=18,
            chain_id=1,
            poll_interval_seconds=3.0,
            fee_reserve=Decimal("0.002"),
        ),
        NetworkConfig(
            chain_key=BSC_MAINNET_KEY,
            family="evm",
            name="bsc",
            rpc_url="https://bsc-dataseed1.binance.org",
            native_asset="BNB",
            decimals=18,
            chain_id=56,
            poll_interval_seconds=3.0,
            fee_reserve=Decimal("0.002"),
        ),
        NetworkConfig(
            chain_key=POLYGON_MAINNET_KEY,
            family="evm",
            name="polygon",
            rpc_url="https://polygon-rpc.com",
            native_asset="MATIC",
            decimals=18,
            chain_id=137,
            poll_interval_seconds=3.0,
            finality_confirmations=64,
            fee_reserve=Decimal("0.1"),
        ),
        NetworkConfig(
            chain_key=SOLANA_MAINNET_KEY,
            family="solana",
            name="solana",
            rpc_url="https://api.mainnet-beta.solana.com",
            native_asset="SOL",
            decimals=9,
            poll_interval_seconds=0.5,
            fee_reserve=Decimal("0.01"),
        ),
    ]


class ExchangeSettings(BaseSettings):
    """Exchange (Binance-compatible) API configuration."""
    api_enabled: bool = False
    api_key: str = ""
    api_secret: str = ""
    test_api_key: str = ""
    test_api_secret: str = ""
    base_url: str = "https://api.binance.com"
    recv_window: int = 5000
    timeout_seconds: float = 30.0

    def credentials(self, environment: str) -> Tuple[str, str]:
        """Return (key, secret); dev runs against the test keys."""
        if environment == "dev":
            return self.test_api_key, self.test_api_secret
        return self.api_key, self.api_secret


class SettlementSettings(BaseSettings):
    """Main settlement configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Master switch for scheduled and manual cycles
    enabled: bool = True

    # Network selection, resolved once into `networks`
    use_testnet: bool = False
    networks: List[NetworkConfig] = Field(default_factory=list)

    # Token ids (CAIP-19 or CAIP-2 for native assets) taking part in settlement
    settlement_tokens: Union[List[str], str] = Field(default_factory=list)

    # Thresholds
    min_settlement_amount: Decimal = Decimal("0.001")
    min_transfer_amount: Decimal = Decimal("0.0001")

    # Verification
    verification_timeout_seconds: float = 600.0
    verification_poll_interval_seconds: float = 15.0
    deposit_amount_tolerance: Decimal = Decimal("0.00000001")
    withdrawal_tolerance_ratio: Decimal = Decimal("0.01")
    # Chain depth a settlement tx must reach before it counts
    confirmation_level: Literal["confirmed", "finalized"] = "confirmed"
    # Exchange amount precision; legs are rounded down to min(token decimals, this)
    exchange_amount_decimals: int = 8

    # Exchange
    exchange: ExchangeSettings = Field(default_factory=ExchangeSettings)

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Alert transports (optional)
    slack_webhook_url: str = ""
    discord_webhook_url: str = ""

    class Config:
        env_prefix = "SARDIS_SETTLEMENT_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("settlement_tokens", mode="before")
    @classmethod
    def parse_tokens(cls, v):
        """Parse comma-separated token ids from env var."""
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return v

    @field_validator("verification_timeout_seconds", "verification_poll_interval_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v < 0:
            raise ValueError("verification timings must be non-negative")
        return v

    @model_validator(mode="after")
    def resolve_networks(self) -> "SettlementSettings":
        """Fill in the default network set for the selected environment."""
        if not self.networks:
            self.networks = default_networks(self.use_testnet)
        keys = [n.chain_key for n in self.networks]
        if len(keys) != len(set(keys)):
            raise ValueError("duplicate chain_key in networks")
        return self

    def get_network(self, chain_key: str) -> Optional[NetworkConfig]:
        for network in self.networks:
            if network.chain_key == chain_key:
                return network
        return None


@lru_cache
def load_settings(env_file: str | None = None) -> SettlementSettings:
    """Load SettlementSettings once per process so every component sees the same networks."""
    if env_file:
        return SettlementSettings(_env_file=Path(env_file))
    return SettlementSettings()


def get_settings() -> SettlementSettings:
    return load_settings()
