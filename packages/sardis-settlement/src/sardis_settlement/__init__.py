"""Sardis settlement: hot wallet <-> exchange rebalancing and cross-ledger reconciliation."""
from .asset_mapper import AssetMapper, AssetMapping
from .calculator import BalanceSource, DistributionResult, DistributionTarget, RebalanceCalculator
from .config import NetworkConfig, SettlementSettings, get_settings, load_settings
from .exceptions import (
    InsufficientBalanceError,
    SettlementError,
    TransientNetworkError,
    UnmappedAssetError,
    UnsupportedChainError,
)
from .exchange import ExchangeClient
from .executor import TransferExecutor
from .matcher import MatchOutcome, TransactionMatcher
from .models import (
    Discrepancy,
    HotWalletBalance,
    MatchState,
    ReconciliationReport,
    SettlementCycle,
    SettlementResult,
    SkippedTransfer,
    TransferKind,
)
from .orchestrator import SettlementOrchestrator
from .reporter import ReconciliationReporter
from .store import InMemorySettlementStore

__version__ = "0.1.0"

__all__ = [
    "AssetMapper",
    "AssetMapping",
    "BalanceSource",
    "Discrepancy",
    "DistributionResult",
    "DistributionTarget",
    "ExchangeClient",
    "HotWalletBalance",
    "InMemorySettlementStore",
    "InsufficientBalanceError",
    "MatchOutcome",
    "MatchState",
    "NetworkConfig",
    "RebalanceCalculator",
    "ReconciliationReport",
    "ReconciliationReporter",
    "SettlementCycle",
    "SettlementError",
    "SettlementOrchestrator",
    "SettlementResult",
    "SettlementSettings",
    "SkippedTransfer",
    "TransactionMatcher",
    "TransferExecutor",
    "TransferKind",
    "TransientNetworkError",
    "UnmappedAssetError",
    "UnsupportedChainError",
    "get_settings",
    "load_settings",
]
