"""Chain adapters for settlement networks."""
from .base import (
    BalanceChange,
    BaseChainAdapter,
    ChainAdapter,
    ConfirmationLevel,
    ConfirmationResult,
    TokenRef,
    TransactionDetails,
    TransactionStatus,
    TransferLeg,
    TransferVerification,
    from_base_units,
    parse_token_id,
    to_base_units,
)
from .bitcoin import BitcoinAdapter
from .evm import EVMAdapter
from .registry import ChainRegistry, build_registry
from .solana import SolanaAdapter

__all__ = [
    "BalanceChange",
    "BaseChainAdapter",
    "BitcoinAdapter",
    "ChainAdapter",
    "ChainRegistry",
    "ConfirmationLevel",
    "ConfirmationResult",
    "EVMAdapter",
    "SolanaAdapter",
    "TokenRef",
    "TransactionDetails",
    "TransactionStatus",
    "TransferLeg",
    "TransferVerification",
    "build_registry",
    "from_base_units",
    "parse_token_id",
    "to_base_units",
]
