"""Collaborator ports consumed by the settlement engine.

Key derivation, durable storage and notification transports live outside
this package; the engine only talks to them through these protocols.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Protocol, runtime_checkable

from .models import Discrepancy, SettlementResult


@dataclass(frozen=True)
class TransferRequest:
    """Outbound transfer handed to a signer."""
    token_id: str
    from_address: str
    to_address: str
    value: Decimal
    memo: Optional[str] = None


@dataclass(frozen=True)
class TransferReceipt:
    tx_hash: str


@runtime_checkable
class Signer(Protocol):
    """Hot wallet signing capability for one chain."""

    async def get_address(self) -> str:
        ...

    async def get_balance(self, address: str) -> Decimal:
        ...

    async def transfer(self, request: TransferRequest) -> TransferReceipt:
        ...


@dataclass(frozen=True)
class KnownWalletBalance:
    """Last-known hot wallet balance from storage. Decides which chains to query, never the balance of record."""
    chain_key: str
    token_id: str
    balance: Decimal


class SettlementStore(Protocol):
    """Durable record of settlement attempts."""

    async def append_settlement_result(self, result: SettlementResult) -> None:
        ...

    async def read_settlement_history(self, limit: int = 100) -> List[SettlementResult]:
        ...

    async def read_hot_wallet_balances_for_asset(self, asset: str) -> List[KnownWalletBalance]:
        ...

    async def append_alert_record(self, record: Discrepancy) -> None:
        ...


class AlertSink(Protocol):
    """Fire-and-forget alert emitter."""

    async def emit(self, message: str, severity: str, **kwargs: Any) -> Any:
        ...
