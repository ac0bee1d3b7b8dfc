"""In-memory settlement store for tests and single-process deployments."""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Tuple

from .interfaces import KnownWalletBalance
from .models import Discrepancy, SettlementResult

logger = logging.getLogger(__name__)


class InMemorySettlementStore:
    """
    Append-only store kept in process memory.

    Hot wallet balances are a seeded view (``record_hot_wallet_balance``);
    the orchestrator only uses them to pick which chains to query.
    """

    def __init__(self) -> None:
        self._results: List[SettlementResult] = []
        self._alerts: List[Discrepancy] = []
        self._balances: Dict[Tuple[str, str], KnownWalletBalance] = {}
        self._token_assets: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def record_hot_wallet_balance(
        self,
        asset: str,
        chain_key: str,
        token_id: str,
        balance: Decimal,
    ) -> None:
        self._balances[(chain_key, token_id)] = KnownWalletBalance(
            chain_key=chain_key,
            token_id=token_id,
            balance=balance,
        )
        self._token_assets[token_id] = asset.upper()

    async def append_settlement_result(self, result: SettlementResult) -> None:
        async with self._lock:
            self._results.append(result)
        logger.debug("Stored settlement result %s", result.transaction_hash)

    async def read_settlement_history(self, limit: int = 100) -> List[SettlementResult]:
        async with self._lock:
            newest_first = sorted(self._results, key=lambda r: r.timestamp, reverse=True)
        return newest_first[:limit]

    async def read_hot_wallet_balances_for_asset(self, asset: str) -> List[KnownWalletBalance]:
        wanted = asset.upper()
        return [
            balance
            for balance in self._balances.values()
            if self._token_assets.get(balance.token_id) == wanted
        ]

    async def append_alert_record(self, record: Discrepancy) -> None:
        async with self._lock:
            self._alerts.append(record)

    @property
    def results(self) -> List[SettlementResult]:
        return list(self._results)

    @property
    def alert_records(self) -> List[Discrepancy]:
        return list(self._alerts)
