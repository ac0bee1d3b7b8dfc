"""
Settlement orchestration.

One cycle:
1. group configured tokens by exchange asset
2. per asset (concurrently): read live hot wallet balances and the exchange
   balance, compute the distribution, then execute and verify each leg
3. persist every result, build the reconciliation report, send alerts

At most one transfer per (chain_key, asset) is in flight: the pair's lock is
held from submission through verification. Wallet-level failures are
recorded as failed results or skips; they never abort sibling wallets.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .alerts import build_dispatcher
from .asset_mapper import AssetMapper
from .calculator import BalanceSource, RebalanceCalculator, precision_quantum
from .chains.base import ConfirmationLevel, from_base_units
from .chains.registry import ChainRegistry, build_registry
from .config import SettlementSettings
from .exceptions import (
    ExchangeError,
    InsufficientBalanceError,
    TransientNetworkError,
    UnmappedAssetError,
)
from .exchange import ExchangeClient
from .executor import TransferExecutor
from .interfaces import AlertSink, SettlementStore, Signer
from .logging_config import LogContext, generate_cycle_id
from .matcher import TransactionMatcher
from .models import (
    HotWalletBalance,
    SettlementCycle,
    SettlementResult,
    SkippedTransfer,
    TransferKind,
)
from .reporter import ReconciliationReporter
from .store import InMemorySettlementStore

logger = logging.getLogger(__name__)


class SettlementOrchestrator:
    """Drives settlement cycles across all configured assets and chains."""

    def __init__(
        self,
        settings: SettlementSettings,
        registry: ChainRegistry,
        exchange: ExchangeClient,
        mapper: AssetMapper,
        calculator: RebalanceCalculator,
        executor: TransferExecutor,
        matcher: TransactionMatcher,
        reporter: ReconciliationReporter,
        persistence: SettlementStore,
    ):
        self._settings = settings
        self._registry = registry
        self._exchange = exchange
        self._mapper = mapper
        self._calculator = calculator
        self._executor = executor
        self._matcher = matcher
        self._reporter = reporter
        self._persistence = persistence
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    @classmethod
    def create(
        cls,
        settings: SettlementSettings,
        signers: Mapping[str, Signer],
        persistence: Optional[SettlementStore] = None,
        alerts: Optional[AlertSink] = None,
    ) -> "SettlementOrchestrator":
        """Wire the default component graph from settings."""
        persistence = persistence if persistence is not None else InMemorySettlementStore()
        alerts = alerts if alerts is not None else build_dispatcher(
            settings.slack_webhook_url, settings.discord_webhook_url
        )
        registry = build_registry(settings.networks, signers)
        exchange = ExchangeClient(settings.exchange, environment=settings.environment)
        mapper = AssetMapper()
        reporter = ReconciliationReporter(alerts, persistence)
        return cls(
            settings=settings,
            registry=registry,
            exchange=exchange,
            mapper=mapper,
            calculator=RebalanceCalculator(settings.min_settlement_amount),
            executor=TransferExecutor(
                registry,
                exchange,
                mapper,
                settings.min_transfer_amount,
                amount_decimals=settings.exchange_amount_decimals,
            ),
            matcher=TransactionMatcher(
                registry,
                exchange,
                reporter=reporter,
                poll_interval_seconds=settings.verification_poll_interval_seconds,
                timeout_seconds=settings.verification_timeout_seconds,
                deposit_tolerance=settings.deposit_amount_tolerance,
                withdrawal_tolerance_ratio=settings.withdrawal_tolerance_ratio,
                confirmation_level=ConfirmationLevel(settings.confirmation_level),
            ),
            reporter=reporter,
            persistence=persistence,
        )

    def _lock_for(self, chain_key: str, asset: str) -> asyncio.Lock:
        return self._locks.setdefault((chain_key, asset), asyncio.Lock())

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def _read_hot_wallet_balance(self, asset: str, token_id: str) -> HotWalletBalance:
        adapter = self._registry.get(token_id)
        address = await adapter.get_hot_wallet_address()
        raw = await adapter.get_asset_balance(token_id, address)
        decimals = await adapter.get_decimals(token_id)
        return HotWalletBalance(
            chain_key=adapter.chain_key,
            token_id=token_id,
            asset=asset,
            balance=from_base_units(raw, decimals),
            address=address,
            decimals=decimals,
        )

    async def _read_balances(self, asset: str, token_ids: Sequence[str]) -> List[HotWalletBalance]:
        """Live balances for ``token_ids``. A wallet whose read fails is dropped."""
        outcomes = await asyncio.gather(
            *(self._read_hot_wallet_balance(asset, t) for t in token_ids),
            return_exceptions=True,
        )
        balances = []
        for token_id, outcome in zip(token_ids, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Failed to read hot wallet balance for {token_id}: {outcome}")
                continue
            balances.append(outcome)
        return balances

    async def _tokens_to_query(self, asset: str, token_ids: Sequence[str]) -> List[str]:
        """Configured tokens the store knows a balance for; all configured tokens when it knows none."""
        try:
            known = await self._persistence.read_hot_wallet_balances_for_asset(asset)
        except Exception:
            logger.exception(f"Failed to read known hot wallet balances for {asset}")
            known = []

        configured = {t.lower(): t for t in token_ids}
        candidates: List[str] = []
        for entry in known:
            token_id = configured.get(entry.token_id.lower())
            if token_id and token_id not in candidates:
                candidates.append(token_id)
        return candidates or list(dict.fromkeys(token_ids))

    async def get_hot_wallet_balances(self, asset: Optional[str] = None) -> List[HotWalletBalance]:
        groups = self._mapper.group_by_asset(self._settings.settlement_tokens)
        balances: List[HotWalletBalance] = []
        for group_asset, token_ids in groups.items():
            if asset is not None and group_asset != asset.upper():
                continue
            balances.extend(await self._read_balances(group_asset, token_ids))
        return balances

    async def get_exchange_balance(self, asset: str) -> Decimal:
        balance = await self._exchange.get_asset_balance(asset)
        return balance.total if balance is not None else Decimal("0")

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _persist(self, result: SettlementResult) -> None:
        try:
            await self._persistence.append_settlement_result(result)
        except Exception:
            logger.exception(f"Failed to persist settlement result {result.transaction_hash}")

    async def _settle_leg(
        self,
        asset: str,
        direction: TransferKind,
        source: BalanceSource,
        amount: Decimal,
        skipped: List[SkippedTransfer],
    ) -> Optional[SettlementResult]:
        async with self._lock_for(source.chain_key, asset):
            with LogContext(chain_key=source.chain_key):
                try:
                    if direction == TransferKind.DEPOSIT:
                        result = await self._executor.deposit(source.token_id, amount, source.balance)
                    else:
                        result = await self._executor.withdraw(
                            source.token_id, amount, source.balance, hot_address=source.address
                        )
                except (InsufficientBalanceError, UnmappedAssetError) as e:
                    logger.info(f"Skipping {source.token_id}: {e.message}")
                    skipped.append(SkippedTransfer(
                        chain_key=source.chain_key,
                        token_id=source.token_id,
                        asset=asset,
                        reason=e.message,
                        amount=amount,
                    ))
                    return None
                except Exception as e:
                    logger.exception(f"Settlement transfer for {source.token_id} failed")
                    result = SettlementResult.failed(
                        kind=direction,
                        chain_key=source.chain_key,
                        token_id=source.token_id,
                        asset=asset,
                        original_balance=source.balance,
                        error=str(e),
                        requested_amount=amount,
                    )

                if result.success:
                    await self._matcher.verify(result)
                await self._persist(result)
                return result

    async def settle_asset(
        self,
        asset: str,
        token_ids: Sequence[str],
        cycle: Optional[SettlementCycle] = None,
    ) -> List[SettlementResult]:
        """Rebalance one asset across its hot wallets and the exchange."""
        skipped = cycle.skipped if cycle is not None else []
        with LogContext(asset=asset):
            candidates = await self._tokens_to_query(asset, token_ids)
            balances = await self._read_balances(asset, candidates)
            if not balances:
                logger.warning(f"No readable hot wallet balances for {asset}, skipping")
                return []

            try:
                exchange_balance = await self.get_exchange_balance(asset)
            except (ExchangeError, TransientNetworkError) as e:
                logger.warning(f"Exchange balance unavailable for {asset}, skipping: {e}")
                return []

            sources = [
                BalanceSource(
                    chain_key=b.chain_key,
                    token_id=b.token_id,
                    balance=b.balance,
                    address=b.address,
                )
                for b in balances
            ]
            # Coarsest precision among the legs, so every leg is sendable as computed
            max_decimals = self._settings.exchange_amount_decimals
            decimals = min((b.decimals for b in balances if b.decimals is not None), default=max_decimals)
            plan = self._calculator.calculate_distribution(
                asset,
                sources,
                exchange_balance,
                self._settings.min_settlement_amount,
                quantum=precision_quantum(decimals, max_decimals),
            )
            if plan is None:
                return []
            logger.info(self._calculator.format_distribution(plan))

            by_token = {s.token_id: s for s in sources}
            results: List[SettlementResult] = []
            for target in self._calculator.priority_order(plan):
                if target.amount <= 0:
                    continue
                result = await self._settle_leg(
                    asset, plan.direction, by_token[target.token_id], target.amount, skipped
                )
                if result is not None:
                    results.append(result)
            return results

    async def run_cycle(self) -> SettlementCycle:
        """Run one settlement cycle over every configured asset."""
        cycle = SettlementCycle(cycle_id=generate_cycle_id())
        if not self._settings.enabled:
            logger.info("Settlement disabled via configuration")
            cycle.completed_at = datetime.now(timezone.utc)
            return cycle

        with LogContext(cycle_id=cycle.cycle_id):
            groups = self._mapper.group_by_asset(self._settings.settlement_tokens)
            logger.info(f"Starting settlement cycle for assets: {', '.join(groups) or 'none'}")

            per_asset = await asyncio.gather(
                *(self.settle_asset(asset, token_ids, cycle) for asset, token_ids in groups.items())
            )
            for results in per_asset:
                cycle.results.extend(results)

            cycle.report = self._reporter.build_report(cycle.results)
            await self._reporter.process_report(cycle.report)
            cycle.completed_at = datetime.now(timezone.utc)
            logger.info(
                f"Settlement cycle complete: {cycle.succeeded} submitted, "
                f"{cycle.failed} failed, {len(cycle.skipped)} skipped"
            )
        return cycle

    async def execute_settlement(self) -> List[SettlementResult]:
        """Scheduled entry point."""
        cycle = await self.run_cycle()
        return cycle.results

    async def trigger_manual_settlement(self) -> SettlementCycle:
        logger.info("Manual settlement triggered")
        return await self.run_cycle()

    async def get_settlement_history(self, limit: int = 100) -> List[SettlementResult]:
        try:
            return await self._persistence.read_settlement_history(limit)
        except Exception:
            logger.exception("Failed to read settlement history")
            return []

    async def close(self) -> None:
        await self._registry.close()
        await self._exchange.close()
