"""
Rebalance calculation.

Keeps hot wallets and the exchange at a 1:1 split for each asset:

    target = (hot_total + exchange) / 2
    amount = target - exchange

Positive means send from the hot wallets to the exchange, negative means
withdraw from the exchange. The amount is then split across wallets in
proportion to each wallet's share of the hot total.

Example:
    hot wallets: ETH 10, BSC 20, SOL 30 (total 60), exchange 40
    amount = 50 - 40 = 10
    ETH 10 * 10/60 = 1.67, BSC 3.33, SOL 5.00
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import List, Optional, Sequence

from .exceptions import SettlementError
from .models import TransferKind

logger = logging.getLogger(__name__)


def round_down(amount: Decimal, quantum: Decimal) -> Decimal:
    """Truncate ``amount`` to a multiple of ``quantum``."""
    return (amount / quantum).to_integral_value(rounding=ROUND_DOWN) * quantum


def precision_quantum(decimals: int, max_decimals: int = 8) -> Decimal:
    """Smallest unit both the chain and the exchange can represent."""
    return Decimal(1).scaleb(-min(decimals, max_decimals))


@dataclass
class BalanceSource:
    """One hot wallet's live balance for the asset being settled."""
    chain_key: str
    token_id: str
    balance: Decimal
    address: Optional[str] = None


@dataclass
class DistributionTarget:
    chain_key: str
    token_id: str
    amount: Decimal
    percentage: float
    original_balance: Decimal
    remaining_balance: Decimal


@dataclass
class DistributionResult:
    asset: str
    total_hot_balance: Decimal
    exchange_balance: Decimal
    target_balance: Decimal
    settlement_amount: Decimal
    distributions: List[DistributionTarget] = field(default_factory=list)
    current_ratio: float = 1.0
    target_ratio: float = 1.0

    @property
    def direction(self) -> TransferKind:
        return TransferKind.DEPOSIT if self.settlement_amount > 0 else TransferKind.WITHDRAWAL

    @property
    def needs_settlement(self) -> bool:
        return self.settlement_amount != 0


class RebalanceCalculator:
    """Computes settlement amounts and per-wallet distributions."""

    def __init__(
        self,
        min_settlement_amount: Decimal = Decimal("0.001"),
        quantum: Optional[Decimal] = None,
    ):
        self.min_settlement_amount = min_settlement_amount
        self.quantum = quantum

    @staticmethod
    def settlement_amount(hot_total: Decimal, exchange_balance: Decimal) -> Decimal:
        target = (hot_total + exchange_balance) / 2
        return target - exchange_balance

    def needs_settlement(self, amount: Decimal, min_amount: Optional[Decimal] = None) -> bool:
        floor = self.min_settlement_amount if min_amount is None else min_amount
        return amount != 0 and abs(amount) >= floor

    def distribute(
        self,
        sources: Sequence[BalanceSource],
        amount: Decimal,
        quantum: Optional[Decimal] = None,
    ) -> List[DistributionTarget]:
        """
        Split ``abs(amount)`` across ``sources`` pro rata to their balances.

        Legs are rounded down to ``quantum`` and whatever rounding leaves over
        goes to the largest contributor, so the legs always sum to
        ``abs(amount)``. With an empty hot side (all balances zero) the split
        is even.
        """
        if not sources:
            return []

        quantum = quantum if quantum is not None else self.quantum
        total_amount = abs(amount)
        total_balance = sum((s.balance for s in sources), Decimal("0"))
        withdrawing = amount < 0

        shares: List[Decimal] = []
        for source in sources:
            if total_balance > 0:
                share = total_amount * source.balance / total_balance
            else:
                share = total_amount / len(sources)
            if quantum:
                share = round_down(share, quantum)
            shares.append(share)

        remainder = total_amount - sum(shares, Decimal("0"))
        if remainder:
            largest = max(range(len(sources)), key=lambda i: sources[i].balance)
            shares[largest] += remainder

        targets = []
        for source, share in zip(sources, shares):
            percentage = float(share / total_amount * 100) if total_amount else 0.0
            remaining = source.balance + share if withdrawing else source.balance - share
            targets.append(DistributionTarget(
                chain_key=source.chain_key,
                token_id=source.token_id,
                amount=share,
                percentage=percentage,
                original_balance=source.balance,
                remaining_balance=remaining,
            ))
        return targets

    def calculate_distribution(
        self,
        asset: str,
        sources: Sequence[BalanceSource],
        exchange_balance: Decimal,
        min_amount: Optional[Decimal] = None,
        quantum: Optional[Decimal] = None,
    ) -> Optional[DistributionResult]:
        """
        Full plan for one asset, or None when the amount is under the floor.

        With a ``quantum`` the amount is truncated to it before splitting, so
        every leg is a whole number of quanta.
        """
        quantum = quantum if quantum is not None else self.quantum
        total_hot = sum((s.balance for s in sources), Decimal("0"))
        amount = self.settlement_amount(total_hot, exchange_balance)
        if quantum:
            amount = round_down(abs(amount), quantum).copy_sign(amount)

        if not self.needs_settlement(amount, min_amount):
            logger.info(
                f"Settlement amount {amount} {asset} below threshold "
                f"{self.min_settlement_amount if min_amount is None else min_amount}"
            )
            return None

        if exchange_balance > 0:
            ratio = float(total_hot / exchange_balance)
        else:
            ratio = float("inf")

        result = DistributionResult(
            asset=asset,
            total_hot_balance=total_hot,
            exchange_balance=exchange_balance,
            target_balance=(total_hot + exchange_balance) / 2,
            settlement_amount=amount,
            distributions=self.distribute(sources, amount, quantum),
            current_ratio=ratio,
        )
        self.validate_distribution(result)
        return result

    def validate_distribution(self, result: DistributionResult) -> bool:
        """Legs must sum exactly to ``abs(settlement_amount)``."""
        if not result.needs_settlement:
            return True
        distributed = sum((d.amount for d in result.distributions), Decimal("0"))
        if result.distributions and distributed != abs(result.settlement_amount):
            raise SettlementError(
                f"Sum of distributions ({distributed}) does not equal "
                f"settlement amount ({abs(result.settlement_amount)})",
                error_code="INVALID_DISTRIBUTION",
                details={"asset": result.asset},
            )
        return True

    @staticmethod
    def priority_order(result: DistributionResult) -> List[DistributionTarget]:
        """Legs sorted by amount, largest first."""
        return sorted(result.distributions, key=lambda d: d.amount, reverse=True)

    @staticmethod
    def format_distribution(result: DistributionResult, decimals: int = 8) -> str:
        q = Decimal(1).scaleb(-decimals)
        symbol = result.asset
        lines = [
            f"Settlement Distribution for {symbol}:",
            f"  Hot Wallet Total: {result.total_hot_balance.quantize(q)} {symbol}",
            f"  Exchange Target: {result.target_balance.quantize(q)} {symbol}",
            f"  Settlement Amount: {result.settlement_amount.quantize(q)} {symbol} ({result.direction.value})",
            f"  Current Ratio: {result.current_ratio:.4f} (target: {result.target_ratio:.4f})",
            "",
            "Distribution by Source:",
        ]
        for dist in result.distributions:
            lines.extend([
                f"  {dist.chain_key}:",
                f"    Amount: {dist.amount.quantize(q)} {symbol} ({dist.percentage:.2f}%)",
                f"    Original: {dist.original_balance.quantize(q)} {symbol}",
                f"    Remaining: {dist.remaining_balance.quantize(q)} {symbol}",
            ])
        return "\n".join(lines)
