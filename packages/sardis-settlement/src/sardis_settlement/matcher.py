"""
Cross-ledger transaction matching.

A submitted transfer is settled only when both the chain and the exchange
agree on it:

    SUBMITTED -> CONFIRMING -> MATCHED
                            -> AMOUNT_MISMATCH
                            -> NOT_FOUND
                            -> TIMED_OUT

Deposits poll the chain status and the exchange deposit history.
Withdrawals poll the exchange withdrawal record and, once it carries a chain
tx id, the destination chain's balance delta for the hot wallet.

Polling is bounded by a deadline taken from the event loop clock. Errors
inside a tick are logged and the tick is retried on the next interval.
An exhausted deadline always ends TIMED_OUT; NOT_FOUND needs explicit
evidence (a failed chain tx or a cancelled withdrawal).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from .chains.base import ConfirmationLevel, ConfirmationResult, from_base_units
from .chains.registry import ChainRegistry
from .exceptions import (
    VerificationError,
    VerificationMismatchError,
    VerificationTimeoutError,
)
from .exchange import DepositStatus, ExchangeClient, WithdrawalStatus
from .models import MatchState, SettlementResult, TransferKind, VerificationDetails
from .reporter import ReconciliationReporter

logger = logging.getLogger(__name__)


@dataclass
class MatchOutcome:
    """Result of one matching tick, or of a whole verification run."""
    state: MatchState
    chain_confirmed: bool = False
    exchange_matched: bool = False
    amount_matches: bool = False
    chain_tx_hash: Optional[str] = None
    actual_amount: Optional[Decimal] = None
    # Reference observed on at least one ledger
    seen: bool = False
    error: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.state == MatchState.MATCHED

    def to_details(self) -> VerificationDetails:
        return VerificationDetails(
            state=self.state,
            chain_confirmed=self.chain_confirmed,
            exchange_matched=self.exchange_matched,
            amount_matches=self.amount_matches,
            chain_tx_hash=self.chain_tx_hash,
            actual_amount=self.actual_amount,
        )


class TransactionMatcher:
    """Verifies submitted settlement transfers against both ledgers."""

    def __init__(
        self,
        registry: ChainRegistry,
        exchange: ExchangeClient,
        reporter: Optional[ReconciliationReporter] = None,
        poll_interval_seconds: float = 15.0,
        timeout_seconds: float = 600.0,
        deposit_tolerance: Decimal = Decimal("0.00000001"),
        withdrawal_tolerance_ratio: Decimal = Decimal("0.01"),
        confirmation_level: ConfirmationLevel = ConfirmationLevel.CONFIRMED,
    ):
        self._registry = registry
        self._exchange = exchange
        self._reporter = reporter
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.deposit_tolerance = deposit_tolerance
        self.withdrawal_tolerance_ratio = withdrawal_tolerance_ratio
        self.confirmation_level = confirmation_level

    async def _chain_check(self, chain_key: str, tx_hash: str) -> ConfirmationResult:
        # Zero budget: one status read per tick, the matcher owns the deadline
        adapter = self._registry.get(chain_key)
        return await adapter.wait_for_confirmation(tx_hash, self.confirmation_level, timeout_seconds=0)

    async def match_deposit(self, result: SettlementResult) -> MatchOutcome:
        """One look at both ledgers for a deposit."""
        tx_hash = result.transaction_hash
        confirmation = await self._chain_check(result.chain_key, tx_hash)
        seen = confirmation.found
        chain_confirmed = confirmation.confirmed and confirmation.success
        if confirmation.confirmed and not confirmation.success:
            return MatchOutcome(
                state=MatchState.NOT_FOUND,
                chain_confirmed=True,
                chain_tx_hash=tx_hash,
                seen=True,
                error=confirmation.error,
            )

        record = await self._exchange.find_matching_deposit(
            result.asset, result.address, tx_hash, since=result.timestamp
        )
        if record is None:
            return MatchOutcome(
                state=MatchState.CONFIRMING if seen else MatchState.SUBMITTED,
                chain_confirmed=chain_confirmed,
                chain_tx_hash=tx_hash,
                seen=seen,
            )

        amount_matches = abs(record.amount - result.settlement_amount) <= self.deposit_tolerance
        if not amount_matches:
            return MatchOutcome(
                state=MatchState.AMOUNT_MISMATCH,
                chain_confirmed=chain_confirmed,
                exchange_matched=True,
                chain_tx_hash=tx_hash,
                actual_amount=record.amount,
                seen=True,
                error=f"Amount mismatch: sent {result.settlement_amount}, exchange credited {record.amount}",
            )

        credited = record.status == DepositStatus.SUCCESS
        state = MatchState.MATCHED if chain_confirmed and credited else MatchState.CONFIRMING
        return MatchOutcome(
            state=state,
            chain_confirmed=chain_confirmed,
            exchange_matched=credited,
            amount_matches=True,
            chain_tx_hash=tx_hash,
            actual_amount=record.amount,
            seen=True,
        )

    async def match_withdrawal(self, result: SettlementResult) -> MatchOutcome:
        """One look at both ledgers for a withdrawal."""
        record = await self._exchange.get_withdrawal_status(result.transaction_hash, result.asset)
        if record is None:
            return MatchOutcome(state=MatchState.SUBMITTED)

        if record.status.is_failed:
            return MatchOutcome(
                state=MatchState.NOT_FOUND,
                seen=True,
                error=f"Exchange reports withdrawal {record.status.value}",
            )
        if not record.tx_id:
            return MatchOutcome(state=MatchState.CONFIRMING, seen=True)

        exchange_done = record.status == WithdrawalStatus.COMPLETED
        confirmation = await self._chain_check(result.chain_key, record.tx_id)
        if not confirmation.confirmed:
            return MatchOutcome(
                state=MatchState.CONFIRMING,
                exchange_matched=exchange_done,
                chain_tx_hash=record.tx_id,
                seen=True,
            )
        if not confirmation.success:
            return MatchOutcome(
                state=MatchState.NOT_FOUND,
                chain_confirmed=True,
                exchange_matched=exchange_done,
                chain_tx_hash=record.tx_id,
                seen=True,
                error=confirmation.error,
            )

        adapter = self._registry.get(result.chain_key)
        change = await adapter.get_address_balance_change(record.tx_id, result.address, result.token_id)
        if not change.found:
            return MatchOutcome(
                state=MatchState.AMOUNT_MISMATCH,
                chain_confirmed=True,
                exchange_matched=exchange_done,
                chain_tx_hash=record.tx_id,
                seen=True,
                error=f"Hot wallet {result.address} not involved in {record.tx_id}",
            )

        decimals = await adapter.get_decimals(result.token_id)
        actual = from_base_units(change.balance_change, decimals)
        expected = abs(result.settlement_amount)
        within = actual > 0 and (
            expected == 0 or abs(actual - expected) / expected <= self.withdrawal_tolerance_ratio
        )
        return MatchOutcome(
            state=MatchState.MATCHED if within else MatchState.AMOUNT_MISMATCH,
            chain_confirmed=True,
            exchange_matched=exchange_done,
            amount_matches=within,
            chain_tx_hash=record.tx_id,
            actual_amount=actual,
            seen=True,
            error=None if within else f"Amount mismatch: expected {expected}, hot wallet received {actual}",
        )

    async def _poll(
        self,
        tick: Callable[[SettlementResult], Awaitable[MatchOutcome]],
        result: SettlementResult,
    ) -> MatchOutcome:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        seen = False
        last = MatchOutcome(state=MatchState.SUBMITTED)

        while True:
            try:
                outcome = await tick(result)
            except Exception as e:
                logger.warning(f"Matching tick for {result.transaction_hash} failed, retrying: {e}")
            else:
                seen = seen or outcome.seen
                last = outcome
                if outcome.state.is_terminal:
                    return outcome

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

        return replace(last, state=MatchState.TIMED_OUT, seen=seen)

    async def verify_deposit(self, result: SettlementResult) -> MatchOutcome:
        return await self._poll(self.match_deposit, result)

    async def verify_withdrawal(self, result: SettlementResult) -> MatchOutcome:
        return await self._poll(self.match_withdrawal, result)

    def _failure_error(self, result: SettlementResult, outcome: MatchOutcome) -> VerificationError:
        reference = result.transaction_hash
        if outcome.state == MatchState.TIMED_OUT:
            return VerificationTimeoutError(
                f"Verification timed out after {self.timeout_seconds}s for {reference}",
                reference=reference,
                timeout_seconds=self.timeout_seconds,
            )
        if outcome.state == MatchState.AMOUNT_MISMATCH:
            return VerificationMismatchError(
                f"Verification mismatch for {reference}: {outcome.error or 'amount or address differs'}",
                reference=reference,
            )
        reason = f": {outcome.error}" if outcome.error else ""
        return VerificationError(f"Transfer {reference} not found{reason}", reference=reference)

    def apply_outcome(self, result: SettlementResult, outcome: MatchOutcome) -> SettlementResult:
        """Write the terminal outcome onto the result (exactly once)."""
        if outcome.matched:
            result.mark_verification(True, outcome.to_details())
        else:
            error = self._failure_error(result, outcome)
            details = outcome.to_details()
            details.error_code = error.error_code
            result.mark_verification(False, details, error=error.message)
        return result

    async def verify(self, result: SettlementResult) -> SettlementResult:
        """Run verification to a terminal state and alert on anything but a match."""
        if not result.success or not result.transaction_hash or result.is_verification_resolved:
            return result

        if result.kind == TransferKind.DEPOSIT:
            outcome = await self.verify_deposit(result)
        else:
            outcome = await self.verify_withdrawal(result)

        self.apply_outcome(result, outcome)
        if outcome.matched:
            logger.info(f"Settlement {result.kind.value} {result.transaction_hash} verified")
        else:
            logger.warning(
                f"Settlement {result.kind.value} {result.transaction_hash} "
                f"ended {outcome.state.value}: {result.verification_error}"
            )
            if self._reporter is not None:
                await self._reporter.alert_verification_failure(result)
        return result
