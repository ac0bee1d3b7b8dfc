"""
Transfer execution for one settlement leg.

A deposit sends from a hot wallet to the exchange's deposit address; a
withdrawal asks the exchange to send to the hot wallet. Failures that belong
to one wallet come back as ``SettlementResult(success=False)`` so sibling
wallets keep going. ``InsufficientBalanceError`` and ``UnmappedAssetError``
propagate: the orchestrator records those as skips.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from .asset_mapper import AssetMapper
from .calculator import precision_quantum, round_down
from .chains.base import parse_token_id
from .chains.registry import ChainRegistry
from .exceptions import (
    ExchangeError,
    InsufficientBalanceError,
    SettlementError,
    TransientNetworkError,
)
from .exchange import ExchangeClient
from .models import SettlementResult, TransferKind

logger = logging.getLogger(__name__)


class TransferExecutor:
    """Submits settlement transfers; never verifies them."""

    def __init__(
        self,
        registry: ChainRegistry,
        exchange: ExchangeClient,
        mapper: AssetMapper,
        min_transfer_amount: Decimal = Decimal("0.0001"),
        amount_decimals: int = 8,
    ):
        self._registry = registry
        self._exchange = exchange
        self._mapper = mapper
        self.min_transfer_amount = min_transfer_amount
        self.amount_decimals = amount_decimals

    def reserve_for(self, token_id: str) -> Decimal:
        """Balance held back for fees/rent. Only native assets pay their own fees."""
        if not parse_token_id(token_id).is_native:
            return Decimal("0")
        return self._registry.get(token_id).network.fee_reserve

    async def quantum_for(self, token_id: str) -> Decimal:
        """Smallest amount step for ``token_id`` that the exchange also accepts."""
        decimals = await self._registry.get(token_id).get_decimals(token_id)
        return precision_quantum(decimals, self.amount_decimals)

    def clamp_amount(
        self,
        token_id: str,
        amount: Decimal,
        available: Decimal,
        quantum: Optional[Decimal] = None,
    ) -> Decimal:
        """Cap ``amount`` at ``available - reserve``; raise when nothing worth sending is left."""
        reserve = self.reserve_for(token_id)
        spendable = available - reserve
        clamped = min(amount, spendable)
        if quantum and clamped > 0:
            clamped = round_down(clamped, quantum)
        if clamped <= 0 or clamped < self.min_transfer_amount:
            raise InsufficientBalanceError(
                f"Only {spendable} spendable after reserve on {token_id}",
                available=str(available),
                requested=str(amount),
                reserve=str(reserve),
                chain=token_id.split("/", 1)[0],
            )
        if clamped < amount:
            logger.info(f"Clamped {token_id} transfer from {amount} to {clamped} (reserve {reserve})")
        return clamped

    async def deposit(
        self,
        token_id: str,
        amount: Decimal,
        original_balance: Decimal,
    ) -> SettlementResult:
        """Send ``amount`` from the hot wallet to the exchange."""
        mapping = self._mapper.require(token_id)
        adapter = self._registry.get(token_id)
        chain_key = adapter.chain_key
        quantum = await self.quantum_for(token_id)
        send_amount = self.clamp_amount(token_id, amount, original_balance, quantum)

        def failed(error: str) -> SettlementResult:
            return SettlementResult.failed(
                kind=TransferKind.DEPOSIT,
                chain_key=chain_key,
                token_id=token_id,
                asset=mapping.asset,
                original_balance=original_balance,
                error=error,
                requested_amount=amount,
            )

        try:
            deposit_address = await self._exchange.get_deposit_address(mapping.asset, mapping.network)
        except (ExchangeError, TransientNetworkError) as e:
            logger.error(f"No deposit address for {mapping.asset} on {mapping.network}: {e}")
            return failed(f"Deposit address unavailable: {e}")

        try:
            tx_hash = await adapter.transfer(token_id, deposit_address.address, send_amount)
        except SettlementError as e:
            logger.error(f"Deposit of {send_amount} {token_id} failed: {e}")
            return failed(str(e))

        logger.info(f"Deposit submitted: {send_amount} {mapping.asset} on {chain_key} -> {tx_hash}")
        return SettlementResult(
            success=True,
            kind=TransferKind.DEPOSIT,
            chain_key=chain_key,
            token_id=token_id,
            asset=mapping.asset,
            original_balance=original_balance,
            settlement_amount=send_amount,
            transaction_hash=tx_hash,
            address=deposit_address.address,
            requested_amount=amount,
        )

    async def withdraw(
        self,
        token_id: str,
        amount: Decimal,
        original_balance: Decimal,
        hot_address: Optional[str] = None,
    ) -> SettlementResult:
        """Ask the exchange to send ``amount`` to the hot wallet on ``token_id``'s chain."""
        mapping = self._mapper.require(token_id)
        adapter = self._registry.get(token_id)
        chain_key = adapter.chain_key

        def failed(error: str) -> SettlementResult:
            return SettlementResult.failed(
                kind=TransferKind.WITHDRAWAL,
                chain_key=chain_key,
                token_id=token_id,
                asset=mapping.asset,
                original_balance=original_balance,
                error=error,
                requested_amount=amount,
            )

        send_amount = round_down(amount, await self.quantum_for(token_id))
        if send_amount <= 0 or send_amount < self.min_transfer_amount:
            raise InsufficientBalanceError(
                f"Withdrawal of {send_amount} below minimum transfer {self.min_transfer_amount}",
                requested=str(amount),
                chain=chain_key,
            )

        try:
            address = hot_address or await adapter.get_hot_wallet_address()
            withdrawal_id = await self._exchange.withdraw(
                mapping.asset, address, send_amount, mapping.network
            )
        except SettlementError as e:
            logger.error(f"Withdrawal of {send_amount} {mapping.asset} to {chain_key} failed: {e}")
            return failed(str(e))

        logger.info(f"Withdrawal requested: {send_amount} {mapping.asset} to {chain_key} -> id {withdrawal_id}")
        return SettlementResult(
            success=True,
            kind=TransferKind.WITHDRAWAL,
            chain_key=chain_key,
            token_id=token_id,
            asset=mapping.asset,
            original_balance=original_balance,
            settlement_amount=-send_amount,
            transaction_hash=withdrawal_id,
            address=address,
            requested_amount=amount,
        )
