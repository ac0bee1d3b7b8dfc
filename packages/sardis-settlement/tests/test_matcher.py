"""Tests for cross-ledger transaction matching."""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from sardis_settlement.chains.base import BalanceChange, ConfirmationLevel, TransactionStatus
from sardis_settlement.chains.registry import ChainRegistry
from sardis_settlement.exchange import DepositRecord, DepositStatus, WithdrawalRecord, WithdrawalStatus
from sardis_settlement.matcher import TransactionMatcher
from sardis_settlement.models import MatchState, SettlementResult, TransferKind

DEPOSIT_ADDRESS = "deposit-eth-eth"


@pytest.fixture
def adapter(fake_adapter, eth_network, sample_eth_address):
    return fake_adapter(eth_network, sample_eth_address)


@pytest.fixture
def exchange(fake_exchange):
    return fake_exchange()


@pytest.fixture
def reporter():
    reporter = AsyncMock()
    reporter.alert_verification_failure = AsyncMock()
    return reporter


@pytest.fixture
def matcher(adapter, exchange, reporter):
    registry = ChainRegistry()
    registry.register(adapter)
    return TransactionMatcher(
        registry,
        exchange,
        reporter=reporter,
        poll_interval_seconds=0,
        timeout_seconds=0,
    )


@pytest.fixture
def deposit(sample_tx_hash):
    return SettlementResult(
        success=True,
        kind=TransferKind.DEPOSIT,
        chain_key="eip155:1",
        token_id="eip155:1",
        asset="ETH",
        original_balance=Decimal("10"),
        settlement_amount=Decimal("2"),
        transaction_hash=sample_tx_hash,
        address=DEPOSIT_ADDRESS,
    )


@pytest.fixture
def withdrawal(sample_eth_address):
    return SettlementResult(
        success=True,
        kind=TransferKind.WITHDRAWAL,
        chain_key="eip155:1",
        token_id="eip155:1",
        asset="ETH",
        original_balance=Decimal("1"),
        settlement_amount=Decimal("-3"),
        transaction_hash="1001",
        address=sample_eth_address,
    )


def _deposit_record(tx_hash, amount="2", status=DepositStatus.SUCCESS):
    return DepositRecord(
        id="d1",
        coin="ETH",
        network="ETH",
        amount=Decimal(amount),
        address=DEPOSIT_ADDRESS,
        tx_id=tx_hash,
        status=status,
    )


def _withdrawal_record(status=WithdrawalStatus.COMPLETED, tx_id="0x" + "c" * 64):
    return WithdrawalRecord(
        id="1001",
        coin="ETH",
        network="ETH",
        amount=Decimal("3"),
        address="0xhot",
        status=status,
        tx_id=tx_id,
    )


CONFIRMED = TransactionStatus(found=True, confirmed=True, success=True, confirmations=3)


@pytest.mark.asyncio
async def test_deposit_matched(matcher, adapter, exchange, deposit, reporter):
    """Chain confirmed and exchange credited with the sent amount."""
    adapter.statuses[deposit.transaction_hash] = CONFIRMED
    exchange.deposit_records.append(_deposit_record(deposit.transaction_hash))

    await matcher.verify(deposit)

    assert deposit.verified is True
    assert deposit.verification_details.state == MatchState.MATCHED
    assert deposit.verification_details.chain_confirmed
    assert deposit.verification_details.exchange_matched
    reporter.alert_verification_failure.assert_not_called()


@pytest.mark.asyncio
async def test_deposit_amount_mismatch(matcher, adapter, exchange, deposit, reporter):
    adapter.statuses[deposit.transaction_hash] = CONFIRMED
    exchange.deposit_records.append(_deposit_record(deposit.transaction_hash, amount="1.9"))

    await matcher.verify(deposit)

    assert deposit.verified is False
    assert deposit.verification_details.state == MatchState.AMOUNT_MISMATCH
    assert deposit.verification_details.actual_amount == Decimal("1.9")
    assert "mismatch" in deposit.verification_error
    reporter.alert_verification_failure.assert_awaited_once_with(deposit)


@pytest.mark.asyncio
async def test_deposit_amount_within_tolerance(matcher, adapter, exchange, deposit):
    adapter.statuses[deposit.transaction_hash] = CONFIRMED
    exchange.deposit_records.append(_deposit_record(deposit.transaction_hash, amount="2.00000001"))

    outcome = await matcher.match_deposit(deposit)

    assert outcome.state == MatchState.MATCHED


@pytest.mark.asyncio
async def test_deposit_credited_not_final(matcher, adapter, exchange, deposit):
    """Credited but not yet withdrawable keeps the deposit confirming."""
    adapter.statuses[deposit.transaction_hash] = CONFIRMED
    exchange.deposit_records.append(
        _deposit_record(deposit.transaction_hash, status=DepositStatus.CREDITED)
    )

    outcome = await matcher.match_deposit(deposit)

    assert outcome.state == MatchState.CONFIRMING
    assert outcome.amount_matches


@pytest.mark.asyncio
async def test_deposit_timed_out_when_seen(matcher, adapter, deposit, reporter):
    """Seen on chain but never credited: the deadline turns it into a timeout."""
    adapter.statuses[deposit.transaction_hash] = CONFIRMED

    await matcher.verify(deposit)

    assert deposit.verified is False
    assert deposit.verification_details.state == MatchState.TIMED_OUT
    assert "timed out" in deposit.verification_error
    reporter.alert_verification_failure.assert_awaited_once()


@pytest.mark.asyncio
async def test_deposit_timed_out_when_never_seen(matcher, deposit, reporter):
    """Nothing on either ledger before the deadline is still a timeout, not a failure."""
    await matcher.verify(deposit)

    assert deposit.verified is False
    assert deposit.verification_details.state == MatchState.TIMED_OUT
    assert deposit.verification_details.error_code == "VERIFICATION_TIMEOUT"
    assert "timed out" in deposit.verification_error
    reporter.alert_verification_failure.assert_awaited_once_with(deposit)


@pytest.mark.asyncio
async def test_deposit_timed_out_when_chain_unreachable(matcher, adapter, deposit):
    """Every tick failing on the chain side ends as a timeout."""
    adapter.get_transaction_status = AsyncMock(side_effect=RuntimeError("rpc down"))

    await matcher.verify(deposit)

    assert deposit.verification_details.state == MatchState.TIMED_OUT
    assert "not found" not in deposit.verification_error


@pytest.mark.asyncio
async def test_deposit_failed_on_chain(matcher, adapter, deposit):
    adapter.statuses[deposit.transaction_hash] = TransactionStatus(
        found=True, confirmed=True, success=False, error="Transaction reverted"
    )

    outcome = await matcher.match_deposit(deposit)

    assert outcome.state == MatchState.NOT_FOUND
    assert outcome.error == "Transaction reverted"


@pytest.mark.asyncio
async def test_withdrawal_matched(matcher, adapter, exchange, withdrawal):
    record = _withdrawal_record()
    exchange.withdrawal_records["1001"] = record
    adapter.statuses[record.tx_id] = CONFIRMED
    adapter.balance_changes[record.tx_id] = BalanceChange(balance_change=2_995 * 10**15, found=True)

    await matcher.verify(withdrawal)

    assert withdrawal.verified is True
    assert withdrawal.verification_details.chain_tx_hash == record.tx_id
    assert withdrawal.verification_details.actual_amount == Decimal("2.995")


@pytest.mark.asyncio
async def test_withdrawal_amount_outside_ratio(matcher, adapter, exchange, withdrawal):
    record = _withdrawal_record()
    exchange.withdrawal_records["1001"] = record
    adapter.statuses[record.tx_id] = CONFIRMED
    adapter.balance_changes[record.tx_id] = BalanceChange(balance_change=2 * 10**18, found=True)

    outcome = await matcher.match_withdrawal(withdrawal)

    assert outcome.state == MatchState.AMOUNT_MISMATCH
    assert outcome.actual_amount == Decimal("2")


@pytest.mark.asyncio
async def test_withdrawal_hot_wallet_not_involved(matcher, adapter, exchange, withdrawal):
    record = _withdrawal_record()
    exchange.withdrawal_records["1001"] = record
    adapter.statuses[record.tx_id] = CONFIRMED

    outcome = await matcher.match_withdrawal(withdrawal)

    assert outcome.state == MatchState.AMOUNT_MISMATCH
    assert "not involved" in outcome.error


@pytest.mark.asyncio
async def test_withdrawal_states_before_chain(matcher, exchange, withdrawal):
    assert (await matcher.match_withdrawal(withdrawal)).state == MatchState.SUBMITTED

    exchange.withdrawal_records["1001"] = _withdrawal_record(status=WithdrawalStatus.PROCESSING, tx_id=None)
    assert (await matcher.match_withdrawal(withdrawal)).state == MatchState.CONFIRMING

    exchange.withdrawal_records["1001"] = _withdrawal_record(status=WithdrawalStatus.REJECTED, tx_id=None)
    rejected = await matcher.match_withdrawal(withdrawal)
    assert rejected.state == MatchState.NOT_FOUND
    assert "rejected" in rejected.error


@pytest.mark.asyncio
async def test_poll_retries_tick_errors(matcher, adapter, exchange, deposit):
    """A failing tick is logged and retried until the deadline."""
    matcher.timeout_seconds = 0.05
    calls = []

    async def flaky(result):
        calls.append(result)
        if len(calls) == 1:
            raise RuntimeError("rpc hiccup")
        return await matcher.match_deposit(result)

    adapter.statuses[deposit.transaction_hash] = CONFIRMED
    exchange.deposit_records.append(_deposit_record(deposit.transaction_hash))

    outcome = await matcher._poll(flaky, deposit)

    assert outcome.state == MatchState.MATCHED
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_verify_skips_unsubmitted_and_resolved(matcher, deposit, reporter):
    failed = SettlementResult.failed(
        kind=TransferKind.DEPOSIT,
        chain_key="eip155:1",
        token_id="eip155:1",
        asset="ETH",
        original_balance=Decimal("1"),
        error="boom",
    )
    await matcher.verify(failed)
    assert failed.verified is None

    await matcher.verify(deposit)
    first_state = deposit.verification_details.state
    await matcher.verify(deposit)

    assert deposit.verification_details.state == first_state
    reporter.alert_verification_failure.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_chain_tx_is_not_found(matcher, adapter, deposit, reporter):
    adapter.statuses[deposit.transaction_hash] = TransactionStatus(
        found=True, confirmed=True, success=False, error="Transaction reverted"
    )

    await matcher.verify(deposit)

    assert deposit.verification_details.state == MatchState.NOT_FOUND
    assert deposit.verification_details.error_code == "VERIFICATION_FAILED"
    assert deposit.verification_error == f"Transfer {deposit.transaction_hash} not found: Transaction reverted"
    reporter.alert_verification_failure.assert_awaited_once_with(deposit)


@pytest.mark.asyncio
async def test_mismatch_carries_error_code(matcher, adapter, exchange, deposit):
    adapter.statuses[deposit.transaction_hash] = CONFIRMED
    exchange.deposit_records.append(_deposit_record(deposit.transaction_hash, amount="1"))

    await matcher.verify(deposit)

    assert deposit.verification_details.error_code == "VERIFICATION_MISMATCH"
    assert deposit.to_dict()["verification_details"]["error_code"] == "VERIFICATION_MISMATCH"


@pytest.mark.asyncio
async def test_chain_side_waits_for_configured_level(matcher, adapter, exchange, deposit):
    matcher.confirmation_level = ConfirmationLevel.FINALIZED
    adapter.statuses[deposit.transaction_hash] = CONFIRMED
    exchange.deposit_records.append(_deposit_record(deposit.transaction_hash))

    await matcher.match_deposit(deposit)

    assert adapter.confirmation_waits == [(deposit.transaction_hash, ConfirmationLevel.FINALIZED)]


@pytest.mark.asyncio
async def test_deposit_lookup_windowed_from_submission(matcher, exchange, deposit):
    await matcher.match_deposit(deposit)

    [(asset, address, tx_hash, since)] = exchange.deposit_lookups
    assert (asset, address, tx_hash) == ("ETH", DEPOSIT_ADDRESS, deposit.transaction_hash)
    assert since == deposit.timestamp
