"""Tests for rebalance calculation."""
from __future__ import annotations

from decimal import Decimal

import pytest

from sardis_settlement.calculator import (
    BalanceSource,
    DistributionResult,
    RebalanceCalculator,
    precision_quantum,
)
from sardis_settlement.exceptions import SettlementError
from sardis_settlement.models import TransferKind


def _sources(*balances):
    return [
        BalanceSource(chain_key=f"chain:{i}", token_id=f"chain:{i}", balance=Decimal(str(b)))
        for i, b in enumerate(balances)
    ]


@pytest.fixture
def calculator():
    return RebalanceCalculator(min_settlement_amount=Decimal("0.001"))


@pytest.mark.parametrize(
    "hot,exchange,expected",
    [
        ("100", "0", "50"),
        ("0", "100", "-50"),
        ("30", "70", "-20"),
        ("50", "50", "0"),
    ],
)
def test_settlement_amount_sign(hot, exchange, expected):
    """Positive means deposit, negative means withdraw."""
    amount = RebalanceCalculator.settlement_amount(Decimal(hot), Decimal(exchange))
    assert amount == Decimal(expected)


def test_settlement_amount_reaches_even_split():
    """After the transfer both sides hold the same amount."""
    hot, exchange = Decimal("12.5"), Decimal("3.25")
    amount = RebalanceCalculator.settlement_amount(hot, exchange)
    assert hot - amount == exchange + amount


def test_distribute_proportional(calculator):
    """Legs follow each wallet's share of the hot total."""
    targets = calculator.distribute(_sources(50, 30, 20), Decimal("40"))

    assert [t.amount for t in targets] == [Decimal("20"), Decimal("12"), Decimal("8")]
    assert [round(t.percentage) for t in targets] == [50, 30, 20]
    assert targets[0].remaining_balance == Decimal("30")


def test_distribute_withdrawal_adds_to_remaining(calculator):
    targets = calculator.distribute(_sources(10, 30), Decimal("-8"))

    assert [t.amount for t in targets] == [Decimal("2"), Decimal("6")]
    assert targets[1].remaining_balance == Decimal("36")


def test_distribute_conserves_total_with_quantum(calculator):
    """Rounded-down legs still sum to the full amount; the remainder goes to the largest wallet."""
    sources = _sources("1", "1", "1.5")
    targets = calculator.distribute(sources, Decimal("1"), quantum=Decimal("0.01"))

    total = sum((t.amount for t in targets), Decimal("0"))
    assert total == Decimal("1")
    assert targets[0].amount == Decimal("0.28")
    assert targets[1].amount == Decimal("0.28")
    assert targets[2].amount == Decimal("0.44")


def test_distribution_quantized_to_token_precision(calculator):
    """Six-decimal legs: each share truncated, the leftover unit on the largest wallet."""
    quantum = precision_quantum(6)

    result = calculator.calculate_distribution("USDT", _sources(10, 20, 30), Decimal("40"), quantum=quantum)

    assert [d.amount for d in result.distributions] == [
        Decimal("1.666666"), Decimal("3.333333"), Decimal("5.000001"),
    ]
    assert all(d.amount == d.amount.quantize(quantum) for d in result.distributions)
    assert calculator.validate_distribution(result)


def test_distribution_amount_truncated_before_split(calculator):
    result = calculator.calculate_distribution(
        "USDT", _sources("10.0000005"), Decimal("0"), quantum=precision_quantum(6)
    )

    assert result.settlement_amount == Decimal("5")
    assert result.distributions[0].amount == Decimal("5")


def test_precision_quantum_capped_at_exchange_decimals():
    assert precision_quantum(6) == Decimal("0.000001")
    assert precision_quantum(18) == Decimal("0.00000001")
    assert precision_quantum(18, max_decimals=4) == Decimal("0.0001")


def test_distribute_even_split_when_hot_side_empty(calculator):
    """With no hot balance anywhere the withdrawal is split evenly."""
    targets = calculator.distribute(_sources(0, 0), Decimal("-10"))

    assert [t.amount for t in targets] == [Decimal("5"), Decimal("5")]


def test_distribute_no_sources(calculator):
    assert calculator.distribute([], Decimal("10")) == []


def test_calculate_distribution_below_floor_returns_none(calculator):
    """Amounts under the minimum produce no plan."""
    result = calculator.calculate_distribution("ETH", _sources("1.0005"), Decimal("1"))
    assert result is None


def test_calculate_distribution_balanced_returns_none(calculator):
    assert calculator.calculate_distribution("ETH", _sources(5, 5), Decimal("10")) is None


def test_calculate_distribution_deposit(calculator):
    """Hot wallets ETH 10, BSC 20, SOL 30 against an exchange holding 40."""
    result = calculator.calculate_distribution("USDT", _sources(10, 20, 30), Decimal("40"))

    assert result is not None
    assert result.direction == TransferKind.DEPOSIT
    assert result.settlement_amount == Decimal("10")
    assert result.target_balance == Decimal("50")
    assert sum((d.amount for d in result.distributions), Decimal("0")) == Decimal("10")
    assert result.current_ratio == pytest.approx(1.5)


def test_calculate_distribution_withdrawal(calculator):
    result = calculator.calculate_distribution("USDT", _sources(30), Decimal("70"))

    assert result.direction == TransferKind.WITHDRAWAL
    assert result.settlement_amount == Decimal("-20")
    assert result.distributions[0].amount == Decimal("20")


def test_calculate_distribution_empty_exchange_ratio(calculator):
    result = calculator.calculate_distribution("ETH", _sources(2), Decimal("0"))
    assert result.current_ratio == float("inf")


def test_calculate_distribution_custom_floor(calculator):
    result = calculator.calculate_distribution("ETH", _sources(12), Decimal("10"), min_amount=Decimal("5"))
    assert result is None


def test_validate_distribution_rejects_bad_sum(calculator):
    """A plan whose legs do not add up is refused."""
    result = calculator.calculate_distribution("ETH", _sources(10, 20), Decimal("0"))
    result.distributions[0].amount += Decimal("0.5")

    with pytest.raises(SettlementError) as exc_info:
        calculator.validate_distribution(result)
    assert exc_info.value.error_code == "INVALID_DISTRIBUTION"


def test_validate_distribution_nothing_to_settle(calculator):
    result = DistributionResult(
        asset="ETH",
        total_hot_balance=Decimal("1"),
        exchange_balance=Decimal("1"),
        target_balance=Decimal("1"),
        settlement_amount=Decimal("0"),
    )
    assert calculator.validate_distribution(result) is True


def test_priority_order_largest_first(calculator):
    result = calculator.calculate_distribution("ETH", _sources(1, 5, 3), Decimal("0"))
    ordered = RebalanceCalculator.priority_order(result)

    assert [t.chain_key for t in ordered] == ["chain:1", "chain:2", "chain:0"]


def test_format_distribution(calculator):
    result = calculator.calculate_distribution("ETH", _sources(10, 20, 30), Decimal("40"))
    text = RebalanceCalculator.format_distribution(result, decimals=2)

    assert "Settlement Distribution for ETH:" in text
    assert "Settlement Amount: 10.00 ETH (deposit)" in text
    assert "chain:2:" in text


def test_needs_settlement_threshold(calculator):
    assert calculator.needs_settlement(Decimal("0.001")) is True
    assert calculator.needs_settlement(Decimal("-0.001")) is True
    assert calculator.needs_settlement(Decimal("0.0009")) is False
    assert calculator.needs_settlement(Decimal("0")) is False
    assert calculator.needs_settlement(Decimal("0"), min_amount=Decimal("0")) is False
