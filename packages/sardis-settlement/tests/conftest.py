"""Pytest configuration for sardis-settlement tests."""
from __future__ import annotations

import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("SARDIS_SETTLEMENT_ENVIRONMENT", "dev")

from sardis_settlement.chains.base import (  # noqa: E402
    BalanceChange,
    ConfirmationLevel,
    ConfirmationResult,
    TransactionStatus,
)
from sardis_settlement.config import (  # noqa: E402
    BTC_MAINNET_KEY,
    ETH_MAINNET_KEY,
    SOLANA_MAINNET_KEY,
    NetworkConfig,
)
from sardis_settlement.exchange import DepositAddress  # noqa: E402
from sardis_settlement.models import ExchangeBalance  # noqa: E402


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def sample_eth_address():
    """Sample Ethereum address for tests."""
    return "0x1234567890123456789012345678901234567890"


@pytest.fixture
def sample_solana_address():
    """Sample Solana address for tests."""
    return "7EcDhSYGxXyscszYEp35KHN8vvw3svAuLKTzXwCFLtV"


@pytest.fixture
def sample_btc_address():
    """Sample bech32 Bitcoin address for tests."""
    return "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


@pytest.fixture
def sample_tx_hash():
    """Sample transaction hash for tests."""
    return "0x" + "a" * 64


@pytest.fixture
def eth_network():
    """Mainnet Ethereum network config with a fast poll interval."""
    return NetworkConfig(
        chain_key=ETH_MAINNET_KEY,
        family="evm",
        name="ethereum",
        rpc_url="https://eth.example",
        native_asset="ETH",
        decimals=18,
        chain_id=1,
        confirmations_required=1,
        finality_confirmations=12,
        poll_interval_seconds=0.0,
        fee_reserve=Decimal("0.002"),
    )


@pytest.fixture
def btc_network():
    return NetworkConfig(
        chain_key=BTC_MAINNET_KEY,
        family="utxo",
        name="bitcoin",
        rpc_url="https://esplora.example/api",
        native_asset="BTC",
        decimals=8,
        poll_interval_seconds=0.0,
        fee_reserve=Decimal("0.0001"),
    )


@pytest.fixture
def solana_network():
    return NetworkConfig(
        chain_key=SOLANA_MAINNET_KEY,
        family="solana",
        name="solana",
        rpc_url="https://solana.example",
        native_asset="SOL",
        decimals=9,
        poll_interval_seconds=0.0,
        fee_reserve=Decimal("0.01"),
    )


class _FakeAdapter:
    """In-memory chain adapter. Amounts are base units, as with the real adapters."""

    def __init__(self, network, hot_address, balances=None):
        self.network = network
        self.hot_address = hot_address
        self.balances = dict(balances or {})
        self.decimals = {}
        self.statuses = {}
        self.balance_changes = {}
        self.transfers = []
        self.transfer_error = None
        self.balance_error = None
        self.tx_hash = "0x" + "b" * 64
        self.confirmation_waits = []
        self._missing_status = TransactionStatus(found=False)
        self._missing_change = BalanceChange(balance_change=0, found=False)

    @property
    def chain_key(self):
        return self.network.chain_key

    async def get_hot_wallet_address(self):
        return self.hot_address

    async def get_asset_balance(self, token_id, address=None):
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(token_id, 0)

    async def get_decimals(self, token_id):
        return self.decimals.get(token_id, self.network.decimals)

    async def get_transaction_status(self, ref):
        return self.statuses.get(ref, self._missing_status)

    async def get_address_balance_change(self, ref, address, token_id=None):
        return self.balance_changes.get(ref, self._missing_change)

    async def wait_for_confirmation(self, ref, level=ConfirmationLevel.CONFIRMED, timeout_seconds=300.0):
        self.confirmation_waits.append((ref, level))
        status = await self.get_transaction_status(ref)
        if status.found and status.confirmed:
            return ConfirmationResult(
                confirmed=True,
                success=status.success,
                error=None if status.success else status.error or "Transaction failed on chain",
                confirmations=status.confirmations,
                found=True,
            )
        return ConfirmationResult(confirmed=False, success=False, timed_out=True, found=status.found)

    async def transfer(self, token_id, to, amount):
        if self.transfer_error is not None:
            raise self.transfer_error
        self.transfers.append((token_id, to, amount))
        return self.tx_hash

    async def close(self):
        pass


class _FakeExchange:
    """Exchange client double keeping balances, deposits and withdrawals in memory."""

    def __init__(self, balances=None):
        self.balances = dict(balances or {})
        self.deposit_records = []
        self.withdrawal_records = {}
        self.withdrawals = []
        self.balance_error = None
        self.address_error = None
        self.withdraw_error = None
        self.deposit_lookups = []
        self._next_withdrawal_id = 1000

    async def get_asset_balance(self, asset):
        if self.balance_error is not None:
            raise self.balance_error
        if asset not in self.balances:
            return None
        return ExchangeBalance(asset=asset, free=self.balances[asset])

    async def get_deposit_address(self, asset, network):
        if self.address_error is not None:
            raise self.address_error
        return DepositAddress(address=f"deposit-{asset}-{network}".lower(), coin=asset, network=network)

    async def withdraw(self, asset, address, amount, network, memo=None, client_order_id=None):
        if self.withdraw_error is not None:
            raise self.withdraw_error
        self._next_withdrawal_id += 1
        self.withdrawals.append((asset, address, amount, network))
        return str(self._next_withdrawal_id)

    async def find_matching_deposit(self, asset, address, tx_hash, since=None):
        self.deposit_lookups.append((asset, address, tx_hash, since))
        for record in self.deposit_records:
            if record.tx_id == tx_hash and record.address == address:
                return record
        return None

    async def get_withdrawal_status(self, withdrawal_id, asset=None):
        return self.withdrawal_records.get(withdrawal_id)

    async def close(self):
        pass


@pytest.fixture
def fake_adapter():
    """Factory for in-memory chain adapters."""
    return _FakeAdapter


@pytest.fixture
def fake_exchange():
    """Factory for in-memory exchange clients."""
    return _FakeExchange
