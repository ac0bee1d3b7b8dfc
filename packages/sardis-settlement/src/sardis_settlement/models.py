"""Settlement data model.

Amounts are ``Decimal`` in asset units. A ``SettlementResult`` is created when
a transfer is submitted, has its verification fields filled exactly once by
the transaction matcher, and is append-only once persisted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import SettlementStateError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dec(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class TransferKind(str, Enum):
    """Direction of a settlement transfer."""
    DEPOSIT = "deposit"  # hot wallet -> exchange
    WITHDRAWAL = "withdrawal"  # exchange -> hot wallet


class MatchState(str, Enum):
    """Verification state of a submitted transfer."""
    SUBMITTED = "submitted"
    CONFIRMING = "confirming"
    MATCHED = "matched"
    AMOUNT_MISMATCH = "amount_mismatch"
    NOT_FOUND = "not_found"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (
            MatchState.MATCHED,
            MatchState.AMOUNT_MISMATCH,
            MatchState.NOT_FOUND,
            MatchState.TIMED_OUT,
        )


@dataclass
class HotWalletBalance:
    """Live balance of one hot wallet for one token, read this cycle."""
    chain_key: str
    token_id: str
    asset: str
    balance: Decimal
    address: str
    decimals: Optional[int] = None
    fetched_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_key": self.chain_key,
            "token_id": self.token_id,
            "asset": self.asset,
            "balance": str(self.balance),
            "address": self.address,
            "decimals": self.decimals,
            "fetched_at": self.fetched_at.isoformat(),
        }


@dataclass
class ExchangeBalance:
    """Exchange balance for one asset. The exchange does not track which network it arrived on."""
    asset: str
    free: Decimal = Decimal("0")
    locked: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


@dataclass
class VerificationDetails:
    """What each ledger showed when verification resolved."""
    state: MatchState
    chain_confirmed: bool = False
    exchange_matched: bool = False
    amount_matches: bool = False
    chain_tx_hash: Optional[str] = None
    actual_amount: Optional[Decimal] = None
    # Set when verification failed, from the VerificationError subclass
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "chain_confirmed": self.chain_confirmed,
            "exchange_matched": self.exchange_matched,
            "amount_matches": self.amount_matches,
            "chain_tx_hash": self.chain_tx_hash,
            "actual_amount": str(self.actual_amount) if self.actual_amount is not None else None,
            "error_code": self.error_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationDetails":
        return cls(
            state=MatchState(data["state"]),
            chain_confirmed=data.get("chain_confirmed", False),
            exchange_matched=data.get("exchange_matched", False),
            amount_matches=data.get("amount_matches", False),
            chain_tx_hash=data.get("chain_tx_hash"),
            actual_amount=_dec(data.get("actual_amount")),
            error_code=data.get("error_code"),
        )


@dataclass
class SettlementResult:
    """
    Outcome of one settlement transfer for one wallet.

    ``settlement_amount`` is signed: positive was sent to the exchange,
    negative was withdrawn from it. ``transaction_hash`` is the chain tx hash
    for deposits and the exchange withdrawal id for withdrawals; ``kind``
    says which.
    """
    success: bool
    kind: TransferKind
    chain_key: str
    token_id: str
    asset: str
    original_balance: Decimal
    settlement_amount: Decimal
    remaining_balance: Optional[Decimal] = None
    transaction_hash: Optional[str] = None
    address: Optional[str] = None
    error: Optional[str] = None
    requested_amount: Optional[Decimal] = None
    timestamp: datetime = field(default_factory=_utcnow)

    # Verification, written once by the transaction matcher
    verified: Optional[bool] = None
    verification_error: Optional[str] = None
    verification_timestamp: Optional[datetime] = None
    verification_details: Optional[VerificationDetails] = None

    def __post_init__(self) -> None:
        if self.remaining_balance is None:
            self.remaining_balance = self.original_balance - self.settlement_amount
        if self.success and not self.transaction_hash:
            raise SettlementStateError(
                "Successful settlement result requires a transaction hash",
                details={"chain_key": self.chain_key, "token_id": self.token_id},
            )

    @classmethod
    def failed(
        cls,
        kind: TransferKind,
        chain_key: str,
        token_id: str,
        asset: str,
        original_balance: Decimal,
        error: str,
        requested_amount: Optional[Decimal] = None,
    ) -> "SettlementResult":
        """Build the record for a transfer that was never accepted."""
        return cls(
            success=False,
            kind=kind,
            chain_key=chain_key,
            token_id=token_id,
            asset=asset,
            original_balance=original_balance,
            settlement_amount=Decimal("0"),
            error=error,
            requested_amount=requested_amount,
        )

    @property
    def is_verification_resolved(self) -> bool:
        return self.verified is not None

    def mark_verification(
        self,
        verified: bool,
        details: VerificationDetails,
        error: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """Record the verification outcome. Allowed exactly once."""
        if self.verified is not None:
            raise SettlementStateError(
                f"Settlement {self.transaction_hash} already verified",
                details={"verified": self.verified},
            )
        self.verified = verified
        self.verification_details = details
        self.verification_error = None if verified else (error or "Verification failed")
        self.verification_timestamp = at or _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "kind": self.kind.value,
            "chain_key": self.chain_key,
            "token_id": self.token_id,
            "asset": self.asset,
            "original_balance": str(self.original_balance),
            "settlement_amount": str(self.settlement_amount),
            "remaining_balance": str(self.remaining_balance),
            "transaction_hash": self.transaction_hash,
            "address": self.address,
            "error": self.error,
            "requested_amount": str(self.requested_amount) if self.requested_amount is not None else None,
            "timestamp": self.timestamp.isoformat(),
            "verified": self.verified,
            "verification_error": self.verification_error,
            "verification_timestamp": (
                self.verification_timestamp.isoformat() if self.verification_timestamp else None
            ),
            "verification_details": (
                self.verification_details.to_dict() if self.verification_details else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementResult":
        details = data.get("verification_details")
        return cls(
            success=data["success"],
            kind=TransferKind(data["kind"]),
            chain_key=data["chain_key"],
            token_id=data["token_id"],
            asset=data["asset"],
            original_balance=_dec(data["original_balance"]),
            settlement_amount=_dec(data["settlement_amount"]),
            remaining_balance=_dec(data.get("remaining_balance")),
            transaction_hash=data.get("transaction_hash"),
            address=data.get("address"),
            error=data.get("error"),
            requested_amount=_dec(data.get("requested_amount")),
            timestamp=_dt(data.get("timestamp")) or _utcnow(),
            verified=data.get("verified"),
            verification_error=data.get("verification_error"),
            verification_timestamp=_dt(data.get("verification_timestamp")),
            verification_details=VerificationDetails.from_dict(details) if details else None,
        )


@dataclass
class SkippedTransfer:
    """A wallet left out of a cycle. Not a failure."""
    chain_key: str
    token_id: str
    asset: str
    reason: str
    amount: Optional[Decimal] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class Discrepancy:
    """A settlement result that failed to verify."""
    transaction_hash: str
    chain_key: str
    kind: TransferKind
    issue: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "chain_key": self.chain_key,
            "kind": self.kind.value,
            "issue": self.issue,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ReconciliationReport:
    """Per-cycle verification tally."""
    date: str = field(default_factory=lambda: _utcnow().date().isoformat())
    total_deposits: int = 0
    verified_deposits: int = 0
    failed_deposits: int = 0
    total_withdrawals: int = 0
    verified_withdrawals: int = 0
    failed_withdrawals: int = 0
    discrepancies: List[Discrepancy] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_utcnow)

    @staticmethod
    def _rate(verified: int, total: int) -> float:
        if total <= 0:
            return 100.0
        return round(verified / total * 100, 1)

    @property
    def deposit_rate(self) -> float:
        return self._rate(self.verified_deposits, self.total_deposits)

    @property
    def withdrawal_rate(self) -> float:
        return self._rate(self.verified_withdrawals, self.total_withdrawals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "total_deposits": self.total_deposits,
            "verified_deposits": self.verified_deposits,
            "failed_deposits": self.failed_deposits,
            "total_withdrawals": self.total_withdrawals,
            "verified_withdrawals": self.verified_withdrawals,
            "failed_withdrawals": self.failed_withdrawals,
            "deposit_rate": self.deposit_rate,
            "withdrawal_rate": self.withdrawal_rate,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class SettlementCycle:
    """Everything one settlement run produced."""
    cycle_id: str
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    results: List[SettlementResult] = field(default_factory=list)
    skipped: List[SkippedTransfer] = field(default_factory=list)
    report: Optional[ReconciliationReport] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)
