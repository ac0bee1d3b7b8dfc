"""Exception hierarchy for the settlement engine.

All settlement exceptions inherit from SettlementError so callers can catch
the whole family at the orchestrator boundary:

    from sardis_settlement.exceptions import (
        SettlementError,
        TransientNetworkError,
        UnmappedAssetError,
    )

    try:
        result = await executor.deposit(token_id, amount, balance)
    except UnmappedAssetError:
        ...  # skip this wallet, the cycle continues

All exceptions have:
- error_code: Machine-readable error code (e.g., "UNMAPPED_ASSET")
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to a serializable record
"""
from __future__ import annotations

from typing import Any, Optional


class SettlementError(Exception):
    """Base exception for all settlement errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "SETTLEMENT_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a serializable record."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Network Errors
# =============================================================================

class TransientNetworkError(SettlementError):
    """RPC node or exchange API unreachable. Retried by polling, never fatal to a cycle."""

    error_code = "TRANSIENT_NETWORK_ERROR"

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if service:
            details["service"] = service
        super().__init__(message, details=details)


class RPCError(TransientNetworkError):
    """JSON-RPC call returned an error object."""

    error_code = "RPC_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
        chain: Optional[str] = None,
        method: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if code is not None:
            details["code"] = code
        if method:
            details["method"] = method
        super().__init__(message, service=chain, details=details)
        self.code = code
        self.data = data


# =============================================================================
# Mapping Errors
# =============================================================================

class UnmappedAssetError(SettlementError):
    """No exchange asset/network mapping exists for a token."""

    error_code = "UNMAPPED_ASSET"

    def __init__(
        self,
        message: str,
        token_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if token_id:
            details["token_id"] = token_id
        super().__init__(message, details=details)


class UnsupportedChainError(UnmappedAssetError):
    """No chain adapter is registered for a chain key."""

    error_code = "UNSUPPORTED_CHAIN"

    def __init__(self, chain_key: str, known: Optional[list[str]] = None) -> None:
        details: dict[str, Any] = {"chain_key": chain_key}
        if known:
            details["registered"] = sorted(known)
        super().__init__(
            f"No chain adapter registered for '{chain_key}'",
            details=details,
        )
        self.chain_key = chain_key


# =============================================================================
# Transfer Errors
# =============================================================================

class InsufficientBalanceError(SettlementError):
    """Amount left after the fee/rent reserve is at or below the floor. A skip, not a failure."""

    error_code = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        message: str,
        available: Optional[str] = None,
        requested: Optional[str] = None,
        reserve: Optional[str] = None,
        chain: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if available is not None:
            details["available"] = available
        if requested is not None:
            details["requested"] = requested
        if reserve is not None:
            details["reserve"] = reserve
        if chain:
            details["chain"] = chain
        super().__init__(message, details=details)


class TransferSubmissionError(SettlementError):
    """Signer or exchange rejected a transfer."""

    error_code = "TRANSFER_SUBMISSION_FAILED"

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if chain:
            details["chain"] = chain
        if reason:
            details["reason"] = reason
        super().__init__(message, details=details)


# =============================================================================
# Verification Errors
# =============================================================================

class VerificationError(SettlementError):
    """Base class for post-submission verification failures."""

    error_code = "VERIFICATION_FAILED"

    def __init__(
        self,
        message: str,
        reference: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if reference:
            details["reference"] = reference
        super().__init__(message, details=details)


class VerificationMismatchError(VerificationError):
    """Amount or address on one ledger does not match what was submitted."""

    error_code = "VERIFICATION_MISMATCH"


class VerificationTimeoutError(VerificationError):
    """Polling budget exhausted before both ledgers agreed."""

    error_code = "VERIFICATION_TIMEOUT"

    def __init__(
        self,
        message: str,
        reference: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(message, reference=reference, details=details)


# =============================================================================
# Exchange Errors
# =============================================================================

class ExchangeError(SettlementError):
    """Base class for exchange client errors."""

    error_code = "EXCHANGE_ERROR"


class ExchangeAPIError(ExchangeError):
    """Exchange rejected a request (4xx with an error body)."""

    error_code = "EXCHANGE_API_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        exchange_code: Optional[int] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if exchange_code is not None:
            details["exchange_code"] = exchange_code
        super().__init__(message, details=details)
        self.status_code = status_code
        self.exchange_code = exchange_code


class ExchangeDisabledError(ExchangeError):
    """Exchange API integration is disabled or has no credentials."""

    error_code = "EXCHANGE_DISABLED"

    def __init__(self, message: str = "Exchange API is not enabled") -> None:
        super().__init__(message)


# =============================================================================
# Internal Errors
# =============================================================================

class SettlementStateError(SettlementError):
    """A settlement record was mutated in a way its lifecycle forbids."""

    error_code = "INVALID_SETTLEMENT_STATE"


class ConfigurationError(SettlementError):
    """Settlement configuration is invalid or incomplete."""

    error_code = "CONFIGURATION_ERROR"
