"""
Chain adapter contract and shared adapter machinery.

Every adapter speaks integer base units (satoshi, wei, lamport or token base
units). Conversion to asset units happens at the edges via
``to_base_units``/``from_base_units`` with the decimals reported by
``get_decimals``.

Token ids are CAIP-19 style:
    eip155:1                                   native ETH
    eip155:1/erc20:0xdac17f958d2ee523a2206206994597c13d831ec7
    solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp/spl-token:EPjFWdd5...
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, List, Optional, Protocol, Tuple

import httpx

from ..config import NetworkConfig
from ..exceptions import (
    ConfigurationError,
    RPCError,
    SettlementError,
    TransferSubmissionError,
    TransientNetworkError,
)
from ..interfaces import Signer, TransferRequest

logger = logging.getLogger(__name__)

NATIVE_NAMESPACES = frozenset(("slip44", "native"))


class ConfirmationLevel(str, Enum):
    """How deep a transaction must be before it counts."""
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class TokenRef:
    """Parsed CAIP-19 token id."""
    chain_key: str
    namespace: Optional[str] = None
    reference: Optional[str] = None

    @property
    def is_native(self) -> bool:
        return self.namespace is None or self.namespace in NATIVE_NAMESPACES


def parse_token_id(token_id: str) -> TokenRef:
    chain_key, _, asset_part = token_id.partition("/")
    if not asset_part:
        return TokenRef(chain_key=chain_key)
    namespace, _, reference = asset_part.partition(":")
    return TokenRef(chain_key=chain_key, namespace=namespace.lower(), reference=reference or None)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert asset units to integer base units, rounding toward zero."""
    scaled = Decimal(amount) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(int(value)) / (Decimal(10) ** decimals)


@dataclass
class TransactionStatus:
    """Point-in-time view of a transaction on chain."""
    found: bool
    confirmed: bool = False
    success: bool = False
    confirmations: int = 0
    block_time: Optional[int] = None
    error: Optional[str] = None
    # Native commitment label where the chain has one (Solana)
    commitment: Optional[str] = None


@dataclass
class TransferLeg:
    from_address: str
    to_address: str
    amount: int
    token_id: Optional[str] = None  # None for the native asset


@dataclass
class TransactionDetails:
    """Decoded transaction. ``raw`` keeps the node payload for balance deltas."""
    success: bool
    fee: int = 0
    transfers: List[TransferLeg] = field(default_factory=list)
    found: bool = True
    raw: Any = None

    def primary_transfer(self) -> Optional[Tuple[str, str, int, int]]:
        """Reduce to a (from, to, amount, fee) triple."""
        if not self.transfers:
            return None
        leg = self.transfers[0]
        return leg.from_address, leg.to_address, leg.amount, self.fee


@dataclass
class TransferVerification:
    verified: bool
    actual_amount: int = 0
    fee: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class BalanceChange:
    balance_change: int
    found: bool


@dataclass
class ConfirmationResult:
    confirmed: bool
    success: bool
    error: Optional[str] = None
    timed_out: bool = False
    confirmations: int = 0
    # Transaction seen on chain at the last poll
    found: bool = False


class ChainAdapter(Protocol):
    """Uniform per-chain operations used by the settlement engine."""

    network: NetworkConfig

    @property
    def chain_key(self) -> str:
        ...

    async def get_hot_wallet_address(self) -> str:
        ...

    async def get_hot_wallet_balance(self) -> int:
        ...

    async def get_address_balance(self, address: str) -> int:
        ...

    async def get_asset_balance(self, token_id: str, address: Optional[str] = None) -> int:
        ...

    async def get_decimals(self, token_id: str) -> int:
        ...

    async def get_transaction_status(self, ref: str) -> TransactionStatus:
        ...

    async def get_transaction_details(self, ref: str) -> TransactionDetails:
        ...

    async def verify_transfer(
        self,
        ref: str,
        expected_from: str,
        expected_to: str,
        expected_amount: int,
        token_id: Optional[str] = None,
    ) -> TransferVerification:
        ...

    async def get_address_balance_change(
        self, ref: str, address: str, token_id: Optional[str] = None
    ) -> BalanceChange:
        ...

    async def wait_for_confirmation(
        self,
        ref: str,
        level: ConfirmationLevel = ConfirmationLevel.CONFIRMED,
        timeout_seconds: float = 300.0,
    ) -> ConfirmationResult:
        ...

    async def transfer(self, token_id: str, to: str, amount: Decimal) -> str:
        ...

    async def close(self) -> None:
        ...


class BaseChainAdapter:
    """
    Shared adapter behavior: lazy HTTP client, signer delegation, tolerance
    based verification and the bounded confirmation poll.

    Subclasses set ``AMOUNT_TOLERANCE`` and implement the chain reads and
    ``normalize_address``.
    """

    AMOUNT_TOLERANCE: int = 0

    def __init__(
        self,
        network: NetworkConfig,
        signer: Optional[Signer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.network = network
        self._signer = signer
        self._http_client = http_client
        self._owns_client = http_client is None
        self._request_id = 0
        self._hot_address: Optional[str] = None

    @property
    def chain_key(self) -> str:
        return self.network.chain_key

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.network.timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            self._owns_client = True
        return self._http_client

    async def _rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Make a JSON-RPC 2.0 call against the configured node."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        client = self._get_client()
        try:
            resp = await client.post(self.network.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientNetworkError(
                f"{self.network.name} RPC {method} failed: {e}",
                service=self.chain_key,
            ) from e

        if data.get("error"):
            error = data["error"]
            raise RPCError(
                error.get("message", "Unknown RPC error"),
                code=error.get("code"),
                data=error.get("data"),
                chain=self.chain_key,
                method=method,
            )
        return data.get("result")

    def _require_signer(self) -> Signer:
        if self._signer is None:
            raise ConfigurationError(
                f"No signer configured for {self.network.name}",
                details={"chain_key": self.chain_key},
            )
        return self._signer

    async def get_hot_wallet_address(self) -> str:
        if self._hot_address is None:
            self._hot_address = await self._require_signer().get_address()
        return self._hot_address

    async def get_hot_wallet_balance(self) -> int:
        return await self.get_address_balance(await self.get_hot_wallet_address())

    async def get_address_balance(self, address: str) -> int:
        raise NotImplementedError

    async def get_decimals(self, token_id: str) -> int:
        raise NotImplementedError

    async def get_transaction_status(self, ref: str) -> TransactionStatus:
        raise NotImplementedError

    async def get_transaction_details(self, ref: str) -> TransactionDetails:
        raise NotImplementedError

    def normalize_address(self, address: str) -> str:
        return address

    def addresses_equal(self, a: Optional[str], b: Optional[str]) -> bool:
        if not a or not b:
            return False
        return self.normalize_address(a) == self.normalize_address(b)

    def _legs_for(self, details: TransactionDetails, token_id: Optional[str]) -> List[TransferLeg]:
        if token_id is None or parse_token_id(token_id).is_native:
            return [leg for leg in details.transfers if leg.token_id is None]
        wanted = token_id.lower()
        return [
            leg for leg in details.transfers
            if leg.token_id is not None and leg.token_id.lower() == wanted
        ]

    async def verify_transfer(
        self,
        ref: str,
        expected_from: str,
        expected_to: str,
        expected_amount: int,
        token_id: Optional[str] = None,
    ) -> TransferVerification:
        """Check a transaction moved ``expected_amount`` between the expected addresses."""
        details = await self.get_transaction_details(ref)
        if not details.found:
            return TransferVerification(verified=False, errors=["Transaction not found"])

        errors: List[str] = []
        if not details.success:
            errors.append("Transaction failed on chain")

        legs = self._legs_for(details, token_id)
        leg = next(
            (l for l in legs if self.addresses_equal(l.to_address, expected_to)),
            legs[0] if legs else None,
        )
        if leg is None:
            errors.append("No matching transfer in transaction")
            return TransferVerification(verified=False, fee=details.fee, errors=errors)

        if not self.addresses_equal(leg.from_address, expected_from):
            errors.append(f"Sender mismatch: expected {expected_from}, got {leg.from_address}")
        if not self.addresses_equal(leg.to_address, expected_to):
            errors.append(f"Recipient mismatch: expected {expected_to}, got {leg.to_address}")
        if abs(leg.amount - expected_amount) > self.AMOUNT_TOLERANCE:
            errors.append(f"Amount mismatch: expected {expected_amount}, got {leg.amount}")

        return TransferVerification(
            verified=not errors,
            actual_amount=leg.amount,
            fee=details.fee,
            errors=errors,
        )

    def _meets_level(self, status: TransactionStatus, level: ConfirmationLevel) -> bool:
        if not status.confirmed:
            return False
        if level == ConfirmationLevel.FINALIZED:
            return status.confirmations >= self.network.finality_confirmations
        return status.confirmations >= self.network.confirmations_required

    async def wait_for_confirmation(
        self,
        ref: str,
        level: ConfirmationLevel = ConfirmationLevel.CONFIRMED,
        timeout_seconds: float = 300.0,
    ) -> ConfirmationResult:
        """Poll until ``ref`` reaches ``level``, fails on chain or the deadline passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        last: Optional[TransactionStatus] = None

        while True:
            try:
                last = await self.get_transaction_status(ref)
            except TransientNetworkError as e:
                logger.warning(f"Status poll for {ref} on {self.network.name} failed: {e}")
            else:
                if last.found and last.confirmed and not last.success:
                    return ConfirmationResult(
                        confirmed=True,
                        success=False,
                        error=last.error or "Transaction failed on chain",
                        confirmations=last.confirmations,
                        found=True,
                    )
                if last.found and self._meets_level(last, level):
                    return ConfirmationResult(
                        confirmed=True,
                        success=True,
                        confirmations=last.confirmations,
                        found=True,
                    )

            remaining = deadline - loop.time()
            if remaining <= 0:
                return ConfirmationResult(
                    confirmed=False,
                    success=False,
                    error=f"Timed out after {timeout_seconds}s waiting for {level.value}",
                    timed_out=True,
                    confirmations=last.confirmations if last else 0,
                    found=bool(last and last.found),
                )
            await asyncio.sleep(min(self.network.poll_interval_seconds, remaining))

    async def transfer(self, token_id: str, to: str, amount: Decimal) -> str:
        """Sign and broadcast via the signer; returns the chain tx hash."""
        signer = self._require_signer()
        request = TransferRequest(
            token_id=token_id,
            from_address=await self.get_hot_wallet_address(),
            to_address=to,
            value=amount,
        )
        try:
            receipt = await signer.transfer(request)
        except SettlementError:
            raise
        except Exception as e:
            raise TransferSubmissionError(
                f"Signer rejected transfer on {self.network.name}: {e}",
                chain=self.chain_key,
                reason=type(e).__name__,
            ) from e

        if not receipt.tx_hash:
            raise TransferSubmissionError(
                f"Signer returned no transaction hash on {self.network.name}",
                chain=self.chain_key,
            )
        logger.info(f"Submitted {amount} {token_id} to {to}: {receipt.tx_hash}")
        return receipt.tx_hash

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None
