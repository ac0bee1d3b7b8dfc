"""
Binance-compatible exchange client.

Thin signed REST wrapper used by the settlement engine for balances,
deposit addresses, withdrawals and deposit/withdrawal history.

Signing: every private endpoint receives ``timestamp`` and ``recvWindow``
and an HMAC-SHA256 hex ``signature`` over the urlencoded query, with the API
key in the ``X-MBX-APIKEY`` header.

Reads are retried on transient failures. ``withdraw`` is not: a retried
withdrawal could move funds twice.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from .config import ExchangeSettings
from .exceptions import (
    ExchangeAPIError,
    ExchangeDisabledError,
    ExchangeError,
    TransientNetworkError,
)
from .models import ExchangeBalance
from .retry import EXCHANGE_READ_RETRY, RetryConfig, retry_async

logger = logging.getLogger(__name__)

# History window opens this far before submission to absorb clock skew
DEPOSIT_LOOKBACK = timedelta(minutes=10)


class DepositStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"  # credited and withdrawable
    CREDITED = "credited"  # credited, not yet withdrawable
    UNKNOWN = "unknown"


DEPOSIT_STATUS_CODES: Dict[int, DepositStatus] = {
    0: DepositStatus.PENDING,
    1: DepositStatus.SUCCESS,
    6: DepositStatus.CREDITED,
}


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    CANCELLED = "cancelled"
    AWAITING_APPROVAL = "awaiting_approval"
    REJECTED = "rejected"
    PROCESSING = "processing"
    FAILURE = "failure"
    COMPLETED = "completed"
    UNKNOWN = "unknown"

    @property
    def is_failed(self) -> bool:
        return self in (WithdrawalStatus.CANCELLED, WithdrawalStatus.REJECTED, WithdrawalStatus.FAILURE)


WITHDRAWAL_STATUS_CODES: Dict[int, WithdrawalStatus] = {
    0: WithdrawalStatus.PENDING,
    1: WithdrawalStatus.CANCELLED,
    2: WithdrawalStatus.AWAITING_APPROVAL,
    3: WithdrawalStatus.REJECTED,
    4: WithdrawalStatus.PROCESSING,
    5: WithdrawalStatus.FAILURE,
    6: WithdrawalStatus.COMPLETED,
}


@dataclass
class DepositAddress:
    address: str
    coin: str
    network: str
    tag: Optional[str] = None


@dataclass
class DepositRecord:
    id: str
    coin: str
    network: str
    amount: Decimal
    address: str
    tx_id: str
    status: DepositStatus
    insert_time: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "DepositRecord":
        return cls(
            id=str(data.get("id", "")),
            coin=data.get("coin", ""),
            network=data.get("network", ""),
            amount=Decimal(str(data.get("amount", "0"))),
            address=data.get("address", ""),
            tx_id=data.get("txId", "") or "",
            status=DEPOSIT_STATUS_CODES.get(data.get("status"), DepositStatus.UNKNOWN),
            insert_time=data.get("insertTime"),
        )


@dataclass
class WithdrawalRecord:
    id: str
    coin: str
    network: str
    amount: Decimal
    address: str
    status: WithdrawalStatus
    tx_id: Optional[str] = None
    transaction_fee: Decimal = Decimal("0")
    apply_time: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "WithdrawalRecord":
        return cls(
            id=str(data.get("id", "")),
            coin=data.get("coin", ""),
            network=data.get("network", ""),
            amount=Decimal(str(data.get("amount", "0"))),
            address=data.get("address", ""),
            status=WITHDRAWAL_STATUS_CODES.get(data.get("status"), WithdrawalStatus.UNKNOWN),
            tx_id=data.get("txId") or None,
            transaction_fee=Decimal(str(data.get("transactionFee", "0"))),
            apply_time=data.get("applyTime"),
        )


def _same_ref(a: Optional[str], b: Optional[str]) -> bool:
    """Hex hashes/addresses compare case-insensitively, everything else exactly."""
    if not a or not b:
        return False
    a, b = a.strip(), b.strip()
    if a.lower().startswith("0x") and b.lower().startswith("0x"):
        return a.lower() == b.lower()
    return a == b


class ExchangeClient:
    """Signed REST client for a Binance-compatible exchange account."""

    def __init__(
        self,
        settings: ExchangeSettings,
        environment: str = "dev",
        http_client: Optional[httpx.AsyncClient] = None,
        retry_config: RetryConfig = EXCHANGE_READ_RETRY,
    ):
        self._settings = settings
        self._api_key, self._api_secret = settings.credentials(environment)
        self._http_client = http_client
        self._owns_client = http_client is None
        self._retry = retry_config
        self._address_cache: Dict[Tuple[str, str], DepositAddress] = {}

        self._enabled = settings.api_enabled and bool(self._api_key and self._api_secret)
        if not settings.api_enabled:
            logger.warning("Exchange API integration is disabled via configuration")
        elif not self._enabled:
            logger.warning(
                f"Exchange API credentials not configured for {environment} - integration disabled"
            )
        else:
            mode = "test" if environment == "dev" else "production"
            logger.info(f"Exchange API client initialized ({environment} mode, {mode} credentials)")

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._settings.base_url,
                timeout=self._settings.timeout_seconds,
            )
            self._owns_client = True
        return self._http_client

    def _sign(self, params: Dict[str, Any]) -> str:
        """Return the signed query string for ``params``."""
        params = {k: v for k, v in params.items() if v is not None}
        params["timestamp"] = int(time.time() * 1000)
        params["recvWindow"] = self._settings.recv_window
        query = urlencode(params)
        signature = hmac.new(
            self._api_secret.encode(), query.encode(), hashlib.sha256
        ).hexdigest()
        return f"{query}&signature={signature}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Any:
        if not self._enabled:
            raise ExchangeDisabledError()

        if signed:
            query = self._sign(params or {})
        else:
            query = urlencode({k: v for k, v in (params or {}).items() if v is not None})
        url = f"{path}?{query}" if query else path

        try:
            resp = await self._get_client().request(
                method, url, headers={"X-MBX-APIKEY": self._api_key}
            )
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"Exchange request {path} failed: {e}", service="exchange") from e

        if resp.status_code in (418, 429) or resp.status_code >= 500:
            raise TransientNetworkError(
                f"Exchange returned {resp.status_code} for {path}",
                service="exchange",
                details={"status_code": resp.status_code},
            )
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            raise ExchangeAPIError(
                body.get("msg") or f"Exchange rejected {path}",
                status_code=resp.status_code,
                exchange_code=body.get("code"),
            )
        return resp.json()

    async def _read(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = True) -> Any:
        return await retry_async(self._request, "GET", path, params, signed, config=self._retry)

    async def get_account_info(self) -> List[ExchangeBalance]:
        """All non-zero balances."""
        data = await self._read("/api/v3/account")
        balances = []
        for row in data.get("balances", []):
            free = Decimal(str(row.get("free", "0")))
            locked = Decimal(str(row.get("locked", "0")))
            if free > 0 or locked > 0:
                balances.append(ExchangeBalance(asset=row["asset"], free=free, locked=locked))
        return balances

    async def get_asset_balance(self, asset: str) -> Optional[ExchangeBalance]:
        data = await self._read("/api/v3/account")
        for row in data.get("balances", []):
            if row.get("asset") == asset:
                return ExchangeBalance(
                    asset=asset,
                    free=Decimal(str(row.get("free", "0"))),
                    locked=Decimal(str(row.get("locked", "0"))),
                )
        logger.debug(f"No exchange balance found for {asset}")
        return None

    async def get_deposit_address(self, asset: str, network: str) -> DepositAddress:
        """Deposit address for (asset, network). Cached until invalidated."""
        key = (asset.upper(), network.upper())
        cached = self._address_cache.get(key)
        if cached is not None:
            return cached

        data = await self._read(
            "/sapi/v1/capital/deposit/address",
            {"coin": key[0], "network": key[1]},
        )
        if not data.get("address"):
            raise ExchangeAPIError(f"No deposit address returned for {asset} on {network}")

        address = DepositAddress(
            address=data["address"],
            coin=data.get("coin", key[0]),
            network=data.get("network") or key[1],
            tag=data.get("tag") or None,
        )
        self._address_cache[key] = address
        logger.info(f"Resolved exchange deposit address for {asset} on {network}")
        return address

    def invalidate_deposit_address(self, asset: Optional[str] = None, network: Optional[str] = None) -> None:
        """Drop cached deposit addresses matching the given filters (all when none given)."""
        for key in list(self._address_cache):
            if asset is not None and key[0] != asset.upper():
                continue
            if network is not None and key[1] != network.upper():
                continue
            del self._address_cache[key]

    async def withdraw(
        self,
        asset: str,
        address: str,
        amount: Decimal,
        network: str,
        memo: Optional[str] = None,
        client_order_id: Optional[str] = None,
    ) -> str:
        """Request a withdrawal. Returns the exchange withdrawal id. Never retried."""
        logger.info(f"Initiating withdrawal: {amount} {asset} to {address} on {network}")
        data = await self._request(
            "POST",
            "/sapi/v1/capital/withdraw/apply",
            {
                "coin": asset,
                "address": address,
                "amount": str(amount),
                "network": network,
                "addressTag": memo,
                "withdrawOrderId": client_order_id,
            },
        )
        withdrawal_id = data.get("id")
        if not withdrawal_id:
            raise ExchangeAPIError(f"Withdrawal of {asset} returned no id")
        return str(withdrawal_id)

    async def get_deposit_history(
        self,
        asset: Optional[str] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[DepositRecord]:
        data = await self._read(
            "/sapi/v1/capital/deposit/hisrec",
            {"coin": asset, "startTime": start_time, "endTime": end_time},
        )
        return [DepositRecord.from_api(row) for row in data or []]

    async def get_withdrawal_history(
        self,
        asset: Optional[str] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[WithdrawalRecord]:
        data = await self._read(
            "/sapi/v1/capital/withdraw/history",
            {"coin": asset, "startTime": start_time, "endTime": end_time},
        )
        return [WithdrawalRecord.from_api(row) for row in data or []]

    async def get_withdrawal_status(
        self, withdrawal_id: str, asset: Optional[str] = None
    ) -> Optional[WithdrawalRecord]:
        """The withdrawal record, or None when the exchange does not list it (yet)."""
        for record in await self.get_withdrawal_history(asset):
            if record.id == withdrawal_id:
                return record
        logger.debug(f"Withdrawal {withdrawal_id} not found in history")
        return None

    async def find_matching_deposit(
        self,
        asset: str,
        address: str,
        tx_hash: str,
        since: Optional[datetime] = None,
    ) -> Optional[DepositRecord]:
        """
        Deposit record for ``tx_hash`` credited to ``address``, if the exchange has seen it.

        ``since`` is the submission time; history is read from shortly before it.
        """
        start_time = None
        if since is not None:
            start_time = int((since - DEPOSIT_LOOKBACK).timestamp() * 1000)
        for record in await self.get_deposit_history(asset, start_time=start_time):
            if _same_ref(record.tx_id, tx_hash) and _same_ref(record.address, address):
                return record
        return None

    async def get_system_status(self) -> Dict[str, Any]:
        return await self._read("/sapi/v1/system/status", signed=False)

    async def ping(self) -> bool:
        try:
            await self._request("GET", "/api/v3/ping", signed=False)
        except (TransientNetworkError, ExchangeError) as e:
            logger.warning(f"Exchange ping failed: {e}")
            return False
        return True

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None
