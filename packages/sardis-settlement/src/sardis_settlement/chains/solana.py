"""Solana adapter over raw JSON-RPC (httpx, no solana-py)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..exceptions import UnmappedAssetError
from .base import (
    BalanceChange,
    BaseChainAdapter,
    ConfirmationLevel,
    TransactionDetails,
    TransactionStatus,
    TransferLeg,
    parse_token_id,
)

logger = logging.getLogger(__name__)

TOKEN_NAMESPACES = frozenset(("spl-token", "token", "spl"))


def _account_keys(tx: Dict[str, Any]) -> List[str]:
    message = tx.get("transaction", {}).get("message", {})
    keys = [k["pubkey"] if isinstance(k, dict) else k for k in message.get("accountKeys", [])]
    loaded = (tx.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable", []))
    keys.extend(loaded.get("readonly", []))
    return keys


def _token_amounts(entries: List[Dict[str, Any]]) -> Dict[int, Dict[str, Any]]:
    """Index pre/post token balances by account index."""
    return {
        entry["accountIndex"]: {
            "owner": entry.get("owner"),
            "mint": entry.get("mint"),
            "amount": int(entry.get("uiTokenAmount", {}).get("amount", "0")),
        }
        for entry in entries or []
    }


class SolanaAdapter(BaseChainAdapter):
    """
    Solana adapter. Native transfers are read from account key 0 (fee payer /
    sender) to account key 1; SPL movements from pre/post token balances.
    Base58 addresses are case-sensitive.
    """

    AMOUNT_TOLERANCE = 10000  # lamports
    COMMITMENT = "confirmed"

    def _mint(self, token_id: str) -> Optional[str]:
        ref = parse_token_id(token_id)
        if ref.is_native:
            return None
        if ref.namespace not in TOKEN_NAMESPACES or not ref.reference:
            raise UnmappedAssetError(
                f"Unsupported Solana token namespace '{ref.namespace}'",
                token_id=token_id,
            )
        return ref.reference

    def _token_id_for(self, mint: str) -> str:
        return f"{self.chain_key}/spl-token:{mint}"

    async def get_address_balance(self, address: str) -> int:
        result = await self._rpc("getBalance", [address, {"commitment": self.COMMITMENT}])
        return result["value"]

    async def get_token_accounts_by_owner(self, owner: str, mint: str) -> List[Dict[str, Any]]:
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [
                owner,
                {"mint": mint},
                {"encoding": "jsonParsed", "commitment": self.COMMITMENT},
            ],
        )
        return result.get("value", [])

    async def get_asset_balance(self, token_id: str, address: Optional[str] = None) -> int:
        owner = address or await self.get_hot_wallet_address()
        mint = self._mint(token_id)
        if mint is None:
            return await self.get_address_balance(owner)

        total = 0
        for account in await self.get_token_accounts_by_owner(owner, mint):
            info = account["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
        return total

    async def get_decimals(self, token_id: str) -> int:
        mint = self._mint(token_id)
        if mint is None:
            return self.network.decimals
        result = await self._rpc("getTokenSupply", [mint])
        return result["value"]["decimals"]

    async def get_transaction_status(self, ref: str) -> TransactionStatus:
        result = await self._rpc(
            "getSignatureStatuses",
            [[ref], {"searchTransactionHistory": True}],
        )
        statuses = result.get("value", []) if result else []
        if not statuses or statuses[0] is None:
            return TransactionStatus(found=False)

        status = statuses[0]
        commitment = status.get("confirmationStatus")
        err = status.get("err")
        return TransactionStatus(
            found=True,
            confirmed=commitment in ("confirmed", "finalized"),
            success=err is None,
            confirmations=status.get("confirmations") or 0,
            error=str(err) if err is not None else None,
            commitment=commitment,
        )

    def _meets_level(self, status: TransactionStatus, level: ConfirmationLevel) -> bool:
        if level == ConfirmationLevel.FINALIZED:
            return status.commitment == "finalized"
        return status.confirmed

    async def _get_transaction(self, ref: str) -> Optional[Dict[str, Any]]:
        return await self._rpc(
            "getTransaction",
            [
                ref,
                {
                    "encoding": "json",
                    "maxSupportedTransactionVersion": 0,
                    "commitment": self.COMMITMENT,
                },
            ],
        )

    def _token_legs(self, meta: Dict[str, Any]) -> List[TransferLeg]:
        pre = _token_amounts(meta.get("preTokenBalances"))
        post = _token_amounts(meta.get("postTokenBalances"))

        deltas: Dict[str, List[tuple]] = {}
        for index in set(pre) | set(post):
            entry = post.get(index) or pre[index]
            delta = post.get(index, {}).get("amount", 0) - pre.get(index, {}).get("amount", 0)
            if delta:
                deltas.setdefault(entry["mint"], []).append((entry["owner"], delta))

        legs = []
        for mint, moves in deltas.items():
            sender = next((owner for owner, delta in moves if delta < 0), "")
            for owner, delta in moves:
                if delta > 0:
                    legs.append(TransferLeg(
                        from_address=sender,
                        to_address=owner,
                        amount=delta,
                        token_id=self._token_id_for(mint),
                    ))
        return legs

    async def get_transaction_details(self, ref: str) -> TransactionDetails:
        tx = await self._get_transaction(ref)
        if tx is None:
            return TransactionDetails(success=False, found=False)

        meta = tx.get("meta") or {}
        fee = meta.get("fee", 0)
        keys = _account_keys(tx)
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []

        legs: List[TransferLeg] = []
        if len(keys) >= 2 and pre and post:
            amount = abs(post[0] - pre[0] + fee)
            if amount > 0:
                legs.append(TransferLeg(from_address=keys[0], to_address=keys[1], amount=amount))
        legs.extend(self._token_legs(meta))

        return TransactionDetails(
            success=meta.get("err") is None,
            fee=fee,
            transfers=legs,
            raw=tx,
        )

    async def get_address_balance_change(
        self, ref: str, address: str, token_id: Optional[str] = None
    ) -> BalanceChange:
        """post - pre for ``address``. The fee payer's native delta already includes the fee."""
        tx = await self._get_transaction(ref)
        if tx is None:
            return BalanceChange(balance_change=0, found=False)

        meta = tx.get("meta") or {}
        mint = self._mint(token_id) if token_id else None

        if mint is not None:
            pre = _token_amounts(meta.get("preTokenBalances"))
            post = _token_amounts(meta.get("postTokenBalances"))
            change = 0
            found = False
            for index in set(pre) | set(post):
                entry = post.get(index) or pre[index]
                if entry["owner"] != address or entry["mint"] != mint:
                    continue
                found = True
                change += post.get(index, {}).get("amount", 0) - pre.get(index, {}).get("amount", 0)
            return BalanceChange(balance_change=change, found=found)

        keys = _account_keys(tx)
        if address not in keys:
            return BalanceChange(balance_change=0, found=False)
        index = keys.index(address)
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []
        if index >= len(pre) or index >= len(post):
            return BalanceChange(balance_change=0, found=False)
        return BalanceChange(balance_change=post[index] - pre[index], found=True)
