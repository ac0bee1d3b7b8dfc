"""Bitcoin adapter over the Blockstream Esplora REST API."""
from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx

from ..exceptions import TransientNetworkError, UnmappedAssetError
from .base import (
    BalanceChange,
    BaseChainAdapter,
    TransactionDetails,
    TransactionStatus,
    TransferLeg,
    parse_token_id,
)

logger = logging.getLogger(__name__)

BECH32_PREFIXES = ("bc1", "tb1", "bcrt1")


def normalize_btc_address(address: str) -> str:
    """bech32 is case-insensitive; base58 is not."""
    lowered = address.lower()
    if lowered.startswith(BECH32_PREFIXES):
        return lowered
    return address


class BitcoinAdapter(BaseChainAdapter):
    """
    UTXO chain adapter. There is no revert state on Bitcoin, so a
    transaction is successful exactly when it is confirmed.
    """

    AMOUNT_TOLERANCE = 1000  # satoshi

    async def _get(self, path: str, as_text: bool = False) -> Any:
        """GET an Esplora endpoint. Returns None on 404."""
        url = f"{self.network.rpc_url.rstrip('/')}{path}"
        try:
            resp = await self._get_client().get(url)
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.text if as_text else resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientNetworkError(
                f"Esplora request {path} failed: {e}",
                service=self.chain_key,
            ) from e

    def normalize_address(self, address: str) -> str:
        return normalize_btc_address(address)

    def _require_native(self, token_id: str) -> None:
        if not parse_token_id(token_id).is_native:
            raise UnmappedAssetError(
                "Bitcoin has no token support",
                token_id=token_id,
            )

    async def get_address_balance(self, address: str) -> int:
        data = await self._get(f"/address/{address}")
        if data is None:
            return 0
        chain = data.get("chain_stats", {})
        mempool = data.get("mempool_stats", {})
        return (
            chain.get("funded_txo_sum", 0)
            - chain.get("spent_txo_sum", 0)
            + mempool.get("funded_txo_sum", 0)
            - mempool.get("spent_txo_sum", 0)
        )

    async def get_asset_balance(self, token_id: str, address: Optional[str] = None) -> int:
        self._require_native(token_id)
        return await self.get_address_balance(address or await self.get_hot_wallet_address())

    async def get_decimals(self, token_id: str) -> int:
        self._require_native(token_id)
        return self.network.decimals

    async def get_block_height(self) -> int:
        text = await self._get("/blocks/tip/height", as_text=True)
        return int(text)

    async def get_transaction_status(self, ref: str) -> TransactionStatus:
        status = await self._get(f"/tx/{ref}/status")
        if status is None:
            return TransactionStatus(found=False)

        if not status.get("confirmed"):
            return TransactionStatus(found=True)

        tip = await self.get_block_height()
        confirmations = max(0, tip - status["block_height"] + 1)
        return TransactionStatus(
            found=True,
            confirmed=True,
            success=True,
            confirmations=confirmations,
            block_time=status.get("block_time"),
        )

    async def get_transaction_details(self, ref: str) -> TransactionDetails:
        tx = await self._get(f"/tx/{ref}")
        if tx is None:
            return TransactionDetails(success=False, found=False)

        inputs = [
            vin["prevout"]["scriptpubkey_address"]
            for vin in tx.get("vin", [])
            if vin.get("prevout") and vin["prevout"].get("scriptpubkey_address")
        ]
        sender = inputs[0] if inputs else ""
        senders = {self.normalize_address(a) for a in inputs}

        legs: List[TransferLeg] = []
        for vout in tx.get("vout", []):
            address = vout.get("scriptpubkey_address")
            if not address:
                continue  # OP_RETURN and friends
            if self.normalize_address(address) in senders:
                continue  # change
            legs.append(TransferLeg(from_address=sender, to_address=address, amount=vout["value"]))

        return TransactionDetails(
            success=bool(tx.get("status", {}).get("confirmed")),
            fee=tx.get("fee", 0),
            transfers=legs,
            raw=tx,
        )

    async def get_address_balance_change(
        self, ref: str, address: str, token_id: Optional[str] = None
    ) -> BalanceChange:
        """Outputs to ``address`` minus inputs spent from it. The fee is already inside the inputs."""
        if token_id:
            self._require_native(token_id)
        tx = await self._get(f"/tx/{ref}")
        if tx is None:
            return BalanceChange(balance_change=0, found=False)

        target = self.normalize_address(address)
        spent = 0
        received = 0
        involved = False
        for vin in tx.get("vin", []):
            prevout = vin.get("prevout") or {}
            owner = prevout.get("scriptpubkey_address")
            if owner and self.normalize_address(owner) == target:
                spent += prevout.get("value", 0)
                involved = True
        for vout in tx.get("vout", []):
            owner = vout.get("scriptpubkey_address")
            if owner and self.normalize_address(owner) == target:
                received += vout.get("value", 0)
                involved = True

        return BalanceChange(balance_change=received - spent, found=involved)
