"""
EVM adapter over raw JSON-RPC.

One implementation serves every EVM network; chain-specific values
(chain id, confirmation depth, native decimals) come from ``NetworkConfig``.
ERC-20/BEP-20 movements are decoded from ``Transfer`` event logs.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..exceptions import UnmappedAssetError
from .base import (
    BalanceChange,
    BaseChainAdapter,
    TransactionDetails,
    TransactionStatus,
    TransferLeg,
    parse_token_id,
)

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

BALANCE_OF_SELECTOR = "0x70a08231"
DECIMALS_SELECTOR = "0x313ce567"

TOKEN_NAMESPACES = frozenset(("erc20", "bep20"))


def _hex_to_int(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


def _topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _encode_address(address: str) -> str:
    return address.lower().replace("0x", "").rjust(64, "0")


class EVMAdapter(BaseChainAdapter):
    """Adapter for Ethereum, BSC, Polygon and their testnets."""

    AMOUNT_TOLERANCE = 1000  # wei / token base units

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._decimals_cache: Dict[str, int] = {}

    def normalize_address(self, address: str) -> str:
        return address.lower()

    def _token_contract(self, token_id: str) -> Optional[str]:
        """Contract address for a token id, or None for the native asset."""
        ref = parse_token_id(token_id)
        if ref.is_native:
            return None
        if ref.namespace not in TOKEN_NAMESPACES or not ref.reference:
            raise UnmappedAssetError(
                f"Unsupported EVM token namespace '{ref.namespace}'",
                token_id=token_id,
            )
        return ref.reference.lower()

    def _token_id_for(self, contract: str) -> str:
        return f"{self.chain_key}/erc20:{contract.lower()}"

    def _legs_for(self, details: TransactionDetails, token_id: Optional[str]) -> List[TransferLeg]:
        # bep20 and erc20 ids name the same contract; legs are keyed by erc20
        contract = self._token_contract(token_id) if token_id else None
        if contract is None:
            return [leg for leg in details.transfers if leg.token_id is None]
        wanted = self._token_id_for(contract)
        return [leg for leg in details.transfers if leg.token_id == wanted]

    async def _eth_call(self, to: str, data: str) -> str:
        return await self._rpc("eth_call", [{"to": to, "data": data}, "latest"])

    async def get_block_number(self) -> int:
        return _hex_to_int(await self._rpc("eth_blockNumber"))

    async def get_address_balance(self, address: str) -> int:
        result = await self._rpc("eth_getBalance", [address, "latest"])
        return _hex_to_int(result)

    async def get_asset_balance(self, token_id: str, address: Optional[str] = None) -> int:
        owner = address or await self.get_hot_wallet_address()
        contract = self._token_contract(token_id)
        if contract is None:
            return await self.get_address_balance(owner)
        result = await self._eth_call(contract, BALANCE_OF_SELECTOR + _encode_address(owner))
        return _hex_to_int(result)

    async def get_decimals(self, token_id: str) -> int:
        contract = self._token_contract(token_id)
        if contract is None:
            return self.network.decimals
        if contract not in self._decimals_cache:
            result = await self._eth_call(contract, DECIMALS_SELECTOR)
            self._decimals_cache[contract] = _hex_to_int(result)
        return self._decimals_cache[contract]

    async def get_transaction_status(self, ref: str) -> TransactionStatus:
        receipt = await self._rpc("eth_getTransactionReceipt", [ref])
        if receipt is None:
            # Pending in the mempool, or unknown
            tx = await self._rpc("eth_getTransactionByHash", [ref])
            return TransactionStatus(found=tx is not None)

        success = receipt.get("status") == "0x1"
        block_number = _hex_to_int(receipt.get("blockNumber"))
        tip = await self.get_block_number()
        confirmations = max(0, tip - block_number + 1)
        return TransactionStatus(
            found=True,
            confirmed=confirmations >= self.network.confirmations_required,
            success=success,
            confirmations=confirmations,
            error=None if success else "Transaction reverted",
        )

    def _decode_transfer_logs(self, receipt: Dict[str, Any]) -> List[TransferLeg]:
        legs = []
        for log in receipt.get("logs", []):
            topics = log.get("topics") or []
            if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
                continue
            legs.append(TransferLeg(
                from_address=_topic_to_address(topics[1]),
                to_address=_topic_to_address(topics[2]),
                amount=_hex_to_int(log.get("data")),
                token_id=self._token_id_for(log["address"]),
            ))
        return legs

    async def get_transaction_details(self, ref: str) -> TransactionDetails:
        tx = await self._rpc("eth_getTransactionByHash", [ref])
        if tx is None:
            return TransactionDetails(success=False, found=False)

        receipt = await self._rpc("eth_getTransactionReceipt", [ref])
        legs: List[TransferLeg] = []
        value = _hex_to_int(tx.get("value"))
        if value > 0 and tx.get("to"):
            legs.append(TransferLeg(
                from_address=tx["from"].lower(),
                to_address=tx["to"].lower(),
                amount=value,
            ))

        if receipt is None:
            return TransactionDetails(success=False, fee=0, transfers=legs, raw={"tx": tx})

        gas_price = receipt.get("effectiveGasPrice") or tx.get("gasPrice")
        fee = _hex_to_int(receipt.get("gasUsed")) * _hex_to_int(gas_price)
        legs.extend(self._decode_transfer_logs(receipt))
        return TransactionDetails(
            success=receipt.get("status") == "0x1",
            fee=fee,
            transfers=legs,
            raw={"tx": tx, "receipt": receipt},
        )

    async def get_address_balance_change(
        self, ref: str, address: str, token_id: Optional[str] = None
    ) -> BalanceChange:
        """
        Signed delta for ``address``. For the native asset the sender delta is
        ``-(value + fee)`` and the receiver delta is ``+value``; for tokens the
        fee is paid in native units and is not included.
        """
        details = await self.get_transaction_details(ref)
        if not details.found:
            return BalanceChange(balance_change=0, found=False)

        target = self.normalize_address(address)
        contract = self._token_contract(token_id) if token_id else None

        if contract is not None:
            wanted = self._token_id_for(contract)
            change = 0
            found = False
            for leg in details.transfers:
                if leg.token_id != wanted:
                    continue
                if leg.from_address == target:
                    change -= leg.amount
                    found = True
                if leg.to_address == target:
                    change += leg.amount
                    found = True
            return BalanceChange(balance_change=change, found=found)

        tx = details.raw["tx"]
        value = _hex_to_int(tx.get("value")) if details.success else 0
        change = 0
        found = False
        if (tx.get("from") or "").lower() == target:
            change -= value + details.fee
            found = True
        if (tx.get("to") or "").lower() == target:
            change += value
            found = True
        return BalanceChange(balance_change=change, found=found)
