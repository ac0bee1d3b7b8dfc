"""
Token id <-> exchange (asset, network) mapping.

Examples:
    eip155:1/erc20:0xdac17f958d2ee523a2206206994597c13d831ec7 -> USDT on ETH
    eip155:56/bep20:0x55d398326f99059ff775485246999027b3197955 -> USDT on BSC
    solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp -> SOL on SOL

Matching is an exact, case-insensitive lookup in ``TOKEN_MAPPINGS``; a bare
chain key with no mapping falls back to that chain's native asset.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .exceptions import UnmappedAssetError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetMapping:
    asset: str
    network: str
    decimals: Optional[int] = None


# CAIP-2 chain key -> exchange network code
CHAIN_TO_NETWORK: Dict[str, str] = {
    "eip155:1": "ETH",
    "eip155:11155111": "ETH",
    "eip155:56": "BSC",
    "eip155:97": "BSC",
    "eip155:137": "MATIC",
    "solana:5eykt4usfv8p8njdtrepy1vzqkqzkvdp": "SOL",
    "solana:4uhcvjyu9pjkvqys88urdiswhxscky3z": "SOL",
    "solana:etwtrabzayq6imfeykouru166vu2xqa1": "SOL",
    "bip122:000000000019d6689c085ae165831e93": "BTC",
    "bip122:000000000933ea01ad0ee984209779ba": "BTC",
}

# Human-readable chain names accepted by blockchain_key_to_network
NETWORK_KEYWORDS: Dict[str, str] = {
    "ethereum": "ETH",
    "bsc": "BSC",
    "binance": "BSC",
    "polygon": "MATIC",
    "matic": "MATIC",
    "solana": "SOL",
    "bitcoin": "BTC",
}

NATIVE_ASSETS: Dict[str, AssetMapping] = {
    "ETH": AssetMapping("ETH", "ETH", 18),
    "BSC": AssetMapping("BNB", "BSC", 18),
    "MATIC": AssetMapping("MATIC", "MATIC", 18),
    "SOL": AssetMapping("SOL", "SOL", 9),
    "BTC": AssetMapping("BTC", "BTC", 8),
}

TOKEN_MAPPINGS: Dict[str, AssetMapping] = {
    # USDT
    "eip155:1/erc20:0xdac17f958d2ee523a2206206994597c13d831ec7": AssetMapping("USDT", "ETH", 6),
    "eip155:56/bep20:0x55d398326f99059ff775485246999027b3197955": AssetMapping("USDT", "BSC", 18),
    "eip155:137/erc20:0xc2132d05d31c914a87c6611c10748aeb04b58e8f": AssetMapping("USDT", "MATIC", 6),
    "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp/spl-token:Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB": AssetMapping("USDT", "SOL", 6),
    # USDC
    "eip155:1/erc20:0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": AssetMapping("USDC", "ETH", 6),
    "eip155:56/bep20:0x8ac76a51cc950d9822d68b83fe1ad97b32cd580d": AssetMapping("USDC", "BSC", 18),
    "eip155:137/erc20:0x2791bca1f2de4661ed88a30c99a7a9449aa84174": AssetMapping("USDC", "MATIC", 6),
    "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp/spl-token:EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v": AssetMapping("USDC", "SOL", 6),
    # BNB
    "eip155:56": AssetMapping("BNB", "BSC", 18),
    "eip155:1/erc20:0xb8c77482e45f1f44de1745f52c74426c631bdd52": AssetMapping("BNB", "ETH", 18),
    # ETH
    "eip155:1": AssetMapping("ETH", "ETH", 18),
    "eip155:56/bep20:0x2170ed0880ac9a755fd29b2688956bd959f933f8": AssetMapping("ETH", "BSC", 18),
    # BTC (native and wrapped)
    "bip122:000000000019d6689c085ae165831e93": AssetMapping("BTC", "BTC", 8),
    "eip155:1/erc20:0x2260fac5e5542a773aa44fbcfedf7c193bc2c599": AssetMapping("BTC", "ETH", 8),
    "eip155:56/bep20:0x7130d2a12b9bcbfae4f2634d864a1ee1ce3ead9c": AssetMapping("BTC", "BSC", 18),
    # SOL
    "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp": AssetMapping("SOL", "SOL", 9),
    "eip155:56/bep20:0x570a5d26f7765ecb712c0924e4de545b89fd43df": AssetMapping("SOL", "BSC", 18),
    # DAI
    "eip155:1/erc20:0x6b175474e89094c44da98b954eedeac495271d0f": AssetMapping("DAI", "ETH", 18),
    "eip155:56/bep20:0x1af3f329e8be154074d8769d1ffa4ee058b1dbc3": AssetMapping("DAI", "BSC", 18),
    "eip155:137/erc20:0x8f3cf7ad23cd3cadbd9735aff958023239c6a063": AssetMapping("DAI", "MATIC", 18),
}


class AssetMapper:
    """Maps settlement token ids to the exchange's asset symbol and network code."""

    def __init__(self, extra_mappings: Optional[Dict[str, AssetMapping]] = None):
        mappings = dict(TOKEN_MAPPINGS)
        if extra_mappings:
            mappings.update(extra_mappings)
        self._mappings = {key.lower(): value for key, value in mappings.items()}
        self._token_ids = {key.lower(): key for key in mappings}

    def to_exchange_asset(self, token_id: str) -> Optional[AssetMapping]:
        """Exchange (asset, network) for a token id, or None when unmapped."""
        mapping = self._mappings.get(token_id.lower())
        if mapping is not None:
            logger.debug(f"Mapped {token_id} -> {mapping.asset} on {mapping.network}")
            return mapping

        fallback = self._native_fallback(token_id)
        if fallback is not None:
            logger.warning(
                f"Using fallback mapping for {token_id} -> {fallback.asset} on {fallback.network}"
            )
            return fallback

        logger.error(f"No exchange mapping found for token: {token_id}")
        return None

    def require(self, token_id: str) -> AssetMapping:
        mapping = self.to_exchange_asset(token_id)
        if mapping is None:
            raise UnmappedAssetError(f"No exchange mapping for {token_id}", token_id=token_id)
        return mapping

    def _native_fallback(self, token_id: str) -> Optional[AssetMapping]:
        if "/" in token_id:
            return None
        network = self.blockchain_key_to_network(token_id, warn=False)
        if network is None:
            return None
        return NATIVE_ASSETS.get(network)

    def blockchain_key_to_network(self, key: str, warn: bool = True) -> Optional[str]:
        """
        Exchange network code for a chain key.

        Accepts CAIP-2 chain keys, CAIP-19 token ids (the chain part is used)
        and human-readable names like 'ethereum' or 'polygon'.
        """
        chain = key.split("/", 1)[0].lower()
        network = CHAIN_TO_NETWORK.get(chain)
        if network is None:
            network = next(
                (net for keyword, net in NETWORK_KEYWORDS.items() if keyword in chain),
                None,
            )
        if network is None and warn:
            logger.warning(f"Unknown blockchain key for exchange network mapping: {key}")
        return network

    def from_exchange_asset(self, asset: str, network: str, chain_key: Optional[str] = None) -> Optional[str]:
        """Reverse lookup: the token id carrying ``asset`` on ``network``."""
        asset = asset.upper()
        network = network.upper()
        for lowered, mapping in self._mappings.items():
            if mapping.asset != asset or mapping.network != network:
                continue
            token_id = self._token_ids[lowered]
            if chain_key is None or token_id.split("/", 1)[0].lower() == chain_key.lower():
                return token_id
        return None

    def supported_tokens(self) -> List[str]:
        return list(self._token_ids.values())

    def is_supported(self, token_id: str) -> bool:
        return self.to_exchange_asset(token_id) is not None

    def group_by_asset(self, token_ids: Iterable[str]) -> Dict[str, List[str]]:
        """Group token ids by exchange asset. Unmapped tokens are logged and left out."""
        groups: Dict[str, List[str]] = {}
        for token_id in token_ids:
            mapping = self.to_exchange_asset(token_id)
            if mapping is None:
                logger.warning(f"Skipping unmapped settlement token {token_id}")
                continue
            groups.setdefault(mapping.asset, []).append(token_id)
        return groups
