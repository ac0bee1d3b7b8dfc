"""Explicit chain key -> adapter map, resolved once at startup."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Type

import httpx

from ..config import NetworkConfig
from ..exceptions import ConfigurationError, UnsupportedChainError
from ..interfaces import Signer
from .base import BaseChainAdapter, ChainAdapter
from .bitcoin import BitcoinAdapter
from .evm import EVMAdapter
from .solana import SolanaAdapter

logger = logging.getLogger(__name__)

ADAPTERS_BY_FAMILY: Dict[str, Type[BaseChainAdapter]] = {
    "utxo": BitcoinAdapter,
    "evm": EVMAdapter,
    "solana": SolanaAdapter,
}


class ChainRegistry:
    """Lookup of chain adapters by CAIP-2 chain key."""

    def __init__(self) -> None:
        self._adapters: Dict[str, ChainAdapter] = {}

    def register(self, adapter: ChainAdapter) -> None:
        key = adapter.chain_key
        if key in self._adapters:
            raise ConfigurationError(f"Chain adapter already registered for {key}")
        self._adapters[key] = adapter
        logger.debug(f"Registered chain adapter for {key}")

    def get(self, key: str) -> ChainAdapter:
        """Resolve a chain key, or a token id whose chain part precedes the first '/'."""
        chain_key = key.split("/", 1)[0]
        adapter = self._adapters.get(chain_key)
        if adapter is None:
            raise UnsupportedChainError(chain_key, known=list(self._adapters))
        return adapter

    def __contains__(self, key: str) -> bool:
        return key.split("/", 1)[0] in self._adapters

    @property
    def chain_keys(self) -> List[str]:
        return list(self._adapters)

    def adapters(self) -> Iterable[ChainAdapter]:
        return self._adapters.values()

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def build_registry(
    networks: Iterable[NetworkConfig],
    signers: Mapping[str, Signer],
    http_client: Optional[httpx.AsyncClient] = None,
) -> ChainRegistry:
    """Construct one adapter per configured network. Networks without a signer are read-only."""
    registry = ChainRegistry()
    for network in networks:
        adapter_cls = ADAPTERS_BY_FAMILY.get(network.family)
        if adapter_cls is None:
            raise ConfigurationError(
                f"Unknown chain family '{network.family}'",
                details={"chain_key": network.chain_key},
            )
        signer = signers.get(network.chain_key)
        if signer is None:
            logger.warning(f"No signer for {network.name}; adapter is read-only")
        registry.register(adapter_cls(network, signer=signer, http_client=http_client))
    return registry
