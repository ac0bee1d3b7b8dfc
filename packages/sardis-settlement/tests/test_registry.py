"""Tests for the chain adapter registry."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from sardis_settlement.chains import BitcoinAdapter, ChainRegistry, EVMAdapter, SolanaAdapter, build_registry
from sardis_settlement.chains.base import parse_token_id
from sardis_settlement.config import default_networks
from sardis_settlement.exceptions import ConfigurationError, UnsupportedChainError, UnmappedAssetError


@pytest.fixture
def registry(eth_network, btc_network, solana_network):
    return build_registry([eth_network, btc_network, solana_network], signers={})


def test_build_registry_by_family(registry):
    assert isinstance(registry.get("eip155:1"), EVMAdapter)
    assert isinstance(registry.get("bip122:000000000019d6689c085ae165831e93"), BitcoinAdapter)
    assert isinstance(registry.get("solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"), SolanaAdapter)
    assert len(registry.chain_keys) == 3


def test_lookup_by_token_id(registry):
    """The chain part of a token id resolves to its adapter."""
    adapter = registry.get("eip155:1/erc20:0xdac17f958d2ee523a2206206994597c13d831ec7")
    assert adapter.chain_key == "eip155:1"
    assert "eip155:1/erc20:0xabc" in registry
    assert "eip155:56" not in registry


def test_unknown_chain(registry):
    with pytest.raises(UnsupportedChainError) as exc_info:
        registry.get("eip155:56/bep20:0x55d398326f99059ff775485246999027b3197955")
    assert exc_info.value.error_code == "UNSUPPORTED_CHAIN"
    assert isinstance(exc_info.value, UnmappedAssetError)


def test_duplicate_registration(eth_network):
    registry = ChainRegistry()
    registry.register(EVMAdapter(eth_network))

    with pytest.raises(ConfigurationError):
        registry.register(EVMAdapter(eth_network))


def test_signers_attached(eth_network):
    signer = AsyncMock()
    registry = build_registry([eth_network], signers={eth_network.chain_key: signer})

    assert registry.get("eip155:1")._signer is signer


def test_default_networks_register():
    """Mainnet and testnet defaults each build a consistent registry."""
    for testnet in (False, True):
        registry = build_registry(default_networks(testnet), signers={})
        assert len(registry.chain_keys) == len(default_networks(testnet))


@pytest.mark.asyncio
async def test_close_all(registry):
    for adapter in registry.adapters():
        adapter.close = AsyncMock()

    await registry.close()

    for adapter in registry.adapters():
        adapter.close.assert_awaited_once()


def test_parse_token_id():
    native = parse_token_id("eip155:1")
    token = parse_token_id("eip155:1/ERC20:0xabc")
    slip = parse_token_id("bip122:000000000019d6689c085ae165831e93/slip44:0")

    assert native.is_native
    assert token.namespace == "erc20"
    assert token.reference == "0xabc"
    assert not token.is_native
    assert slip.is_native
