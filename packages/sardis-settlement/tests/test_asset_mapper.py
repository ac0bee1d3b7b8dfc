"""Tests for token id to exchange asset mapping."""
from __future__ import annotations

import pytest

from sardis_settlement.asset_mapper import CHAIN_TO_NETWORK, TOKEN_MAPPINGS, AssetMapper, AssetMapping
from sardis_settlement.chains.registry import ADAPTERS_BY_FAMILY
from sardis_settlement.config import default_networks
from sardis_settlement.exceptions import UnmappedAssetError

USDT_ETH = "eip155:1/erc20:0xdac17f958d2ee523a2206206994597c13d831ec7"
USDT_BSC = "eip155:56/bep20:0x55d398326f99059ff775485246999027b3197955"
USDC_SOL = "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp/spl-token:EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


@pytest.fixture
def mapper():
    return AssetMapper()


def test_known_tokens(mapper):
    assert mapper.to_exchange_asset(USDT_ETH) == AssetMapping("USDT", "ETH", 6)
    assert mapper.to_exchange_asset(USDT_BSC) == AssetMapping("USDT", "BSC", 18)
    assert mapper.to_exchange_asset(USDC_SOL).network == "SOL"


def test_lookup_is_case_insensitive(mapper):
    mapping = mapper.to_exchange_asset(USDT_ETH.upper())
    assert mapping is not None
    assert mapping.asset == "USDT"


def test_native_chain_keys(mapper):
    assert mapper.to_exchange_asset("eip155:1").asset == "ETH"
    assert mapper.to_exchange_asset("eip155:56").asset == "BNB"
    assert mapper.to_exchange_asset("bip122:000000000019d6689c085ae165831e93").asset == "BTC"


def test_native_fallback_for_bare_chain_key(mapper):
    """A bare chain key without an explicit entry maps to the chain's native asset."""
    mapping = mapper.to_exchange_asset("eip155:137")
    assert mapping == AssetMapping("MATIC", "MATIC", 18)


def test_unknown_token_on_known_chain_is_unmapped(mapper):
    """Tokens never fall back: only bare chain keys do."""
    assert mapper.to_exchange_asset("eip155:1/erc20:0x0000000000000000000000000000000000000001") is None


def test_unknown_chain(mapper):
    assert mapper.to_exchange_asset("cosmos:cosmoshub-4") is None
    assert not mapper.is_supported("cosmos:cosmoshub-4")


def test_require_raises(mapper):
    with pytest.raises(UnmappedAssetError) as exc_info:
        mapper.require("cosmos:cosmoshub-4/slip44:118")
    assert exc_info.value.error_code == "UNMAPPED_ASSET"


def test_blockchain_key_to_network(mapper):
    assert mapper.blockchain_key_to_network("eip155:1") == "ETH"
    assert mapper.blockchain_key_to_network(USDT_BSC) == "BSC"
    assert mapper.blockchain_key_to_network("solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp") == "SOL"
    assert mapper.blockchain_key_to_network("polygon-mainnet") == "MATIC"
    assert mapper.blockchain_key_to_network("unknown:1", warn=False) is None


def test_from_exchange_asset(mapper):
    assert mapper.from_exchange_asset("usdt", "bsc") == USDT_BSC
    assert mapper.from_exchange_asset("ETH", "ETH", chain_key="eip155:1") == "eip155:1"
    assert mapper.from_exchange_asset("DOGE", "DOGE") is None


def test_extra_mappings():
    token = "eip155:10/erc20:0xabc"
    mapper = AssetMapper(extra_mappings={token: AssetMapping("USDC", "OPTIMISM", 6)})

    assert mapper.to_exchange_asset(token).network == "OPTIMISM"
    assert token in mapper.supported_tokens()


def test_group_by_asset_skips_unmapped(mapper):
    groups = mapper.group_by_asset([USDT_ETH, "eip155:1", USDT_BSC, "cosmos:cosmoshub-4"])

    assert groups == {"USDT": [USDT_ETH, USDT_BSC], "ETH": ["eip155:1"]}


def test_every_mapping_has_a_settleable_chain():
    """Each mapped chain key resolves to a network an adapter family can serve."""
    networks = default_networks(False) + default_networks(True)
    served = {n.chain_key.lower() for n in networks if n.family in ADAPTERS_BY_FAMILY}

    assert {key.split("/", 1)[0].lower() for key in TOKEN_MAPPINGS} <= served
    served_namespaces = {key.split(":", 1)[0] for key in served}
    assert {key.split(":", 1)[0] for key in CHAIN_TO_NETWORK} <= served_namespaces
