"""
Tests for address encoding and payee script decoding.
"""

import pytest

from hdledger.config import NetworkType
from hdledger.wallet.address import (
    AddressType,
    address_to_scriptpubkey,
    pubkey_to_p2wpkh_address,
    pubkey_to_p2wpkh_script,
)

# BIP173 example key
PUBKEY = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")
P2WPKH_SCRIPT = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")


class TestP2WPKH:
    def test_script(self):
        assert pubkey_to_p2wpkh_script(PUBKEY) == P2WPKH_SCRIPT

    def test_mainnet_address(self):
        address = pubkey_to_p2wpkh_address(PUBKEY, NetworkType.MAINNET)
        assert address == "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"

    @pytest.mark.parametrize(
        "network,prefix",
        [
            (NetworkType.TESTNET, "tb1q"),
            (NetworkType.SIGNET, "tb1q"),
            (NetworkType.REGTEST, "bcrt1q"),
        ],
    )
    def test_network_prefixes(self, network, prefix):
        address = pubkey_to_p2wpkh_address(PUBKEY, network)
        assert address.startswith(prefix)
        assert address_to_scriptpubkey(address) == P2WPKH_SCRIPT

    def test_uncompressed_key_rejected(self):
        with pytest.raises(ValueError):
            pubkey_to_p2wpkh_script(b"\x04" + bytes(64))

    def test_address_type_dispatch(self):
        address_type = AddressType.P2WPKH
        assert address_type.script_pubkey(PUBKEY) == P2WPKH_SCRIPT
        assert address_type.encode(PUBKEY, NetworkType.MAINNET) == (
            "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
        )
        assert AddressType.all_types() == [AddressType.P2WPKH]


class TestAddressToScriptPubKey:
    def test_p2wpkh(self):
        script = address_to_scriptpubkey("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4")
        assert script == P2WPKH_SCRIPT

    def test_uppercase_bech32(self):
        script = address_to_scriptpubkey("BC1QW508D6QEJXTDG4Y5R3ZARVARY0C5XW7KV8F3T4")
        assert script == P2WPKH_SCRIPT

    def test_p2pkh(self):
        script = address_to_scriptpubkey("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2")
        assert script.hex() == "76a91477bff20c60e522dfaa3350c39b030a5d004e839a88ac"

    def test_p2sh(self):
        script = address_to_scriptpubkey("3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy")
        assert len(script) == 23
        assert script[:2] == bytes([0xA9, 0x14])
        assert script[-1] == 0x87

    @pytest.mark.parametrize(
        "bad",
        [
            "notanaddress",
            "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5",
            "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN3",
        ],
    )
    def test_invalid(self, bad):
        with pytest.raises(ValueError):
            address_to_scriptpubkey(bad)
