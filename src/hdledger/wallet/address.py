"""
Bitcoin address and scriptPubKey utilities.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import base58
import bech32

from hdledger.config import BECH32_HRP, NetworkType
from hdledger.crypto import hash160


class AddressType(str, Enum):
    """
    Address types the wallet derives and watches for.
    New members only add script index entries, existing ones stay valid.
    """

    P2WPKH = "p2wpkh"

    @classmethod
    def all_types(cls) -> list[AddressType]:
        return list(cls)

    def script_pubkey(self, pubkey: bytes) -> bytes:
        if self is AddressType.P2WPKH:
            return pubkey_to_p2wpkh_script(pubkey)
        raise ValueError(f"Unsupported address type: {self}")

    def encode(self, pubkey: bytes, network: NetworkType) -> str:
        if self is AddressType.P2WPKH:
            return pubkey_to_p2wpkh_address(pubkey, network)
        raise ValueError(f"Unsupported address type: {self}")


@dataclass(frozen=True)
class Address:
    """A derived wallet address together with its script and key."""

    address_type: AddressType
    address: str
    script_pubkey: bytes
    public_key: bytes

    def __str__(self) -> str:
        return self.address


def pubkey_to_p2wpkh_script(pubkey: bytes) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return bytes([0x00, 0x14]) + hash160(pubkey)


def pubkey_to_p2wpkh_address(pubkey: bytes, network: NetworkType = NetworkType.MAINNET) -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    result = bech32.encode(BECH32_HRP[network], 0, hash160(pubkey))
    if result is None:
        raise ValueError(f"Failed to encode P2WPKH address for {pubkey.hex()}")
    return result


def address_to_scriptpubkey(address: str) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH / P2WSH (bc1q..., tb1q..., bcrt1q...)
    - P2TR (bc1p..., tb1p..., bcrt1p...)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)
    """
    lowered = address.lower()

    # Bech32 (SegWit) addresses
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = lowered[: lowered.rfind("1")]

        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0 and len(program) in (20, 32):
            # P2WPKH: OP_0 <20-byte-pubkeyhash>, P2WSH: OP_0 <32-byte-scripthash>
            return bytes([0x00, len(program)]) + program
        if witver == 1 and len(program) == 32:
            # P2TR: OP_1 <32-byte-pubkey>
            return bytes([0x51, 0x20]) + program

        raise ValueError(f"Unsupported witness version: {witver}")

    # Base58 addresses (legacy)
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address {address}: {e}") from e

    if len(decoded) != 21:
        raise ValueError(f"Invalid address payload length: {len(decoded)}")

    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):  # Mainnet/Testnet P2PKH
        # P2PKH: OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    elif version in (0x05, 0xC4):  # Mainnet/Testnet P2SH
        # P2SH: OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Unknown address version: {version}")
