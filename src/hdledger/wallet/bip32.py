"""
BIP32 HD key derivation.

The wallet itself only ever holds an ``ExtendedPublicKey`` and derives
child public keys from it. ``HDKey`` (private derivation from a seed) exists
so the ``init`` command can turn a mnemonic into watch-only key material.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

import base58
from coincurve import PrivateKey, PublicKey
from coincurve.context import Context

from hdledger.config import NetworkType
from hdledger.crypto import SECP, SECP256K1_N, hash160, hmac_sha512
from hdledger.errors import DerivationError

HARDENED = 0x80000000

XPUB_VERSION = bytes.fromhex("0488b21e")
TPUB_VERSION = bytes.fromhex("043587cf")
PUBLIC_VERSIONS = {XPUB_VERSION: NetworkType.MAINNET, TPUB_VERSION: NetworkType.TESTNET}


def format_child(index: int) -> str:
    if index >= HARDENED:
        return f"{index - HARDENED}'"
    return str(index)


class DerivationPath:
    """
    Immutable sequence of BIP32 child numbers, e.g. ``m/84'/0'/0'``.
    ' or h marks a hardened step.
    """

    __slots__ = ("_indices",)

    def __init__(self, indices: Iterable[int] = ()):
        indices = tuple(indices)
        for index in indices:
            if not 0 <= index <= 0xFFFFFFFF:
                raise ValueError(f"Child number out of range: {index}")
        self._indices = indices

    @classmethod
    def parse(cls, path: str) -> DerivationPath:
        """Parse path notation (e.g., "m/84'/0'/0'/0")"""
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        indices = []
        for part in path.split("/")[1:]:
            if not part:
                continue

            hardened = part.endswith("'") or part.endswith("h")
            index_str = part.rstrip("'h")
            if not index_str.isdigit():
                raise ValueError(f"Invalid path component: {part!r}")
            index = int(index_str)
            if index >= HARDENED:
                raise ValueError(f"Path component out of range: {part!r}")

            if hardened:
                index += HARDENED
            indices.append(index)

        return cls(indices)

    def child(self, index: int) -> DerivationPath:
        return DerivationPath(self._indices + (index,))

    def extend(self, other: DerivationPath) -> DerivationPath:
        return DerivationPath(self._indices + tuple(other))

    def to_bytes(self) -> bytes:
        """Little-endian uint32 per step, as used in PSBT key origin fields."""
        return b"".join(index.to_bytes(4, "little") for index in self._indices)

    @classmethod
    def from_bytes(cls, data: bytes) -> DerivationPath:
        if len(data) % 4:
            raise ValueError("Serialized path length must be a multiple of 4")
        return cls(int.from_bytes(data[i : i + 4], "little") for i in range(0, len(data), 4))

    def __iter__(self) -> Iterator[int]:
        return iter(self._indices)

    def __len__(self) -> int:
        return len(self._indices)

    def __getitem__(self, item: int) -> int:
        return self._indices[item]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DerivationPath):
            return NotImplemented
        return self._indices == other._indices

    def __hash__(self) -> int:
        return hash(self._indices)

    def __str__(self) -> str:
        return "/".join(["m", *(format_child(index) for index in self._indices)])

    def __repr__(self) -> str:
        return f"DerivationPath('{self}')"


@dataclass(frozen=True)
class ExtendedPublicKey:
    """BIP32 extended public key (xpub/tpub)."""

    version: bytes
    depth: int
    parent_fingerprint: bytes
    child_number: int
    chain_code: bytes
    public_key: bytes

    @classmethod
    def from_string(cls, encoded: str, context: Context = SECP) -> ExtendedPublicKey:
        try:
            raw = base58.b58decode_check(encoded)
        except ValueError as e:
            raise ValueError(f"Invalid extended public key encoding: {e}") from e

        if len(raw) != 78:
            raise ValueError(f"Invalid extended public key length: {len(raw)}")

        version = raw[:4]
        if version not in PUBLIC_VERSIONS:
            raise ValueError(f"Not an extended public key version: {version.hex()}")

        public_key = raw[45:78]
        # Rejects encodings that are not points on the curve
        PublicKey(public_key, context=context)

        return cls(
            version=version,
            depth=raw[4],
            parent_fingerprint=raw[5:9],
            child_number=int.from_bytes(raw[9:13], "big"),
            chain_code=raw[13:45],
            public_key=public_key,
        )

    def to_bytes(self) -> bytes:
        return (
            self.version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + self.public_key
        )

    def to_string(self) -> str:
        return base58.b58encode_check(self.to_bytes()).decode("ascii")

    def __str__(self) -> str:
        return self.to_string()

    @property
    def network(self) -> NetworkType:
        return PUBLIC_VERSIONS[self.version]

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.public_key)[:4]

    def derive_child(self, index: int, context: Context = SECP) -> ExtendedPublicKey:
        """Public (non-hardened) child key derivation."""
        if index >= HARDENED:
            raise DerivationError(f"cannot derive hardened child {format_child(index)} from xpub")
        if index < 0:
            raise DerivationError(f"invalid child number {index}")
        if self.depth >= 255:
            raise DerivationError("maximum derivation depth reached")

        hmac_result = hmac_sha512(self.chain_code, self.public_key + index.to_bytes(4, "big"))
        key_offset = hmac_result[:32]

        if int.from_bytes(key_offset, "big") >= SECP256K1_N:
            raise DerivationError(f"invalid tweak for child {index}")

        try:
            child_key = PublicKey(self.public_key, context=context).add(key_offset)
        except ValueError as e:
            raise DerivationError(f"child {index}: {e}") from e

        return ExtendedPublicKey(
            version=self.version,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
            chain_code=hmac_result[32:],
            public_key=child_key.format(compressed=True),
        )

    def derive_path(self, path: DerivationPath, context: Context = SECP) -> ExtendedPublicKey:
        key = self
        for index in path:
            key = key.derive_child(index, context)
        return key


class HDKey:
    """
    Hierarchical Deterministic private key.
    Implements BIP32 derivation.
    """

    def __init__(
        self,
        private_key: PrivateKey,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @property
    def private_key(self) -> PrivateKey:
        """Return the coincurve PrivateKey instance."""
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac_sha512(b"Bitcoin seed", seed)
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        private_key = PrivateKey(key_bytes)

        return cls(private_key, chain_code, depth=0)

    def derive(self, path: str | DerivationPath) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' indicates hardened derivation
        """
        if isinstance(path, str):
            path = DerivationPath.parse(path)

        key = self
        for index in path:
            key = key._derive_child(index)

        return key

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        hardened = index >= HARDENED

        if hardened:
            priv_bytes = self._private_key.secret
            data = b"\x00" + priv_bytes + index.to_bytes(4, "big")
        else:
            pub_bytes = self._public_key.format(compressed=True)
            data = pub_bytes + index.to_bytes(4, "big")

        hmac_result = hmac_sha512(self.chain_code, data)
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= SECP256K1_N:
            raise DerivationError(f"invalid tweak for child {format_child(index)}")

        child_key_int = (parent_key_int + offset_int) % SECP256K1_N

        if child_key_int == 0:
            raise DerivationError("Invalid child key")

        child_key_bytes = child_key_int.to_bytes(32, "big")
        child_private_key = PrivateKey(child_key_bytes)

        return HDKey(
            child_private_key,
            child_chain,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)

    def to_extended_public_key(
        self, network: NetworkType = NetworkType.MAINNET
    ) -> ExtendedPublicKey:
        """Neuter this key. Test networks use the tpub version bytes."""
        version = XPUB_VERSION if network == NetworkType.MAINNET else TPUB_VERSION
        return ExtendedPublicKey(
            version=version,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
            chain_code=self.chain_code,
            public_key=self.get_public_key_bytes(compressed=True),
        )


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """
    Convert BIP39 mnemonic to seed.
    The mnemonic checksum is not verified.
    """
    from hashlib import pbkdf2_hmac

    mnemonic_bytes = mnemonic.encode("utf-8")
    salt = ("mnemonic" + passphrase).encode("utf-8")

    seed = pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)
    return seed
