"""
Address sourcing: deterministic key derivation from the wallet's extended
public key, the sequential child index and the reverse script index.

Addresses are derived at ``base_derivation_path/child`` relative to the
extended public key. Signing hints carry the full path from the master key,
``key_origin_path/base_derivation_path/child``.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from coincurve.context import Context
from loguru import logger

from hdledger.config import NetworkType
from hdledger.crypto import SECP
from hdledger.wallet.address import Address, AddressType
from hdledger.wallet.bip32 import HARDENED, DerivationPath, ExtendedPublicKey
from hdledger.wallet.models import KeyPathHint


class KeyDerivationIndex:
    """
    Public key material plus the "next child" counter.

    ``reserve_next_child`` hands out indices 0, 1, 2, ... The most recent
    reservation can be undone once with ``rollback_last_reservation``, which
    lets the transaction builder reserve a change index before it knows
    whether change is needed without leaving gaps in the index sequence.
    """

    def __init__(
        self,
        extended_pubkey: ExtendedPublicKey,
        master_fingerprint: bytes,
        base_derivation_path: DerivationPath,
        network: NetworkType,
        key_origin_path: DerivationPath | None = None,
        last_sourced_child: int | None = None,
        context: Context = SECP,
    ):
        if len(master_fingerprint) != 4:
            raise ValueError(f"Master fingerprint must be 4 bytes, got {len(master_fingerprint)}")

        self.extended_pubkey = extended_pubkey
        self.master_fingerprint = master_fingerprint
        self.base_derivation_path = base_derivation_path
        self.key_origin_path = key_origin_path or DerivationPath()
        self.network = network
        self.context = context

        self._last_sourced_child = last_sourced_child
        self._base_key: ExtendedPublicKey | None = None

        # Single-level undo: (has pending undo, value to restore)
        self._has_pending_undo = False
        self._undo_value: int | None = None

    @property
    def last_sourced_child(self) -> int | None:
        return self._last_sourced_child

    @property
    def has_pending_reservation(self) -> bool:
        return self._has_pending_undo

    def _base(self) -> ExtendedPublicKey:
        if self._base_key is None:
            self._base_key = self.extended_pubkey.derive_path(
                self.base_derivation_path, self.context
            )
        return self._base_key

    def derive_public_key(self, child_index: int) -> bytes:
        return self._base().derive_child(child_index, self.context).public_key

    def derive_address(
        self, child_index: int, address_type: AddressType = AddressType.P2WPKH
    ) -> Address:
        """Derive the address of the given type at ``base_derivation_path/child_index``."""
        pubkey = self.derive_public_key(child_index)
        return Address(
            address_type=address_type,
            address=address_type.encode(pubkey, self.network),
            script_pubkey=address_type.script_pubkey(pubkey),
            public_key=pubkey,
        )

    def full_path(self, child_index: int) -> DerivationPath:
        return self.key_origin_path.extend(self.base_derivation_path).child(child_index)

    def key_path_hint(self, child_index: int) -> KeyPathHint:
        return KeyPathHint(
            fingerprint=self.master_fingerprint,
            path=self.full_path(child_index),
            public_key=self.derive_public_key(child_index),
        )

    def reserve_next_child(self) -> int:
        """Increase the latest sourced child number and return it."""
        if self._last_sourced_child is None:
            child = 0
        else:
            child = self._last_sourced_child + 1

        if child >= HARDENED:
            raise OverflowError("BIP32 child number overflow")

        self._undo_value = self._last_sourced_child
        self._has_pending_undo = True
        self._last_sourced_child = child
        logger.debug(f"Reserved child index {child}")
        return child

    def rollback_last_reservation(self) -> None:
        """Undo the last ``reserve_next_child``. Further calls are no-ops."""
        if not self._has_pending_undo:
            logger.debug("No pending child reservation to roll back")
            return

        logger.debug(
            f"Rolling back child index {self._last_sourced_child} -> {self._undo_value}"
        )
        self._last_sourced_child = self._undo_value
        self._has_pending_undo = False
        self._undo_value = None

    def commit_reservation(self) -> None:
        """Mark the last reservation as used, it can no longer be rolled back."""
        self._has_pending_undo = False
        self._undo_value = None


class ScriptIndex:
    """Reverse mapping from scriptPubKey bytes to the child number that produced it."""

    def __init__(self, keychain: KeyDerivationIndex, entries: Iterable[tuple[bytes, int]] = ()):
        self.keychain = keychain
        self._scripts: dict[bytes, int] = dict(entries)

    def index(self, child_index: int) -> list[bytes]:
        """Derive and record the scripts of every address type at ``child_index``."""
        scripts = []
        for address_type in AddressType.all_types():
            address = self.keychain.derive_address(child_index, address_type)
            self._scripts[address.script_pubkey] = child_index
            scripts.append(address.script_pubkey)
        return scripts

    def lookup(self, script: bytes) -> int | None:
        return self._scripts.get(script)

    def items(self) -> Iterator[tuple[bytes, int]]:
        return iter(self._scripts.items())

    def __contains__(self, script: object) -> bool:
        return script in self._scripts

    def __len__(self) -> int:
        return len(self._scripts)
