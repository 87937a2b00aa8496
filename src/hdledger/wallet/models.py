"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, Field

from hdledger.config import WalletConfig
from hdledger.wallet.bip32 import DerivationPath
from hdledger.wallet.transaction import HEX_32, OutPoint, Transaction

STATE_VERSION = 1


class KnownBlock(BaseModel):
    """The wallet's current chain tip."""

    height: int = Field(..., ge=0)
    hash: str = Field(..., pattern=HEX_32)

    model_config = {"frozen": True}


class OwnedOutput(BaseModel):
    """A UTXO owned by the wallet."""

    outpoint: OutPoint
    value: int = Field(..., ge=0)
    height: int = Field(..., ge=0)
    # Child number of the key needed to spend this output
    child_number: int = Field(..., ge=0)
    # Pending transactions currently spending this output
    used_in_tx: set[str] = Field(default_factory=set)

    @property
    def is_available(self) -> bool:
        return not self.used_in_tx

    def confirmations(self, current_height: int) -> int:
        return current_height - self.height + 1


@dataclass(frozen=True)
class KeyPathHint:
    """Where a signer finds the key for a public key: master fingerprint + full path."""

    fingerprint: bytes
    path: DerivationPath
    public_key: bytes

    def origin_bytes(self) -> bytes:
        return self.fingerprint + self.path.to_bytes()


class WalletState(BaseModel):
    """Persisted shape of a wallet."""

    version: int = STATE_VERSION
    config: WalletConfig
    extended_pubkey: str
    master_fingerprint: str = Field(..., pattern=r"^[0-9a-f]{8}$")
    base_derivation_path: str
    key_origin_path: str = "m"
    last_sourced_child: int | None = None
    owned_outputs: list[OwnedOutput] = Field(default_factory=list)
    script_index: list[tuple[str, int]] = Field(default_factory=list)
    last_known_block: KnownBlock | None = None
    pending_transactions: list[Transaction] = Field(default_factory=list)
    transaction_history: list[Transaction] = Field(default_factory=list)
