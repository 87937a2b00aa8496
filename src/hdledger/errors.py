"""
Wallet error kinds.

Every error the wallet core surfaces to its caller has a tag in ``ErrorKind``
and a fixed description in ``ERROR_MESSAGES``. Callers catch either the
``WalletError`` base class or the subclass for a single kind.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    DERIVATION = "derivation"
    BLOCK_FORK = "block_fork"
    UTXO_NOT_IN_WALLET = "utxo_not_in_wallet"
    DUPLICATE_UTXO = "duplicate_utxo"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    WALLET_NOT_FULLY_INITIALIZED = "wallet_not_fully_initialized"


ERROR_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.DERIVATION: "BIP-32 derivation error",
    ErrorKind.BLOCK_FORK: "block forks off the last known block",
    ErrorKind.UTXO_NOT_IN_WALLET: "a UTXO was used that is not part of the wallet",
    ErrorKind.DUPLICATE_UTXO: "a UTXO has been provided more than once",
    ErrorKind.INSUFFICIENT_FUNDS: "not enough funds to fund the given transaction",
    ErrorKind.WALLET_NOT_FULLY_INITIALIZED: "the wallet is not fully initialized yet",
}


class WalletError(Exception):
    """Base class for errors reported by the wallet core."""

    kind: ErrorKind

    def __init__(self, detail: str | None = None):
        self.detail = detail
        message = ERROR_MESSAGES[self.kind]
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DerivationError(WalletError):
    kind = ErrorKind.DERIVATION


class BlockFork(WalletError):
    kind = ErrorKind.BLOCK_FORK


class UtxoNotInWallet(WalletError):
    kind = ErrorKind.UTXO_NOT_IN_WALLET


class DuplicateUtxo(WalletError):
    kind = ErrorKind.DUPLICATE_UTXO


class InsufficientFunds(WalletError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class WalletNotFullyInitialized(WalletError):
    kind = ErrorKind.WALLET_NOT_FULLY_INITIALIZED
