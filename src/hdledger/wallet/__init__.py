"""
Wallet core: key sourcing, UTXO tracking, block processing and transaction building.
"""

from hdledger.wallet.address import Address, AddressType
from hdledger.wallet.bip32 import DerivationPath, ExtendedPublicKey, HDKey
from hdledger.wallet.blocks import BlockProcessor, ChainState
from hdledger.wallet.builder import TransactionBuilder
from hdledger.wallet.keychain import KeyDerivationIndex, ScriptIndex
from hdledger.wallet.models import KeyPathHint, KnownBlock, OwnedOutput, WalletState
from hdledger.wallet.pending import PendingPool
from hdledger.wallet.psbt import Psbt, PsbtInput, PsbtOutput
from hdledger.wallet.service import Wallet
from hdledger.wallet.transaction import Block, BlockHeader, OutPoint, Transaction, TxIn, TxOut
from hdledger.wallet.utxos import OwnedOutputSet

__all__ = [
    "Address",
    "AddressType",
    "Block",
    "BlockHeader",
    "BlockProcessor",
    "ChainState",
    "DerivationPath",
    "ExtendedPublicKey",
    "HDKey",
    "KeyDerivationIndex",
    "KeyPathHint",
    "KnownBlock",
    "OutPoint",
    "OwnedOutput",
    "OwnedOutputSet",
    "PendingPool",
    "Psbt",
    "PsbtInput",
    "PsbtOutput",
    "ScriptIndex",
    "Transaction",
    "TransactionBuilder",
    "TxIn",
    "TxOut",
    "Wallet",
    "WalletState",
]
