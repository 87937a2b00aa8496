"""
Watch-only HD wallet service.

Derivation path: {key_origin_path}/{base_derivation_path}/{child}
- key_origin_path: path of the extended public key below the master key
- base_derivation_path: path below the extended public key (e.g. m/0)
- child: sequential index shared by receive and change addresses

The wallet is not thread-safe. One owner must serialize all calls, since
block processing and transaction building update the same indices.
"""

from __future__ import annotations

import random
from collections.abc import Sequence

from coincurve.context import Context
from loguru import logger

from hdledger.config import WalletConfig
from hdledger.crypto import SECP
from hdledger.wallet.address import AddressType
from hdledger.wallet.bip32 import DerivationPath, ExtendedPublicKey
from hdledger.wallet.blocks import BlockProcessor, ChainState
from hdledger.wallet.builder import TransactionBuilder
from hdledger.wallet.keychain import KeyDerivationIndex, ScriptIndex
from hdledger.wallet.models import STATE_VERSION, KnownBlock, OwnedOutput, WalletState
from hdledger.wallet.pending import PendingPool
from hdledger.wallet.psbt import Psbt
from hdledger.wallet.transaction import Block, OutPoint, Transaction, TxOut
from hdledger.wallet.utxos import OwnedOutputSet


class Wallet:
    def __init__(
        self,
        config: WalletConfig,
        extended_pubkey: ExtendedPublicKey,
        master_fingerprint: bytes,
        base_derivation_path: DerivationPath,
        key_origin_path: DerivationPath | None = None,
        rng: random.Random | None = None,
        context: Context = SECP,
    ):
        self._setup(
            config,
            KeyDerivationIndex(
                extended_pubkey=extended_pubkey,
                master_fingerprint=master_fingerprint,
                base_derivation_path=base_derivation_path,
                network=config.network,
                key_origin_path=key_origin_path,
                context=context,
            ),
            rng=rng,
        )

    def _setup(
        self,
        config: WalletConfig,
        keychain: KeyDerivationIndex,
        rng: random.Random | None,
        state: WalletState | None = None,
    ) -> None:
        self.config = config
        self.keychain = keychain

        if state is None:
            self.script_index = ScriptIndex(keychain)
            self.utxos = OwnedOutputSet(self.script_index)
            self.pending = PendingPool(self.utxos)
            self.chain = BlockProcessor(self.utxos, self.pending)
        else:
            self.script_index = ScriptIndex(
                keychain, ((bytes.fromhex(script), child) for script, child in state.script_index)
            )
            self.utxos = OwnedOutputSet(
                self.script_index,
                outputs=[utxo.model_copy(deep=True) for utxo in state.owned_outputs],
                history=[tx.model_copy(deep=True) for tx in state.transaction_history],
            )
            self.pending = PendingPool(
                self.utxos, [tx.model_copy(deep=True) for tx in state.pending_transactions]
            )
            self.chain = BlockProcessor(self.utxos, self.pending, state.last_known_block)

        self.builder = TransactionBuilder(
            self.keychain, self.script_index, self.utxos, self.pending, rng=rng
        )

    @property
    def extended_pubkey(self) -> ExtendedPublicKey:
        return self.keychain.extended_pubkey

    @property
    def master_fingerprint(self) -> bytes:
        return self.keychain.master_fingerprint

    @property
    def last_sourced_child(self) -> int | None:
        return self.keychain.last_sourced_child

    @property
    def last_known_block(self) -> KnownBlock | None:
        return self.chain.last_known_block

    @property
    def chain_state(self) -> ChainState:
        return self.chain.state

    @property
    def pending_transactions(self) -> list[Transaction]:
        return self.pending.transactions

    @property
    def transaction_history(self) -> list[Transaction]:
        return [tx.model_copy(deep=True) for tx in self.utxos.history]

    def new_receive_address(self) -> str:
        """Source the next child index and return its address."""
        child = self.keychain.reserve_next_child()
        try:
            self.script_index.index(child)
        except Exception:
            self.keychain.rollback_last_reservation()
            raise
        self.keychain.commit_reservation()

        address = self.keychain.derive_address(child, AddressType.P2WPKH).address
        logger.info(f"New receive address {address} (child {child})")
        return address

    def is_relevant_tx(self, tx: Transaction) -> bool:
        return self.utxos.is_relevant(tx)

    def set_last_block(self, block_hash: str, height: int) -> KnownBlock:
        """
        Use this only when you know what you are doing. This might make the
        wallet lose track of some of its own UTXOs.
        """
        return self.chain.set_last_block(block_hash, height)

    def process_block(self, block: Block) -> list[str]:
        return self.chain.process_block(block)

    def get_balance(self, minimum_confirmations: int | None = None) -> int:
        tip = self.chain.last_known_block
        if tip is None:
            return 0
        return self.utxos.balance(tip.height, minimum_confirmations)

    def get_utxos(self) -> list[OwnedOutput]:
        return [utxo.model_copy(deep=True) for utxo in self.utxos]

    def create_transaction(
        self,
        outputs: Sequence[TxOut],
        use_inputs: Sequence[OutPoint] = (),
        fee: int = 0,
    ) -> tuple[Psbt, int | None]:
        return self.builder.build(outputs, use_inputs, fee)

    def commit_transaction(self, tx: Transaction) -> str:
        """Keep ``tx`` as pending and mark the outputs it spends as used."""
        return self.pending.add(tx)

    def drop_pending_transaction(self, txid: str) -> bool:
        return self.builder.drop_pending(txid)

    def to_state(self) -> WalletState:
        return WalletState(
            config=self.config,
            extended_pubkey=self.keychain.extended_pubkey.to_string(),
            master_fingerprint=self.keychain.master_fingerprint.hex(),
            base_derivation_path=str(self.keychain.base_derivation_path),
            key_origin_path=str(self.keychain.key_origin_path),
            last_sourced_child=self.keychain.last_sourced_child,
            owned_outputs=[utxo.model_copy(deep=True) for utxo in self.utxos],
            script_index=[(script.hex(), child) for script, child in self.script_index.items()],
            last_known_block=self.chain.last_known_block,
            pending_transactions=[tx.model_copy(deep=True) for tx in self.pending],
            transaction_history=[tx.model_copy(deep=True) for tx in self.utxos.history],
        )

    @classmethod
    def from_state(
        cls,
        state: WalletState,
        rng: random.Random | None = None,
        context: Context = SECP,
    ) -> Wallet:
        if state.version != STATE_VERSION:
            raise ValueError(f"Unsupported wallet state version {state.version}")

        keychain = KeyDerivationIndex(
            extended_pubkey=ExtendedPublicKey.from_string(state.extended_pubkey, context),
            master_fingerprint=bytes.fromhex(state.master_fingerprint),
            base_derivation_path=DerivationPath.parse(state.base_derivation_path),
            network=state.config.network,
            key_origin_path=DerivationPath.parse(state.key_origin_path),
            last_sourced_child=state.last_sourced_child,
            context=context,
        )

        wallet = cls.__new__(cls)
        wallet._setup(state.config, keychain, rng=rng, state=state)
        return wallet
