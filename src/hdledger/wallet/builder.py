"""
Funding transaction builder.

Builds unsigned transactions paying the requested outputs from wallet UTXOs
and returns them as PSBTs carrying the derivation hints an external signer
needs. Coin selection, change placement and input order are randomized to
resist transaction-graph heuristics; the random source is injected so tests
can seed it.
"""

from __future__ import annotations

import random
from collections.abc import Sequence

from loguru import logger

from hdledger.errors import DuplicateUtxo, InsufficientFunds, UtxoNotInWallet
from hdledger.wallet.address import AddressType
from hdledger.wallet.keychain import KeyDerivationIndex, ScriptIndex
from hdledger.wallet.models import OwnedOutput
from hdledger.wallet.pending import PendingPool
from hdledger.wallet.psbt import Psbt
from hdledger.wallet.transaction import SEQUENCE_FINAL, OutPoint, Transaction, TxIn, TxOut
from hdledger.wallet.utxos import OwnedOutputSet

CHANGE_ADDRESS_TYPE = AddressType.P2WPKH


class TransactionBuilder:
    def __init__(
        self,
        keychain: KeyDerivationIndex,
        script_index: ScriptIndex,
        outputs: OwnedOutputSet,
        pending: PendingPool,
        rng: random.Random | None = None,
    ):
        self.keychain = keychain
        self.script_index = script_index
        self.outputs = outputs
        self.pending = pending
        self.rng = rng if rng is not None else random.SystemRandom()

    def build(
        self,
        outputs: Sequence[TxOut],
        use_inputs: Sequence[OutPoint] = (),
        fee: int = 0,
    ) -> tuple[Psbt, int | None]:
        """
        Build and commit a transaction paying ``outputs`` plus ``fee``.

        ``use_inputs`` are always spent; more wallet UTXOs are drawn at
        random until the outputs and fee are covered. Returns the PSBT and
        the index of the change output, if any.

        Raises:
            UtxoNotInWallet: an explicit input is not owned by the wallet
            DuplicateUtxo: an explicit input is given more than once
            InsufficientFunds: the wallet cannot cover outputs + fee
            DerivationError: a key could not be derived
        """
        change_child = self.keychain.reserve_next_child()
        try:
            psbt, change_index = self._build_with_change(outputs, use_inputs, change_child, fee)
        except Exception:
            self.keychain.rollback_last_reservation()
            raise

        if change_index is None:
            self.keychain.rollback_last_reservation()
        else:
            self.keychain.commit_reservation()
            self.script_index.index(change_child)

        txid = self.pending.add(psbt.unsigned_tx)
        logger.info(
            f"Built transaction {txid}: {len(psbt.unsigned_tx.inputs)} input(s), "
            f"{len(psbt.unsigned_tx.outputs)} output(s), fee {fee} sats"
            + (f", change at output {change_index}" if change_index is not None else "")
        )
        return psbt, change_index

    def drop_pending(self, txid: str) -> bool:
        return self.pending.drop(txid)

    def _select_inputs(
        self, use_inputs: Sequence[OutPoint], target: int
    ) -> tuple[list[OwnedOutput], int]:
        """Explicit inputs first, then uniformly random available UTXOs until ``target``."""
        selected: dict[OutPoint, OwnedOutput] = {}
        total_in = 0

        # Check all given inputs.
        for outpoint in use_inputs:
            utxo = self.outputs.get(outpoint)
            if utxo is None:
                raise UtxoNotInWallet(str(outpoint))
            if outpoint in selected:
                raise DuplicateUtxo(str(outpoint))
            if not utxo.is_available:
                logger.debug(f"Explicit input {outpoint} is already used by a pending transaction")
            selected[outpoint] = utxo
            total_in += utxo.value

        # Add random extra inputs from our own UTXOs until sufficient.
        if total_in < target:
            remaining = self.outputs.available(exclude=selected)
            while total_in < target:
                if not remaining:
                    raise InsufficientFunds(f"need {target} sats, have {total_in} sats")

                utxo = remaining.pop(self.rng.randrange(len(remaining)))
                selected[utxo.outpoint] = utxo
                total_in += utxo.value
                logger.debug(f"Selected {utxo.outpoint} ({utxo.value} sats)")

        return list(selected.values()), total_in

    def _build_with_change(
        self,
        outputs: Sequence[TxOut],
        use_inputs: Sequence[OutPoint],
        change_child: int,
        fee: int,
    ) -> tuple[Psbt, int | None]:
        """Build the PSBT without touching shared state. Returns (psbt, change index)."""
        if fee < 0:
            raise ValueError(f"Fee must not be negative: {fee}")

        tx_outputs = [TxOut(value=out.value, script_pubkey=out.script_pubkey) for out in outputs]
        total_out = sum(out.value for out in tx_outputs)

        selected, total_in = self._select_inputs(use_inputs, total_out + fee)

        # Add change at a random position.
        change_amount = total_in - total_out - fee
        change_index = None
        if change_amount > 0:
            change_address = self.keychain.derive_address(change_child, CHANGE_ADDRESS_TYPE)
            change_index = self.rng.randint(0, len(tx_outputs))
            tx_outputs.insert(
                change_index,
                TxOut.from_script(change_amount, change_address.script_pubkey),
            )

        # Shuffle inputs for privacy
        self.rng.shuffle(selected)

        tx = Transaction(
            version=1,
            inputs=[
                TxIn(previous_output=utxo.outpoint, script_sig="", sequence=SEQUENCE_FINAL)
                for utxo in selected
            ],
            outputs=tx_outputs,
            lock_time=0,
        )

        psbt = Psbt.from_unsigned_tx(tx)
        for psbt_input, utxo in zip(psbt.inputs, selected):
            psbt_input.witness_utxo = self.outputs.previous_output(utxo.outpoint)
            psbt_input.bip32_derivations.append(self.keychain.key_path_hint(utxo.child_number))

        if change_index is not None:
            psbt.outputs[change_index].bip32_derivations.append(
                self.keychain.key_path_hint(change_child)
            )

        return psbt, change_index
