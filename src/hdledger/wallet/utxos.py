"""
The wallet's UTXO ledger and transaction history.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from loguru import logger

from hdledger.wallet.keychain import ScriptIndex
from hdledger.wallet.models import OwnedOutput
from hdledger.wallet.transaction import OutPoint, Transaction, TxOut


class OwnedOutputSet:
    """
    Owned outputs keyed by outpoint, plus the history of confirmed
    transactions that touched the wallet.

    Outputs are only added and removed by ``apply`` (block processing).
    ``mark_used``/``release`` flip soft reservations without removing anything.
    """

    def __init__(
        self,
        script_index: ScriptIndex,
        outputs: Iterable[OwnedOutput] = (),
        history: Iterable[Transaction] = (),
    ):
        self.script_index = script_index
        self._outputs: dict[OutPoint, OwnedOutput] = {}
        for utxo in outputs:
            if utxo.outpoint in self._outputs:
                raise ValueError(f"Duplicate owned output {utxo.outpoint}")
            self._outputs[utxo.outpoint] = utxo

        self._history: list[Transaction] = []
        self._history_by_txid: dict[str, Transaction] = {}
        for tx in history:
            self._append_history(tx)

    def __len__(self) -> int:
        return len(self._outputs)

    def __iter__(self) -> Iterator[OwnedOutput]:
        return iter(self._outputs.values())

    def __contains__(self, outpoint: object) -> bool:
        return outpoint in self._outputs

    def get(self, outpoint: OutPoint) -> OwnedOutput | None:
        return self._outputs.get(outpoint)

    @property
    def history(self) -> list[Transaction]:
        return list(self._history)

    def _append_history(self, tx: Transaction) -> None:
        self._history.append(tx)
        self._history_by_txid.setdefault(tx.txid, tx)

    def history_transaction(self, txid: str) -> Transaction | None:
        return self._history_by_txid.get(txid)

    def previous_output(self, outpoint: OutPoint) -> TxOut:
        """The output an owned outpoint refers to, taken from the history."""
        prev = self.history_transaction(outpoint.txid)
        if prev is None:
            raise RuntimeError(f"missing history transaction for owned output {outpoint}")
        if outpoint.vout >= len(prev.outputs):
            raise RuntimeError(f"history transaction {outpoint.txid} has no output {outpoint.vout}")
        return prev.outputs[outpoint.vout].model_copy(deep=True)

    def is_relevant(self, tx: Transaction) -> bool:
        """Check if the tx spends one of our outputs or pays to one of our scripts."""
        return any(inp.previous_output in self._outputs for inp in tx.inputs) or any(
            out.script in self.script_index for out in tx.outputs
        )

    def apply(self, tx: Transaction, confirmed_height: int) -> bool:
        """
        Apply a confirmed transaction: remove owned outputs it spends and add
        outputs paying to indexed scripts. Returns whether it was relevant.
        """
        relevant = False
        txid = tx.txid

        # Find if spending any of our own UTXOs.
        for inp in tx.inputs:
            spent = self._outputs.pop(inp.previous_output, None)
            if spent is not None:
                relevant = True
                logger.debug(f"Output {spent.outpoint} ({spent.value} sats) spent by {txid}")

        # Find if sending to any of our own scripts.
        for vout, out in enumerate(tx.outputs):
            child = self.script_index.lookup(out.script)
            if child is None:
                continue

            outpoint = OutPoint(txid=txid, vout=vout)
            self._outputs[outpoint] = OwnedOutput(
                outpoint=outpoint,
                value=out.value,
                height=confirmed_height,
                child_number=child,
            )
            relevant = True
            logger.debug(f"Received {out.value} sats at {outpoint} (child {child})")

        if relevant:
            self._append_history(tx)

        return relevant

    def balance(self, current_height: int, minimum_confirmations: int | None = None) -> int:
        """
        Sum of owned outputs with at least ``minimum_confirmations``
        confirmations (default 1). An output confirmed in the tip block has one.
        """
        minconf = 1 if minimum_confirmations is None else minimum_confirmations
        return sum(
            utxo.value
            for utxo in self._outputs.values()
            if utxo.confirmations(current_height) >= minconf
        )

    def available(self, exclude: Iterable[OutPoint] = ()) -> list[OwnedOutput]:
        """Outputs not used by any pending transaction, in (txid, vout) order."""
        excluded = set(exclude)
        candidates = [
            utxo
            for outpoint, utxo in self._outputs.items()
            if utxo.is_available and outpoint not in excluded
        ]
        return sorted(candidates, key=lambda u: u.outpoint.sort_key())

    def mark_used(self, outpoints: Iterable[OutPoint], txid: str) -> None:
        for outpoint in outpoints:
            utxo = self._outputs.get(outpoint)
            if utxo is not None:
                utxo.used_in_tx.add(txid)

    def release(self, txid: str) -> int:
        """Remove ``txid`` from every output's used set. Returns how many were freed."""
        released = 0
        for utxo in self._outputs.values():
            if txid in utxo.used_in_tx:
                utxo.used_in_tx.discard(txid)
                released += 1
        return released
