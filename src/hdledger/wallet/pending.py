"""
Transactions built by the wallet that have not been seen in a block yet.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from loguru import logger

from hdledger.wallet.transaction import Transaction
from hdledger.wallet.utxos import OwnedOutputSet


class PendingPool:
    """
    Pending transactions and the soft reservations they hold.

    Every owned output spent by a pending transaction carries that txid in
    its ``used_in_tx`` set, which keeps it out of coin selection until the
    transaction confirms or is dropped.
    """

    def __init__(self, outputs: OwnedOutputSet, transactions: Iterable[Transaction] = ()):
        self.outputs = outputs
        self._pending: list[tuple[str, Transaction]] = [(tx.txid, tx) for tx in transactions]

    def __len__(self) -> int:
        return len(self._pending)

    def __iter__(self) -> Iterator[Transaction]:
        return (tx for _, tx in self._pending)

    def __contains__(self, txid: object) -> bool:
        return any(pending_txid == txid for pending_txid, _ in self._pending)

    @property
    def transactions(self) -> list[Transaction]:
        return [tx.model_copy(deep=True) for _, tx in self._pending]

    def add(self, tx: Transaction) -> str:
        """
        Commit to the tx by considering the outputs it spends as used in it.
        No check is done to prevent adding the same tx twice.
        """
        # Keep our own copy, the txid must not change under us
        tx = tx.model_copy(deep=True)
        txid = tx.txid
        self.outputs.mark_used(tx.spends(), txid)
        self._pending.append((txid, tx))
        logger.debug(f"Pending transaction {txid} spends {len(tx.inputs)} input(s)")
        return txid

    def drop(self, txid: str) -> bool:
        """
        Drop a pending transaction and free the outputs it was spending.
        Returns whether the transaction was pending.
        """
        released = self.outputs.release(txid)

        before = len(self._pending)
        self._pending = [entry for entry in self._pending if entry[0] != txid]
        removed = len(self._pending) < before

        if removed or released:
            logger.info(f"Dropped pending transaction {txid}, released {released} output(s)")
        return removed

    def reconcile(self, confirmed: Transaction) -> list[str]:
        """
        Update the pool for a transaction seen in a block. The transaction
        itself leaves the pool; pending transactions that spend any of the
        same outputs can never confirm and are dropped. Returns removed txids.
        """
        txid = confirmed.txid
        spent = set(confirmed.spends())
        removed = []

        for pending_txid, tx in list(self._pending):
            if pending_txid == txid:
                logger.info(f"Pending transaction {txid} confirmed")
            elif spent.intersection(tx.spends()):
                logger.warning(
                    f"Pending transaction {pending_txid} conflicts with confirmed {txid}, dropping"
                )
            else:
                continue

            self.outputs.release(pending_txid)
            self._pending = [entry for entry in self._pending if entry[0] != pending_txid]
            removed.append(pending_txid)

        return removed
