"""
Block ingestion.

The wallet follows a single linear chain. A block that does not extend the
current tip is rejected with ``BlockFork``; resolving reorgs is up to the
block source.
"""

from __future__ import annotations

from enum import Enum

from loguru import logger

from hdledger.errors import BlockFork, WalletNotFullyInitialized
from hdledger.wallet.models import KnownBlock
from hdledger.wallet.pending import PendingPool
from hdledger.wallet.transaction import Block
from hdledger.wallet.utxos import OwnedOutputSet


class ChainState(str, Enum):
    UNINITIALIZED = "uninitialized"
    TRACKING = "tracking"


class BlockProcessor:
    def __init__(
        self,
        outputs: OwnedOutputSet,
        pending: PendingPool,
        last_known_block: KnownBlock | None = None,
    ):
        self.outputs = outputs
        self.pending = pending
        self._tip = last_known_block

    @property
    def last_known_block(self) -> KnownBlock | None:
        return self._tip

    @property
    def state(self) -> ChainState:
        return ChainState.UNINITIALIZED if self._tip is None else ChainState.TRACKING

    def set_last_block(self, block_hash: str, height: int) -> KnownBlock:
        """
        Set the chain tip the wallet starts following from.

        The tip is not checked against real history. Outputs received before
        this height are never seen by the wallet.
        """
        if self._tip is not None:
            logger.warning(
                f"Overriding last known block {self._tip.height} ({self._tip.hash}), "
                "the wallet may lose track of some of its outputs"
            )
        self._tip = KnownBlock(height=height, hash=block_hash)
        logger.info(f"Tracking chain from block {height} ({block_hash})")
        return self._tip

    def process_block(self, block: Block) -> list[str]:
        """
        Apply a block that extends the current tip. Returns the txids of
        the transactions in it that were relevant to the wallet.
        """
        tip = self._tip
        if tip is None:
            raise WalletNotFullyInitialized()

        new_height = tip.height + 1

        # Ensure the block follows on the last known block.
        if block.prev_hash != tip.hash:
            logger.error(
                f"Block {block.hash} has parent {block.prev_hash}, "
                f"expected {tip.hash} (height {tip.height})"
            )
            raise BlockFork(f"parent {block.prev_hash} does not match tip {tip.hash}")
        if block.height is not None and block.height != new_height:
            logger.error(f"Block {block.hash} has height {block.height}, expected {new_height}")
            raise BlockFork(f"height {block.height} does not extend tip height {tip.height}")

        relevant = []
        for tx in block.transactions:
            if self.outputs.apply(tx, new_height):
                relevant.append(tx.txid)
            if len(self.pending):
                self.pending.reconcile(tx)

        block_hash = block.hash
        self._tip = KnownBlock(height=new_height, hash=block_hash)

        if relevant:
            logger.info(
                f"Block {new_height} ({block_hash}): {len(relevant)} relevant transaction(s)"
            )
        else:
            logger.debug(f"Block {new_height} ({block_hash}): nothing relevant")
        return relevant
