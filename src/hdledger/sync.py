"""
Chain follower: feeds blocks from a block source into the wallet.
"""

from __future__ import annotations

from collections.abc import Callable

from loguru import logger

from hdledger.backends.base import BlockSource
from hdledger.errors import BlockFork, WalletNotFullyInitialized
from hdledger.wallet.models import KnownBlock
from hdledger.wallet.service import Wallet
from hdledger.wallet.transaction import Block


async def bootstrap_from_source(
    wallet: Wallet, source: BlockSource, height: int | None = None
) -> KnownBlock:
    """Start tracking at ``height`` (default: the source's current tip)."""
    if height is None:
        height = await source.get_block_count()
    block_hash = await source.get_block_hash(height)
    return wallet.set_last_block(block_hash, height)


async def sync_wallet(
    wallet: Wallet,
    source: BlockSource,
    max_blocks: int | None = None,
    on_block: Callable[[Block], None] | None = None,
) -> int:
    """
    Process blocks from the wallet's tip up to the source's tip, one at a
    time. Returns the number of blocks processed.

    Raises:
        WalletNotFullyInitialized: the wallet has no tip yet
        BlockFork: the source's chain no longer contains the wallet's tip
    """
    tip = wallet.last_known_block
    if tip is None:
        raise WalletNotFullyInitialized("set the last known block before syncing")

    target = await source.get_block_count()
    if max_blocks is not None:
        target = min(target, tip.height + max_blocks)

    if target <= tip.height:
        logger.debug(f"Wallet is up to date at height {tip.height}")
        return 0

    logger.info(f"Syncing blocks {tip.height + 1}..{target}")
    processed = 0
    for height in range(tip.height + 1, target + 1):
        block_hash = await source.get_block_hash(height)
        block = await source.get_block(block_hash)
        try:
            wallet.process_block(block)
        except BlockFork:
            logger.error(
                f"Block {height} does not extend the wallet tip; "
                "the chain was reorganized and needs manual recovery"
            )
            raise

        processed += 1
        if on_block is not None:
            on_block(block)

    logger.info(
        f"Sync complete at height {target}: balance {wallet.get_balance():,} sats, "
        f"{len(wallet.get_utxos())} UTXO(s)"
    )
    return processed
