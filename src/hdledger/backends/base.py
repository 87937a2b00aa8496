"""
Interfaces of the wallet's external collaborators.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from hdledger.wallet.transaction import Block


class BlockSource(ABC):
    """
    Supplies validated blocks of a single chain.
    Resolving forks is the source's job; the wallet rejects blocks that do
    not extend its tip.
    """

    @abstractmethod
    async def get_block_count(self) -> int:
        """Get current blockchain height"""

    @abstractmethod
    async def get_block_hash(self, height: int) -> str:
        """Get block hash for given height"""

    @abstractmethod
    async def get_block(self, block_hash: str) -> Block:
        """Get a full block by hash, with its height set"""

    async def close(self) -> None:
        """Close backend connection"""
        pass


class Broadcaster(ABC):
    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast a signed transaction, returns txid"""
