"""
Block source and broadcaster implementations.

Available backends:
- BitcoinCoreBackend: Full node via Bitcoin Core RPC (no wallet RPCs)
"""

from hdledger.backends.base import BlockSource, Broadcaster
from hdledger.backends.bitcoin_core import BitcoinCoreBackend

__all__ = [
    "BitcoinCoreBackend",
    "BlockSource",
    "Broadcaster",
]
