"""
hdledger - watch-only HD wallet core.

Tracks the wallet's UTXOs by following a linear chain of blocks and builds
unsigned funding transactions (PSBTs) for an external signer.
"""

__version__ = "0.1.0"
