"""
Wallet file persistence.
"""

from __future__ import annotations

import os
import random
from pathlib import Path

from loguru import logger

from hdledger.wallet.models import WalletState
from hdledger.wallet.service import Wallet


def save_wallet(wallet: Wallet, path: Path) -> None:
    """Write the wallet state as JSON, replacing the file atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(wallet.to_state().model_dump_json(indent=2))
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)

    logger.debug(f"Saved wallet to {path}")


def load_wallet(path: Path, rng: random.Random | None = None) -> Wallet:
    if not path.exists():
        raise FileNotFoundError(f"Wallet file not found: {path}")

    state = WalletState.model_validate_json(path.read_text())
    wallet = Wallet.from_state(state, rng=rng)

    logger.debug(
        f"Loaded wallet from {path}: {len(state.owned_outputs)} UTXOs, "
        f"{len(state.pending_transactions)} pending"
    )
    return wallet
