"""
Shared fixtures: a deterministic regtest wallet and an in-memory chain.
"""

import random

import pytest

from hdledger.config import NetworkType, WalletConfig
from hdledger.crypto import hash256
from hdledger.wallet.bip32 import DerivationPath, HDKey
from hdledger.wallet.service import Wallet
from hdledger.wallet.transaction import (
    NULL_TXID,
    Block,
    BlockHeader,
    OutPoint,
    Transaction,
    TxIn,
    TxOut,
    compute_merkle_root,
)

# BIP32 test vector 1 seed
SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
ACCOUNT_PATH = "m/84'/1'/0'"
BASE_PATH = "m/0"
START_HEIGHT = 100
BTC = 100_000_000


class Chain:
    """
    A linear chain of blocks built in memory.

    Blocks are only handed to a wallet through ``mine``; ``extend`` just
    grows the chain, which lets a fake block source serve it.
    """

    foreign_script = bytes.fromhex("0014" + "ab" * 20)

    def __init__(self, start_height: int = START_HEIGHT):
        self._counter = 0
        genesis = Block(
            header=BlockHeader(prev_hash=NULL_TXID, time=self._next()),
            height=start_height,
        )
        self.blocks: dict[int, Block] = {start_height: genesis}
        self.tip = genesis

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    @property
    def height(self) -> int:
        return self.tip.height

    def by_hash(self, block_hash: str) -> Block:
        for block in self.blocks.values():
            if block.hash == block_hash:
                return block
        raise KeyError(block_hash)

    def make_block(self, *txs: Transaction, prev_hash: str | None = None, height=None) -> Block:
        """Build a block on top of the tip without adding it to the chain."""
        return Block(
            header=BlockHeader(
                prev_hash=self.tip.hash if prev_hash is None else prev_hash,
                merkle_root=compute_merkle_root([tx.txid for tx in txs]),
                time=self._next(),
            ),
            transactions=list(txs),
            height=self.height + 1 if height is None else height,
        )

    def extend(self, *txs: Transaction) -> Block:
        block = self.make_block(*txs)
        self.blocks[block.height] = block
        self.tip = block
        return block

    def mine(self, wallet: Wallet, *txs: Transaction) -> Block:
        block = self.extend(*txs)
        wallet.process_block(block)
        return block

    def bootstrap(self, wallet: Wallet) -> None:
        wallet.set_last_block(self.tip.hash, self.height)

    def fake_outpoint(self) -> OutPoint:
        """An outpoint of some transaction the wallet has never seen."""
        return OutPoint(txid=hash256(self._next().to_bytes(8, "big"))[::-1].hex(), vout=0)

    def pay(self, script: bytes, value: int) -> Transaction:
        return Transaction(
            inputs=[TxIn(previous_output=self.fake_outpoint())],
            outputs=[TxOut.from_script(value, script)],
        )

    def pay_wallet(self, wallet: Wallet, value: int) -> Transaction:
        """A transaction paying ``value`` to a fresh receive address of ``wallet``."""
        wallet.new_receive_address()
        child = wallet.last_sourced_child
        return self.pay(wallet.keychain.derive_address(child).script_pubkey, value)

    def spend(self, outpoints: list[OutPoint], script: bytes, value: int) -> Transaction:
        return Transaction(
            inputs=[TxIn(previous_output=outpoint) for outpoint in outpoints],
            outputs=[TxOut.from_script(value, script)],
        )


def make_wallet(seed: int = 42, network: NetworkType = NetworkType.REGTEST) -> Wallet:
    master = HDKey.from_seed(SEED)
    return Wallet(
        config=WalletConfig(network=network),
        extended_pubkey=master.derive(ACCOUNT_PATH).to_extended_public_key(network),
        master_fingerprint=master.fingerprint,
        base_derivation_path=DerivationPath.parse(BASE_PATH),
        key_origin_path=DerivationPath.parse(ACCOUNT_PATH),
        rng=random.Random(seed),
    )


def fund(wallet: Wallet, chain: Chain, values: list[int]) -> list[OutPoint]:
    """Pay each value to a new wallet address, all confirmed in one block."""
    txs = [chain.pay_wallet(wallet, value) for value in values]
    chain.mine(wallet, *txs)
    return [OutPoint(txid=tx.txid, vout=0) for tx in txs]


@pytest.fixture
def master_key() -> HDKey:
    return HDKey.from_seed(SEED)


@pytest.fixture
def chain() -> Chain:
    return Chain()


@pytest.fixture
def wallet() -> Wallet:
    return make_wallet()


@pytest.fixture
def tracking_wallet(wallet: Wallet, chain: Chain) -> Wallet:
    chain.bootstrap(wallet)
    return wallet


@pytest.fixture
def funded_wallet(tracking_wallet: Wallet, chain: Chain) -> Wallet:
    """Five confirmed 1 BTC outputs at children 0 to 4."""
    fund(tracking_wallet, chain, [BTC] * 5)
    return tracking_wallet
