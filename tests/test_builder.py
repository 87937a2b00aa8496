"""
Tests for coin selection and funding transaction construction.
"""

import pytest
from conftest import BTC, Chain, fund, make_wallet

from hdledger.errors import DuplicateUtxo, ErrorKind, InsufficientFunds, UtxoNotInWallet
from hdledger.wallet.service import Wallet
from hdledger.wallet.transaction import SEQUENCE_FINAL, OutPoint, TxOut


def pay(chain: Chain, value: int) -> TxOut:
    return TxOut.from_script(value, chain.foreign_script)


def funded(seed: int, values: list[int]):
    wallet = make_wallet(seed)
    chain = Chain()
    chain.bootstrap(wallet)
    fund(wallet, chain, values)
    return wallet, chain


class TestBuild:
    def test_pays_outputs_with_change(self, funded_wallet, chain):
        psbt, change_index = funded_wallet.create_transaction([pay(chain, 250_000_000)], fee=0)
        tx = psbt.unsigned_tx

        assert change_index in (0, 1)
        assert len(tx.inputs) == 3
        assert len(tx.outputs) == 2
        assert tx.outputs[change_index].value == 50_000_000
        assert tx.outputs[1 - change_index].value == 250_000_000
        assert tx.outputs[1 - change_index].script == chain.foreign_script
        assert funded_wallet.last_sourced_child == 5

    def test_transaction_fields(self, funded_wallet, chain):
        psbt, _ = funded_wallet.create_transaction([pay(chain, BTC)], fee=500)
        tx = psbt.unsigned_tx

        assert tx.version == 1
        assert tx.lock_time == 0
        for inp in tx.inputs:
            assert inp.script_sig == ""
            assert inp.witness == []
            assert inp.sequence == SEQUENCE_FINAL

    def test_value_is_conserved(self, funded_wallet, chain):
        fee = 12_345
        psbt, _ = funded_wallet.create_transaction(
            [pay(chain, 130_000_000), pay(chain, 40_000_000)], fee=fee
        )
        total_in = sum(
            funded_wallet.utxos.get(inp.previous_output).value for inp in psbt.unsigned_tx.inputs
        )
        total_out = sum(out.value for out in psbt.unsigned_tx.outputs)
        assert total_in == total_out + fee

    def test_change_pays_reserved_child(self, funded_wallet, chain):
        psbt, change_index = funded_wallet.create_transaction([pay(chain, BTC // 2)], fee=0)
        change = psbt.unsigned_tx.outputs[change_index]

        assert change.script == funded_wallet.keychain.derive_address(5).script_pubkey
        assert funded_wallet.script_index.lookup(change.script) == 5
        assert psbt.change_outputs() == [change_index]

    def test_requested_order_preserved(self, funded_wallet, chain):
        requested = [pay(chain, 1_000 * (i + 1)) for i in range(4)]
        psbt, change_index = funded_wallet.create_transaction(requested, fee=0)

        outputs = list(psbt.unsigned_tx.outputs)
        outputs.pop(change_index)
        assert outputs == requested

    def test_explicit_inputs_are_spent(self, funded_wallet, chain):
        chosen = funded_wallet.get_utxos()[3].outpoint
        psbt, change_index = funded_wallet.create_transaction(
            [pay(chain, 2 * BTC)], [chosen], fee=0
        )

        spent = psbt.unsigned_tx.spends()
        assert chosen in spent
        assert len(spent) == 2
        assert change_index is None

    def test_no_change_rolls_back_reservation(self, funded_wallet, chain):
        chosen = funded_wallet.get_utxos()[0].outpoint
        psbt, change_index = funded_wallet.create_transaction(
            [pay(chain, BTC - 1_000)], [chosen], fee=1_000
        )

        assert change_index is None
        assert psbt.unsigned_tx.spends() == [chosen]
        assert len(psbt.unsigned_tx.outputs) == 1
        assert psbt.change_outputs() == []
        assert funded_wallet.last_sourced_child == 4

        # The next change output reuses the index that was handed back
        _, change_index = funded_wallet.create_transaction([pay(chain, 1_000)], fee=0)
        assert change_index is not None
        assert funded_wallet.last_sourced_child == 5

    def test_committed_as_pending(self, funded_wallet, chain):
        psbt, _ = funded_wallet.create_transaction([pay(chain, 250_000_000)], fee=0)
        txid = psbt.unsigned_tx.txid

        assert funded_wallet.pending_transactions == [psbt.unsigned_tx]
        for outpoint in psbt.unsigned_tx.spends():
            assert funded_wallet.utxos.get(outpoint).used_in_tx == {txid}
        assert len(funded_wallet.utxos.available()) == 2

    def test_confirmation_credits_change(self, funded_wallet, chain):
        psbt, change_index = funded_wallet.create_transaction([pay(chain, 250_000_000)], fee=0)
        tx = psbt.unsigned_tx

        chain.mine(funded_wallet, tx)

        assert funded_wallet.pending_transactions == []
        assert funded_wallet.get_balance() == 250_000_000
        change = funded_wallet.utxos.get(OutPoint(txid=tx.txid, vout=change_index))
        assert change.value == 50_000_000
        assert change.child_number == 5
        assert all(utxo.is_available for utxo in funded_wallet.get_utxos())


class TestBuildErrors:
    def test_unknown_input(self, funded_wallet, chain):
        unknown = OutPoint(txid="99" * 32, vout=0)
        with pytest.raises(UtxoNotInWallet) as exc_info:
            funded_wallet.create_transaction([pay(chain, BTC)], [unknown], fee=0)

        assert exc_info.value.kind == ErrorKind.UTXO_NOT_IN_WALLET
        assert funded_wallet.last_sourced_child == 4
        assert funded_wallet.pending_transactions == []
        assert len(funded_wallet.utxos.available()) == 5

    def test_duplicate_input(self, funded_wallet, chain):
        chosen = funded_wallet.get_utxos()[0].outpoint
        with pytest.raises(DuplicateUtxo):
            funded_wallet.create_transaction([pay(chain, BTC)], [chosen, chosen], fee=0)
        assert funded_wallet.last_sourced_child == 4

    def test_insufficient_funds(self, funded_wallet, chain):
        with pytest.raises(InsufficientFunds):
            funded_wallet.create_transaction([pay(chain, 5 * BTC)], fee=1)

        assert funded_wallet.last_sourced_child == 4
        assert funded_wallet.pending_transactions == []
        assert len(funded_wallet.utxos.available()) == 5

    def test_negative_fee(self, funded_wallet, chain):
        with pytest.raises(ValueError):
            funded_wallet.create_transaction([pay(chain, BTC)], fee=-1)
        assert funded_wallet.last_sourced_child == 4

    def test_empty_wallet(self, tracking_wallet, chain):
        with pytest.raises(InsufficientFunds):
            tracking_wallet.create_transaction([pay(chain, 1)], fee=0)
        assert tracking_wallet.last_sourced_child is None


class TestSoftReservation:
    def test_pending_inputs_not_reselected(self, funded_wallet, chain):
        funded_wallet.create_transaction([pay(chain, 250_000_000)], fee=0)

        # Balance still counts all five outputs, but only two are selectable
        assert funded_wallet.get_balance() == 5 * BTC
        with pytest.raises(InsufficientFunds):
            funded_wallet.create_transaction([pay(chain, 250_000_000)], fee=0)

    def test_drop_pending_frees_inputs(self, funded_wallet, chain):
        psbt, _ = funded_wallet.create_transaction([pay(chain, 250_000_000)], fee=0)

        assert funded_wallet.drop_pending_transaction(psbt.unsigned_tx.txid)
        assert funded_wallet.pending_transactions == []
        assert len(funded_wallet.utxos.available()) == 5

        psbt, _ = funded_wallet.create_transaction([pay(chain, 250_000_000)], fee=0)
        assert len(psbt.unsigned_tx.inputs) == 3

    def test_explicit_input_may_be_pending(self, funded_wallet, chain):
        psbt, _ = funded_wallet.create_transaction([pay(chain, BTC // 2)], fee=0)
        reused = psbt.unsigned_tx.spends()[0]

        second, _ = funded_wallet.create_transaction([pay(chain, BTC // 2)], [reused], fee=0)
        assert second.unsigned_tx.spends() == [reused]
        assert len(funded_wallet.utxos.get(reused).used_in_tx) == 2

    def test_editing_returned_psbt_keeps_pending_consistent(self, funded_wallet, chain):
        psbt, change_index = funded_wallet.create_transaction([pay(chain, 250_000_000)], fee=0)
        txid = psbt.unsigned_tx.txid
        first_input = psbt.unsigned_tx.spends()[0]

        # The signer side lowers the change to pay a fee
        psbt.unsigned_tx.outputs[change_index].value -= 1_000
        psbt.inputs[0].witness_utxo.value = 1

        restored = Wallet.from_state(funded_wallet.to_state())
        assert [tx.txid for tx in restored.pending_transactions] == [txid]
        for outpoint in psbt.unsigned_tx.spends():
            assert restored.utxos.get(outpoint).used_in_tx == {txid}
        assert restored.utxos.previous_output(first_input).value == BTC

        assert restored.drop_pending_transaction(txid)
        assert restored.pending_transactions == []
        assert len(restored.utxos.available()) == 5

    def test_returned_state_is_detached(self, funded_wallet, chain):
        psbt, _ = funded_wallet.create_transaction([pay(chain, BTC // 2)], fee=0)
        txid = psbt.unsigned_tx.txid

        funded_wallet.pending_transactions[0].outputs.clear()
        funded_wallet.transaction_history[0].outputs.clear()
        for utxo in funded_wallet.get_utxos():
            utxo.used_in_tx.add("ab" * 32)

        assert funded_wallet.pending_transactions[0].txid == txid
        assert funded_wallet.transaction_history[0].outputs
        assert len(funded_wallet.utxos.available()) == 4


class TestRandomization:
    def test_change_position_is_random(self):
        positions = set()
        for seed in range(40):
            wallet, chain = funded(seed, [BTC] * 3)
            _, change_index = wallet.create_transaction(
                [pay(chain, 10_000), pay(chain, 20_000)], fee=0
            )
            positions.add(change_index)
        assert positions == {0, 1, 2}

    def test_selection_is_random(self):
        wallet, chain = funded(7, [BTC] * 5)
        selected = set()
        for _ in range(60):
            psbt, _ = wallet.create_transaction([pay(chain, BTC // 2)], fee=0)
            selected.update(psbt.unsigned_tx.spends())
            wallet.drop_pending_transaction(psbt.unsigned_tx.txid)
        assert selected == {utxo.outpoint for utxo in wallet.get_utxos()}

    def test_seeded_builds_are_reproducible(self):
        first, first_chain = funded(3, [BTC, 2 * BTC, 3 * BTC, 4 * BTC])
        second, second_chain = funded(3, [BTC, 2 * BTC, 3 * BTC, 4 * BTC])
        assert first.get_utxos() == second.get_utxos()

        psbt_a, change_a = first.create_transaction([pay(first_chain, 5 * BTC)], fee=300)
        psbt_b, change_b = second.create_transaction([pay(second_chain, 5 * BTC)], fee=300)
        assert change_a == change_b
        assert psbt_a.serialize() == psbt_b.serialize()
