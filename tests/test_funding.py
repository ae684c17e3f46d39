"""
Tests for funding caller-built transactions with wallet coins.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from rbfwallet.constants import MAX_BIP125_RBF_SEQUENCE, SEQUENCE_FINAL
from rbfwallet.errors import CoinSelectionError, InvalidParameterError, PreconditionError
from rbfwallet.wallet.address import scriptpubkey_to_address
from rbfwallet.wallet.funding import (
    INSUFFICIENT_FUNDS,
    NO_SOLVABLE_WATCH_ONLY,
    CoinSelector,
    FundOptions,
)
from rbfwallet.wallet.transaction import MutableTransaction, Transaction, TxIn, TxOut
from tests.helpers import external_key, external_outpoint, fund_wallet, payee_script


def skeleton(*values: int) -> MutableTransaction:
    return MutableTransaction(
        outputs=[TxOut(value, payee_script(f"payee-{i}")) for i, value in enumerate(values)]
    )


class CrashingSelector(CoinSelector):
    def select(self, tx, preset_prevouts, candidates, policy):
        raise RuntimeError("selector crashed")


def watch_external(wallet, chain, tag: str, value: int, solvable: bool) -> None:
    """Record a confirmed output to an external key the wallet only watches."""
    key = external_key(tag)
    script = payee_script(tag)
    wallet.state.add_watch_only(script, key.pubkey if solvable else None)
    tx = Transaction(
        version=2,
        inputs=(TxIn(prevout=external_outpoint(tag)),),
        outputs=(TxOut(value, script),),
    )
    chain.add_transaction(tx, chain.height)
    wallet.state.add_transaction(tx, chain.height)


class TestFundTransaction:
    def test_adds_input_and_change(self, wallet):
        coin = fund_wallet(wallet, 100_000_000)
        tx = skeleton(50_000_000)

        result = wallet.fund_transaction(tx, FundOptions(fee_rate=10_000))
        funded = result.transaction

        assert [inp.prevout for inp in funded.inputs] == [coin.outpoint]
        assert len(funded.outputs) == 2
        assert result.change_position in (0, 1)
        change = funded.outputs[result.change_position]
        assert wallet.state.is_change(change)
        assert result.fee == 100_000_000 - funded.value_out
        assert result.fee > 0

        # Added inputs are not signed
        assert funded.inputs[0].witness == ()
        assert funded.inputs[0].script_sig == b""

    def test_caller_transaction_is_untouched(self, wallet):
        fund_wallet(wallet, 100_000_000)
        tx = skeleton(50_000_000)
        wallet.fund_transaction(tx)
        assert tx.inputs == []
        assert len(tx.outputs) == 1

    def test_explicit_change_position(self, wallet):
        fund_wallet(wallet, 100_000_000)
        result = wallet.fund_transaction(
            skeleton(10_000_000, 20_000_000), FundOptions(change_position=1)
        )
        assert result.change_position == 1
        outputs = result.transaction.outputs
        assert outputs[0].value == 10_000_000
        assert outputs[2].value == 20_000_000
        assert wallet.state.is_change(outputs[1])

    def test_change_address(self, wallet):
        fund_wallet(wallet, 100_000_000)
        script = payee_script("elsewhere")
        address = scriptpubkey_to_address(script, "regtest")

        result = wallet.fund_transaction(
            skeleton(50_000_000), FundOptions(change_address=address, change_position=0)
        )
        assert result.transaction.outputs[0].script_pubkey == script

    def test_dust_change_goes_to_fee(self, wallet):
        fund_wallet(wallet, 1_000_000)
        result = wallet.fund_transaction(skeleton(998_500), FundOptions(fee_rate=10_000))
        assert result.change_position == -1
        assert len(result.transaction.outputs) == 1
        assert result.fee == 1_500

    def test_default_sequence_does_not_signal_rbf(self, wallet):
        fund_wallet(wallet, 100_000_000)
        result = wallet.fund_transaction(skeleton(50_000_000))
        assert result.transaction.inputs[0].sequence == SEQUENCE_FINAL - 1
        assert not result.transaction.signals_rbf()

    def test_opt_into_rbf(self, wallet):
        fund_wallet(wallet, 100_000_000)
        result = wallet.fund_transaction(skeleton(50_000_000), FundOptions(opt_into_rbf=True))
        assert result.transaction.inputs[0].sequence == MAX_BIP125_RBF_SEQUENCE

    def test_wallet_rbf_default(self, wallet):
        fund_wallet(wallet, 100_000_000)
        wallet.state.settings = wallet.settings.model_copy(update={"wallet_rbf": True})
        result = wallet.fund_transaction(skeleton(50_000_000))
        assert result.transaction.signals_rbf()

    def test_preset_inputs_are_kept(self, wallet):
        first = fund_wallet(wallet, 100_000_000, tag="first")
        fund_wallet(wallet, 100_000_000, tag="second")
        tx = skeleton(150_000_000)
        tx.inputs.append(TxIn(prevout=first.outpoint))

        result = wallet.fund_transaction(tx)

        inputs = result.transaction.inputs
        assert len(inputs) == 2
        assert inputs[0].prevout == first.outpoint
        # Preset inputs keep their original sequence
        assert inputs[0].sequence == SEQUENCE_FINAL

    def test_unknown_preset_input(self, wallet):
        fund_wallet(wallet, 100_000_000)
        tx = skeleton(50_000_000)
        tx.inputs.append(TxIn(prevout=external_outpoint("unknown")))
        with pytest.raises(PreconditionError, match="not a known wallet output") as e:
            wallet.fund_transaction(tx)
        assert e.value.code == -5

    def test_lock_unspents(self, wallet):
        coin = fund_wallet(wallet, 100_000_000)
        wallet.fund_transaction(skeleton(50_000_000), FundOptions(lock_unspents=True))
        assert wallet.list_lock_unspent() == [coin.outpoint]

        with pytest.raises(CoinSelectionError, match=INSUFFICIENT_FUNDS):
            wallet.fund_transaction(skeleton(50_000_000))

    def test_options_accept_rpc_names(self):
        options = FundOptions.model_validate(
            {"changePosition": 2, "includeWatching": True, "lockUnspents": True, "feeRate": 5000}
        )
        assert options.change_position == 2
        assert options.include_watching
        assert options.lock_unspents
        assert options.fee_rate == 5000

    def test_unknown_option_is_rejected(self):
        with pytest.raises(ValidationError):
            FundOptions.model_validate({"subtractFeeFromOutputs": [0]})


class TestFundTransactionFailures:
    def test_no_outputs(self, wallet):
        with pytest.raises(InvalidParameterError, match="at least one output"):
            wallet.fund_transaction(MutableTransaction())

    @pytest.mark.parametrize("position", [-2, 2])
    def test_change_position_out_of_bounds(self, wallet, position):
        with pytest.raises(InvalidParameterError, match="changePosition out of bounds"):
            wallet.fund_transaction(skeleton(1000), FundOptions(change_position=position))

    def test_invalid_change_address(self, wallet):
        with pytest.raises(InvalidParameterError, match="changeAddress must be a valid"):
            wallet.fund_transaction(skeleton(1000), FundOptions(change_address="nonsense"))

    def test_insufficient_funds(self, wallet):
        fund_wallet(wallet, 100_000_000)
        tx = skeleton(200_000_000)
        with pytest.raises(CoinSelectionError, match=INSUFFICIENT_FUNDS) as e:
            wallet.fund_transaction(tx)
        assert e.value.code == -32603
        assert tx.inputs == []
        assert wallet.list_lock_unspent() == []

    def test_failed_selection_returns_change_key(self, wallet):
        peek = wallet.state.keypool.reserve(internal=True)
        peek.return_key()
        with pytest.raises(CoinSelectionError):
            wallet.fund_transaction(skeleton(1000))
        assert wallet.state.keypool.reserve(internal=True).index == peek.index

    def test_selector_crash_returns_change_key(self, wallet):
        peek = wallet.state.keypool.reserve(internal=True)
        peek.return_key()
        fund_wallet(wallet, 100_000_000)
        wallet.funding.selector = CrashingSelector()

        with pytest.raises(RuntimeError, match="selector crashed"):
            wallet.fund_transaction(skeleton(1000))
        assert wallet.state.keypool.reserve(internal=True).index == peek.index


class TestWatchOnlyFunding:
    def test_unsolvable_watch_only(self, wallet, chain):
        watch_external(wallet, chain, "watched", 100_000_000, solvable=False)
        with pytest.raises(CoinSelectionError, match=NO_SOLVABLE_WATCH_ONLY):
            wallet.fund_transaction(skeleton(50_000_000), FundOptions(include_watching=True))

    def test_watch_only_ignored_by_default(self, wallet, chain):
        watch_external(wallet, chain, "watched", 100_000_000, solvable=True)
        with pytest.raises(CoinSelectionError, match=INSUFFICIENT_FUNDS):
            wallet.fund_transaction(skeleton(50_000_000))

    def test_solvable_watch_only(self, wallet, chain):
        watch_external(wallet, chain, "watched", 100_000_000, solvable=True)
        result = wallet.fund_transaction(
            skeleton(50_000_000), FundOptions(include_watching=True)
        )
        assert len(result.transaction.inputs) == 1
        assert wallet.get_balance() == 0
