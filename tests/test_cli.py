"""
Tests for the command line interface, with the node replaced by an in-memory chain.
"""

from __future__ import annotations

import json
import sys

import pytest
from loguru import logger
from typer.testing import CliRunner

from rbfwallet import cli
from rbfwallet.constants import EXTERNAL_CHAIN, INTERNAL_CHAIN, MAX_BIP125_RBF_SEQUENCE
from rbfwallet.wallet.address import p2wpkh_script
from rbfwallet.wallet.bip32 import HDKeyPool
from rbfwallet.wallet.fees import FeeRate
from rbfwallet.wallet.keys import encode_wif
from rbfwallet.wallet.signing import EphemeralKeyStore, TransactionSigner
from rbfwallet.wallet.transaction import MutableTransaction, Outpoint, Transaction, TxIn, TxOut
from tests.helpers import TEST_MNEMONIC, FakeChain, external_key, external_outpoint, payee_script

runner = CliRunner()

ENV = {
    "MNEMONIC": TEST_MNEMONIC,
    "RBFWALLET_NETWORK": "regtest",
    "RBFWALLET_LOG_LEVEL": "ERROR",
    "RBFWALLET_KEYPOOL_SIZE": "5",
    "RBFWALLET_GAP_LIMIT": "5",
}


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def chain(monkeypatch) -> FakeChain:
    chain = FakeChain()
    monkeypatch.setattr(cli, "_create_backend", lambda settings: chain)
    return chain


@pytest.fixture
def keypool() -> HDKeyPool:
    return HDKeyPool.from_mnemonic(TEST_MNEMONIC, "regtest", size=5)


def invoke(*args: str):
    return runner.invoke(cli.app, list(args), env=ENV)


def output_json(result) -> dict:
    return json.loads(result.stdout.strip().splitlines()[-1])


def fund_key(chain: FakeChain, keypool: HDKeyPool, value: int = 100_000_000) -> Transaction:
    key = keypool.key_at(EXTERNAL_CHAIN, 0)
    tx = Transaction(
        version=2,
        inputs=(TxIn(prevout=external_outpoint("cli")),),
        outputs=(TxOut(value, p2wpkh_script(key.key_id)),),
    )
    chain.add_transaction(tx, chain.height - 5)
    return tx


class TestEstimateFee:
    def test_estimate(self, chain):
        chain.smart_fee = FeeRate(12_000)
        result = invoke("estimatefee", "--conf-target", "3")
        assert result.exit_code == 0
        assert output_json(result) == {"conf_target": 3, "feerate": 12_000, "required": 1000}

    def test_fallback(self, chain):
        result = invoke("estimatefee")
        assert result.exit_code == 0
        assert output_json(result)["feerate"] == 20_000


class TestBumpFeeCommand:
    def test_bump(self, chain, keypool):
        funding = fund_key(chain, keypool)
        spend = MutableTransaction(
            inputs=[TxIn(prevout=Outpoint(funding.txid, 0), sequence=MAX_BIP125_RBF_SEQUENCE)],
            outputs=[
                TxOut(99_980_000, payee_script()),
                TxOut(10_000, p2wpkh_script(keypool.key_at(INTERNAL_CHAIN, 0).key_id)),
            ],
        )
        signer = TransactionSigner(EphemeralKeyStore([keypool.key_at(EXTERNAL_CHAIN, 0)]))
        signer.sign_transaction(spend, [funding.outputs[0]])
        original = spend.finalize()
        chain.add_transaction(original)

        result = invoke("bumpfee", original.txid)

        assert result.exit_code == 0, result.output
        data = output_json(result)
        assert data["oldfee"] == 10_000
        assert data["fee"] > 10_000
        assert chain.submitted[0].txid == data["txid"]

    def test_unknown_transaction(self, chain):
        result = invoke("bumpfee", "00" * 32)
        assert result.exit_code == 1
        assert chain.submitted == []

    def test_missing_mnemonic(self, chain):
        env = {**ENV, "MNEMONIC": ""}
        result = runner.invoke(cli.app, ["bumpfee", "00" * 32], env=env)
        assert result.exit_code == 1


class TestSweepCommand:
    def test_sweep(self, chain):
        key = external_key("cli-sweep")
        tx = Transaction(
            version=2,
            inputs=(TxIn(prevout=external_outpoint("cli-sweep")),),
            outputs=(TxOut(75_000, p2wpkh_script(key.key_id)),),
        )
        chain.add_transaction(tx, chain.height)

        result = invoke("sweep", encode_wif(key, "regtest"), "--label", "found")

        assert result.exit_code == 0, result.output
        assert output_json(result) == {"txid": chain.submitted[0].txid}

    def test_nothing_to_sweep(self, chain):
        result = invoke("sweep", encode_wif(external_key("empty"), "regtest"))
        assert result.exit_code == 1


class TestFundCommand:
    def test_fund(self, chain, keypool):
        funding = fund_key(chain, keypool)
        skeleton = MutableTransaction(outputs=[TxOut(40_000_000, payee_script())])

        result = invoke("fund", skeleton.to_hex(), "--change-position", "0", "--rbf")

        assert result.exit_code == 0, result.output
        data = output_json(result)
        funded = Transaction.from_hex(data["hex"])
        assert data["changepos"] == 0
        assert [inp.prevout for inp in funded.inputs] == [Outpoint(funding.txid, 0)]
        assert funded.signals_rbf()
        assert data["fee"] == 100_000_000 - funded.value_out

    def test_invalid_hex(self, chain):
        result = invoke("fund", "not-hex")
        assert result.exit_code == 1

    def test_insufficient_funds(self, chain):
        skeleton = MutableTransaction(outputs=[TxOut(40_000_000, payee_script())])
        result = invoke("fund", skeleton.to_hex())
        assert result.exit_code == 1
