"""
Test helpers: an in-memory chain backend and wallet funding shortcuts.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Sequence

from coincurve import PrivateKey

from rbfwallet.backends.base import (
    Broadcaster,
    ChainBackend,
    ChainTransaction,
    FeeEstimator,
    SubmitResult,
    UnspentOutput,
)
from rbfwallet.constants import MAX_BIP125_RBF_SEQUENCE
from rbfwallet.wallet.address import p2wpkh_script
from rbfwallet.wallet.fees import FeeRate
from rbfwallet.wallet.keys import SigningKey
from rbfwallet.wallet.models import WalletCoin
from rbfwallet.wallet.service import WalletService
from rbfwallet.wallet.signing import TransactionSigner
from rbfwallet.wallet.transaction import MutableTransaction, Outpoint, Transaction, TxIn, TxOut

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


def external_key(seed: str) -> SigningKey:
    """Deterministic key that does not belong to the test wallet."""
    return SigningKey(PrivateKey(hashlib.sha256(seed.encode()).digest()))


def external_outpoint(tag: str) -> Outpoint:
    return Outpoint(hashlib.sha256(tag.encode()).hexdigest(), 0)


class FakeChain(ChainBackend, FeeEstimator, Broadcaster):
    """In-memory chain, mempool, fee estimator and acceptance service."""

    def __init__(self, height: int = 100):
        super().__init__()
        self.height = height
        self.transactions: dict[str, tuple[Transaction, int | None]] = {}
        self.utxos: dict[Outpoint, tuple[TxOut, int | None]] = {}
        self.descendants: set[str] = set()
        self.min_fee = FeeRate(0)
        self.smart_fee: FeeRate | None = None
        self.reject_reason: str | None = None
        self.reject_code: int | None = None
        self.submitted: list[Transaction] = []

    def add_transaction(self, tx: Transaction, height: int | None = None) -> None:
        self.transactions[tx.txid] = (tx, height)
        for inp in tx.inputs:
            self.utxos.pop(inp.prevout, None)
        for vout, out in enumerate(tx.outputs):
            self.utxos[Outpoint(tx.txid, vout)] = (out, height)

    def get_block_height(self) -> int:
        return self.height

    def get_transaction(self, txid: str) -> ChainTransaction | None:
        if txid not in self.transactions:
            return None
        tx, height = self.transactions[txid]
        confirmations = self.height - height + 1 if height is not None else 0
        return ChainTransaction(tx=tx, confirmations=confirmations, block_height=height)

    def find_unspent_outputs(self, scripts: Iterable[bytes]) -> list[UnspentOutput]:
        wanted = set(scripts)
        return [
            UnspentOutput(
                outpoint=outpoint,
                txout=txout,
                confirmations=self.height - height + 1 if height is not None else 0,
                height=height,
            )
            for outpoint, (txout, height) in self.utxos.items()
            if txout.script_pubkey in wanted
        ]

    def in_mempool(self, txid: str) -> bool:
        return txid in self.transactions and self.transactions[txid][1] is None

    def has_mempool_descendants(self, txid: str) -> bool:
        return txid in self.descendants

    def get_mempool_min_fee(self, size_limit: int) -> FeeRate:
        return self.min_fee

    def estimate_smart_fee(self, conf_target: int) -> FeeRate | None:
        return self.smart_fee

    def submit_transaction(self, tx: Transaction) -> SubmitResult:
        if self.reject_reason is not None:
            return SubmitResult(
                accepted=False,
                txid=tx.txid,
                reason=self.reject_reason,
                reject_code=self.reject_code,
            )
        self.submitted.append(tx)
        self.add_transaction(tx)
        return SubmitResult(accepted=True, txid=tx.txid)


def fund_wallet(
    wallet: WalletService, value: int, tag: str = "funding", confirmed: bool = True
) -> WalletCoin:
    """Pay ``value`` from an external outpoint to a fresh wallet receive address."""
    chain = wallet.state.chain
    reserved = wallet.state.keypool.reserve()
    reserved.keep()
    wallet.state.set_address_book(reserved.script_pubkey, "", "receive")

    tx = Transaction(
        version=2,
        inputs=(TxIn(prevout=external_outpoint(tag)),),
        outputs=(TxOut(value, reserved.script_pubkey),),
    )
    height = chain.height - 5 if confirmed else None
    chain.add_transaction(tx, height)
    wallet.state.add_transaction(tx, height)
    return WalletCoin(
        outpoint=Outpoint(tx.txid, 0),
        txout=tx.outputs[0],
        depth=6 if confirmed else 0,
        spendable=True,
        solvable=True,
    )


def change_script(wallet: WalletService) -> bytes:
    reserved = wallet.state.keypool.reserve(internal=True)
    reserved.keep()
    return reserved.script_pubkey


def payee_script(tag: str = "payee") -> bytes:
    return p2wpkh_script(external_key(tag).key_id)


def send_from_wallet(
    wallet: WalletService,
    coins: Sequence[WalletCoin],
    outputs: Sequence[TxOut],
    sequence: int = MAX_BIP125_RBF_SEQUENCE,
    extra_inputs: Sequence[Outpoint] = (),
) -> Transaction:
    """Sign a spend of wallet coins, put it in the mempool and record it in the wallet."""
    tx = MutableTransaction(
        inputs=[TxIn(prevout=coin.outpoint, sequence=sequence) for coin in coins]
        + [TxIn(prevout=outpoint, sequence=sequence) for outpoint in extra_inputs],
        outputs=list(outputs),
    )
    if not extra_inputs:
        TransactionSigner(wallet.state).sign_transaction(tx, [coin.txout for coin in coins])
    final = tx.finalize()
    wallet.state.chain.add_transaction(final)
    wallet.state.add_transaction(final)
    return final
