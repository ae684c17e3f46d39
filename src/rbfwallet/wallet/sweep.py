"""
Sweeping funds controlled by externally supplied private keys into the wallet.

The keys are only held in an :class:`EphemeralKeyStore` for the duration of
the call and are never added to the wallet's own key storage.
"""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from rbfwallet.backends.base import Broadcaster
from rbfwallet.constants import COMMENT
from rbfwallet.errors import (
    RPC_INVALID_PARAMETER,
    RPC_MISC_ERROR,
    RPC_TRANSACTION_ERROR,
    RPC_VERIFY_REJECTED,
    RPC_WALLET_INSUFFICIENT_FUNDS,
    EconomicError,
    InvalidParameterError,
    InvariantViolation,
    TransactionRejectedError,
    TransactionSigningError,
)
from rbfwallet.wallet.fees import FeeEstimatorBridge, is_dust
from rbfwallet.wallet.keys import decode_wif
from rbfwallet.wallet.signing import EphemeralKeyStore, TransactionSigner
from rbfwallet.wallet.state import WalletState
from rbfwallet.wallet.transaction import MutableTransaction, TxIn, TxOut

# Output value only decreases between rounds, in practice two rounds suffice
MAX_SWEEP_ITERATIONS = 32


class SweepEngine:
    """Consolidates every output paying to a set of keys into one wallet output."""

    def __init__(
        self, wallet: WalletState, fee_bridge: FeeEstimatorBridge, broadcaster: Broadcaster
    ):
        self.wallet = wallet
        self.fee_bridge = fee_bridge
        self.broadcaster = broadcaster

    def sweep_private_keys(
        self, privkeys: Iterable[str], label: str = "", comment: str = ""
    ) -> str:
        """
        Sweep all unspent outputs of the given WIF keys to a fresh wallet address.

        Args:
            privkeys: WIF-encoded private keys
            label: Address book label for the receiving address
            comment: Stored on the wallet record of the sweep transaction

        Returns:
            txid of the accepted sweep transaction
        """
        key_store = EphemeralKeyStore()
        search_scripts: set[bytes] = set()
        for wif in privkeys:
            try:
                key = decode_wif(wif)
            except ValueError as e:
                raise InvalidParameterError(str(e), code=RPC_INVALID_PARAMETER) from e
            key_store.add_key(key)
            search_scripts.update(key.scripts())

        try:
            with self.wallet.locked():
                return self._sweep(key_store, search_scripts, label, comment)
        finally:
            key_store.clear()

    def _sweep(
        self, key_store: EphemeralKeyStore, search_scripts: set[bytes], label: str, comment: str
    ) -> str:
        wallet = self.wallet

        utxos = wallet.chain.find_unspent_outputs(search_scripts)
        tx = MutableTransaction()
        prevouts: list[TxOut] = []
        total_in = 0
        for utxo in sorted(utxos, key=lambda u: u.outpoint):
            if utxo.outpoint in wallet.coin_locks:
                logger.debug(f"Skipping locked coin {utxo.outpoint}")
                continue
            tx.inputs.append(TxIn(prevout=utxo.outpoint))
            prevouts.append(utxo.txout)
            total_in += utxo.txout.value

        if total_in == 0:
            raise EconomicError("No value to sweep", code=RPC_WALLET_INSUFFICIENT_FUNDS)

        reserved = wallet.keypool.reserve()
        try:
            tx.outputs.append(TxOut(total_in, reserved.script_pubkey))
            self._converge_fee(tx, prevouts, key_store, total_in)

            swept = tx.finalize()
            result = self.broadcaster.submit_transaction(swept)
            if not result.accepted:
                logger.warning(f"Sweep transaction {swept.txid} rejected: {result.reason}")
                if result.reject_code is not None:
                    raise TransactionRejectedError(f"{result.reject_code}: {result.reason}")
                raise TransactionRejectedError(result.reason, code=RPC_TRANSACTION_ERROR)
        except Exception:
            reserved.return_key()
            raise

        reserved.keep()
        wallet.set_address_book(reserved.script_pubkey, label, "receive")
        wallet.add_transaction(swept, annotations={COMMENT: comment} if comment else None)

        logger.info(
            f"Swept {total_in} sats from {len(tx.inputs)} outputs in {swept.txid}, "
            f"fee {total_in - swept.value_out} sats"
        )
        return swept.txid

    def _converge_fee(
        self,
        tx: MutableTransaction,
        prevouts: list[TxOut],
        key_store: EphemeralKeyStore,
        total_in: int,
    ) -> None:
        """Lower the single output until it covers the fee for the signed size."""
        signer = TransactionSigner(key_store)
        relay_fee = self.fee_bridge.min_relay_fee

        for _ in range(MAX_SWEEP_ITERATIONS):
            if is_dust(tx.outputs[0], relay_fee):
                raise EconomicError("Swept value would be dust", code=RPC_VERIFY_REJECTED)

            try:
                signer.sign_transaction(tx, prevouts)
            except TransactionSigningError as e:
                logger.warning(f"Sweep signing failed: {e.message}")
                raise TransactionSigningError("Failed to sign", code=RPC_MISC_ERROR) from e

            fee_needed = self.fee_bridge.minimum_fee(tx.vsize)
            total_out = tx.outputs[0].value
            logger.debug(f"Sweep: vsize={tx.vsize} fee_needed={fee_needed} out={total_out}")
            if fee_needed <= total_in - total_out:
                return
            tx.outputs[0] = TxOut(total_in - fee_needed, tx.outputs[0].script_pubkey)

        raise InvariantViolation(f"Sweep fee did not converge in {MAX_SWEEP_ITERATIONS} rounds")
