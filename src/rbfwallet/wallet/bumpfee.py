"""
Fee bumping of unconfirmed, replaceable wallet transactions (BIP125).

The replacement spends exactly the same inputs and pays the higher fee out of
the original transaction's own change output.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from rbfwallet.backends.base import Broadcaster
from rbfwallet.constants import REPLACED_BY_TXID, REPLACES_TXID
from rbfwallet.errors import (
    RPC_INVALID_ADDRESS_OR_KEY,
    RPC_INVALID_REQUEST,
    RPC_WALLET_ERROR,
    EconomicError,
    InvalidParameterError,
    InvariantViolation,
    PreconditionError,
    TransactionRejectedError,
    TransactionSigningError,
    WalletError,
)
from rbfwallet.wallet.fees import FeeEstimatorBridge, FeeRate, dust_threshold, format_amount
from rbfwallet.wallet.models import WalletTxRecord
from rbfwallet.wallet.signing import TransactionSigner
from rbfwallet.wallet.state import WalletState
from rbfwallet.wallet.transaction import Transaction, TxOut


class BumpFeeOptions(BaseModel):
    """Optional parameters of a fee bump. Accepts the RPC option names as aliases."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    conf_target: int | None = Field(default=None, alias="confTarget")
    total_fee: int | None = Field(default=None, alias="totalFee")
    # Explicit index of the change output to reduce
    output_index: int | None = Field(default=None, alias="outputIndex")


@dataclass
class BumpFeeResult:
    txid: str
    old_fee: int
    fee: int
    transaction: Transaction


class FeeBumpEngine:
    """Replaces a wallet transaction with a higher-fee version of itself."""

    def __init__(
        self, wallet: WalletState, fee_bridge: FeeEstimatorBridge, broadcaster: Broadcaster
    ):
        self.wallet = wallet
        self.fee_bridge = fee_bridge
        self.broadcaster = broadcaster

    def bump_fee(self, txid: str, options: BumpFeeOptions | None = None) -> BumpFeeResult:
        options = options or BumpFeeOptions()
        wallet = self.wallet

        with wallet.locked():
            record = self._check_replaceable(txid)
            tx = record.tx
            change_index = self._find_change_output(tx, options.output_index)
            conf_target = self._validate_options(options)

            if wallet.has_wallet_spend(txid):
                raise PreconditionError("Transaction has descendants in the wallet")
            if wallet.chain.has_mempool_descendants(txid):
                raise PreconditionError("Transaction has descendants in the mempool")

            # Signatures can vary in size, allow a margin per input
            size = tx.vsize
            max_new_size = size + wallet.settings.signature_size_margin * len(tx.inputs)

            old_fee = wallet.get_debit(tx) - tx.value_out
            old_rate = FeeRate.from_fee(old_fee, size)
            relay_fee = self.fee_bridge.min_relay_fee

            if options.total_fee is not None:
                min_total_fee = old_rate.get_fee(max_new_size) + relay_fee.get_fee(max_new_size)
                if options.total_fee < min_total_fee:
                    raise InvalidParameterError(
                        "Invalid totalFee, must be at least oldFee + relayFee: "
                        f"{format_amount(min_total_fee)}"
                    )
                new_fee = options.total_fee
                new_rate = self.fee_bridge.rate_for_total_fee(new_fee, size)
            else:
                new_rate = self.fee_bridge.target_fee_rate(conf_target)
                # BIP125 requires paying for the replacement's own relay
                floor = old_rate + relay_fee
                if new_rate < floor:
                    new_rate = floor
                new_fee = new_rate.get_fee(max_new_size)

            logger.debug(
                f"Bumping {txid}: size={size} max_size={max_new_size} old_fee={old_fee} "
                f"old_rate={old_rate} new_fee={new_fee} new_rate={new_rate}"
            )

            min_mempool_rate = wallet.chain.get_mempool_min_fee(wallet.settings.max_mempool_bytes)
            if new_rate < min_mempool_rate:
                raise EconomicError(
                    f"New fee rate ({format_amount(new_rate.sat_per_kvb)}) is too low to get "
                    f"into the mempool (min rate: {format_amount(min_mempool_rate.sat_per_kvb)})"
                )

            delta = new_fee - old_fee
            if delta <= 0:
                raise InvariantViolation(f"Fee delta must be positive, got {delta}")

            new_tx = tx.to_mutable()
            change = new_tx.outputs[change_index]
            if change.value < delta:
                raise EconomicError("Change output is too small to bump the fee")

            change = replace(change, value=change.value - delta)
            if change.value <= dust_threshold(change, relay_fee):
                logger.debug("Bumping fee and discarding dust output")
                new_fee += change.value
                del new_tx.outputs[change_index]
            else:
                new_tx.outputs[change_index] = change

            prevouts: list[TxOut] = []
            for inp in new_tx.inputs:
                prevout = wallet.get_prevout(inp.prevout)
                if prevout is None:
                    raise TransactionSigningError("Can't sign transaction.")
                prevouts.append(prevout)
            try:
                TransactionSigner(wallet).sign_transaction(new_tx, prevouts)
            except TransactionSigningError as e:
                logger.warning(f"Signing replacement for {txid} failed: {e.message}")
                raise TransactionSigningError("Can't sign transaction.") from e

            bumped = new_tx.finalize()
            result = self.broadcaster.submit_transaction(bumped)
            if not result.accepted:
                logger.warning(f"Replacement for {txid} rejected: {result.reason}")
                raise TransactionRejectedError(
                    f"Error: The transaction was rejected! Reason given: {result.reason}",
                    code=RPC_WALLET_ERROR,
                )

            wallet.add_transaction(bumped, annotations={REPLACES_TXID: txid})
            if not wallet.mark_replaced(txid, bumped.txid):
                raise WalletError(
                    "Unable to mark the original transaction as replaced.", code=RPC_WALLET_ERROR
                )

            logger.info(f"Bumped {txid} -> {bumped.txid}, fee {old_fee} -> {new_fee} sats")
            return BumpFeeResult(txid=bumped.txid, old_fee=old_fee, fee=new_fee, transaction=bumped)

    def _check_replaceable(self, txid: str) -> WalletTxRecord:
        wallet = self.wallet
        record = wallet.get_transaction(txid)
        if record is None:
            raise PreconditionError(
                "Invalid or non-wallet transaction id", code=RPC_INVALID_ADDRESS_OR_KEY
            )

        if wallet.depth(record) != 0:
            raise PreconditionError(
                "Transaction has been mined, or is conflicted with a mined transaction",
                code=RPC_INVALID_ADDRESS_OR_KEY,
            )

        if not record.tx.signals_rbf():
            raise PreconditionError(
                "Transaction is not BIP 125 replaceable", code=RPC_INVALID_ADDRESS_OR_KEY
            )

        replaced_by = record.annotations.get(REPLACED_BY_TXID)
        if replaced_by:
            raise PreconditionError(
                f"Cannot bump transaction {txid} which was already bumped by "
                f"transaction {replaced_by}",
                code=RPC_INVALID_REQUEST,
            )

        # Foreign inputs have unknown values, so the fee cannot be computed
        if not wallet.is_all_from_me(record.tx):
            raise PreconditionError(
                "Transaction contains inputs that don't belong to this wallet",
                code=RPC_INVALID_ADDRESS_OR_KEY,
            )
        return record

    def _find_change_output(self, tx: Transaction, output_index: int | None) -> int:
        if output_index is not None:
            if output_index < 0 or output_index >= len(tx.outputs):
                raise InvalidParameterError("Output out of bounds")
            if not self.wallet.is_change(tx.outputs[output_index]):
                raise InvalidParameterError("Selected output is not change")
            return output_index

        change_index = -1
        for i, out in enumerate(tx.outputs):
            if self.wallet.is_change(out):
                if change_index != -1:
                    raise PreconditionError("Transaction has multiple change outputs")
                change_index = i
        if change_index == -1:
            raise PreconditionError("Transaction does not have a change output")
        return change_index

    def _validate_options(self, options: BumpFeeOptions) -> int:
        conf_target = self.wallet.settings.tx_confirm_target
        if options.conf_target is not None:
            if options.conf_target <= 0:
                raise InvalidParameterError("Invalid confTarget (cannot be <= 0)")
            conf_target = options.conf_target

        if options.total_fee is not None:
            if options.total_fee <= 0:
                raise InvalidParameterError("Invalid totalFee (cannot be <= 0)")
            if options.total_fee > self.wallet.settings.max_tx_fee:
                raise InvalidParameterError(
                    "Invalid totalFee (cannot be higher than maxTxFee)"
                )
        return conf_target
