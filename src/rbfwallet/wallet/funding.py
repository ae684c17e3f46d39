"""
Funding of caller-built transactions with wallet coins.

The orchestrator never alters the caller's inputs or outputs: it works on a
copy, appends the selected inputs unsigned, and inserts at most one change
output. Input selection itself is delegated to a :class:`CoinSelector`.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from rbfwallet.constants import MAX_BIP125_RBF_SEQUENCE, SEQUENCE_FINAL
from rbfwallet.errors import (
    RPC_INVALID_ADDRESS_OR_KEY,
    CoinSelectionError,
    InvalidParameterError,
    PreconditionError,
)
from rbfwallet.wallet.address import address_to_scriptpubkey
from rbfwallet.wallet.bip32 import ReservedKey
from rbfwallet.wallet.fees import FeeEstimatorBridge, FeeRate, is_dust
from rbfwallet.wallet.models import WalletCoin
from rbfwallet.wallet.signing import TransactionSigner, apply_signature
from rbfwallet.wallet.state import WalletState
from rbfwallet.wallet.transaction import MutableTransaction, Transaction, TxIn, TxOut

INSUFFICIENT_FUNDS = "Insufficient funds"
NO_SOLVABLE_WATCH_ONLY = "No solvable watch-only inputs"


class FundOptions(BaseModel):
    """Options of a funding call. Accepts the RPC option names as aliases."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    change_address: str | None = Field(default=None, alias="changeAddress")
    # -1 picks a random position
    change_position: int = Field(default=-1, alias="changePosition")
    include_watching: bool = Field(default=False, alias="includeWatching")
    lock_unspents: bool = Field(default=False, alias="lockUnspents")
    # None follows the wallet default
    opt_into_rbf: bool | None = Field(default=None, alias="optIntoRbf")
    # sat/kvB, overrides estimation
    fee_rate: int | None = Field(default=None, ge=0, alias="feeRate")


@dataclass
class FundResult:
    transaction: Transaction
    fee: int
    change_position: int


@dataclass
class SelectionPolicy:
    fee_rate: FeeRate
    change_script: bytes
    dust_relay_fee: FeeRate
    # Provides maximum-size signatures for size estimation
    signer: TransactionSigner
    include_watching: bool = False


@dataclass
class SelectionResult:
    coins: list[WalletCoin] = field(default_factory=list)
    fee: int = 0
    change: TxOut | None = None


class CoinSelector(ABC):
    """Chooses wallet coins to cover a transaction's outputs and fee."""

    @abstractmethod
    def select(
        self,
        tx: MutableTransaction,
        preset_prevouts: Sequence[TxOut],
        candidates: Sequence[WalletCoin],
        policy: SelectionPolicy,
    ) -> SelectionResult:
        """
        Select coins for ``tx``, whose existing inputs spend ``preset_prevouts``.

        Raises:
            CoinSelectionError: with a reason suitable for the caller
        """


class GreedyCoinSelector(CoinSelector):
    """
    Largest-first selection.

    Coins are added until the inputs cover the outputs plus the fee for the
    estimated signed size. Change below the dust threshold goes to the fee.
    """

    def select(
        self,
        tx: MutableTransaction,
        preset_prevouts: Sequence[TxOut],
        candidates: Sequence[WalletCoin],
        policy: SelectionPolicy,
    ) -> SelectionResult:
        usable = [
            coin
            for coin in candidates
            if coin.spendable or (policy.include_watching and coin.solvable)
        ]
        unsolvable_watch_only = policy.include_watching and any(
            not coin.spendable and not coin.solvable for coin in candidates
        )
        usable.sort(key=lambda c: (-c.value, c.outpoint))

        target = tx.value_out
        preset_value = sum(out.value for out in preset_prevouts)
        selected: list[WalletCoin] = []
        remaining = iter(usable)

        while True:
            total_in = preset_value + sum(coin.value for coin in selected)
            prevouts = [*preset_prevouts, *(coin.txout for coin in selected)]

            fee_no_change = policy.fee_rate.get_fee(
                self._estimate_vsize(tx, selected, prevouts, policy, None)
            )
            if (tx.inputs or selected) and total_in >= target + fee_no_change:
                change = TxOut(0, policy.change_script)
                fee_with_change = policy.fee_rate.get_fee(
                    self._estimate_vsize(tx, selected, prevouts, policy, change)
                )
                change_value = total_in - target - fee_with_change
                change = TxOut(change_value, policy.change_script)
                if change_value > 0 and not is_dust(change, policy.dust_relay_fee):
                    return SelectionResult(coins=selected, fee=fee_with_change, change=change)
                return SelectionResult(coins=selected, fee=total_in - target, change=None)

            coin = next(remaining, None)
            if coin is None:
                reason = NO_SOLVABLE_WATCH_ONLY if unsolvable_watch_only else INSUFFICIENT_FUNDS
                raise CoinSelectionError(reason)
            selected.append(coin)

    @staticmethod
    def _estimate_vsize(
        tx: MutableTransaction,
        selected: Sequence[WalletCoin],
        prevouts: Sequence[TxOut],
        policy: SelectionPolicy,
        change: TxOut | None,
    ) -> int:
        trial = tx.copy()
        trial.inputs.extend(TxIn(prevout=coin.outpoint) for coin in selected)
        if change is not None:
            trial.outputs.append(change)
        for i, prevout in enumerate(prevouts):
            sigdata = policy.signer.estimate_signature_data(prevout.script_pubkey)
            if sigdata is not None:
                apply_signature(trial, i, sigdata)
        return trial.vsize


class FundingOrchestrator:
    """Adds wallet inputs and change to a transaction skeleton, without signing."""

    def __init__(
        self,
        wallet: WalletState,
        fee_bridge: FeeEstimatorBridge,
        selector: CoinSelector | None = None,
    ):
        self.wallet = wallet
        self.fee_bridge = fee_bridge
        self.selector = selector or GreedyCoinSelector()

    def fund_transaction(
        self, tx: Transaction | MutableTransaction, options: FundOptions | None = None
    ) -> FundResult:
        """
        Fund a copy of ``tx``. The caller's transaction is never modified.

        Returns:
            The funded transaction, the fee it pays and the change position
            (-1 when no change output was added)
        """
        options = options or FundOptions()
        wallet = self.wallet

        if not tx.outputs:
            raise InvalidParameterError("TX must have at least one output")

        change_position = options.change_position
        if change_position != -1 and not 0 <= change_position <= len(tx.outputs):
            raise InvalidParameterError("changePosition out of bounds")

        change_script = None
        if options.change_address is not None:
            try:
                change_script = address_to_scriptpubkey(options.change_address)
            except ValueError as e:
                raise InvalidParameterError(
                    "changeAddress must be a valid bitcoin address"
                ) from e

        working = MutableTransaction(
            version=tx.version,
            inputs=list(tx.inputs),
            outputs=list(tx.outputs),
            locktime=tx.locktime,
        )

        with wallet.locked():
            preset_prevouts: list[TxOut] = []
            for inp in working.inputs:
                prevout = wallet.get_prevout(inp.prevout)
                if prevout is None:
                    raise PreconditionError(
                        f"Input {inp.prevout} is not a known wallet output",
                        code=RPC_INVALID_ADDRESS_OR_KEY,
                    )
                preset_prevouts.append(prevout)

            preset = {inp.prevout for inp in working.inputs}
            candidates = [
                coin
                for coin in wallet.available_coins(options.include_watching)
                if coin.outpoint not in preset
            ]

            reserved: ReservedKey | None = None
            if change_script is None:
                reserved = wallet.keypool.reserve(internal=True)
                change_script = reserved.script_pubkey

            policy = SelectionPolicy(
                fee_rate=self._fee_rate(options),
                change_script=change_script,
                dust_relay_fee=self.fee_bridge.min_relay_fee,
                signer=TransactionSigner(wallet),
                include_watching=options.include_watching,
            )
            logger.debug(
                f"Funding {len(working.outputs)} outputs ({working.value_out} sats) from "
                f"{len(candidates)} candidate coins at {policy.fee_rate}"
            )

            try:
                selection = self.selector.select(working, preset_prevouts, candidates, policy)
            except Exception as e:
                logger.warning(f"Coin selection failed: {e}")
                if reserved is not None:
                    reserved.return_key()
                raise

            sequence = self._input_sequence(options)
            for coin in selection.coins:
                working.inputs.append(TxIn(prevout=coin.outpoint, sequence=sequence))

            if selection.change is not None:
                if change_position == -1:
                    change_position = random.randint(0, len(working.outputs))
                working.outputs.insert(change_position, selection.change)
                if reserved is not None:
                    reserved.keep()
            else:
                change_position = -1
                if reserved is not None:
                    reserved.return_key()

            if options.lock_unspents:
                wallet.coin_locks.lock_all(coin.outpoint for coin in selection.coins)

        logger.info(
            f"Funded transaction with {len(selection.coins)} inputs, fee {selection.fee} sats, "
            f"change position {change_position}"
        )
        return FundResult(
            transaction=working.finalize(), fee=selection.fee, change_position=change_position
        )

    def _fee_rate(self, options: FundOptions) -> FeeRate:
        if options.fee_rate is not None:
            return FeeRate(options.fee_rate)
        return max(self.fee_bridge.target_fee_rate(), self.fee_bridge.required_fee_rate)

    def _input_sequence(self, options: FundOptions) -> int:
        rbf = options.opt_into_rbf
        if rbf is None:
            rbf = self.wallet.settings.wallet_rbf
        # One below final keeps nLockTime enforced without signalling replaceability
        return MAX_BIP125_RBF_SEQUENCE if rbf else SEQUENCE_FINAL - 1
