"""
Wallet service: one entry point for the fee-bump, sweep and funding operations.
"""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from rbfwallet.backends.base import Broadcaster, ChainBackend, FeeEstimator
from rbfwallet.config import WalletSettings
from rbfwallet.errors import InvalidParameterError
from rbfwallet.wallet.bip32 import HDKeyPool
from rbfwallet.wallet.bumpfee import BumpFeeOptions, BumpFeeResult, FeeBumpEngine
from rbfwallet.wallet.fees import FeeEstimatorBridge, FeeRate
from rbfwallet.wallet.funding import CoinSelector, FundingOrchestrator, FundOptions, FundResult
from rbfwallet.wallet.models import WalletTxRecord
from rbfwallet.wallet.state import WalletState
from rbfwallet.wallet.sweep import SweepEngine
from rbfwallet.wallet.transaction import MutableTransaction, Outpoint, Transaction


class WalletService:
    """
    RBF-capable wallet on top of a chain backend.

    The backend may implement all three service interfaces (as the Bitcoin
    Core backend does); separate estimator and broadcaster can be passed in.
    """

    def __init__(
        self,
        keypool: HDKeyPool,
        chain: ChainBackend,
        settings: WalletSettings,
        estimator: FeeEstimator | None = None,
        broadcaster: Broadcaster | None = None,
        selector: CoinSelector | None = None,
    ):
        estimator = estimator or chain  # type: ignore[assignment]
        broadcaster = broadcaster or chain  # type: ignore[assignment]
        if not isinstance(estimator, FeeEstimator) or not isinstance(broadcaster, Broadcaster):
            raise TypeError("A fee estimator and a broadcaster are required")

        self.settings = settings
        self.state = WalletState(keypool, chain, settings)
        self.fee_bridge = FeeEstimatorBridge(estimator, settings)
        self.bump_engine = FeeBumpEngine(self.state, self.fee_bridge, broadcaster)
        self.sweep_engine = SweepEngine(self.state, self.fee_bridge, broadcaster)
        self.funding = FundingOrchestrator(self.state, self.fee_bridge, selector)

        logger.info(f"Initialized wallet on {settings.network}")

    @classmethod
    def from_mnemonic(
        cls,
        mnemonic: str,
        chain: ChainBackend,
        settings: WalletSettings,
        **kwargs,
    ) -> WalletService:
        keypool = HDKeyPool.from_mnemonic(mnemonic, settings.network, settings.keypool_size)
        return cls(keypool, chain, settings, **kwargs)

    def bump_fee(self, txid: str, options: BumpFeeOptions | None = None) -> BumpFeeResult:
        return self.bump_engine.bump_fee(txid, options)

    def sweep_private_keys(
        self, privkeys: Iterable[str], label: str = "", comment: str = ""
    ) -> str:
        return self.sweep_engine.sweep_private_keys(privkeys, label=label, comment=comment)

    def fund_transaction(
        self, tx: Transaction | MutableTransaction, options: FundOptions | None = None
    ) -> FundResult:
        return self.funding.fund_transaction(tx, options)

    def lock_unspent(self, unlock: bool, outpoints: Iterable[Outpoint] | None = None) -> bool:
        """
        Lock or unlock outpoints for automatic selection.

        With no outpoints, ``unlock=True`` releases every lock and
        ``unlock=False`` does nothing.
        """
        with self.state.locked():
            if outpoints is None:
                if unlock:
                    self.state.coin_locks.unlock_all()
                return True

            outpoints = list(outpoints)
            for outpoint in outpoints:
                if outpoint.vout < 0:
                    raise InvalidParameterError("Invalid parameter, vout must be positive")

            for outpoint in outpoints:
                if unlock:
                    self.state.coin_locks.unlock(outpoint)
                else:
                    self.state.coin_locks.lock(outpoint)
            return True

    def list_lock_unspent(self) -> list[Outpoint]:
        with self.state.locked():
            return self.state.coin_locks.list_locked()

    def abandon_transaction(self, txid: str) -> None:
        self.state.abandon_transaction(txid)

    def set_tx_fee(self, sat_per_kvb: int) -> bool:
        """Set the pay fee rate in sat/kvB, 0 returns to estimation."""
        if sat_per_kvb < 0:
            raise InvalidParameterError("Amount out of range")
        with self.state.locked():
            self.fee_bridge.set_pay_tx_fee(FeeRate(sat_per_kvb))
        return True

    def get_transaction(self, txid: str) -> WalletTxRecord | None:
        return self.state.get_transaction(txid)

    def get_balance(self) -> int:
        with self.state.locked():
            return self.state.get_balance()

    def rescan(self) -> int:
        return self.state.rescan()

    def import_transaction(self, txid: str) -> WalletTxRecord:
        return self.state.import_transaction(txid)

    def close(self) -> None:
        self.state.chain.close()
