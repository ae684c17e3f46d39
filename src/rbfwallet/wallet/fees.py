"""
Fee-rate arithmetic, dust thresholds and the fee estimator bridge.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from rbfwallet.constants import (
    COIN,
    INPUT_OVERHEAD_SIZE,
    LEGACY_SPEND_SCRIPT_SIZE,
    WITNESS_SCALE_FACTOR,
)
from rbfwallet.wallet.address import is_unspendable, is_witness_program
from rbfwallet.wallet.transaction import TxOut

if TYPE_CHECKING:
    from rbfwallet.backends.base import FeeEstimator
    from rbfwallet.config import WalletSettings


@dataclass(frozen=True, order=True)
class FeeRate:
    """Fee rate in satoshis per 1000 virtual bytes."""

    sat_per_kvb: int = 0

    def __post_init__(self) -> None:
        if self.sat_per_kvb < 0:
            raise ValueError(f"Fee rate cannot be negative: {self.sat_per_kvb}")

    @classmethod
    def from_fee(cls, fee: int, size: int) -> FeeRate:
        if size <= 0:
            return cls(0)
        return cls(fee * 1000 // size)

    def get_fee(self, size: int) -> int:
        fee = self.sat_per_kvb * size // 1000
        if fee == 0 and size > 0 and self.sat_per_kvb > 0:
            fee = 1
        return fee

    def __add__(self, other: FeeRate) -> FeeRate:
        return FeeRate(self.sat_per_kvb + other.sat_per_kvb)

    def __bool__(self) -> bool:
        return self.sat_per_kvb > 0

    def __str__(self) -> str:
        return f"{self.sat_per_kvb / 1000:.3f} sat/vB"


def format_amount(sats: int) -> str:
    """Satoshis as a decimal BTC string with eight places."""
    sign = "-" if sats < 0 else ""
    sats = abs(sats)
    return f"{sign}{sats // COIN}.{sats % COIN:08d}"


def dust_threshold(txout: TxOut, relay_fee: FeeRate) -> int:
    """
    Smallest output value worth creating at the given relay fee rate.

    An output is dust when spending it would cost more than a third of its
    value: the size of the output plus the size of the input that will
    eventually spend it, paid at three times the relay rate.
    """
    if is_unspendable(txout.script_pubkey):
        return 0

    size = len(txout.serialize())
    if is_witness_program(txout.script_pubkey):
        size += INPUT_OVERHEAD_SIZE + LEGACY_SPEND_SCRIPT_SIZE // WITNESS_SCALE_FACTOR
    else:
        size += INPUT_OVERHEAD_SIZE + LEGACY_SPEND_SCRIPT_SIZE

    return 3 * relay_fee.get_fee(size)


def is_dust(txout: TxOut, relay_fee: FeeRate) -> bool:
    return txout.value < dust_threshold(txout, relay_fee)


class FeeEstimatorBridge:
    """
    Turns a confirmation target or an explicit fee into a fee rate.

    Rate sources, first nonzero wins: the user-configured pay rate, the
    estimator's smart fee for the target, the configured fallback rate.
    """

    def __init__(self, estimator: FeeEstimator, settings: WalletSettings):
        self.estimator = estimator
        self.settings = settings
        self.pay_tx_fee = FeeRate(settings.pay_tx_fee)

    @property
    def min_relay_fee(self) -> FeeRate:
        return FeeRate(self.settings.min_relay_tx_fee)

    @property
    def fallback_fee(self) -> FeeRate:
        return FeeRate(self.settings.fallback_fee)

    @property
    def required_fee_rate(self) -> FeeRate:
        return max(FeeRate(self.settings.min_tx_fee), self.min_relay_fee)

    def set_pay_tx_fee(self, rate: FeeRate) -> None:
        logger.info(f"Pay fee rate set to {rate}")
        self.pay_tx_fee = rate

    def smart_fee(self, conf_target: int) -> FeeRate:
        estimate = self.estimator.estimate_smart_fee(conf_target)
        if estimate is None:
            logger.debug(f"No fee estimate available for {conf_target} blocks")
            return FeeRate(0)
        return estimate

    def target_fee_rate(self, conf_target: int | None = None) -> FeeRate:
        if conf_target is None:
            conf_target = self.settings.tx_confirm_target

        rate = self.pay_tx_fee
        if not rate:
            rate = self.smart_fee(conf_target)
        if not rate:
            rate = self.fallback_fee
            logger.debug(f"Using fallback fee rate {rate}")
        return rate

    def rate_for_total_fee(self, total_fee: int, size: int) -> FeeRate:
        return FeeRate.from_fee(total_fee, size)

    def minimum_fee(self, size: int, conf_target: int | None = None) -> int:
        """Fee a new wallet transaction of ``size`` vbytes should pay."""
        fee = self.target_fee_rate(conf_target).get_fee(size)
        fee = max(fee, self.required_fee_rate.get_fee(size))
        return min(fee, self.settings.max_tx_fee)
