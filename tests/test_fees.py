"""
Tests for fee-rate arithmetic, dust thresholds and the fee estimator bridge.
"""

from __future__ import annotations

import pytest

from rbfwallet.wallet.address import p2pkh_script, p2wpkh_script
from rbfwallet.wallet.fees import (
    FeeEstimatorBridge,
    FeeRate,
    dust_threshold,
    format_amount,
    is_dust,
)
from rbfwallet.wallet.transaction import TxOut
from tests.helpers import FakeChain

RELAY = FeeRate(1000)


class TestFeeRate:
    def test_get_fee(self):
        assert FeeRate(1000).get_fee(250) == 250
        assert FeeRate(1500).get_fee(333) == 499

    def test_minimum_one_sat(self):
        assert FeeRate(1).get_fee(10) == 1
        assert FeeRate(0).get_fee(10) == 0

    def test_from_fee_rounds_down(self):
        assert FeeRate.from_fee(10_000, 141) == FeeRate(70_921)
        assert FeeRate.from_fee(100, 0) == FeeRate(0)

    def test_from_fee_never_overshoots(self):
        rate = FeeRate.from_fee(10_000, 141)
        assert rate.get_fee(141) <= 10_000

    def test_add_and_compare(self):
        assert FeeRate(1000) + FeeRate(500) == FeeRate(1500)
        assert FeeRate(1000) < FeeRate(1001)
        assert max(FeeRate(3), FeeRate(7)) == FeeRate(7)

    def test_negative_rate(self):
        with pytest.raises(ValueError):
            FeeRate(-1)

    def test_str(self):
        assert str(FeeRate(1500)) == "1.500 sat/vB"


class TestFormatAmount:
    @pytest.mark.parametrize(
        "sats,expected",
        [
            (0, "0.00000000"),
            (10_212, "0.00010212"),
            (150_000_000, "1.50000000"),
            (-5, "-0.00000005"),
        ],
    )
    def test_format(self, sats, expected):
        assert format_amount(sats) == expected


class TestDust:
    def test_p2wpkh_threshold(self):
        assert dust_threshold(TxOut(0, p2wpkh_script(b"\x00" * 20)), RELAY) == 294

    def test_p2pkh_threshold(self):
        assert dust_threshold(TxOut(0, p2pkh_script(b"\x00" * 20)), RELAY) == 546

    def test_op_return_is_never_dust(self):
        assert dust_threshold(TxOut(0, b"\x6a\x00"), RELAY) == 0

    def test_is_dust_is_strict(self):
        script = p2wpkh_script(b"\x00" * 20)
        assert is_dust(TxOut(293, script), RELAY)
        assert not is_dust(TxOut(294, script), RELAY)

    def test_threshold_scales_with_relay_fee(self):
        script = p2wpkh_script(b"\x00" * 20)
        assert dust_threshold(TxOut(0, script), FeeRate(3000)) == 882
        assert dust_threshold(TxOut(0, script), FeeRate(0)) == 0


class TestFeeEstimatorBridge:
    @pytest.fixture
    def chain(self) -> FakeChain:
        return FakeChain()

    @pytest.fixture
    def bridge(self, chain, settings) -> FeeEstimatorBridge:
        return FeeEstimatorBridge(chain, settings)

    def test_fallback_without_estimate(self, bridge, settings):
        assert bridge.target_fee_rate() == FeeRate(settings.fallback_fee)

    def test_estimate_is_used(self, bridge, chain):
        chain.smart_fee = FeeRate(12_345)
        assert bridge.target_fee_rate(2) == FeeRate(12_345)

    def test_pay_fee_overrides_estimate(self, bridge, chain):
        chain.smart_fee = FeeRate(12_345)
        bridge.set_pay_tx_fee(FeeRate(4_000))
        assert bridge.target_fee_rate() == FeeRate(4_000)

    def test_required_rate(self, bridge, settings):
        assert bridge.required_fee_rate == FeeRate(1000)
        bridge.settings = settings.model_copy(update={"min_tx_fee": 2000})
        assert bridge.required_fee_rate == FeeRate(2000)

    def test_minimum_fee_respects_required_rate(self, bridge, chain):
        chain.smart_fee = FeeRate(100)
        assert bridge.minimum_fee(200) == 200

    def test_minimum_fee_is_capped(self, bridge, settings):
        bridge.set_pay_tx_fee(FeeRate(10**9))
        assert bridge.minimum_fee(1000) == settings.max_tx_fee

    def test_rate_for_total_fee(self, bridge):
        assert bridge.rate_for_total_fee(1000, 250) == FeeRate(4000)
