"""
Shared fixtures for wallet tests.
"""

from __future__ import annotations

import pytest

from rbfwallet.config import WalletSettings
from rbfwallet.wallet.bip32 import HDKeyPool
from rbfwallet.wallet.service import WalletService
from rbfwallet.wallet.transaction import Transaction, TxOut
from tests.helpers import (
    TEST_MNEMONIC,
    FakeChain,
    change_script,
    fund_wallet,
    payee_script,
    send_from_wallet,
)


@pytest.fixture
def test_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return TEST_MNEMONIC


@pytest.fixture
def settings() -> WalletSettings:
    return WalletSettings(_env_file=None, network="regtest", keypool_size=5, gap_limit=5)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def wallet(test_mnemonic: str, chain: FakeChain, settings: WalletSettings) -> WalletService:
    keypool = HDKeyPool.from_mnemonic(test_mnemonic, settings.network, settings.keypool_size)
    return WalletService(keypool, chain, settings)


@pytest.fixture
def rbf_spend(wallet: WalletService) -> Transaction:
    """1 BTC coin spent to a payee with 10,000 sats of change and a 10,000 sat fee."""
    coin = fund_wallet(wallet, 100_000_000)
    return send_from_wallet(
        wallet,
        [coin],
        [TxOut(99_980_000, payee_script()), TxOut(10_000, change_script(wallet))],
    )
