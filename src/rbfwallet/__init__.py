"""
rbfwallet - Replace-by-fee wallet operations

Fee bumping of unconfirmed wallet transactions, sweeping of external private
keys and funding of raw transactions with wallet coins.
"""

__version__ = "0.1.0"

from rbfwallet.config import WalletSettings, get_settings
from rbfwallet.errors import (
    CoinSelectionError,
    EconomicError,
    InvalidParameterError,
    InvariantViolation,
    PreconditionError,
    TransactionRejectedError,
    TransactionSigningError,
    WalletError,
)
from rbfwallet.wallet.bumpfee import BumpFeeOptions, BumpFeeResult
from rbfwallet.wallet.fees import FeeRate
from rbfwallet.wallet.funding import FundOptions, FundResult
from rbfwallet.wallet.service import WalletService

__all__ = [
    "BumpFeeOptions",
    "BumpFeeResult",
    "CoinSelectionError",
    "EconomicError",
    "FeeRate",
    "FundOptions",
    "FundResult",
    "InvalidParameterError",
    "InvariantViolation",
    "PreconditionError",
    "TransactionRejectedError",
    "TransactionSigningError",
    "WalletError",
    "WalletService",
    "WalletSettings",
    "get_settings",
]
