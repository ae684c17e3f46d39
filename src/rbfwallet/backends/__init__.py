"""
Services the wallet consumes.

Available backends:
- BitcoinCoreBackend: Full node via Bitcoin Core RPC (no node wallet, uses scantxoutset)
"""

from rbfwallet.backends.base import (
    Broadcaster,
    ChainBackend,
    ChainTransaction,
    FeeEstimator,
    SubmitResult,
    UnspentOutput,
)
from rbfwallet.backends.bitcoin_core import BitcoinCoreBackend

__all__ = [
    "BitcoinCoreBackend",
    "Broadcaster",
    "ChainBackend",
    "ChainTransaction",
    "FeeEstimator",
    "SubmitResult",
    "UnspentOutput",
]
