"""
Base interfaces for the services the wallet consumes.

The chain backend answers questions about the UTXO set and the mempool, the
fee estimator turns a confirmation target into a fee rate, and the
broadcaster accepts finished transactions into the mempool.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass

from rbfwallet.wallet.fees import FeeRate
from rbfwallet.wallet.transaction import Outpoint, Transaction, TxOut


@dataclass
class UnspentOutput:
    outpoint: Outpoint
    txout: TxOut
    confirmations: int
    height: int | None = None


@dataclass
class ChainTransaction:
    tx: Transaction
    confirmations: int
    block_height: int | None = None


@dataclass
class SubmitResult:
    """Outcome of handing a transaction to the acceptance service."""

    accepted: bool
    txid: str
    reason: str = ""
    # Set for policy/consensus rejections, None for transport-level failures
    reject_code: int | None = None


class ChainBackend(ABC):
    """
    Read access to chain and mempool state.

    ``lock`` serializes access to that shared state. Wallet code always takes
    it before the wallet's own lock.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()

    @abstractmethod
    def get_block_height(self) -> int:
        """Get current blockchain height"""

    @abstractmethod
    def get_transaction(self, txid: str) -> ChainTransaction | None:
        """Get a confirmed or mempool transaction by txid"""

    @abstractmethod
    def find_unspent_outputs(self, scripts: Iterable[bytes]) -> list[UnspentOutput]:
        """Find unspent outputs paying to any of the scripts, in the UTXO set and mempool"""

    @abstractmethod
    def in_mempool(self, txid: str) -> bool:
        """Whether the transaction is currently in the mempool"""

    @abstractmethod
    def has_mempool_descendants(self, txid: str) -> bool:
        """Whether any mempool transaction spends an output of txid"""

    @abstractmethod
    def get_mempool_min_fee(self, size_limit: int) -> FeeRate:
        """Minimum fee rate for mempool admission with a pool limited to size_limit bytes"""

    def close(self) -> None:
        """Close backend connection"""
        pass


class FeeEstimator(ABC):
    @abstractmethod
    def estimate_smart_fee(self, conf_target: int) -> FeeRate | None:
        """Fee rate to confirm within conf_target blocks, None when unavailable"""


class Broadcaster(ABC):
    @abstractmethod
    def submit_transaction(self, tx: Transaction) -> SubmitResult:
        """Submit a signed transaction for mempool acceptance and relay"""
