"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from rbfwallet.constants import REPLACED_BY_TXID, REPLACES_TXID
from rbfwallet.wallet.transaction import Outpoint, Transaction, TxOut


class IsMine(int, Enum):
    """How much control the wallet has over a script."""

    NO = 0
    WATCH_UNSOLVABLE = 1
    WATCH_SOLVABLE = 2
    SPENDABLE = 3


@dataclass
class WalletTxRecord:
    """A transaction the wallet sent or received, with wallet-local metadata."""

    tx: Transaction
    time_received: int
    block_height: int | None = None  # None while unconfirmed
    conflicted: bool = False
    abandoned: bool = False
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def txid(self) -> str:
        return self.tx.txid

    def depth(self, tip_height: int) -> int:
        """Confirmations relative to the tip, 0 in the mempool, -1 if conflicted."""
        if self.block_height is not None:
            return max(tip_height - self.block_height + 1, 0)
        if self.conflicted:
            return -1
        return 0

    @property
    def replaced_by(self) -> str | None:
        return self.annotations.get(REPLACED_BY_TXID)

    @property
    def replaces(self) -> str | None:
        return self.annotations.get(REPLACES_TXID)


@dataclass
class WalletCoin:
    """An unspent output the wallet can account for."""

    outpoint: Outpoint
    txout: TxOut
    depth: int
    spendable: bool
    solvable: bool

    @property
    def value(self) -> int:
        return self.txout.value


@dataclass
class AddressBookEntry:
    label: str
    purpose: str = "receive"
