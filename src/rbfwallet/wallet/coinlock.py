"""
Registry of outpoints excluded from automatic coin selection.

Locks live in memory only: a wallet starts with no locked outputs and every
lock is lost when the process exits. Nothing here is ever serialized.
"""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from rbfwallet.wallet.transaction import Outpoint


class CoinLockRegistry:
    """
    Set of manually reserved outpoints.

    Locking and unlocking are idempotent, and outpoints are not checked
    against the UTXO set: a lock on a spent output is simply irrelevant.
    Callers mutate the registry while holding the wallet lock.
    """

    def __init__(self) -> None:
        self._locked: set[Outpoint] = set()

    def lock(self, outpoint: Outpoint) -> None:
        if outpoint not in self._locked:
            self._locked.add(outpoint)
            logger.debug(f"Locked coin {outpoint}")

    def unlock(self, outpoint: Outpoint) -> None:
        if outpoint in self._locked:
            self._locked.discard(outpoint)
            logger.debug(f"Unlocked coin {outpoint}")

    def lock_all(self, outpoints: Iterable[Outpoint]) -> None:
        for outpoint in outpoints:
            self.lock(outpoint)

    def unlock_all(self) -> None:
        if self._locked:
            logger.debug(f"Unlocking all {len(self._locked)} locked coins")
        self._locked.clear()

    def is_locked(self, outpoint: Outpoint) -> bool:
        return outpoint in self._locked

    def list_locked(self) -> list[Outpoint]:
        return sorted(self._locked)

    def __contains__(self, outpoint: object) -> bool:
        return outpoint in self._locked

    def __len__(self) -> int:
        return len(self._locked)
