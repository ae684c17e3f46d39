"""
Wallet state shared by the fee-bump, sweep and funding engines.

Holds the transaction record index, the key pool, the address book, watch-only
scripts and the coin-lock registry. Every mutating entry point runs inside
:meth:`WalletState.locked`, which takes the chain lock before the wallet lock.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from loguru import logger

from rbfwallet.constants import EXTERNAL_CHAIN, INTERNAL_CHAIN, REPLACED_BY_TXID
from rbfwallet.errors import RPC_INVALID_ADDRESS_OR_KEY, PreconditionError, WalletError
from rbfwallet.wallet.address import ScriptType, classify_script, hash160, p2wpkh_script
from rbfwallet.wallet.coinlock import CoinLockRegistry
from rbfwallet.wallet.keys import SigningKey
from rbfwallet.wallet.models import AddressBookEntry, IsMine, WalletCoin, WalletTxRecord
from rbfwallet.wallet.signing import SigningProvider, TransactionSigner
from rbfwallet.wallet.transaction import Outpoint, Transaction, TxOut

if TYPE_CHECKING:
    from rbfwallet.backends.base import ChainBackend, UnspentOutput
    from rbfwallet.config import WalletSettings
    from rbfwallet.wallet.bip32 import HDKeyPool


class WalletState(SigningProvider):
    """
    In-memory wallet owned by the caller.

    Acts as the wallet-backed signing provider: keys come from the HD key pool,
    public keys of solvable watch-only scripts come from the watch-only set.
    """

    def __init__(self, keypool: HDKeyPool, chain: ChainBackend, settings: WalletSettings):
        self.keypool = keypool
        self.chain = chain
        self.settings = settings
        self.lock = threading.RLock()
        self.coin_locks = CoinLockRegistry()

        self.records: dict[str, WalletTxRecord] = {}
        self.address_book: dict[bytes, AddressBookEntry] = {}
        # script -> public key, None when the script cannot be solved
        self._watch_only: dict[bytes, bytes | None] = {}
        # outpoint -> txids of wallet transactions spending it
        self._spends: dict[Outpoint, set[str]] = {}

    @contextmanager
    def locked(self) -> Iterator[WalletState]:
        """Hold the chain lock, then the wallet lock."""
        with self.chain.lock:
            with self.lock:
                yield self

    # Keys

    def get_key(self, key_id: bytes) -> SigningKey | None:
        return self.keypool.get_key(key_id)

    def get_pubkey(self, key_id: bytes) -> bytes | None:
        key = self.get_key(key_id)
        if key is not None:
            return key.pubkey
        for pubkey in self._watch_only.values():
            if pubkey is not None and hash160(pubkey) == key_id:
                return pubkey
        return None

    def add_watch_only(self, script: bytes, pubkey: bytes | None = None) -> None:
        with self.lock:
            self._watch_only[script] = pubkey
            logger.debug(f"Watching script {script.hex()} (solvable={pubkey is not None})")

    # Ownership

    def is_mine(self, script: bytes) -> IsMine:
        script_type, solution = classify_script(script)

        key = None
        if script_type in (ScriptType.P2PKH, ScriptType.P2WPKH):
            key = self.get_key(solution)
        elif script_type == ScriptType.P2PK:
            key = self.get_key(hash160(solution))
            if key is not None and key.pubkey != solution:
                key = None
        if key is not None and (key.compressed or script_type != ScriptType.P2WPKH):
            return IsMine.SPENDABLE

        if script in self._watch_only:
            if TransactionSigner(self).estimate_signature_data(script) is not None:
                return IsMine.WATCH_SOLVABLE
            return IsMine.WATCH_UNSOLVABLE
        return IsMine.NO

    def is_change(self, txout: TxOut) -> bool:
        """A spendable output whose script was never given out as an address."""
        if self.is_mine(txout.script_pubkey) != IsMine.SPENDABLE:
            return False
        return txout.script_pubkey not in self.address_book

    def set_address_book(self, script: bytes, label: str, purpose: str = "receive") -> None:
        with self.lock:
            self.address_book[script] = AddressBookEntry(label=label, purpose=purpose)

    def del_address_book(self, script: bytes) -> None:
        with self.lock:
            self.address_book.pop(script, None)

    # Transaction records

    def add_transaction(
        self,
        tx: Transaction,
        block_height: int | None = None,
        annotations: dict[str, str] | None = None,
    ) -> WalletTxRecord:
        """Insert or refresh a record. Keys paid by its outputs leave the pool."""
        with self.lock:
            record = self.records.get(tx.txid)
            is_new = record is None
            if record is None:
                record = WalletTxRecord(tx=tx, time_received=int(time.time()))
                self.records[tx.txid] = record
                for inp in tx.inputs:
                    self._spends.setdefault(inp.prevout, set()).add(tx.txid)
                logger.debug(f"Added wallet transaction {tx.txid}")

            moved = block_height is not None and record.block_height != block_height
            if moved:
                record.block_height = block_height
            if is_new or moved:
                self._update_conflicts()
            if annotations:
                record.annotations.update(annotations)

            for out in tx.outputs:
                script_type, solution = classify_script(out.script_pubkey)
                if script_type in (ScriptType.P2PKH, ScriptType.P2WPKH):
                    self.keypool.mark_used(solution)
            return record

    def _update_conflicts(self) -> None:
        """
        Flag unconfirmed records that spend an outpoint also spent by a confirmed
        record, together with their unconfirmed descendants. Flags of records
        whose conflicting spend has left the chain are cleared.
        """
        confirmed_spends: dict[Outpoint, str] = {}
        for record in self.records.values():
            if record.block_height is not None:
                for inp in record.tx.inputs:
                    confirmed_spends[inp.prevout] = record.txid

        conflicted = {
            txid
            for txid, record in self.records.items()
            if record.block_height is None
            and any(confirmed_spends.get(inp.prevout, txid) != txid for inp in record.tx.inputs)
        }
        todo = list(conflicted)
        while todo:
            current = self.records[todo.pop()]
            for vout in range(len(current.tx.outputs)):
                for child in self._spends.get(Outpoint(current.txid, vout), ()):
                    if child not in conflicted and self.records[child].block_height is None:
                        conflicted.add(child)
                        todo.append(child)

        for txid, record in self.records.items():
            is_conflicted = txid in conflicted
            if is_conflicted != record.conflicted:
                state = "conflicted" if is_conflicted else "no longer conflicted"
                logger.info(f"Transaction {txid} is {state}")
                record.conflicted = is_conflicted

    def get_transaction(self, txid: str) -> WalletTxRecord | None:
        return self.records.get(txid)

    def depth(self, record: WalletTxRecord) -> int:
        return record.depth(self.chain.get_block_height())

    def get_prevout(self, outpoint: Outpoint) -> TxOut | None:
        record = self.records.get(outpoint.txid)
        if record is None or outpoint.vout >= len(record.tx.outputs):
            return None
        return record.tx.outputs[outpoint.vout]

    def get_debit(self, tx: Transaction, min_mine: IsMine = IsMine.SPENDABLE) -> int:
        """Total value of the inputs spending wallet outputs at or above ``min_mine``."""
        debit = 0
        for inp in tx.inputs:
            prevout = self.get_prevout(inp.prevout)
            if prevout is not None and self.is_mine(prevout.script_pubkey) >= min_mine:
                debit += prevout.value
        return debit

    def is_all_from_me(self, tx: Transaction, min_mine: IsMine = IsMine.SPENDABLE) -> bool:
        for inp in tx.inputs:
            prevout = self.get_prevout(inp.prevout)
            if prevout is None or self.is_mine(prevout.script_pubkey) < min_mine:
                return False
        return True

    def has_wallet_spend(self, txid: str) -> bool:
        """Whether any wallet transaction spends an output of txid."""
        return any(
            outpoint.txid == txid and spenders for outpoint, spenders in self._spends.items()
        )

    def is_spent(self, outpoint: Outpoint) -> bool:
        tip = self.chain.get_block_height()
        for txid in self._spends.get(outpoint, ()):
            record = self.records[txid]
            if not record.abandoned and record.depth(tip) >= 0:
                return True
        return False

    def is_trusted(self, record: WalletTxRecord, tip: int) -> bool:
        depth = record.depth(tip)
        if depth >= 1:
            return True
        if depth < 0 or record.abandoned:
            return False
        # Unconfirmed: only our own change is trusted
        return self.is_all_from_me(record.tx)

    def available_coins(self, include_watching: bool = False) -> list[WalletCoin]:
        """Unlocked, unspent outputs the wallet may select."""
        tip = self.chain.get_block_height()
        coins: list[WalletCoin] = []

        for txid, record in self.records.items():
            if record.abandoned or record.annotations.get(REPLACED_BY_TXID):
                continue
            if not self.is_trusted(record, tip):
                continue

            depth = record.depth(tip)
            for vout, txout in enumerate(record.tx.outputs):
                mine = self.is_mine(txout.script_pubkey)
                if mine == IsMine.NO:
                    continue
                if mine != IsMine.SPENDABLE and not include_watching:
                    continue

                outpoint = Outpoint(txid, vout)
                if outpoint in self.coin_locks or self.is_spent(outpoint):
                    continue

                coins.append(
                    WalletCoin(
                        outpoint=outpoint,
                        txout=txout,
                        depth=depth,
                        spendable=mine == IsMine.SPENDABLE,
                        solvable=mine >= IsMine.WATCH_SOLVABLE,
                    )
                )

        return coins

    def get_balance(self) -> int:
        return sum(coin.value for coin in self.available_coins() if coin.spendable)

    def mark_replaced(self, original_txid: str, new_txid: str) -> bool:
        with self.lock:
            record = self.records.get(original_txid)
            if record is None or record.annotations.get(REPLACED_BY_TXID):
                return False
            record.annotations[REPLACED_BY_TXID] = new_txid
            logger.info(f"Marked {original_txid} as replaced by {new_txid}")
            return True

    def abandon_transaction(self, txid: str) -> None:
        """
        Mark an unconfirmed, non-mempool transaction and its wallet descendants
        abandoned, so their inputs become spendable again.
        """
        with self.locked():
            record = self.records.get(txid)
            if record is None:
                raise WalletError(
                    "Invalid or non-wallet transaction id", code=RPC_INVALID_ADDRESS_OR_KEY
                )
            if self.depth(record) > 0 or self.chain.in_mempool(txid):
                raise PreconditionError(
                    "Transaction not eligible for abandonment", code=RPC_INVALID_ADDRESS_OR_KEY
                )

            todo = [txid]
            while todo:
                current = self.records[todo.pop()]
                if current.abandoned or current.block_height is not None:
                    continue
                current.abandoned = True
                logger.info(f"Abandoned transaction {current.txid}")
                for vout in range(len(current.tx.outputs)):
                    todo.extend(self._spends.get(Outpoint(current.txid, vout), ()))

    # Chain synchronization

    def import_transaction(self, txid: str, with_parents: bool = True) -> WalletTxRecord:
        """Load a transaction, and the parents its inputs spend, from the chain backend."""
        with self.locked():
            found = self.chain.get_transaction(txid)
            if found is None:
                raise WalletError(
                    f"Transaction {txid} not found", code=RPC_INVALID_ADDRESS_OR_KEY
                )

            if with_parents:
                for inp in found.tx.inputs:
                    if inp.prevout.txid in self.records:
                        continue
                    parent = self.chain.get_transaction(inp.prevout.txid)
                    if parent is not None:
                        self.add_transaction(parent.tx, parent.block_height)

            return self.add_transaction(found.tx, found.block_height)

    def refresh_confirmations(self) -> None:
        """Re-read the block height of every recorded transaction from the chain backend."""
        with self.locked():
            changed = False
            for record in self.records.values():
                if record.abandoned:
                    continue
                found = self.chain.get_transaction(record.txid)
                # Unknown to the backend: keep what we have
                if found is None or found.block_height == record.block_height:
                    continue
                logger.debug(
                    f"Transaction {record.txid} moved from height {record.block_height} "
                    f"to {found.block_height}"
                )
                record.block_height = found.block_height
                changed = True

            if changed:
                self._update_conflicts()

    def _record_unspent(self, utxo: UnspentOutput) -> None:
        record = self.records.get(utxo.outpoint.txid)
        if record is None:
            self.import_transaction(utxo.outpoint.txid)
        elif utxo.height is not None:
            # Scan results carry the height even where the backend cannot fetch the transaction
            self.add_transaction(record.tx, utxo.height)

    def rescan(self, gap_limit: int | None = None) -> int:
        """
        Refresh known transactions, then scan the key chains for unspent outputs
        and import their transactions.

        Keys are queried in batches of ``gap_limit``; a chain is done once that
        many consecutive keys have no outputs. Returns the number of outputs found.
        """
        gap_limit = gap_limit or self.settings.gap_limit
        found_total = 0

        with self.locked():
            self.refresh_confirmations()

            for chain in (EXTERNAL_CHAIN, INTERNAL_CHAIN):
                consecutive_empty = 0
                index = 0

                while consecutive_empty < gap_limit:
                    batch = [self.keypool.key_at(chain, index + i) for i in range(gap_limit)]
                    scripts = {p2wpkh_script(key.key_id): key for key in batch}

                    utxos = self.chain.find_unspent_outputs(scripts)
                    used = {utxo.txout.script_pubkey for utxo in utxos}
                    for utxo in utxos:
                        self._record_unspent(utxo)
                    found_total += len(utxos)

                    for key in batch:
                        if p2wpkh_script(key.key_id) in used:
                            consecutive_empty = 0
                            self.keypool.mark_used(key.key_id)
                        else:
                            consecutive_empty += 1
                        if consecutive_empty >= gap_limit:
                            break

                    index += gap_limit

                logger.debug(f"Rescanned chain {chain}: ~{index} keys")

            watched = list(self._watch_only)
            if watched:
                utxos = self.chain.find_unspent_outputs(watched)
                for utxo in utxos:
                    self._record_unspent(utxo)
                found_total += len(utxos)

        logger.info(f"Rescan complete: {found_total} unspent outputs")
        return found_total
