"""
Bitcoin Core RPC backend.
Uses RPC calls but NOT wallet functionality: the node provides chain and
mempool reads, fee estimation and transaction acceptance.
"""

from __future__ import annotations

import os
import random
import time
from collections.abc import Iterable, Sequence
from typing import Any

import httpx
from loguru import logger

from rbfwallet.backends.base import (
    Broadcaster,
    ChainBackend,
    ChainTransaction,
    FeeEstimator,
    SubmitResult,
    UnspentOutput,
)
from rbfwallet.constants import COIN
from rbfwallet.errors import RPC_MISC_ERROR
from rbfwallet.wallet.fees import FeeRate
from rbfwallet.wallet.transaction import Outpoint, Transaction, TransactionDecodeError, TxOut

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# Timeout for scantxoutset calls - mainnet scans can take 90+ seconds
SCAN_RPC_TIMEOUT = 300.0

# Maximum retries for scantxoutset when another scan is in progress
SCAN_MAX_RETRIES = 30
SCAN_BASE_DELAY = 0.5  # Base delay in seconds for exponential backoff
SCAN_STATUS_POLL_INTERVAL = 10.0

# RPC error codes returned by sendrawtransaction for policy/consensus rejections
REJECTION_CODES = {-25, -26, -27}

# Environment variable to enable sensitive logging (scripts, transactions)
# WARNING: Enabling this will log wallet scripts to the log
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class RPCError(ValueError):
    """Error object returned by the node."""

    def __init__(self, code: int, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


def btc_to_sats(amount: float) -> int:
    return int(round(amount * COIN))


class BitcoinCoreBackend(ChainBackend, FeeEstimator, Broadcaster):
    """
    Chain backend, fee estimator and broadcaster on top of a Bitcoin Core node.
    Does NOT use the Bitcoin Core wallet: unspent outputs are found with
    scantxoutset plus a pass over the mempool.
    """

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:8332",
        rpc_user: str = "",
        rpc_password: str = "",
        scan_timeout: float = SCAN_RPC_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__()
        self.rpc_url = rpc_url.rstrip("/")
        self.scan_timeout = scan_timeout
        auth = (rpc_user, rpc_password) if rpc_user else None
        self.client = httpx.Client(timeout=DEFAULT_RPC_TIMEOUT, auth=auth, transport=transport)
        # Separate client for long-running scans
        self._scan_client = httpx.Client(timeout=scan_timeout, auth=auth, transport=transport)
        self._request_id = 0

    def _rpc_call(
        self,
        method: str,
        params: list | None = None,
        client: httpx.Client | None = None,
    ) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Raises:
            RPCError: On RPC errors
            httpx.HTTPError: On connection/timeout errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        use_client = client or self.client

        try:
            response = use_client.post(self.rpc_url, json=payload)
            # Core answers RPC errors with HTTP 500 and a JSON body
            if response.status_code != 500:
                response.raise_for_status()
            data = response.json()

            if data.get("error"):
                error_info = data["error"]
                raise RPCError(error_info.get("code", -1), error_info.get("message", ""))

            return data.get("result")

        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise

    def _scantxoutset_with_retry(self, descriptors: Sequence[str]) -> dict[str, Any] | None:
        """
        Run scantxoutset, waiting while another scan holds the node's single scan slot.
        """
        for attempt in range(SCAN_MAX_RETRIES):
            try:
                status = self._rpc_call("scantxoutset", ["status"])
                if status is not None:
                    progress = status.get("progress", 0) / 100.0
                    logger.debug(
                        f"Another scan in progress ({progress:.1%}), waiting... "
                        f"(attempt {attempt + 1}/{SCAN_MAX_RETRIES})"
                    )
                    if attempt < SCAN_MAX_RETRIES - 1:
                        time.sleep(SCAN_STATUS_POLL_INTERVAL)
                        continue

                logger.debug(f"Starting UTXO scan for {len(descriptors)} descriptor(s)...")
                if SENSITIVE_LOGGING:
                    logger.debug(f"Descriptors for scan: {descriptors}")
                result = self._rpc_call(
                    "scantxoutset", ["start", list(descriptors)], client=self._scan_client
                )
                if result:
                    logger.debug(
                        f"Scan completed: found {len(result.get('unspents', []))} UTXOs, "
                        f"total {result.get('total_amount', 0):.8f} BTC"
                    )
                return result

            except RPCError as e:
                if e.code == -8 or "Scan already in progress" in e.message:
                    if attempt < SCAN_MAX_RETRIES - 1:
                        delay = SCAN_BASE_DELAY * (2**attempt) + random.uniform(0, 0.5)
                        logger.debug(
                            f"Scan in progress (RPC error), retrying in {delay:.2f}s "
                            f"(attempt {attempt + 1}/{SCAN_MAX_RETRIES})"
                        )
                        time.sleep(delay)
                        continue
                    logger.warning(
                        f"Max retries ({SCAN_MAX_RETRIES}) exceeded waiting for scan slot"
                    )
                    return None
                logger.error(f"scantxoutset RPC error: {e}")
                raise

            except httpx.TimeoutException:
                logger.error(
                    f"scantxoutset timed out after {self.scan_timeout}s. "
                    "Try increasing scan_timeout for mainnet."
                )
                return None

        logger.warning(f"scantxoutset failed after {SCAN_MAX_RETRIES} attempts")
        return None

    def get_block_height(self) -> int:
        height = self._rpc_call("getblockcount")
        logger.debug(f"Current block height: {height}")
        return height

    def get_transaction(self, txid: str) -> ChainTransaction | None:
        try:
            tx_data = self._rpc_call("getrawtransaction", [txid, True])
        except RPCError as e:
            logger.debug(f"Transaction {txid} not found: {e}")
            return None
        if not tx_data:
            return None

        try:
            tx = Transaction.from_hex(tx_data["hex"])
        except TransactionDecodeError as e:
            logger.warning(f"Failed to decode transaction {txid}: {e}")
            return None

        confirmations = tx_data.get("confirmations", 0)
        block_height = None
        if confirmations > 0:
            block_height = self.get_block_height() - confirmations + 1

        return ChainTransaction(tx=tx, confirmations=confirmations, block_height=block_height)

    def find_unspent_outputs(self, scripts: Iterable[bytes]) -> list[UnspentOutput]:
        wanted = {script.hex(): script for script in scripts}
        if not wanted:
            return []

        tip_height = self.get_block_height()
        found: dict[Outpoint, UnspentOutput] = {}

        # Confirmed UTXO set, in batches to avoid huge requests
        script_hexes = sorted(wanted)
        batch_size = 100
        for i in range(0, len(script_hexes), batch_size):
            chunk = script_hexes[i : i + batch_size]
            result = self._scantxoutset_with_retry([f"raw({h})" for h in chunk])
            if result is None:
                # A partial answer would under-report the coins of these scripts
                raise RPCError(RPC_MISC_ERROR, f"UTXO scan failed for {len(chunk)} script(s)")
            for utxo in result.get("unspents", []):
                outpoint = Outpoint(utxo["txid"], utxo["vout"])
                height = utxo.get("height") or None
                found[outpoint] = UnspentOutput(
                    outpoint=outpoint,
                    txout=TxOut(btc_to_sats(utxo["amount"]), bytes.fromhex(utxo["scriptPubKey"])),
                    confirmations=tip_height - height + 1 if height else 0,
                    height=height,
                )

        # Unconfirmed outputs
        for txid in self._rpc_call("getrawmempool") or []:
            try:
                tx_data = self._rpc_call("getrawtransaction", [txid, True])
            except RPCError:
                # Evicted or mined since the mempool listing
                continue
            for vout_data in tx_data.get("vout", []):
                script_hex = vout_data.get("scriptPubKey", {}).get("hex", "")
                if script_hex in wanted:
                    outpoint = Outpoint(txid, vout_data["n"])
                    found[outpoint] = UnspentOutput(
                        outpoint=outpoint,
                        txout=TxOut(btc_to_sats(vout_data["value"]), wanted[script_hex]),
                        confirmations=0,
                    )

        # Drop outputs already spent by mempool transactions
        unspent = [
            utxo
            for utxo in found.values()
            if self._rpc_call("gettxout", [utxo.outpoint.txid, utxo.outpoint.vout, True])
            is not None
        ]
        logger.debug(f"Found {len(unspent)} unspent outputs for {len(wanted)} scripts")
        if SENSITIVE_LOGGING:
            logger.debug(f"Scripts searched: {script_hexes}")
        return unspent

    def _mempool_entry(self, txid: str) -> dict[str, Any] | None:
        try:
            return self._rpc_call("getmempoolentry", [txid])
        except RPCError:
            return None

    def in_mempool(self, txid: str) -> bool:
        return self._mempool_entry(txid) is not None

    def has_mempool_descendants(self, txid: str) -> bool:
        entry = self._mempool_entry(txid)
        return entry is not None and entry.get("descendantcount", 1) > 1

    def get_mempool_min_fee(self, size_limit: int) -> FeeRate:
        # The node applies its own -maxmempool; size_limit is informational here
        info = self._rpc_call("getmempoolinfo")
        rate = FeeRate(btc_to_sats(info.get("mempoolminfee", 0)))
        logger.debug(f"Mempool minimum fee rate: {rate} (limit {size_limit} bytes)")
        return rate

    def estimate_smart_fee(self, conf_target: int) -> FeeRate | None:
        try:
            result = self._rpc_call("estimatesmartfee", [conf_target])
        except RPCError as e:
            logger.warning(f"Failed to estimate fee: {e}")
            return None

        if not result or "feerate" not in result:
            logger.debug(f"Fee estimation unavailable for {conf_target} blocks")
            return None
        rate = FeeRate(btc_to_sats(result["feerate"]))
        logger.debug(f"Estimated fee for {conf_target} blocks: {rate}")
        return rate

    def submit_transaction(self, tx: Transaction) -> SubmitResult:
        if SENSITIVE_LOGGING:
            logger.debug(f"Submitting transaction {tx.to_hex()}")
        try:
            txid = self._rpc_call("sendrawtransaction", [tx.to_hex()])
        except RPCError as e:
            logger.warning(f"Transaction {tx.txid} rejected: {e.message}")
            reject_code = e.code if e.code in REJECTION_CODES else None
            return SubmitResult(
                accepted=False, txid=tx.txid, reason=e.message, reject_code=reject_code
            )
        except httpx.HTTPError as e:
            return SubmitResult(accepted=False, txid=tx.txid, reason=str(e))

        logger.info(f"Broadcast transaction: {txid}")
        return SubmitResult(accepted=True, txid=txid)

    def close(self) -> None:
        self.client.close()
        self._scan_client.close()
