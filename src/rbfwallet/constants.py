"""
Bitcoin protocol and wallet policy constants.

Fee rates are expressed in satoshis per 1000 virtual bytes (sat/kvB), the same
unit Bitcoin Core uses internally for CFeeRate.
"""

from __future__ import annotations

COIN = 100_000_000  # satoshis

# Sequence numbers
SEQUENCE_FINAL = 0xFFFFFFFF
# BIP125: any input with nSequence <= this value signals replaceability
MAX_BIP125_RBF_SEQUENCE = 0xFFFFFFFD

SIGHASH_ALL = 1

# Default relay policy (sat/kvB)
DEFAULT_MIN_RELAY_TX_FEE = 1_000
DEFAULT_MIN_TX_FEE = 1_000
DEFAULT_FALLBACK_FEE = 20_000
# Highest total fee the wallet will ever pay for one transaction
DEFAULT_MAX_TX_FEE = 10_000_000  # 0.1 BTC

DEFAULT_TX_CONFIRM_TARGET = 6
DEFAULT_MAX_MEMPOOL_SIZE_MB = 300

# Post-signing size variance allowance per input when re-signing a bumped tx.
# ECDSA DER signatures vary by about one byte; this is a heuristic, not a bound,
# and unusual script types could exceed it.
DEFAULT_SIGNATURE_SIZE_MARGIN = 1

# Spend sizes used by the dust threshold calculation
# outpoint (32 + 4) + scriptSig length (1) + sequence (4)
INPUT_OVERHEAD_SIZE = 32 + 4 + 1 + 4
# P2PKH scriptSig: signature (72 + push) + compressed pubkey (33 + push)
LEGACY_SPEND_SCRIPT_SIZE = 107
# Witness data is discounted by the segwit weight factor
WITNESS_SCALE_FACTOR = 4

# Dummy sizes for fee estimation of not yet signed inputs
MAX_DER_SIGNATURE_SIZE = 72  # including sighash byte

# HD derivation: BIP84 purpose, external/internal chains
BIP84_PURPOSE = 84
EXTERNAL_CHAIN = 0
INTERNAL_CHAIN = 1
DEFAULT_GAP_LIMIT = 20
DEFAULT_KEYPOOL_SIZE = 100

# Annotations stored on wallet transaction records
REPLACES_TXID = "replaces_txid"
REPLACED_BY_TXID = "replaced_by_txid"
COMMENT = "comment"
