"""
Wallet error types.

Every error carries the JSON-RPC error code a command-dispatch layer reports
for it, so callers can map failures without parsing messages.
"""

from __future__ import annotations

# JSON-RPC error codes
RPC_MISC_ERROR = -1
RPC_INVALID_PARAMETER = -8
RPC_INVALID_REQUEST = -32600
RPC_INTERNAL_ERROR = -32603
RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_VERIFY_REJECTED = -26
RPC_TRANSACTION_ERROR = -25
RPC_TRANSACTION_REJECTED = -26
RPC_WALLET_ERROR = -4
RPC_WALLET_INSUFFICIENT_FUNDS = -6


class WalletError(Exception):
    """Base class for all wallet operation failures."""

    code = RPC_MISC_ERROR

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class PreconditionError(WalletError):
    """The wallet or chain state does not allow the operation (yet)."""


class InvalidParameterError(PreconditionError):
    """A caller-supplied parameter is out of range or malformed."""

    code = RPC_INVALID_PARAMETER


class EconomicError(WalletError):
    """The amounts involved make the operation infeasible."""


class CoinSelectionError(WalletError):
    """The coin selector could not fund the transaction.

    The message is the selector's own reason, reported verbatim.
    """

    code = RPC_INTERNAL_ERROR


class TransactionRejectedError(WalletError):
    """The acceptance service refused the transaction."""

    code = RPC_TRANSACTION_REJECTED


class TransactionSigningError(WalletError):
    """A signature could not be produced."""

    code = RPC_WALLET_ERROR


class InvariantViolation(AssertionError):
    """An internal invariant that the algorithms guarantee did not hold."""
