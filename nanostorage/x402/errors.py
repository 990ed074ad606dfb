# nanostorage/x402/errors.py
"""
Error taxonomy for credit and payment settlement.

Remote ledger failures form a closed set (LedgerErrorKind). Every exception
raised by the remote ledger client is a RemoteLedgerError carrying exactly
one kind, so callers can match on ``exc.kind`` or on the subclass.
"""
from enum import Enum


class LedgerErrorKind(Enum):
    """Kinds of failure reported by the remote ledger client."""
    UNAVAILABLE = "unavailable"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    REJECTED = "rejected"


class RemoteLedgerError(Exception):
    """Base class for remote ledger failures."""
    kind: LedgerErrorKind = LedgerErrorKind.REJECTED

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)


class RemoteUnavailable(RemoteLedgerError):
    """RPC endpoint restricted, unreachable, timed out, or not configured."""
    kind = LedgerErrorKind.UNAVAILABLE


class InsufficientRemoteBalance(RemoteLedgerError):
    """The contract reports an on-chain balance below the requested amount."""
    kind = LedgerErrorKind.INSUFFICIENT_BALANCE


class RemoteRejected(RemoteLedgerError):
    """Any other contract revert or failed transaction."""
    kind = LedgerErrorKind.REJECTED


class InvalidAuthorization(Exception):
    """A signature, timestamp, or transaction authorization failed verification."""


class NonceAlreadyConsumed(Exception):
    """The nonce has already been recorded by the nonce registry."""

    def __init__(self, nonce: str):
        super().__init__(f"Nonce already consumed: {nonce}")
        self.nonce = nonce


class DepositError(Exception):
    """A deposit could not be confirmed."""


class DepositAlreadyProcessed(DepositError):
    """The deposit transaction was already credited."""
