# /src/txflow/core/errors.py
# Failure taxonomy. Anything raised before broadcast is local to the caller;
# anything after broadcast leaves the pending entry in place.
from enum import Enum


class TxLifecycleError(Exception):
    """Base class for all errors raised by txflow."""


class ValidationError(TxLifecycleError):
    """Malformed input (address, amount, gas, fee). Never retried."""


class SignatureError(TxLifecycleError):
    """Malformed key material or a failure inside the signer."""


class EndpointError(TxLifecycleError):
    """Transient transport or RPC failure talking to the ledger endpoint."""


class BroadcastUncertain(EndpointError):
    """The broadcast call failed in transit; the transaction may or may not be in the mempool.

    The pending entry is kept under the locally computed hash so the caller can
    keep waiting on ``handle`` or abandon it.
    """

    def __init__(self, message: str, handle):
        super().__init__(message)
        self.handle = handle


class RejectionKind(str, Enum):
    NONCE_TOO_LOW = "nonce_too_low"
    ALREADY_KNOWN = "already_known"
    UNDERPRICED = "underpriced"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    OTHER = "other"


_REJECTION_MARKERS = (
    (RejectionKind.ALREADY_KNOWN, ("already known", "known transaction", "already imported", "alreadyknown")),
    (RejectionKind.NONCE_TOO_LOW, ("nonce too low", "invalid nonce", "nonce has already been used", "oldnonce")),
    (RejectionKind.UNDERPRICED, ("underpriced", "fee too low", "gas price too low", "max fee per gas less than block base fee")),
    (RejectionKind.INSUFFICIENT_FUNDS, ("insufficient funds",)),
)


def classify_rejection(reason: str) -> RejectionKind:
    text = reason.lower()
    for kind, markers in _REJECTION_MARKERS:
        if any(m in text for m in markers):
            return kind
    return RejectionKind.OTHER


class Rejected(TxLifecycleError):
    """The endpoint refused a broadcast (stale/duplicate nonce, underpriced fee, ...)."""

    def __init__(self, reason: str, kind: RejectionKind | None = None):
        super().__init__(reason)
        self.reason = reason
        self.kind = kind or classify_rejection(reason)


class NonceReleaseError(TxLifecycleError):
    """A nonce was released that is not in the reserved state. Programming error."""


class UnknownHandle(TxLifecycleError):
    """The handle was never issued, was replaced, or was abandoned."""


class HandleFinalized(TxLifecycleError):
    """The operation is not allowed on a handle that reached a terminal state."""


class AbandonRefused(TxLifecycleError):
    """Abandonment refused because a broadcast of the nonce is still visible on chain."""


class ConfirmationTimeout(TxLifecycleError):
    def __init__(self, outcome):
        super().__init__(f"no receipt for {outcome.tx_hash} before the deadline")
        self.outcome = outcome


class TransactionReverted(TxLifecycleError):
    def __init__(self, outcome):
        super().__init__(
            f"transaction {outcome.tx_hash} reverted in block {outcome.receipt.block_number} "
            f"(gas used {outcome.receipt.gas_used})"
        )
        self.outcome = outcome
        self.gas_used = outcome.receipt.gas_used


class TransactionDropped(TxLifecycleError):
    def __init__(self, outcome):
        super().__init__(f"transaction {outcome.tx_hash} is no longer known to the endpoint")
        self.outcome = outcome
