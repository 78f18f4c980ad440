"""txflow: nonce-safe submission and confirmation tracking for Ethereum-style ledgers."""
from txflow.core.errors import (
    BroadcastUncertain,
    EndpointError,
    Rejected,
    SignatureError,
    TxLifecycleError,
    ValidationError,
)
from txflow.core.models import FeeParams, Outcome, Receipt, TxHandle, TxIntent, TxState
from txflow.core.tx import TransactionLifecycleManager

__all__ = [
    "TransactionLifecycleManager",
    "TxIntent",
    "TxHandle",
    "TxState",
    "FeeParams",
    "Outcome",
    "Receipt",
    "TxLifecycleError",
    "ValidationError",
    "SignatureError",
    "EndpointError",
    "BroadcastUncertain",
    "Rejected",
]
