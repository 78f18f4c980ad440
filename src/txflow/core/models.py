# /src/txflow/core/models.py
# Immutable value types shared by every layer.
import uuid
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from txflow.core.errors import (
    ConfirmationTimeout,
    TransactionDropped,
    TransactionReverted,
)


class Account(BaseModel):
    """The originating account. ``key_ref`` says where the key came from, never what it is."""
    address: str
    key_ref: str

    class Config:
        frozen = True


class TxIntent(BaseModel):
    """What the caller wants done: pay ``value`` wei to ``to`` with an optional payload."""
    to: str
    value: int = 0
    data: bytes = b""
    gas_limit: Optional[int] = None

    class Config:
        frozen = True


class FeeParams(BaseModel):
    """Either a legacy ``gas_price`` or an EIP-1559 fee pair."""
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    class Config:
        frozen = True

    @property
    def is_dynamic(self) -> bool:
        return self.max_fee_per_gas is not None

    def components(self) -> Dict[str, int]:
        if self.is_dynamic:
            return {
                "max_fee_per_gas": self.max_fee_per_gas,
                "max_priority_fee_per_gas": self.max_priority_fee_per_gas,
            }
        return {"gas_price": self.gas_price}

    def bumped(self, pct: int) -> "FeeParams":
        """Every component raised by at least ``pct`` percent (and at least 1 wei)."""
        def bump(v: int) -> int:
            return max(v + 1, -(-v * (100 + pct) // 100))
        return FeeParams(**{k: bump(v) for k, v in self.components().items()})

    def outbids(self, other: "FeeParams", pct: int) -> bool:
        """True if every component of ``self`` beats ``other`` by ``pct`` percent."""
        if self.is_dynamic != other.is_dynamic:
            return False
        mine, theirs = self.components(), other.components()
        return all(mine[k] * 100 >= theirs[k] * (100 + pct) and mine[k] > theirs[k] for k in mine)


class UnsignedTransaction(BaseModel):
    nonce: int
    to: str
    value: int
    gas_limit: int
    fee: FeeParams
    data: bytes = b""
    chain_id: int

    class Config:
        frozen = True

    def as_tx_dict(self) -> Dict[str, Any]:
        """The signable payload. Always a typed transaction, so the chain id is bound."""
        tx: Dict[str, Any] = {
            "chainId": self.chain_id,
            "nonce": self.nonce,
            "to": self.to,
            "value": self.value,
            "gas": self.gas_limit,
            "data": "0x" + self.data.hex(),
            "accessList": [],
        }
        if self.fee.is_dynamic:
            tx["type"] = 2
            tx["maxFeePerGas"] = self.fee.max_fee_per_gas
            tx["maxPriorityFeePerGas"] = self.fee.max_priority_fee_per_gas
        else:
            tx["type"] = 1
            tx["gasPrice"] = self.fee.gas_price
        return tx


class SignedTransaction(BaseModel):
    tx: UnsignedTransaction
    raw: bytes
    tx_hash: str
    sender: str

    class Config:
        frozen = True


class ReceiptStatus(IntEnum):
    FAILURE = 0
    SUCCESS = 1


class Receipt(BaseModel):
    tx_hash: str
    status: ReceiptStatus
    block_number: int
    gas_used: int
    block_hash: Optional[str] = None
    effective_gas_price: Optional[int] = None

    class Config:
        frozen = True

    @property
    def succeeded(self) -> bool:
        return self.status is ReceiptStatus.SUCCESS


class BlockHeader(BaseModel):
    number: int
    hash: str
    parent_hash: str
    timestamp: datetime
    gas_limit: int
    gas_used: int
    miner: str
    base_fee_per_gas: Optional[int] = None

    class Config:
        frozen = True


class Block(BlockHeader):
    transactions: List[str] = Field(default_factory=list)
    size: int = 0

    @property
    def transaction_count(self) -> int:
        return len(self.transactions)


class TxState(str, Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"
    DROPPED = "dropped"

    @property
    def terminal(self) -> bool:
        return self in (TxState.CONFIRMED, TxState.REVERTED)


class TxHandle(BaseModel):
    """Opaque reference returned by ``submit``/``replace``."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    account: str
    nonce: int

    class Config:
        frozen = True


class Outcome(BaseModel):
    state: TxState
    tx_hash: str
    nonce: int
    receipt: Optional[Receipt] = None
    detail: Optional[str] = None

    class Config:
        frozen = True

    def raise_for_status(self) -> Receipt:
        """Return the receipt for a confirmed transaction, raise for every other state."""
        if self.state is TxState.CONFIRMED:
            return self.receipt
        if self.state is TxState.REVERTED:
            raise TransactionReverted(self)
        if self.state is TxState.DROPPED:
            raise TransactionDropped(self)
        raise ConfirmationTimeout(self)
