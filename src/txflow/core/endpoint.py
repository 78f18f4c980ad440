# /src/txflow/core/endpoint.py
# The ledger endpoint contract consumed by the lifecycle manager.
from abc import ABC, abstractmethod
from typing import Optional, Union

from txflow.core.models import Block, BlockHeader, FeeParams, Receipt

BlockRef = Union[int, str]  # block number or "latest" / "pending" / "safe" / "finalized"


class ChainEndpoint(ABC):
    """
    Read/write access to ledger state. Implementations raise ``EndpointError``
    for transient failures and ``Rejected`` when a broadcast is refused.
    """

    @abstractmethod
    async def header_at(self, block_ref: BlockRef = "latest") -> BlockHeader: ...

    @abstractmethod
    async def block_at(self, block_ref: BlockRef = "latest") -> Block: ...

    @abstractmethod
    async def nonce_at(self, address: str, block_ref: BlockRef = "latest") -> int: ...

    @abstractmethod
    async def suggested_fee(self) -> FeeParams: ...

    @abstractmethod
    async def chain_id(self) -> int: ...

    @abstractmethod
    async def submit(self, raw: bytes) -> str:
        """Broadcast signed bytes; returns the 0x-prefixed transaction hash."""

    @abstractmethod
    async def receipt(self, tx_hash: str) -> Optional[Receipt]:
        """The receipt, or ``None`` while the transaction is not mined."""

    @abstractmethod
    async def has_transaction(self, tx_hash: str) -> bool:
        """Whether the endpoint knows the hash at all (mempool or chain)."""

    @abstractmethod
    async def balance(self, address: str, block_ref: BlockRef = "latest") -> int: ...
