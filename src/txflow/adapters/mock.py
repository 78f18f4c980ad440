# /src/txflow/adapters/mock.py
# In-memory ledger for tests and simulation-first development.
# It decodes the real signed bytes it receives, so nonces, fees and chain ids
# observed here are exactly what a node would see.
import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from eth_utils import keccak

from txflow.core.endpoint import BlockRef, ChainEndpoint
from txflow.core.errors import EndpointError, Rejected, RejectionKind
from txflow.core.logger import get_logger
from txflow.core.models import Block, BlockHeader, FeeParams, Receipt, ReceiptStatus, SignedTransaction
from txflow.core.signer import decode_signed_transaction

log = get_logger(__name__)


class MockChainEndpoint(ChainEndpoint):
    def __init__(self, chain_id: int = 11155111, fee: Optional[FeeParams] = None):
        self._chain_id = chain_id
        self.fee = fee or FeeParams(max_fee_per_gas=30 * 10**9, max_priority_fee_per_gas=2 * 10**9)
        self.nonces: Dict[str, int] = {}
        self.balances: Dict[str, int] = {}
        self.mempool: Dict[str, SignedTransaction] = {}
        self.receipts: Dict[str, Receipt] = {}
        self.submitted: List[SignedTransaction] = []
        self.blocks: List[Block] = [self._make_block(0, [])]
        self.calls: Dict[str, int] = {}
        self._failures: Deque[str] = deque()
        self._rejections: Deque[str] = deque()

    # --- scripting helpers -------------------------------------------------

    def set_nonce(self, address: str, nonce: int):
        self.nonces[address] = nonce

    def fail_next(self, times: int = 1, method: str = "*"):
        """Make the next ``times`` calls (to ``method``, or any) raise EndpointError."""
        self._failures.extend([method] * times)

    def reject_next(self, reason: str):
        """Make the next submit raise Rejected(reason) without recording the transaction."""
        self._rejections.append(reason)

    def mine(self, tx_hash: str, success: bool = True, gas_used: int = 21000) -> Receipt:
        tx = self.mempool.pop(tx_hash)
        block = self._make_block(len(self.blocks), [tx_hash])
        self.blocks.append(block)
        receipt = Receipt(
            tx_hash=tx_hash,
            status=ReceiptStatus.SUCCESS if success else ReceiptStatus.FAILURE,
            block_number=block.number,
            gas_used=gas_used,
            block_hash=block.hash,
        )
        self.receipts[tx_hash] = receipt
        self.nonces[tx.sender] = max(self.nonces.get(tx.sender, 0), tx.tx.nonce + 1)
        # Anything else queued for the same nonce can no longer be included
        for other, pending in list(self.mempool.items()):
            if pending.sender == tx.sender and pending.tx.nonce == tx.tx.nonce:
                del self.mempool[other]
        log.info("MOCK_TRANSACTION_MINED", tx_hash=tx_hash, success=success, block=block.number)
        return receipt

    def evict(self, tx_hash: str):
        self.mempool.pop(tx_hash, None)
        log.info("MOCK_TRANSACTION_EVICTED", tx_hash=tx_hash)

    def _make_block(self, number: int, txs: List[str]) -> Block:
        parent = self.blocks[-1].hash if number else "0x" + "00" * 32
        return Block(
            number=number,
            hash="0x" + keccak(number.to_bytes(8, "big")).hex(),
            parent_hash=parent,
            timestamp=datetime.now(timezone.utc),
            gas_limit=30_000_000,
            gas_used=21000 * len(txs),
            miner="0x" + "00" * 20,
            base_fee_per_gas=10**9,
            transactions=txs,
            size=512 + 110 * len(txs),
        )

    async def _enter(self, method: str):
        self.calls[method] = self.calls.get(method, 0) + 1
        # Yield so concurrent callers interleave the way real I/O would
        await asyncio.sleep(0)
        if self._failures and self._failures[0] in ("*", method):
            self._failures.popleft()
            raise EndpointError(f"simulated transport failure in {method}")

    # --- ChainEndpoint -----------------------------------------------------

    def _block(self, block_ref: BlockRef) -> Block:
        if block_ref in ("latest", "pending", "safe", "finalized"):
            return self.blocks[-1]
        if isinstance(block_ref, int) and 0 <= block_ref < len(self.blocks):
            return self.blocks[block_ref]
        raise EndpointError(f"block {block_ref} not found")

    async def header_at(self, block_ref: BlockRef = "latest") -> BlockHeader:
        await self._enter("header_at")
        return BlockHeader(**self._block(block_ref).model_dump(exclude={"transactions", "size"}))

    async def block_at(self, block_ref: BlockRef = "latest") -> Block:
        await self._enter("block_at")
        return self._block(block_ref)

    async def nonce_at(self, address: str, block_ref: BlockRef = "latest") -> int:
        await self._enter("nonce_at")
        return self.nonces.get(address, 0)

    async def suggested_fee(self) -> FeeParams:
        await self._enter("suggested_fee")
        return self.fee

    async def chain_id(self) -> int:
        await self._enter("chain_id")
        return self._chain_id

    async def submit(self, raw: bytes) -> str:
        await self._enter("submit")
        if self._rejections:
            raise Rejected(self._rejections.popleft())
        signed = decode_signed_transaction(raw)
        tx_hash = signed.tx_hash
        if tx_hash in self.mempool or tx_hash in self.receipts:
            raise Rejected("already known", RejectionKind.ALREADY_KNOWN)
        if signed.tx.chain_id != self._chain_id:
            raise Rejected(f"invalid chain id {signed.tx.chain_id}")
        if signed.tx.nonce < self.nonces.get(signed.sender, 0):
            raise Rejected("nonce too low")
        for other in self.mempool.values():
            if other.sender == signed.sender and other.tx.nonce == signed.tx.nonce:
                if not signed.tx.fee.outbids(other.tx.fee, 10):
                    raise Rejected("replacement transaction underpriced")
        self.mempool[tx_hash] = signed
        self.submitted.append(signed)
        log.info("MOCK_TRANSACTION_ACCEPTED", tx_hash=tx_hash, nonce=signed.tx.nonce)
        return tx_hash

    async def receipt(self, tx_hash: str) -> Optional[Receipt]:
        await self._enter("receipt")
        return self.receipts.get(tx_hash)

    async def has_transaction(self, tx_hash: str) -> bool:
        await self._enter("has_transaction")
        return tx_hash in self.mempool or tx_hash in self.receipts

    async def balance(self, address: str, block_ref: BlockRef = "latest") -> int:
        await self._enter("balance")
        return self.balances.get(address, 0)
