# /src/txflow/core/resilient_rpc.py
# Wraps one or more endpoints with the retry policy and fails over between them.
from typing import List, Optional, Sequence

from txflow.core.decorators import RetryPolicy, call_with_retry
from txflow.core.endpoint import BlockRef, ChainEndpoint
from txflow.core.errors import EndpointError
from txflow.core.logger import get_logger
from txflow.core.models import Block, BlockHeader, FeeParams, Receipt

log = get_logger(__name__)


class ResilientEndpoint(ChainEndpoint):
    def __init__(self, endpoints: Sequence[ChainEndpoint], policy: Optional[RetryPolicy] = None):
        if not endpoints:
            raise ValueError("ResilientEndpoint needs at least one endpoint")
        self.endpoints: List[ChainEndpoint] = list(endpoints)
        self.policy = policy or RetryPolicy()
        self._idx = 0
        if len(self.endpoints) < 2:
            log.warning("RESILIENCE_DEGRADED_LT_2_ENDPOINTS", count=len(self.endpoints))
        log.info("RESILIENT_ENDPOINT_INITIALIZED", endpoint_count=len(self.endpoints), max_attempts=self.policy.max_attempts)

    @property
    def primary(self) -> ChainEndpoint:
        return self.endpoints[self._idx]

    async def _call(self, method: str, *args):
        async def attempt():
            endpoint = self.endpoints[self._idx]
            try:
                return await getattr(endpoint, method)(*args)
            except EndpointError:
                if len(self.endpoints) > 1:
                    self._idx = (self._idx + 1) % len(self.endpoints)
                    log.warning("ENDPOINT_FAILOVER", method=method, next_index=self._idx)
                raise

        return await call_with_retry(self.policy, method, attempt)

    async def header_at(self, block_ref: BlockRef = "latest") -> BlockHeader:
        return await self._call("header_at", block_ref)

    async def block_at(self, block_ref: BlockRef = "latest") -> Block:
        return await self._call("block_at", block_ref)

    async def nonce_at(self, address: str, block_ref: BlockRef = "latest") -> int:
        return await self._call("nonce_at", address, block_ref)

    async def suggested_fee(self) -> FeeParams:
        return await self._call("suggested_fee")

    async def chain_id(self) -> int:
        return await self._call("chain_id")

    async def submit(self, raw: bytes) -> str:
        # Resending identical bytes is safe: a duplicate comes back as "already known"
        return await self._call("submit", raw)

    async def receipt(self, tx_hash: str) -> Optional[Receipt]:
        return await self._call("receipt", tx_hash)

    async def has_transaction(self, tx_hash: str) -> bool:
        return await self._call("has_transaction", tx_hash)

    async def balance(self, address: str, block_ref: BlockRef = "latest") -> int:
        return await self._call("balance", address, block_ref)
