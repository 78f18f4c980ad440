# /src/txflow/adapters/web3_endpoint.py
# ChainEndpoint backed by web3's async JSON-RPC client.
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BlockNotFound, TransactionNotFound, Web3Exception

from txflow.core.decorators import RetryPolicy
from txflow.core.endpoint import BlockRef, ChainEndpoint
from txflow.core.errors import EndpointError, Rejected
from txflow.core.gas_estimator import GasEstimator
from txflow.core.logger import get_logger
from txflow.core.models import Block, BlockHeader, FeeParams, Receipt, ReceiptStatus
from txflow.core.resilient_rpc import ResilientEndpoint

log = get_logger(__name__)

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def _hex(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def _rpc_message(exc: Exception) -> str:
    # web3 < 7 raises ValueError({"code": ..., "message": ...})
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("message", exc.args[0]))
    return str(exc)


def _header_fields(block) -> dict:
    return dict(
        number=block["number"],
        hash=_hex(block["hash"]),
        parent_hash=_hex(block["parentHash"]),
        timestamp=datetime.fromtimestamp(block["timestamp"], timezone.utc),
        gas_limit=block["gasLimit"],
        gas_used=block["gasUsed"],
        miner=block.get("miner", ""),
        base_fee_per_gas=block.get("baseFeePerGas"),
    )


class Web3Endpoint(ChainEndpoint):
    def __init__(self, rpc_url: str, timeout: float = 10.0, priority_multiplier: Decimal = Decimal("1.2")):
        self.w3 = AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)})
        )
        self.gas_estimator = GasEstimator(self.w3, priority_multiplier)

    async def _rpc(self, method: str, call):
        try:
            return await call
        except (TransactionNotFound, BlockNotFound):
            raise
        except TRANSPORT_ERRORS as e:
            raise EndpointError(f"{method} failed in transport: {e}") from e
        except (Web3Exception, ValueError) as e:
            raise EndpointError(f"{method} failed: {_rpc_message(e)}") from e

    async def header_at(self, block_ref: BlockRef = "latest") -> BlockHeader:
        try:
            block = await self._rpc("header_at", self.w3.eth.get_block(block_ref))
        except BlockNotFound as e:
            raise EndpointError(f"block {block_ref} not found") from e
        return BlockHeader(**_header_fields(block))

    async def block_at(self, block_ref: BlockRef = "latest") -> Block:
        try:
            block = await self._rpc("block_at", self.w3.eth.get_block(block_ref, full_transactions=False))
        except BlockNotFound as e:
            raise EndpointError(f"block {block_ref} not found") from e
        return Block(
            **_header_fields(block),
            transactions=[_hex(h) for h in block.get("transactions", [])],
            size=block.get("size", 0),
        )

    async def nonce_at(self, address: str, block_ref: BlockRef = "latest") -> int:
        return await self._rpc("nonce_at", self.w3.eth.get_transaction_count(address, block_ref))

    async def suggested_fee(self) -> FeeParams:
        return await self._rpc("suggested_fee", self.gas_estimator.suggest())

    async def chain_id(self) -> int:
        return await self._rpc("chain_id", self.w3.eth.chain_id)

    async def submit(self, raw: bytes) -> str:
        try:
            tx_hash = await self.w3.eth.send_raw_transaction(raw)
        except TRANSPORT_ERRORS as e:
            raise EndpointError(f"submit failed in transport: {e}") from e
        except (Web3Exception, ValueError) as e:
            reason = _rpc_message(e)
            log.warning("ENDPOINT_REJECTED_BROADCAST", reason=reason)
            raise Rejected(reason) from e
        return _hex(tx_hash)

    async def receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            r = await self._rpc("receipt", self.w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        return Receipt(
            tx_hash=_hex(r["transactionHash"]),
            status=ReceiptStatus(r["status"]),
            block_number=r["blockNumber"],
            gas_used=r["gasUsed"],
            block_hash=_hex(r.get("blockHash")),
            effective_gas_price=r.get("effectiveGasPrice"),
        )

    async def has_transaction(self, tx_hash: str) -> bool:
        try:
            await self._rpc("has_transaction", self.w3.eth.get_transaction(tx_hash))
        except TransactionNotFound:
            return False
        return True

    async def balance(self, address: str, block_ref: BlockRef = "latest") -> int:
        return await self._rpc("balance", self.w3.eth.get_balance(address, block_ref))


def build_endpoint(settings) -> ResilientEndpoint:
    """One Web3Endpoint per configured URL of the selected network, behind the retry policy."""
    urls = settings.rpc_urls
    if not urls:
        raise EndpointError(f"no RPC URL configured for network '{settings.NETWORK}'")
    endpoints = [
        Web3Endpoint(url, timeout=settings.RPC_TIMEOUT_S, priority_multiplier=Decimal(str(settings.PRIORITY_FEE_MULTIPLIER)))
        for url in urls
    ]
    log.info("WEB3_ENDPOINTS_CONFIGURED", network=settings.NETWORK, count=len(endpoints))
    return ResilientEndpoint(endpoints, RetryPolicy.from_settings(settings))
