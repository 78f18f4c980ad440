# /src/txflow/core/poller.py
# Drives one submitted nonce from Submitted/Pending to a terminal outcome or the deadline.
import asyncio
import time
from typing import Awaitable, Callable, Optional, Sequence

from pydantic import BaseModel

from txflow.core.endpoint import ChainEndpoint
from txflow.core.errors import EndpointError
from txflow.core.logger import get_logger
from txflow.core.models import Outcome, Receipt, TxState

log = get_logger(__name__)


class PollPolicy(BaseModel):
    interval: float = 2.0
    multiplier: float = 1.5
    ceiling: float = 15.0
    drop_confirmations: int = 3

    class Config:
        frozen = True

    @classmethod
    def from_settings(cls, settings) -> "PollPolicy":
        return cls(
            interval=settings.POLL_INTERVAL_S,
            multiplier=settings.POLL_BACKOFF_MULTIPLIER,
            ceiling=settings.POLL_BACKOFF_CEILING_S,
            drop_confirmations=settings.DROP_CONFIRMATIONS,
        )

    def delay(self, attempt: int) -> float:
        return min(self.interval * (self.multiplier ** attempt), self.ceiling)


class ConfirmationPoller:
    """
    Polls the endpoint for receipts with capped exponential backoff.

    Every hash that has occupied the nonce is checked, newest first, since an
    earlier attempt can still be mined after a replacement. The poller spawns no
    tasks of its own: it runs inside the waiter, so cancelling a waiter stops
    exactly one poll loop.
    """
    def __init__(
        self,
        endpoint: ChainEndpoint,
        policy: Optional[PollPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.endpoint = endpoint
        self.policy = policy or PollPolicy()
        self.clock = clock
        self.sleep = sleep

    async def _bounded(self, call: Awaitable, remaining: float):
        return await asyncio.wait_for(call, timeout=max(remaining, 0.0))

    async def _find_receipt(self, tx_hashes: Sequence[str], deadline: float) -> Optional[Receipt]:
        for tx_hash in reversed(list(tx_hashes)):
            receipt = await self._bounded(self.endpoint.receipt(tx_hash), deadline - self.clock())
            if receipt is not None:
                return receipt
        return None

    async def _any_known(self, tx_hashes: Sequence[str], deadline: float) -> bool:
        for tx_hash in reversed(list(tx_hashes)):
            if await self._bounded(self.endpoint.has_transaction(tx_hash), deadline - self.clock()):
                return True
        return False

    async def poll(self, tx_hashes: Sequence[str], nonce: int, timeout: float) -> Outcome:
        """
        Track ``tx_hashes`` (a live list; replacements may append to it) until a
        receipt appears, every hash is unknown for ``drop_confirmations`` polls
        in a row, or ``timeout`` seconds pass.
        """
        deadline = self.clock() + timeout
        attempt = 0
        misses = 0
        while True:
            try:
                receipt = await self._find_receipt(tx_hashes, deadline)
                if receipt is not None:
                    state = TxState.CONFIRMED if receipt.succeeded else TxState.REVERTED
                    log.info(
                        "TRANSACTION_" + state.name,
                        tx_hash=receipt.tx_hash,
                        nonce=nonce,
                        block_number=receipt.block_number,
                        gas_used=receipt.gas_used,
                    )
                    return Outcome(state=state, tx_hash=receipt.tx_hash, nonce=nonce, receipt=receipt)

                if await self._any_known(tx_hashes, deadline):
                    misses = 0
                else:
                    misses += 1
                    log.warning("TRANSACTION_UNKNOWN_TO_ENDPOINT", tx_hash=tx_hashes[-1], nonce=nonce, misses=misses)
                    if misses >= self.policy.drop_confirmations:
                        return Outcome(
                            state=TxState.DROPPED,
                            tx_hash=tx_hashes[-1],
                            nonce=nonce,
                            detail=f"unknown to endpoint on {misses} consecutive polls",
                        )
            except EndpointError as e:
                log.warning("RECEIPT_POLL_FAILED", tx_hash=tx_hashes[-1], nonce=nonce, error=str(e))
            except asyncio.TimeoutError:
                log.debug("RECEIPT_POLL_CUT_BY_DEADLINE", tx_hash=tx_hashes[-1], nonce=nonce)

            remaining = deadline - self.clock()
            if remaining <= 0:
                log.warning("TRANSACTION_TIMED_OUT", tx_hash=tx_hashes[-1], nonce=nonce, timeout=timeout)
                return Outcome(
                    state=TxState.TIMED_OUT,
                    tx_hash=tx_hashes[-1],
                    nonce=nonce,
                    detail=f"no receipt within {timeout}s",
                )
            await self.sleep(min(self.policy.delay(attempt), remaining))
            attempt += 1
