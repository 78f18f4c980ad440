# /src/txflow/core/nonce_manager.py
import asyncio
import heapq
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from txflow.core.endpoint import ChainEndpoint
from txflow.core.errors import NonceReleaseError
from txflow.core.logger import get_logger, NONCE_RESYNCS

log = get_logger(__name__)


@dataclass
class AccountNonces:
    confirmed: int = 0
    next_nonce: int = 0
    free: List[int] = field(default_factory=list)  # min-heap of released nonces
    reserved: Set[int] = field(default_factory=set)
    in_flight: Dict[int, str] = field(default_factory=dict)  # nonce -> tx hash


class PendingRegistry:
    """
    Per-account nonce bookkeeping. Every mutation happens under ``lock``;
    reads go straight to the dicts.
    """
    def __init__(self):
        self.lock = asyncio.Lock()
        self.accounts: Dict[str, AccountNonces] = {}

    def get(self, account: str) -> Optional[AccountNonces]:
        return self.accounts.get(account)

    def in_flight(self, account: str) -> Dict[int, str]:
        state = self.accounts.get(account)
        return dict(state.in_flight) if state else {}


class NonceAllocator:
    def __init__(self, endpoint: ChainEndpoint, registry: Optional[PendingRegistry] = None):
        self.endpoint = endpoint
        self.registry = registry or PendingRegistry()

    async def _seeded(self, account: str) -> AccountNonces:
        # Caller holds the registry lock
        state = self.registry.get(account)
        if state is None:
            confirmed = await self.endpoint.nonce_at(account, "latest")
            state = AccountNonces(confirmed=confirmed, next_nonce=confirmed)
            self.registry.accounts[account] = state
            log.info("NONCE_SEEDED_FROM_ENDPOINT", account=account, nonce=confirmed)
        return state

    async def allocate_next(self, account: str) -> int:
        async with self.registry.lock:
            state = await self._seeded(account)
            while state.free and state.free[0] < state.confirmed:
                heapq.heappop(state.free)
            if state.free:
                nonce = heapq.heappop(state.free)
            else:
                nonce = max(state.next_nonce, state.confirmed)
                state.next_nonce = nonce + 1
            state.reserved.add(nonce)
        log.debug("NONCE_ALLOCATED", account=account, nonce=nonce)
        return nonce

    async def release(self, account: str, nonce: int):
        async with self.registry.lock:
            state = self.registry.get(account)
            if state is None or nonce not in state.reserved:
                in_flight = state is not None and nonce in state.in_flight
                log.critical("NONCE_RELEASE_INVALID", account=account, nonce=nonce, broadcast=in_flight)
                raise NonceReleaseError(
                    f"nonce {nonce} for {account} is "
                    + ("already broadcast" if in_flight else "not reserved")
                )
            state.reserved.discard(nonce)
            heapq.heappush(state.free, nonce)
        log.info("NONCE_RELEASED", account=account, nonce=nonce)

    async def mark_broadcast(self, account: str, nonce: int, tx_hash: str):
        """Move a reserved nonce to in-flight, or rebind an in-flight nonce to a replacement hash."""
        async with self.registry.lock:
            state = self.registry.get(account)
            if state is None or (nonce not in state.reserved and nonce not in state.in_flight):
                raise NonceReleaseError(f"nonce {nonce} for {account} is not held by this process")
            state.reserved.discard(nonce)
            previous = state.in_flight.get(nonce)
            state.in_flight[nonce] = tx_hash
        if previous and previous != tx_hash:
            log.info("NONCE_REBOUND", account=account, nonce=nonce, old_hash=previous, tx_hash=tx_hash)

    async def settle(self, account: str, nonce: int):
        """The nonce reached a terminal outcome on chain."""
        async with self.registry.lock:
            state = self.registry.get(account)
            if state is None:
                return
            state.in_flight.pop(nonce, None)
            state.reserved.discard(nonce)
            state.confirmed = max(state.confirmed, nonce + 1)
            state.next_nonce = max(state.next_nonce, state.confirmed)

    async def forget(self, account: str, nonce: int):
        """Abandonment: an in-flight nonce whose broadcast never landed goes back to the pool."""
        async with self.registry.lock:
            state = self.registry.get(account)
            if state is None or nonce not in state.in_flight:
                raise NonceReleaseError(f"nonce {nonce} for {account} is not in flight")
            del state.in_flight[nonce]
            if nonce >= state.confirmed:
                heapq.heappush(state.free, nonce)
        log.info("NONCE_FORGOTTEN", account=account, nonce=nonce)

    async def resync(self, account: str) -> int:
        """Re-read the confirmed nonce and rebuild the free pool around what this process still holds."""
        NONCE_RESYNCS.inc()
        async with self.registry.lock:
            confirmed = await self.endpoint.nonce_at(account, "latest")
            state = self.registry.get(account)
            if state is None:
                state = AccountNonces(confirmed=confirmed, next_nonce=confirmed)
                self.registry.accounts[account] = state
            else:
                state.confirmed = confirmed
                held = state.reserved | set(state.in_flight)
                upper = max(held, default=confirmed - 1) + 1
                state.next_nonce = max(confirmed, upper)
                state.free = [n for n in range(confirmed, state.next_nonce) if n not in held]
                heapq.heapify(state.free)
                stale = sorted(n for n in state.in_flight if n < confirmed)
                if stale:
                    # Consumed on chain; their receipts settle them
                    log.info("NONCE_RESYNC_CONSUMED_IN_FLIGHT", account=account, nonces=stale)
        log.warning("NONCE_RESYNCED", account=account, confirmed=confirmed, next_nonce=state.next_nonce)
        return confirmed
