# /src/txflow/core/tx.py
# Orchestrates reserve -> build -> sign -> broadcast -> track for one account.
import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from txflow.core.builder import TransactionBuilder
from txflow.core.endpoint import ChainEndpoint
from txflow.core.errors import (
    AbandonRefused,
    BroadcastUncertain,
    EndpointError,
    HandleFinalized,
    Rejected,
    RejectionKind,
    UnknownHandle,
    ValidationError,
)
from txflow.core.logger import (
    get_logger,
    BROADCAST_REJECTED,
    TX_ABANDONED,
    TX_CONFIRMED,
    TX_DROPPED,
    TX_REPLACED,
    TX_REVERTED,
    TX_SUBMITTED,
    TX_TIMED_OUT,
)
from txflow.core.models import FeeParams, Outcome, SignedTransaction, TxHandle, TxIntent, TxState
from txflow.core.nonce_manager import NonceAllocator, PendingRegistry
from txflow.core.poller import ConfirmationPoller, PollPolicy
from txflow.core.signer import KeySigner

log = get_logger(__name__)

_OUTCOME_COUNTERS = {
    TxState.CONFIRMED: TX_CONFIRMED,
    TxState.REVERTED: TX_REVERTED,
    TxState.TIMED_OUT: TX_TIMED_OUT,
    TxState.DROPPED: TX_DROPPED,
}


@dataclass
class PendingEntry:
    intent: TxIntent
    nonce: int
    signed: SignedTransaction
    # Every hash broadcast for this nonce, oldest first
    tx_hashes: List[str] = field(default_factory=list)
    state: TxState = TxState.SUBMITTED
    outcome: Optional[Outcome] = None
    # Held by the waiter for the length of a poll
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Serializes replace() for the nonce
    replace_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Every handle issued for this nonce; shared with successors like tx_hashes
    handles: List[TxHandle] = field(default_factory=list)


class TransactionLifecycleManager:
    """Manages the full lifecycle of transactions originated by one signing account."""

    def __init__(
        self,
        endpoint: ChainEndpoint,
        signer: KeySigner,
        settings,
        poller: Optional[ConfirmationPoller] = None,
        registry: Optional[PendingRegistry] = None,
    ):
        self.endpoint = endpoint
        self.signer = signer
        self.settings = settings
        self.account = signer.account
        self.address = signer.address
        self.nonces = NonceAllocator(endpoint, registry)
        self.poller = poller or ConfirmationPoller(endpoint, PollPolicy.from_settings(settings))
        self.builder: Optional[TransactionBuilder] = None
        self._entries: Dict[TxHandle, PendingEntry] = {}
        self._finished: Dict[TxHandle, Outcome] = {}

    @property
    def is_initialized(self) -> bool:
        return self.builder is not None

    async def initialize(self):
        if self.is_initialized:
            return
        chain_id = await self.endpoint.chain_id()
        expected = self.settings.CHAIN_ID
        if expected is not None and expected != chain_id:
            log.critical("CHAIN_ID_MISMATCH", expected=expected, reported=chain_id)
            raise ValidationError(f"endpoint reports chain id {chain_id}, configuration expects {expected}")
        self.builder = TransactionBuilder(self.endpoint, self.settings, chain_id)
        log.info("TRANSACTION_MANAGER_INITIALIZED", account=self.address, chain_id=chain_id)

    # ------------------------------------------------------------------
    # submit
    # ------------------------------------------------------------------

    async def submit(self, intent: TxIntent) -> TxHandle:
        """Broadcast ``intent`` under a fresh nonce. Returns as soon as the endpoint accepts it."""
        await self.initialize()
        # Cheap local checks before a nonce is ever reserved
        self.builder.validate(intent)
        try:
            return await self._submit_once(intent)
        except Rejected as e:
            log.warning("BROADCAST_REJECTED_RESYNCING", reason=e.reason, kind=e.kind.value)
            await self.nonces.resync(self.address)
            return await self._submit_once(intent)

    async def _submit_once(self, intent: TxIntent) -> TxHandle:
        nonce = await self.nonces.allocate_next(self.address)
        try:
            unsigned = await self.builder.build(intent, nonce)
            signed = self.signer.sign(unsigned)
        except BaseException:
            await self.nonces.release(self.address, nonce)
            raise

        try:
            tx_hash = await self._broadcast(signed)
        except Rejected:
            await self.nonces.release(self.address, nonce)
            raise
        except EndpointError as e:
            # The bytes may have reached the mempool; keep the nonce and the entry
            handle = await self._register(intent, signed, signed.tx_hash)
            log.error("BROADCAST_OUTCOME_UNKNOWN", nonce=nonce, tx_hash=signed.tx_hash, error=str(e))
            raise BroadcastUncertain(f"broadcast of nonce {nonce} failed in transit: {e}", handle) from e

        TX_SUBMITTED.inc()
        handle = await self._register(intent, signed, tx_hash)
        log.info("TRANSACTION_BROADCASTED", tx_hash=tx_hash, nonce=nonce, to=signed.tx.to, value=signed.tx.value)
        return handle

    async def _broadcast(self, signed: SignedTransaction) -> str:
        try:
            return await self.endpoint.submit(signed.raw)
        except Rejected as e:
            BROADCAST_REJECTED.labels(e.kind.value).inc()
            if e.kind is RejectionKind.ALREADY_KNOWN:
                # Identical bytes already in the pool: it is pending, not failed
                log.info("BROADCAST_ALREADY_KNOWN", tx_hash=signed.tx_hash, nonce=signed.tx.nonce)
                return signed.tx_hash
            raise

    async def _register(self, intent: TxIntent, signed: SignedTransaction, tx_hash: str) -> TxHandle:
        await self.nonces.mark_broadcast(self.address, signed.tx.nonce, tx_hash)
        handle = TxHandle(account=self.address, nonce=signed.tx.nonce)
        self._entries[handle] = PendingEntry(
            intent=intent,
            nonce=signed.tx.nonce,
            signed=signed,
            tx_hashes=[tx_hash],
            handles=[handle],
        )
        return handle

    # ------------------------------------------------------------------
    # wait
    # ------------------------------------------------------------------

    def _entry(self, handle: TxHandle) -> PendingEntry:
        entry = self._entries.get(handle)
        if entry is None:
            raise UnknownHandle(f"no pending transaction for handle {handle.id}")
        return entry

    async def wait(self, handle: TxHandle, timeout: Optional[float] = None) -> Outcome:
        """
        Suspend until the handle's transaction is confirmed, reverted or dropped,
        or ``timeout`` (default ``CONFIRMATION_DEADLINE_S``) elapses.

        A terminal outcome is cached: waiting again returns it without touching
        the endpoint.
        """
        if handle in self._finished:
            return self._finished[handle]
        entry = self._entry(handle)
        async with entry.lock:
            if handle in self._finished:
                return self._finished[handle]
            entry.state = TxState.PENDING
            outcome = await self.poller.poll(
                entry.tx_hashes,
                entry.nonce,
                self.settings.CONFIRMATION_DEADLINE_S if timeout is None else timeout,
            )
            _OUTCOME_COUNTERS[outcome.state].inc()
            # A replacement may have been issued while polling; every handle
            # for the nonce shares the outcome
            for h in entry.handles:
                live = self._entries.get(h)
                if live is not None:
                    live.state = outcome.state
                    live.outcome = outcome
            entry.state = outcome.state
            entry.outcome = outcome

            if outcome.state.terminal:
                await self.nonces.settle(self.address, entry.nonce)
                for h in entry.handles:
                    self._entries.pop(h, None)
                    self._finished[h] = outcome
            elif outcome.state is TxState.DROPPED:
                await self.nonces.resync(self.address)
        return outcome

    # ------------------------------------------------------------------
    # replace / abandon
    # ------------------------------------------------------------------

    async def replace(self, handle: TxHandle, fee: Optional[FeeParams] = None) -> TxHandle:
        """
        Rebroadcast the same intent under the same nonce with a higher fee.

        The old handle is retired and a new one returned. Concurrent calls on
        one handle are serialized: the first wins, later ones see the handle
        retired and raise ``UnknownHandle``. If the broadcast fails in transit
        the replacement is tracked anyway and ``BroadcastUncertain`` carries
        the new handle.
        """
        self._check_live(handle)
        entry = self._entry(handle)
        async with entry.replace_lock:
            self._check_live(handle)
            bump = self.settings.REPLACEMENT_FEE_BUMP_PCT
            current = entry.signed.tx.fee
            new_fee = fee or current.bumped(bump)
            if not new_fee.outbids(current, bump):
                raise ValidationError(
                    f"replacement fee {new_fee.components()} must exceed {current.components()} by {bump}%"
                )

            unsigned = await self.builder.build(entry.intent, entry.nonce, fee=new_fee)
            signed = self.signer.sign(unsigned)
            if signed.tx_hash in entry.tx_hashes:
                raise ValidationError(f"replacement for nonce {entry.nonce} is identical to a prior broadcast")

            try:
                tx_hash = await self._broadcast(signed)
            except Rejected as e:
                # The original stays tracked; nonce too low usually means it was mined
                log.warning("REPLACEMENT_REJECTED_RESYNCING", nonce=entry.nonce, reason=e.reason, kind=e.kind.value)
                await self.nonces.resync(self.address)
                raise
            except EndpointError as e:
                new_handle = await self._rebind(handle, entry, signed, signed.tx_hash)
                log.error("BROADCAST_OUTCOME_UNKNOWN", nonce=entry.nonce, tx_hash=signed.tx_hash, error=str(e))
                raise BroadcastUncertain(
                    f"replacement broadcast for nonce {entry.nonce} failed in transit: {e}", new_handle
                ) from e
            return await self._rebind(handle, entry, signed, tx_hash)

    def _check_live(self, handle: TxHandle):
        if handle in self._finished:
            raise HandleFinalized(f"handle {handle.id} already reached {self._finished[handle].state.value}")
        self._entry(handle)

    async def _rebind(self, handle: TxHandle, entry: PendingEntry, signed: SignedTransaction, tx_hash: str) -> TxHandle:
        """Retire ``handle`` in favour of a new one tracking ``tx_hash`` alongside the earlier hashes."""
        # A waiter may have settled the nonce while the broadcast was in flight
        self._check_live(handle)
        await self.nonces.mark_broadcast(self.address, entry.nonce, tx_hash)
        old_hash = entry.tx_hashes[-1]
        # Shared list and lock: a waiter still polling the old handle sees the new hash
        entry.tx_hashes.append(tx_hash)
        new_handle = TxHandle(account=self.address, nonce=entry.nonce)
        entry.handles.append(new_handle)
        self._entries[new_handle] = PendingEntry(
            intent=entry.intent,
            nonce=entry.nonce,
            signed=signed,
            tx_hashes=entry.tx_hashes,
            lock=entry.lock,
            replace_lock=entry.replace_lock,
            handles=entry.handles,
        )
        del self._entries[handle]
        TX_REPLACED.inc()
        log.info(
            "TRANSACTION_REPLACED",
            nonce=entry.nonce,
            old_hash=old_hash,
            tx_hash=tx_hash,
            **signed.tx.fee.components(),
        )
        return new_handle

    async def abandon(self, handle: TxHandle):
        """Give up on a non-terminal handle once no broadcast of it is visible on chain."""
        if handle in self._finished:
            raise HandleFinalized(f"handle {handle.id} already reached {self._finished[handle].state.value}")
        entry = self._entry(handle)
        async with entry.lock:
            for tx_hash in entry.tx_hashes:
                if await self.endpoint.receipt(tx_hash) is not None or await self.endpoint.has_transaction(tx_hash):
                    raise AbandonRefused(f"{tx_hash} for nonce {entry.nonce} is still known to the endpoint")
            confirmed = await self.endpoint.nonce_at(self.address, "latest")
            if confirmed > entry.nonce:
                # Another transaction took the nonce; nothing to hand back
                await self.nonces.settle(self.address, entry.nonce)
            else:
                await self.nonces.forget(self.address, entry.nonce)
            del self._entries[handle]
        TX_ABANDONED.inc()
        log.warning("TRANSACTION_ABANDONED", nonce=entry.nonce, tx_hashes=entry.tx_hashes)

    # ------------------------------------------------------------------
    # read helpers
    # ------------------------------------------------------------------

    async def resync(self) -> int:
        return await self.nonces.resync(self.address)

    async def balance(self, block_ref="latest") -> int:
        return await self.endpoint.balance(self.address, block_ref)

    def pending(self) -> Dict[int, str]:
        """In-flight ``{nonce: tx hash}`` for this account."""
        return self.nonces.registry.in_flight(self.address)

    def state_of(self, handle: TxHandle) -> TxState:
        if handle in self._finished:
            return self._finished[handle].state
        return self._entry(handle).state
