import asyncio

import pytest

from txflow.adapters.mock import MockChainEndpoint
from txflow.core.decorators import RetryPolicy
from txflow.core.errors import (
    AbandonRefused,
    BroadcastUncertain,
    EndpointError,
    HandleFinalized,
    Rejected,
    RejectionKind,
    SignatureError,
    TransactionReverted,
    UnknownHandle,
    ValidationError,
)
from txflow.core.models import FeeParams, TxIntent, TxState
from txflow.core.poller import ConfirmationPoller, PollPolicy
from txflow.core.resilient_rpc import ResilientEndpoint
from txflow.core.tx import TransactionLifecycleManager

from conftest import CHAIN_ID, RECIPIENT

TRANSFER = TxIntent(to=RECIPIENT, value=10**15)


@pytest.mark.asyncio
async def test_concurrent_submits_take_consecutive_nonces(manager, chain, signer):
    chain.set_nonce(signer.address, 5)
    handles = await asyncio.gather(*(manager.submit(TRANSFER) for _ in range(3)))
    assert {h.nonce for h in handles} == {5, 6, 7}
    assert sorted(tx.tx.nonce for tx in chain.submitted) == [5, 6, 7]


@pytest.mark.asyncio
async def test_many_concurrent_submits_leave_no_gaps(manager, chain):
    handles = await asyncio.gather(*(manager.submit(TRANSFER) for _ in range(10)))
    assert sorted(h.nonce for h in handles) == list(range(10))
    assert sorted(manager.pending()) == list(range(10))


@pytest.mark.asyncio
async def test_submit_returns_before_confirmation(manager, chain):
    handle = await manager.submit(TRANSFER)
    assert manager.state_of(handle) is TxState.SUBMITTED
    assert manager.pending() == {0: chain.submitted[0].tx_hash}
    assert "receipt" not in chain.calls


@pytest.mark.asyncio
async def test_invalid_intent_consumes_no_nonce(manager, chain):
    with pytest.raises(ValidationError):
        await manager.submit(TxIntent(to="0x1234", value=1))
    assert "nonce_at" not in chain.calls
    assert "submit" not in chain.calls

    handle = await manager.submit(TRANSFER)
    assert handle.nonce == 0


@pytest.mark.asyncio
async def test_signing_failure_releases_the_nonce(manager, chain, monkeypatch):
    def boom(tx):
        raise SignatureError("hsm unavailable")

    with monkeypatch.context() as m:
        m.setattr(manager.signer, "sign", boom)
        with pytest.raises(SignatureError):
            await manager.submit(TRANSFER)
    state = manager.nonces.registry.get(manager.address)
    assert state.reserved == set()

    handle = await manager.submit(TRANSFER)
    assert handle.nonce == 0
    assert chain.calls["submit"] == 1


class LossyAckEndpoint(MockChainEndpoint):
    """Accepts the first broadcast but loses the acknowledgement."""
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.lost_acks = 1

    async def submit(self, raw: bytes) -> str:
        tx_hash = await super().submit(raw)
        if self.lost_acks:
            self.lost_acks -= 1
            raise EndpointError("connection reset after write")
        return tx_hash


@pytest.mark.asyncio
async def test_already_known_on_retry_is_treated_as_pending(signer, settings, clock):
    chain = LossyAckEndpoint(chain_id=CHAIN_ID)
    endpoint = ResilientEndpoint([chain], RetryPolicy(max_attempts=2, min_wait=0, max_wait=0))
    poller = ConfirmationPoller(endpoint, PollPolicy.from_settings(settings), clock=clock, sleep=clock.sleep)
    manager = TransactionLifecycleManager(endpoint, signer, settings, poller=poller)

    handle = await manager.submit(TRANSFER)

    assert chain.calls["submit"] == 2
    assert len(chain.submitted) == 1
    tx_hash = chain.submitted[0].tx_hash
    assert manager.pending() == {0: tx_hash}

    chain.mine(tx_hash)
    outcome = await manager.wait(handle)
    assert outcome.state is TxState.CONFIRMED


@pytest.mark.asyncio
async def test_nonce_too_low_resyncs_and_resubmits(manager, chain, signer):
    first = await manager.submit(TRANSFER)
    chain.mine(chain.submitted[0].tx_hash)
    assert (await manager.wait(first)).state is TxState.CONFIRMED

    # Another process spent nonces 1..7 with the same key
    chain.set_nonce(signer.address, 8)
    handle = await manager.submit(TRANSFER)

    assert handle.nonce == 8
    assert chain.calls["submit"] == 3
    assert chain.submitted[-1].tx.nonce == 8
    assert manager.pending() == {8: chain.submitted[-1].tx_hash}


@pytest.mark.asyncio
async def test_persistent_rejection_surfaces_and_holds_nothing(manager, chain):
    chain.reject_next("insufficient funds for gas * price + value")
    chain.reject_next("insufficient funds for gas * price + value")
    with pytest.raises(Rejected) as exc:
        await manager.submit(TRANSFER)
    assert exc.value.kind is RejectionKind.INSUFFICIENT_FUNDS
    state = manager.nonces.registry.get(manager.address)
    assert state.reserved == set()
    assert manager.pending() == {}


@pytest.mark.asyncio
async def test_transport_failure_on_broadcast_is_uncertain_then_abandonable(manager, chain):
    chain.fail_next(1, method="submit")
    with pytest.raises(BroadcastUncertain) as exc:
        await manager.submit(TRANSFER)
    handle = exc.value.handle
    assert handle.nonce == 0
    assert 0 in manager.pending()

    await manager.abandon(handle)
    assert manager.pending() == {}
    with pytest.raises(UnknownHandle):
        await manager.wait(handle)

    again = await manager.submit(TRANSFER)
    assert again.nonce == 0


@pytest.mark.asyncio
async def test_terminal_outcome_is_cached(manager, chain):
    handle = await manager.submit(TRANSFER)
    chain.mine(chain.submitted[0].tx_hash)
    first = await manager.wait(handle)
    receipt_calls = chain.calls["receipt"]

    second = await manager.wait(handle)
    assert second == first
    assert chain.calls["receipt"] == receipt_calls
    assert manager.state_of(handle) is TxState.CONFIRMED


@pytest.mark.asyncio
async def test_reverted_transaction_is_final(manager, chain):
    handle = await manager.submit(TRANSFER)
    chain.mine(chain.submitted[0].tx_hash, success=False, gas_used=21000)

    outcome = await manager.wait(handle)
    assert outcome.state is TxState.REVERTED
    assert outcome.receipt.gas_used == 21000
    with pytest.raises(TransactionReverted) as exc:
        outcome.raise_for_status()
    assert exc.value.gas_used == 21000

    with pytest.raises(HandleFinalized):
        await manager.replace(handle)
    with pytest.raises(HandleFinalized):
        await manager.abandon(handle)
    # The nonce was consumed on chain and is never reissued
    assert (await manager.submit(TRANSFER)).nonce == 1


@pytest.mark.asyncio
async def test_timeout_then_replace_then_confirm(manager, chain, clock):
    handle = await manager.submit(TRANSFER)
    old_hash = chain.submitted[0].tx_hash

    outcome = await manager.wait(handle, timeout=10)
    assert outcome.state is TxState.TIMED_OUT
    assert outcome.tx_hash == old_hash
    assert clock.now <= 12

    replacement = await manager.replace(handle)
    new_tx = chain.submitted[-1]
    assert replacement.nonce == handle.nonce
    assert new_tx.tx.nonce == 0
    assert new_tx.tx_hash != old_hash
    assert new_tx.tx.fee.outbids(chain.submitted[0].tx.fee, 10)
    assert manager.pending() == {0: new_tx.tx_hash}
    with pytest.raises(UnknownHandle):
        await manager.wait(handle)

    chain.mine(new_tx.tx_hash)
    final = await manager.wait(replacement)
    assert final.state is TxState.CONFIRMED
    assert final.tx_hash == new_tx.tx_hash
    assert manager.pending() == {}


@pytest.mark.asyncio
async def test_replacement_fee_must_clear_the_bump(manager, chain):
    handle = await manager.submit(TRANSFER)
    current = chain.submitted[0].tx.fee
    too_low = FeeParams(
        max_fee_per_gas=current.max_fee_per_gas + 1,
        max_priority_fee_per_gas=current.max_priority_fee_per_gas + 1,
    )
    with pytest.raises(ValidationError):
        await manager.replace(handle, fee=too_low)
    assert chain.calls["submit"] == 1


@pytest.mark.asyncio
async def test_original_mined_after_replacement_still_confirms(manager, chain):
    handle = await manager.submit(TRANSFER)
    old_hash = chain.submitted[0].tx_hash
    replacement = await manager.replace(handle)

    chain.mine(old_hash)
    outcome = await manager.wait(replacement)
    assert outcome.state is TxState.CONFIRMED
    assert outcome.tx_hash == old_hash
    assert manager.pending() == {}


@pytest.mark.asyncio
async def test_dropped_transaction_can_be_abandoned_and_nonce_reused(manager, chain):
    handle = await manager.submit(TRANSFER)
    chain.evict(chain.submitted[0].tx_hash)

    outcome = await manager.wait(handle)
    assert outcome.state is TxState.DROPPED
    assert manager.state_of(handle) is TxState.DROPPED

    await manager.abandon(handle)
    assert (await manager.submit(TRANSFER)).nonce == 0


@pytest.mark.asyncio
async def test_abandon_refused_while_transaction_is_known(manager):
    handle = await manager.submit(TRANSFER)
    with pytest.raises(AbandonRefused):
        await manager.abandon(handle)
    assert manager.state_of(handle) is TxState.SUBMITTED
    assert 0 in manager.pending()


@pytest.mark.asyncio
async def test_cancelling_one_waiter_leaves_others_running(manager, chain):
    h1 = await manager.submit(TRANSFER)
    h2 = await manager.submit(TRANSFER)
    hash1, hash2 = (tx.tx_hash for tx in chain.submitted)

    t1 = asyncio.create_task(manager.wait(h1, timeout=10**6))
    t2 = asyncio.create_task(manager.wait(h2, timeout=10**6))
    for _ in range(5):
        await asyncio.sleep(0)

    t1.cancel()
    with pytest.raises(asyncio.CancelledError):
        await t1

    chain.mine(hash2)
    outcome = await t2
    assert outcome.state is TxState.CONFIRMED
    assert outcome.nonce == 1

    # The cancelled handle is untouched and can be waited on again
    assert manager.state_of(h1) is TxState.PENDING
    chain.mine(hash1)
    assert (await manager.wait(h1)).state is TxState.CONFIRMED


@pytest.mark.asyncio
async def test_chain_id_mismatch_stops_initialization(manager, settings):
    settings.CHAIN_ID = 1
    with pytest.raises(ValidationError, match="chain id"):
        await manager.initialize()
    assert not manager.is_initialized


@pytest.mark.asyncio
async def test_lost_ack_on_replacement_keeps_tracking_it(signer, settings, clock):
    chain = LossyAckEndpoint(chain_id=CHAIN_ID)
    chain.lost_acks = 0
    poller = ConfirmationPoller(chain, PollPolicy.from_settings(settings), clock=clock, sleep=clock.sleep)
    manager = TransactionLifecycleManager(chain, signer, settings, poller=poller)
    handle = await manager.submit(TRANSFER)
    old_hash = chain.submitted[0].tx_hash

    chain.lost_acks = 1
    with pytest.raises(BroadcastUncertain) as exc:
        await manager.replace(handle)
    successor = exc.value.handle
    new_hash = chain.submitted[-1].tx_hash
    assert new_hash != old_hash
    assert successor.nonce == handle.nonce
    assert manager.pending() == {0: new_hash}

    chain.mine(new_hash)
    outcome = await manager.wait(successor)
    assert outcome.state is TxState.CONFIRMED
    assert outcome.tx_hash == new_hash
    assert manager.pending() == {}


@pytest.mark.asyncio
async def test_concurrent_replacements_of_one_handle(manager, chain):
    handle = await manager.submit(TRANSFER)

    results = await asyncio.gather(manager.replace(handle), manager.replace(handle), return_exceptions=True)

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1 and isinstance(losers[0], UnknownHandle)
    assert chain.calls["submit"] == 2
    assert manager.pending() == {0: chain.submitted[-1].tx_hash}

    chain.mine(chain.submitted[-1].tx_hash)
    assert (await manager.wait(winners[0])).state is TxState.CONFIRMED


@pytest.mark.asyncio
async def test_outcome_seen_by_old_waiter_is_shared_with_successor(manager, chain):
    handle = await manager.submit(TRANSFER)
    waiter = asyncio.create_task(manager.wait(handle, timeout=10**6))
    for _ in range(5):
        await asyncio.sleep(0)

    successor = await manager.replace(handle)
    chain.mine(chain.submitted[-1].tx_hash)
    first = await waiter
    assert first.state is TxState.CONFIRMED

    receipt_calls = chain.calls["receipt"]
    nonce_calls = chain.calls["nonce_at"]
    assert await manager.wait(successor) == first
    assert manager.state_of(successor) is TxState.CONFIRMED
    assert chain.calls["receipt"] == receipt_calls
    assert chain.calls["nonce_at"] == nonce_calls
    with pytest.raises(HandleFinalized):
        await manager.replace(successor)


@pytest.mark.asyncio
async def test_rejected_replacement_resyncs(manager, chain):
    handle = await manager.submit(TRANSFER)
    old_hash = chain.submitted[0].tx_hash
    chain.mine(old_hash)

    with pytest.raises(Rejected) as exc:
        await manager.replace(handle)
    assert exc.value.kind is RejectionKind.NONCE_TOO_LOW
    # Seeding plus one resync
    assert chain.calls["nonce_at"] == 2
    assert manager.nonces.registry.get(manager.address).confirmed == 1

    outcome = await manager.wait(handle)
    assert outcome.state is TxState.CONFIRMED
    assert outcome.tx_hash == old_hash
