import asyncio

import pytest
from eth_account import Account as EthAccount

from txflow.adapters.mock import MockChainEndpoint
from txflow.core.config import Settings
from txflow.core.poller import ConfirmationPoller, PollPolicy
from txflow.core.signer import KeySigner, parse_private_key
from txflow.core.tx import TransactionLifecycleManager

CHAIN_ID = 1337
RECIPIENT = "0x" + "ab" * 20


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def settings():
    return Settings(
        NETWORKS={"local": "http://127.0.0.1:8545"},
        NETWORK="local",
        CHAIN_ID=CHAIN_ID,
        CONFIRMATION_DEADLINE_S=30,
        POLL_INTERVAL_S=2,
        POLL_BACKOFF_MULTIPLIER=1.0,
        POLL_BACKOFF_CEILING_S=10,
        DROP_CONFIRMATIONS=2,
        RPC_MAX_ATTEMPTS=3,
        RPC_BACKOFF_MIN_S=0,
        RPC_BACKOFF_MAX_S=0,
    )


@pytest.fixture
def chain():
    return MockChainEndpoint(chain_id=CHAIN_ID)


@pytest.fixture
def signer():
    return KeySigner(parse_private_key(EthAccount.create().key.hex(), key_ref="test:ephemeral"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def poller(chain, settings, clock):
    return ConfirmationPoller(chain, PollPolicy.from_settings(settings), clock=clock, sleep=clock.sleep)


@pytest.fixture
def manager(chain, signer, settings, poller):
    return TransactionLifecycleManager(chain, signer, settings, poller=poller)
