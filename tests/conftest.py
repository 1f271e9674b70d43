"""
Shared fixtures: SQLite stores under tmp_path and two in-memory chains.
"""

import pytest

from crosschain_relayer.auction import CHAIN_DECIMALS, AuctionCurve
from crosschain_relayer.coordinator import ChainAdapter, SwapCoordinator
from crosschain_relayer.db import IdempotencyLedger, SwapOrderStore
from crosschain_relayer.mock import MockChain
from crosschain_relayer.models import Chain, hash_secret
from crosschain_relayer.watcher import ChainWatcher

START = 1_700_000_000
SECRET = "correct horse battery staple"
SECRET_HASH = hash_secret(SECRET)
USER_EVM = "0x" + "aa" * 20
USER_NEAR = "alice.testnet"


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'relayer.db'}"


@pytest.fixture
def ledger(db_url):
    ledger = IdempotencyLedger(db_url)
    yield ledger
    ledger.close()


@pytest.fixture
def store(db_url):
    store = SwapOrderStore(db_url)
    yield store
    store.close()


@pytest.fixture
def eth():
    return MockChain(Chain.ETH, start_timestamp=START)


@pytest.fixture
def near():
    return MockChain(Chain.NEAR, start_timestamp=START)


@pytest.fixture
def curve():
    # No base bump: a fresh auction prices at the 0.5% gas bump alone
    return AuctionCurve(initial_rate_bump_bps=0, gas_bump_estimate_bps=5_000)


@pytest.fixture
def coordinator(eth, near, ledger, store, curve):
    return SwapCoordinator(
        adapters=[
            ChainAdapter(Chain.ETH, eth, CHAIN_DECIMALS[Chain.ETH], relayer_account=eth.relayer_account),
            ChainAdapter(Chain.NEAR, near, CHAIN_DECIMALS[Chain.NEAR], relayer_account=near.relayer_account),
        ],
        ledger=ledger,
        store=store,
        curve=curve,
        max_retries=3,
        retry_delay=0,
        sleep=no_sleep,
    )


@pytest.fixture
def watchers(eth, near, ledger, coordinator):
    return {
        Chain.ETH: ChainWatcher(eth, ledger, handler=coordinator.handle_message),
        Chain.NEAR: ChainWatcher(near, ledger, handler=coordinator.handle_message),
    }
