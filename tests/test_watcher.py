"""
Tests for ChainWatcher polling, checkpoints and dispatch.
"""

import pytest

from conftest import SECRET_HASH, START, USER_EVM
from crosschain_relayer.errors import NetworkError
from crosschain_relayer.models import Chain
from crosschain_relayer.watcher import ChainWatcher


def _lock(chain, amount=10**18):
    return chain.lock(USER_EVM, "alice.testnet", amount, SECRET_HASH, START + 7200)


class TestCheckpointInit:
    """Tests for first start behavior."""

    @pytest.mark.asyncio
    async def test_fresh_start_skips_history(self, eth, ledger):
        _lock(eth)
        watcher = ChainWatcher(eth, ledger)

        events = await watcher.poll()

        assert events == []
        assert ledger.get_checkpoint(Chain.ETH) == eth.height
        assert ledger.message_count() == 0

    @pytest.mark.asyncio
    async def test_resumes_from_stored_checkpoint(self, eth, ledger):
        ledger.advance_checkpoint(Chain.ETH, eth.height)
        _lock(eth)
        watcher = ChainWatcher(eth, ledger)

        events = await watcher.poll()

        assert len(events) == 1
        assert watcher.last_processed_height == eth.height


class TestPolling:
    """Tests for batch processing."""

    @pytest.mark.asyncio
    async def test_no_new_blocks_is_noop(self, eth, ledger):
        watcher = ChainWatcher(eth, ledger)
        await watcher.poll()
        assert await watcher.poll() == []

    @pytest.mark.asyncio
    async def test_batch_limited_and_backlog_flagged(self, eth, ledger):
        watcher = ChainWatcher(eth, ledger, batch_max=10)
        await watcher.poll()
        start = eth.height
        eth.mine_empty(25)

        await watcher.poll()
        assert watcher.last_processed_height == start + 10
        assert await watcher._cycle() is True
        assert watcher.last_processed_height == start + 20

        await watcher.poll()
        assert watcher.last_processed_height == start + 25
        assert await watcher._cycle() is False

    @pytest.mark.asyncio
    async def test_events_returned_in_block_order(self, eth, ledger):
        watcher = ChainWatcher(eth, ledger)
        await watcher.poll()
        first = _lock(eth)
        second = _lock(eth)

        events = await watcher.poll()

        assert [e.escrow_id for e in events] == [first.escrow_id, second.escrow_id]
        assert events[0].observed_at_block < events[1].observed_at_block

    @pytest.mark.asyncio
    async def test_missing_block_treated_as_empty(self, eth, ledger):
        watcher = ChainWatcher(eth, ledger)
        await watcher.poll()
        eth.mine_empty(3)
        eth.missing_blocks.add(eth.height - 1)

        await watcher.poll()

        assert watcher.last_processed_height == eth.height

    @pytest.mark.asyncio
    async def test_fetch_error_aborts_without_advancing(self, eth, ledger):
        watcher = ChainWatcher(eth, ledger)
        await watcher.poll()
        start = eth.height
        eth.mine_empty(3)
        eth.broken_blocks.add(start + 2)

        with pytest.raises(NetworkError):
            await watcher.poll()

        # Blocks before the failure stay processed
        assert watcher.last_processed_height == start + 1

        eth.broken_blocks.clear()
        await watcher.poll()
        assert watcher.last_processed_height == start + 3

    @pytest.mark.asyncio
    async def test_replayed_blocks_yield_nothing_new(self, eth, ledger):
        watcher = ChainWatcher(eth, ledger)
        await watcher.poll()
        start = eth.height
        _lock(eth)
        assert len(await watcher.poll()) == 1

        ledger.resync(Chain.ETH, start)
        assert await watcher.poll() == []
        assert ledger.message_count() == 1


class TestDispatch:
    """Tests for handing events to the handler."""

    @pytest.mark.asyncio
    async def test_handled_events_not_redispatched(self, eth, ledger):
        seen = []

        async def handler(event):
            seen.append(event.message_id)

        watcher = ChainWatcher(eth, ledger, handler=handler)
        await watcher.poll()
        _lock(eth)

        await watcher._cycle()
        await watcher._cycle()

        assert len(seen) == 1
        assert ledger.pending_messages() == []

    @pytest.mark.asyncio
    async def test_failed_dispatch_is_retried(self, eth, ledger):
        attempts = []

        async def handler(event):
            attempts.append(event.message_id)
            if len(attempts) == 1:
                raise RuntimeError("boom")

        watcher = ChainWatcher(eth, ledger, handler=handler)
        await watcher.poll()
        _lock(eth)

        await watcher._cycle()
        assert len(ledger.pending_messages()) == 1

        await watcher._cycle()
        assert len(attempts) == 2
        assert ledger.pending_messages() == []

    @pytest.mark.asyncio
    async def test_start_and_stop(self, eth, ledger):
        watcher = ChainWatcher(eth, ledger, poll_interval=0.01)
        await watcher.start()
        assert watcher.is_running
        watcher.stop()
        await watcher.wait_stopped()
        assert not watcher.is_running
