"""
End-to-end swap tests: two in-memory chains, two watchers, one coordinator.
"""

import pytest

from conftest import SECRET, SECRET_HASH, START, USER_EVM, USER_NEAR
from crosschain_relayer.errors import ConfigurationError, StorageError
from crosschain_relayer.mock import RevertingCall
from crosschain_relayer.models import Chain, EscrowRef, EscrowStatus, SwapState, hash_secret


async def _init(watchers):
    for watcher in watchers.values():
        await watcher.poll()


async def _cycle(watchers, chain):
    await watchers[chain]._cycle()


async def _open_eth_to_near(eth, watchers, amount=10**18, timelock=START + 7200):
    escrow = eth.lock(USER_EVM, USER_NEAR, amount, SECRET_HASH, timelock)
    await _cycle(watchers, Chain.ETH)
    return escrow


class TestHappyPath:
    """Tests for a swap running to completion."""

    @pytest.mark.asyncio
    async def test_eth_to_near(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = await _open_eth_to_near(eth, watchers)
        order_id = str(EscrowRef(Chain.ETH, source.escrow_id))

        order = coordinator.get_order(order_id)
        assert order.state == SwapState.DEST_ESCROW_PENDING
        assert order.computed_to_amount == 1_005 * 10**21
        assert near.calls == [("create", order_id)]

        await _cycle(watchers, Chain.NEAR)
        order = coordinator.get_order(order_id)
        assert order.state == SwapState.DEST_ESCROW_LOCKED

        dest = await near.get_escrow(order.dest_escrow_ref.escrow_id)
        assert dest.amount == 1_005 * 10**21
        assert dest.recipient == USER_NEAR
        assert dest.timelock < source.timelock

        # User claims on NEAR, revealing the secret
        near.reveal(dest.escrow_id, SECRET)
        await _cycle(watchers, Chain.NEAR)

        order = coordinator.get_order(order_id)
        assert order.state == SwapState.WITHDRAWN
        assert order.secret == SECRET
        assert (await eth.get_escrow(source.escrow_id)).status == EscrowStatus.WITHDRAWN
        assert ("withdraw", source.escrow_id) in eth.calls

        # Our own withdrawal event on ETH changes nothing
        await _cycle(watchers, Chain.ETH)
        assert coordinator.get_order(order_id).state == SwapState.WITHDRAWN

    @pytest.mark.asyncio
    async def test_near_to_eth(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = near.lock(USER_NEAR, USER_EVM, 10**24, SECRET_HASH, START + 7200)
        await _cycle(watchers, Chain.NEAR)

        order = coordinator.get_order(f"NEAR:{source.escrow_id}")
        assert order.from_chain == Chain.NEAR
        assert order.to_chain == Chain.ETH
        assert order.computed_to_amount == 1_005 * 10**15
        assert order.dest_escrow_ref.chain == Chain.ETH

    @pytest.mark.asyncio
    async def test_wrong_secret_ignored(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = await _open_eth_to_near(eth, watchers)
        await _cycle(watchers, Chain.NEAR)
        order_id = f"ETH:{source.escrow_id}"
        dest_id = coordinator.get_order(order_id).dest_escrow_ref.escrow_id

        near.reveal(dest_id, "not the secret")
        await _cycle(watchers, Chain.NEAR)

        assert coordinator.get_order(order_id).state == SwapState.DEST_ESCROW_LOCKED
        assert not any(op == "withdraw" for op, _ in eth.calls)

    @pytest.mark.asyncio
    async def test_resume_completes_revealed_orders(self, eth, near, watchers, coordinator, store):
        await _init(watchers)
        source = await _open_eth_to_near(eth, watchers)
        await _cycle(watchers, Chain.NEAR)
        order = store.get(f"ETH:{source.escrow_id}")
        order.secret = SECRET
        order.state = SwapState.SECRET_REVEALED
        store.save(order)

        assert await coordinator.resume() == 1

        assert store.get(order.order_id).state == SwapState.WITHDRAWN
        assert (await eth.get_escrow(source.escrow_id)).status == EscrowStatus.WITHDRAWN


class TestDepositValidation:
    """Tests for deposits that never become orders."""

    @pytest.mark.asyncio
    async def test_dest_timelock_must_fit_inside_source(self, eth, near, watchers, coordinator):
        await _init(watchers)
        await _open_eth_to_near(eth, watchers, timelock=START + 100)

        assert coordinator.list_orders() == []
        assert near.calls == []

    @pytest.mark.asyncio
    async def test_invalid_recipient_rejected(self, eth, near, watchers, coordinator):
        await _init(watchers)
        eth.lock(USER_EVM, "Not A Near Account!", 10**18, SECRET_HASH, START + 7200)
        await _cycle(watchers, Chain.ETH)

        assert coordinator.list_orders() == []
        assert near.calls == []

    @pytest.mark.asyncio
    async def test_expired_source_rejected(self, eth, near, watchers, coordinator):
        await _init(watchers)
        eth.lock(USER_EVM, USER_NEAR, 10**18, SECRET_HASH, eth.timestamp + 5)
        await _cycle(watchers, Chain.ETH)

        assert coordinator.list_orders() == []

    @pytest.mark.asyncio
    async def test_relayer_deposits_ignored(self, eth, near, watchers, coordinator):
        await _init(watchers)
        near.lock(near.relayer_account, USER_EVM, 10**24, hash_secret("other"), START + 7200)
        await _cycle(watchers, Chain.NEAR)

        assert coordinator.list_orders() == []
        assert eth.calls == []


class TestIdempotency:
    """Tests for replayed events."""

    @pytest.mark.asyncio
    async def test_replayed_deposit_creates_once(self, eth, near, watchers, coordinator):
        await _init(watchers)
        eth.lock(USER_EVM, USER_NEAR, 10**18, SECRET_HASH, START + 7200)
        events = await watchers[Chain.ETH].poll()

        await coordinator.handle_message(events[0])
        await coordinator.handle_message(events[0])

        assert len(near.calls) == 1
        assert len(coordinator.list_orders()) == 1

    @pytest.mark.asyncio
    async def test_refund_sweep_runs_once(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = await _open_eth_to_near(eth, watchers)
        order_id = f"ETH:{source.escrow_id}"
        dest_id = coordinator.get_order(order_id).dest_escrow_ref.escrow_id
        eth.advance_time(8_000)
        near.advance_time(8_000)

        assert await coordinator.sweep_expired() == 1
        assert await coordinator.sweep_expired() == 0

        assert coordinator.get_order(order_id).state == SwapState.REFUNDED
        assert [c for c in near.calls if c[0] == "refund"] == [("refund", dest_id)]
        assert [c for c in eth.calls if c[0] == "refund"] == [("refund", source.escrow_id)]


class TestExpiry:
    """Tests for expiry handling."""

    @pytest.mark.asyncio
    async def test_not_yet_expired(self, eth, watchers, coordinator):
        await _init(watchers)
        await _open_eth_to_near(eth, watchers)
        assert await coordinator.sweep_expired() == 0

    @pytest.mark.asyncio
    async def test_refund_deferred_until_dest_timelock(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = await _open_eth_to_near(eth, watchers)
        order_id = f"ETH:{source.escrow_id}"
        eth.advance_time(8_000)

        assert await coordinator.sweep_expired() == 0
        assert coordinator.get_order(order_id).state == SwapState.EXPIRED

        near.advance_time(8_000)
        assert await coordinator.sweep_expired() == 1
        assert coordinator.get_order(order_id).state == SwapState.REFUNDED


    @pytest.mark.asyncio
    async def test_consumed_source_refund_is_noop(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = near.lock(USER_NEAR, USER_EVM, 10**24, SECRET_HASH, START + 7200)
        await _cycle(watchers, Chain.NEAR)
        order_id = f"NEAR:{source.escrow_id}"
        dest_id = coordinator.get_order(order_id).dest_escrow_ref.escrow_id
        near.set_remaining(source.escrow_id, 0)
        eth.advance_time(8_000)
        near.advance_time(8_000)

        assert await coordinator.sweep_expired() == 1

        assert coordinator.get_order(order_id).state == SwapState.REFUNDED
        assert ("refund", dest_id) in eth.calls
        assert ("refund", source.escrow_id) not in near.calls

class TestRetries:
    """Tests for failing destination creation."""

    @pytest.mark.asyncio
    async def test_retries_exhausted_fails_order(self, eth, near, watchers, coordinator, store):
        await _init(watchers)
        near.fail_next("create", RevertingCall("create_swap_order"), times=3)
        source = await _open_eth_to_near(eth, watchers)

        order = store.get(f"ETH:{source.escrow_id}")
        assert order.state == SwapState.FAILED
        assert order.retry_count == 3
        assert "create_swap_order" in order.last_error
        assert len(near.calls) == 3

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, eth, near, watchers, coordinator):
        await _init(watchers)
        near.fail_next("create", RevertingCall("create_swap_order"), times=2)
        source = await _open_eth_to_near(eth, watchers)

        order = coordinator.get_order(f"ETH:{source.escrow_id}")
        assert order.state == SwapState.DEST_ESCROW_PENDING
        assert order.retry_count == 2
        assert order.dest_escrow_ref is not None

    @pytest.mark.asyncio
    async def test_configuration_error_fails_without_retry(self, eth, near, watchers, coordinator, store):
        await _init(watchers)
        near.fail_next("create", ConfigurationError("No NEAR signer configured", keys=["near_private_key"]))
        source = await _open_eth_to_near(eth, watchers)

        order = store.get(f"ETH:{source.escrow_id}")
        assert order.state == SwapState.FAILED
        assert order.retry_count == 0
        assert "signer" in order.last_error
        assert len(near.calls) == 1

        # The deposit was handled; later cycles do not try again
        await _cycle(watchers, Chain.ETH)
        assert len(near.calls) == 1


class TestInterruptedCreation:
    """Tests for a destination create whose bookkeeping did not complete."""

    @pytest.mark.asyncio
    async def test_order_stored_before_create(self, eth, near, watchers, coordinator, store):
        await _init(watchers)
        near.fail_next("create", RuntimeError("process killed"))
        source = await _open_eth_to_near(eth, watchers)
        order_id = f"ETH:{source.escrow_id}"

        order = store.get(order_id)
        assert order.state == SwapState.DEST_ESCROW_PENDING
        assert order.dest_escrow_ref is None
        assert near.escrows() == []

        # The pending deposit is handled again on the next cycle
        await _cycle(watchers, Chain.ETH)

        order = store.get(order_id)
        assert len(near.calls) == 2
        assert len(near.escrows()) == 1
        assert order.dest_escrow_ref == near.escrows()[0].ref

    @pytest.mark.asyncio
    async def test_failed_save_recovers_from_ledger(self, eth, near, watchers, coordinator, store, monkeypatch):
        await _init(watchers)
        save = store.save
        failures = []

        def flaky_save(order):
            if order.dest_escrow_ref is not None and not failures:
                failures.append(order.order_id)
                raise StorageError(f"Failed to save order {order.order_id}: disk I/O error")
            save(order)

        monkeypatch.setattr(store, "save", flaky_save)
        source = await _open_eth_to_near(eth, watchers)
        order_id = f"ETH:{source.escrow_id}"
        assert failures == [order_id]
        assert store.get(order_id).dest_escrow_ref is None

        await _cycle(watchers, Chain.ETH)

        order = store.get(order_id)
        assert near.calls == [("create", order_id)]
        assert order.dest_escrow_ref is not None

        # The swap still completes once the user claims on NEAR
        await _cycle(watchers, Chain.NEAR)
        assert store.get(order_id).state == SwapState.DEST_ESCROW_LOCKED
        near.reveal(order.dest_escrow_ref.escrow_id, SECRET)
        await _cycle(watchers, Chain.NEAR)

        assert store.get(order_id).state == SwapState.WITHDRAWN
        assert (await eth.get_escrow(source.escrow_id)).status == EscrowStatus.WITHDRAWN

    @pytest.mark.asyncio
    async def test_unrecorded_create_found_on_chain(self, eth, near, watchers, coordinator, ledger, monkeypatch):
        await _init(watchers)
        record_action = ledger.record_action
        failures = []

        def flaky_record(order_id, action, tx_hash=None):
            if action == "create" and not failures:
                failures.append(order_id)
                raise StorageError(f"Failed to record action {action} for {order_id}")
            return record_action(order_id, action, tx_hash)

        monkeypatch.setattr(ledger, "record_action", flaky_record)
        source = await _open_eth_to_near(eth, watchers)
        order_id = f"ETH:{source.escrow_id}"
        created = near.escrows()[0]

        # A user reusing the hash on NEAR must not be mistaken for our escrow
        near.lock(USER_NEAR, USER_EVM, 10**24, SECRET_HASH, START + 7200)
        await _cycle(watchers, Chain.ETH)

        order = coordinator.get_order(order_id)
        assert near.calls == [("create", order_id)]
        assert order.dest_escrow_ref == created.ref
        assert ledger.get_action(order_id, "create") == str(created.ref)


class TestEscrowTracking:
    """Tests for the escrows each chain is asked to watch."""

    @pytest.mark.asyncio
    async def test_open_order_escrows_tracked_until_terminal(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = await _open_eth_to_near(eth, watchers)
        await _cycle(watchers, Chain.NEAR)
        order = coordinator.get_order(f"ETH:{source.escrow_id}")

        assert eth.tracked_escrows == {source.escrow_id}
        assert near.tracked_escrows == {order.dest_escrow_ref.escrow_id}

        near.reveal(order.dest_escrow_ref.escrow_id, SECRET)
        await _cycle(watchers, Chain.NEAR)

        assert coordinator.get_order(order.order_id).state == SwapState.WITHDRAWN
        assert eth.tracked_escrows == set()
        assert near.tracked_escrows == set()

    @pytest.mark.asyncio
    async def test_restart_retracks_open_orders(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = near.lock(USER_NEAR, USER_EVM, 10**24, SECRET_HASH, START + 7200)
        await _cycle(watchers, Chain.NEAR)
        order = coordinator.get_order(f"NEAR:{source.escrow_id}")
        dest_id = order.dest_escrow_ref.escrow_id

        # A fresh process starts with nothing tracked
        eth.tracked_escrows.clear()
        near.tracked_escrows.clear()

        assert coordinator.track_open_orders() == 1
        assert eth.tracked_escrows == {dest_id}
        assert near.tracked_escrows == {source.escrow_id}

    @pytest.mark.asyncio
    async def test_failed_order_untracked(self, eth, near, watchers, coordinator):
        await _init(watchers)
        near.fail_next("create", RevertingCall("create_swap_order"), times=3)
        await _open_eth_to_near(eth, watchers)

        assert coordinator.track_open_orders() == 0
        assert eth.tracked_escrows == set()


class TestOrderLocks:
    """Tests for per-order lock bookkeeping."""

    @pytest.mark.asyncio
    async def test_rejected_deposits_leave_no_locks(self, eth, near, watchers, coordinator):
        await _init(watchers)
        for n in range(20):
            eth.lock(USER_EVM, "Not A Near Account!", 10**18, hash_secret(f"s{n}"), START + 7200)
        await _cycle(watchers, Chain.ETH)

        assert coordinator.list_orders() == []
        assert len(coordinator._locks) == 0

    @pytest.mark.asyncio
    async def test_completed_swap_leaves_no_locks(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = await _open_eth_to_near(eth, watchers)
        await _cycle(watchers, Chain.NEAR)
        dest_id = coordinator.get_order(f"ETH:{source.escrow_id}").dest_escrow_ref.escrow_id
        near.reveal(dest_id, SECRET)
        await _cycle(watchers, Chain.NEAR)

        assert len(coordinator._locks) == 0


class TestObservedRefunds:
    """Tests for Refund events seen on chain."""

    async def _locked_order(self, eth, near, watchers, coordinator):
        await _init(watchers)
        source = await _open_eth_to_near(eth, watchers)
        await _cycle(watchers, Chain.NEAR)
        order = coordinator.get_order(f"ETH:{source.escrow_id}")
        assert order.state == SwapState.DEST_ESCROW_LOCKED
        eth.advance_time(8_000)
        near.advance_time(8_000)
        return order

    @pytest.mark.asyncio
    async def test_refund_with_other_escrow_active(self, eth, near, watchers, coordinator):
        order = await self._locked_order(eth, near, watchers, coordinator)

        await near.refund(order.dest_escrow_ref.escrow_id)
        await _cycle(watchers, Chain.NEAR)

        assert coordinator.get_order(order.order_id).state == SwapState.DEST_ESCROW_LOCKED

    @pytest.mark.asyncio
    async def test_refund_of_last_active_escrow(self, eth, near, watchers, coordinator):
        order = await self._locked_order(eth, near, watchers, coordinator)

        await near.refund(order.dest_escrow_ref.escrow_id)
        await _cycle(watchers, Chain.NEAR)
        await eth.refund(order.source_escrow_ref.escrow_id)
        await _cycle(watchers, Chain.ETH)

        refunded = coordinator.get_order(order.order_id)
        assert refunded.state == SwapState.REFUNDED
        assert not any(op == "withdraw" for op, _ in eth.calls + near.calls)
        assert eth.tracked_escrows == set()
