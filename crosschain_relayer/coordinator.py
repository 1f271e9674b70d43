"""
Swap coordinator: matches escrows across chains and drives the HTLC protocol.

Order lifecycle:
    created -> priced -> dest_escrow_pending -> dest_escrow_locked
        -> secret_revealed -> withdrawn
    any non-terminal -> expired -> refunded    (source timelock passed)
    any -> failed                              (retries exhausted, create rejected)

Every outbound create / withdraw / refund is recorded in the idempotency
ledger under (order_id, action) so replayed events never repeat an action.
An order is stored as dest_escrow_pending before its destination escrow is
created; a replayed deposit for such an order first searches the destination
chain for that escrow and only creates when none exists.
"""

import asyncio
import weakref
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from .auction import (
    AuctionCurve,
    compute_output_amount,
    compute_rate,
    compute_safety_deposit,
    estimate_gas_cost,
)
from .db import IdempotencyLedger, SwapOrderStore
from .errors import (
    InvalidState,
    RelayerError,
    TimelockMismatch,
    TimelockNotExpired,
    ValidationError,
    is_retryable,
)
from .gateway import EscrowGateway
from .models import (
    Chain,
    CreateEscrowParams,
    CrossChainMessage,
    Escrow,
    EscrowRef,
    MessageType,
    SwapOrder,
    SwapState,
    addresses_equal,
    is_evm_address,
    is_near_account_id,
    normalize_hash,
    secret_matches,
)

logger = structlog.get_logger()

T = TypeVar("T")

NON_TERMINAL_STATES = [s for s in SwapState if not s.is_terminal]


def to_utc_datetime(timestamp: int) -> datetime:
    """Naive UTC datetime for storage."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


def to_timestamp(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class RetriesExhausted(RelayerError):
    code = "RETRIES_EXHAUSTED"


@dataclass
class ChainAdapter:
    """Everything the coordinator needs to act on one chain."""

    chain: Chain
    gateway: EscrowGateway
    decimals: int
    token: str = "native"
    relayer_account: str = ""
    # Accepted difference when matching escrows by amount
    amount_tolerance: int = 0

    @property
    def name(self) -> str:
        return self.chain.value

    def is_valid_recipient(self, address: str) -> bool:
        if self.chain == Chain.ETH:
            return is_evm_address(address)
        return is_near_account_id(address)


class OrderSubmission(ABC):
    """How the counterpart side of a priced order is put on chain."""

    @abstractmethod
    async def submit(
        self, order: SwapOrder, dest: ChainAdapter, params: CreateEscrowParams
    ) -> EscrowRef:
        ...


class HtlcSubmission(OrderSubmission):
    """Create a plain hashlocked escrow on the destination chain."""

    async def submit(
        self, order: SwapOrder, dest: ChainAdapter, params: CreateEscrowParams
    ) -> EscrowRef:
        return await dest.gateway.create_escrow(params)


class SwapCoordinator:
    """
    Drives swap orders in both directions over a set of ChainAdapters.

    Events for one order are handled one at a time; different orders run
    concurrently.
    """

    def __init__(
        self,
        adapters: list[ChainAdapter],
        ledger: IdempotencyLedger,
        store: SwapOrderStore,
        curve: AuctionCurve,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        safety_deposit_bps: int = 50_000,
        submission: Optional[OrderSubmission] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapters = {a.chain: a for a in adapters}
        self.ledger = ledger
        self.store = store
        self.curve = curve
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.safety_deposit_bps = safety_deposit_bps
        self.submission = submission or HtlcSubmission()
        self._sleep = sleep
        # Entries vanish once no coroutine holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        # secret_hash -> order_id while a destination escrow is being created
        self._inflight: dict[str, str] = {}

    def _adapter(self, chain: Chain) -> ChainAdapter:
        adapter = self.adapters.get(chain)
        if adapter is None:
            raise ValidationError(f"No adapter for chain {chain.value}", field="chain", value=chain.value)
        return adapter

    def _counterpart(self, chain: Chain) -> ChainAdapter:
        for other, adapter in self.adapters.items():
            if other != chain:
                return adapter
        raise ValidationError(f"No counterpart chain for {chain.value}", field="chain", value=chain.value)

    def _lock(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    # Escrow tracking

    def _track(self, order: SwapOrder) -> None:
        for ref in order.escrow_refs():
            self._adapter(ref.chain).gateway.track_escrow(ref.escrow_id)

    def _untrack(self, order: SwapOrder) -> None:
        for ref in order.escrow_refs():
            self._adapter(ref.chain).gateway.untrack_escrow(ref.escrow_id)

    def track_open_orders(self) -> int:
        """Re-register the escrows of every stored non-terminal order after a restart."""
        orders = self.store.list(NON_TERMINAL_STATES)
        for order in orders:
            self._track(order)
        if orders:
            logger.info("open_orders_tracked", count=len(orders))
        return len(orders)

    # Queries

    def get_order(self, order_id: str) -> Optional[SwapOrder]:
        return self.store.get(order_id)

    def list_orders(self, state: Optional[SwapState] = None) -> list[SwapOrder]:
        return self.store.list([state] if state is not None else None)

    # Persistence helpers

    def _transition(self, order: SwapOrder, state: SwapState, persist: bool = True) -> None:
        previous = order.state
        order.state = state
        if persist:
            self.store.save(order)
        if state.is_terminal:
            self._untrack(order)
        logger.info(
            "order_state_changed",
            order_id=order.order_id,
            from_state=previous.value,
            to_state=state.value,
        )

    async def _with_retries(self, order: SwapOrder, action: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run `call`, retrying contract and network failures with a fixed delay."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except Exception as e:
                if not is_retryable(e):
                    raise
                order.retry_count += 1
                order.last_error = str(e)
                logger.warning(
                    "order_action_failed",
                    order_id=order.order_id,
                    action=action,
                    attempt=attempt,
                    max_attempts=self.max_retries,
                    error=str(e),
                )
                if attempt >= self.max_retries:
                    raise RetriesExhausted(
                        f"{action} failed after {attempt} attempts: {e}",
                        {"order_id": order.order_id, "action": action},
                    ) from e
                await self._sleep(self.retry_delay)

    def _fail(self, order: SwapOrder, error: Exception) -> None:
        order.last_error = str(error)
        self._transition(order, SwapState.FAILED)
        logger.error("order_failed", order_id=order.order_id, error=str(error))

    # Event handling

    async def handle_message(self, message: CrossChainMessage) -> None:
        """Entry point for events from every ChainWatcher."""
        if message.type == MessageType.DEPOSIT:
            await self._on_deposit(message)
        elif message.type == MessageType.WITHDRAWAL:
            await self._on_withdrawal(message)
        elif message.type == MessageType.REFUND:
            await self._on_refund(message)

    async def _find_order(self, message: CrossChainMessage) -> Optional[SwapOrder]:
        secret_hash = normalize_hash(message.secret_hash) if message.secret_hash else ""
        inflight = self._inflight.get(secret_hash)
        if inflight is not None:
            # Wait for the in-flight creation to be persisted
            async with self._lock(inflight):
                pass

        order = self.store.find_by_escrow(message.escrow_ref)
        if order is not None or not secret_hash:
            return order

        order = self.store.find_by_secret_hash(secret_hash)
        if order is None:
            return None
        if message.type == MessageType.DEPOSIT:
            # Only a counterpart escrow the order is still waiting for
            if order.to_chain == message.source_chain and order.dest_escrow_ref is None:
                return order
            return None
        return order

    async def _on_deposit(self, message: CrossChainMessage) -> None:
        order = await self._find_order(message)
        if order is not None and order.source_escrow_ref != message.escrow_ref:
            await self._confirm_dest_escrow(order, message)
            return

        if order is None:
            source = self._adapter(message.source_chain)
            if source.relayer_account and addresses_equal(message.sender, source.relayer_account):
                logger.debug("own_escrow_ignored", escrow=str(message.escrow_ref))
                return

        order_id = str(message.escrow_ref)
        async with self._lock(order_id):
            existing = self.store.get(order_id)
            if existing is None:
                await self._open_order(order_id, message)
            elif existing.state == SwapState.DEST_ESCROW_PENDING and existing.dest_escrow_ref is None:
                # Replayed deposit of an order whose creation was interrupted
                await self._recover_submission(existing, message)

    async def _validate_source(
        self, source: ChainAdapter, dest: ChainAdapter, message: CrossChainMessage, now: int
    ) -> Optional[Escrow]:
        escrow = await source.gateway.get_escrow(message.escrow_id)
        reason = None
        if escrow is None:
            reason = "escrow_not_found"
        elif not escrow.is_active:
            reason = f"escrow_{escrow.status.value}"
        elif not addresses_equal(escrow.initiator, message.sender):
            reason = "initiator_mismatch"
        elif now >= escrow.timelock:
            reason = "timelock_passed"
        elif not dest.is_valid_recipient(message.recipient):
            reason = "invalid_recipient"
        if reason is not None:
            logger.warning(
                "deposit_rejected",
                escrow=str(message.escrow_ref),
                message_id=message.message_id,
                reason=reason,
            )
            return None
        return escrow

    async def _open_order(self, order_id: str, message: CrossChainMessage) -> None:
        source = self._adapter(message.source_chain)
        dest = self._counterpart(message.source_chain)
        now = await source.gateway.current_timestamp()

        escrow = await self._validate_source(source, dest, message, now)
        if escrow is None:
            return

        order = SwapOrder(
            order_id=order_id,
            state=SwapState.CREATED,
            source_escrow_ref=escrow.ref,
            secret_hash=normalize_hash(escrow.secret_hash),
            from_chain=source.chain,
            to_chain=dest.chain,
            from_amount=escrow.amount,
            recipient=message.recipient,
            created_at=datetime.utcnow(),
            expires_at=to_utc_datetime(escrow.timelock),
            auction_start=message.observed_at or now,
        )
        logger.info(
            "order_created",
            order_id=order_id,
            from_chain=order.from_chain.value,
            to_chain=order.to_chain.value,
            amount=order.from_amount,
        )

        try:
            params = await self._price(order, source, dest, escrow, now)
        except (ValidationError, TimelockMismatch) as e:
            logger.warning("order_discarded", order_id=order_id, reason=e.code, error=str(e))
            return

        await self._submit(order, dest, params)

    async def _price(
        self,
        order: SwapOrder,
        source: ChainAdapter,
        dest: ChainAdapter,
        escrow: Escrow,
        now: int,
    ) -> CreateEscrowParams:
        rate = compute_rate(now - order.auction_start, self.curve)
        output = compute_output_amount(
            order.from_amount,
            rate,
            source.decimals,
            dest.decimals,
            self.curve.min_fill_fraction,
        )
        order.computed_to_amount = output
        order.fee_amount = estimate_gas_cost(source.chain, dest.chain, 256, self.curve)
        self._transition(order, SwapState.PRICED, persist=False)
        logger.info(
            "order_priced",
            order_id=order.order_id,
            rate_bump_bps=rate,
            to_amount=output,
            fee=order.fee_amount,
        )

        dest_now = await dest.gateway.current_timestamp()
        dest_cancellation = dest.gateway.compute_dest_cancellation(dest_now)
        if dest_cancellation >= escrow.timelock:
            raise TimelockMismatch(dest_cancellation, escrow.timelock)

        safety_deposit = compute_safety_deposit(output, self.safety_deposit_bps)
        return CreateEscrowParams(
            order_id=order.order_id,
            secret_hash=order.secret_hash,
            recipient=order.recipient,
            token=dest.token,
            amount=output,
            safety_deposit=safety_deposit,
            attached_value=output + safety_deposit,
            dest_cancellation=dest_cancellation,
            src_cancellation=escrow.timelock,
            maker=escrow.initiator,
        )

    async def _submit(self, order: SwapOrder, dest: ChainAdapter, params: CreateEscrowParams) -> None:
        if self.ledger.has_action(order.order_id, "create"):
            logger.info("action_already_done", order_id=order.order_id, action="create")
            return

        # Stored before the chain call; a replay reconciles in _recover_submission
        self._transition(order, SwapState.DEST_ESCROW_PENDING)
        self._track(order)
        self._inflight[order.secret_hash] = order.order_id
        try:
            ref = await self._with_retries(
                order, "create", lambda: self.submission.submit(order, dest, params)
            )
        except RetriesExhausted as e:
            self._fail(order, e)
            return
        except RelayerError as e:
            # Guard and validation failures are not retried
            self._fail(order, e)
            return
        finally:
            self._inflight.pop(order.secret_hash, None)

        self._attach_dest_escrow(order, ref)
        logger.info("dest_escrow_submitted", order_id=order.order_id, escrow=str(ref))

    def _attach_dest_escrow(self, order: SwapOrder, ref: EscrowRef) -> None:
        self.ledger.record_action(order.order_id, "create", str(ref))
        order.dest_escrow_ref = ref
        self.store.save(order)
        self._track(order)

    async def _find_dest_escrow(self, order: SwapOrder, dest: ChainAdapter) -> Optional[Escrow]:
        """Locate a destination escrow already created for `order` on chain."""
        if dest.relayer_account and order.computed_to_amount:
            # Our own escrows first; a user may lock with the same hash
            escrow = await dest.gateway.find_by_initiator_and_amount(
                dest.relayer_account, order.computed_to_amount, dest.amount_tolerance
            )
            if escrow is not None and self._is_dest_escrow(order, dest, escrow):
                return escrow
        escrow = await dest.gateway.find_by_secret_hash(order.secret_hash)
        if escrow is not None and self._is_dest_escrow(order, dest, escrow):
            return escrow
        return None

    @staticmethod
    def _is_dest_escrow(order: SwapOrder, dest: ChainAdapter, escrow: Escrow) -> bool:
        if normalize_hash(escrow.secret_hash) != order.secret_hash:
            return False
        # EVM destination escrows name the swap recipient as maker
        parties = (escrow.initiator, escrow.recipient)
        if not any(addresses_equal(p, order.recipient) for p in parties):
            return False
        return not dest.relayer_account or any(addresses_equal(p, dest.relayer_account) for p in parties)

    async def _recover_submission(self, order: SwapOrder, message: CrossChainMessage) -> None:
        """Finish an order left pending without a destination escrow, creating at most once."""
        dest = self._adapter(order.to_chain)
        recorded = self.ledger.get_action(order.order_id, "create")
        if recorded:
            ref = EscrowRef.parse(recorded)
        else:
            escrow = await self._find_dest_escrow(order, dest)
            ref = escrow.ref if escrow is not None else None
        if ref is not None:
            self._attach_dest_escrow(order, ref)
            logger.info("dest_escrow_recovered", order_id=order.order_id, escrow=str(ref))
            return

        source = self._adapter(order.from_chain)
        now = await source.gateway.current_timestamp()
        escrow = await self._validate_source(source, dest, message, now)
        if escrow is None:
            # Left to sweep_expired
            return
        try:
            params = await self._price(order, source, dest, escrow, now)
        except (ValidationError, TimelockMismatch) as e:
            self._fail(order, e)
            return
        await self._submit(order, dest, params)

    async def _confirm_dest_escrow(self, order: SwapOrder, message: CrossChainMessage) -> None:
        async with self._lock(order.order_id):
            order = self.store.get(order.order_id)
            if order is None or order.state != SwapState.DEST_ESCROW_PENDING:
                return
            if message.source_chain != order.to_chain:
                return
            if order.dest_escrow_ref is None:
                dest = self._adapter(order.to_chain)
                if dest.relayer_account and not addresses_equal(message.sender, dest.relayer_account):
                    return
                self._attach_dest_escrow(order, message.escrow_ref)
            elif order.dest_escrow_ref != message.escrow_ref:
                return
            self._transition(order, SwapState.DEST_ESCROW_LOCKED)

    async def _on_withdrawal(self, message: CrossChainMessage) -> None:
        order = await self._find_order(message)
        if order is None or order.state.is_terminal:
            return
        if not message.secret or not secret_matches(message.secret, order.secret_hash):
            logger.warning(
                "secret_rejected",
                order_id=order.order_id,
                escrow=str(message.escrow_ref),
            )
            return

        async with self._lock(order.order_id):
            order = self.store.get(order.order_id)
            if order is None or order.state.is_terminal:
                return
            if order.secret is None:
                order.secret = message.secret
                self._transition(order, SwapState.SECRET_REVEALED)
            await self._complete(order)

    async def _complete(self, order: SwapOrder) -> None:
        """Withdraw every escrow of the order that is still active."""
        for ref in order.escrow_refs():
            action = f"withdraw:{ref}"
            if self.ledger.has_action(order.order_id, action):
                continue
            gateway = self._adapter(ref.chain).gateway
            escrow = await gateway.get_escrow(ref.escrow_id)
            if escrow is None or not escrow.is_active:
                continue
            try:
                receipt = await self._with_retries(
                    order, action, lambda: gateway.withdraw(ref.escrow_id, order.secret)
                )
            except RetriesExhausted as e:
                self._fail(order, e)
                return
            except InvalidState:
                # Someone else withdrew first
                continue
            except RelayerError as e:
                order.last_error = str(e)
                self.store.save(order)
                logger.warning("withdraw_rejected", order_id=order.order_id, escrow=str(ref), error=str(e))
                return
            self.ledger.record_action(order.order_id, action, receipt.tx_hash)

        self._transition(order, SwapState.WITHDRAWN)

    async def _on_refund(self, message: CrossChainMessage) -> None:
        order = await self._find_order(message)
        if order is None or order.state.is_terminal:
            return
        async with self._lock(order.order_id):
            order = self.store.get(order.order_id)
            if order is None or order.state.is_terminal:
                return
            if await self._any_active(order):
                logger.info("partial_refund_observed", order_id=order.order_id, escrow=str(message.escrow_ref))
                return
            self._transition(order, SwapState.REFUNDED)

    async def _any_active(self, order: SwapOrder) -> bool:
        for ref in order.escrow_refs():
            escrow = await self._adapter(ref.chain).gateway.get_escrow(ref.escrow_id)
            if escrow is not None and escrow.is_active:
                return True
        return False

    # Expiry

    async def sweep_expired(self) -> int:
        """Refund non-terminal orders whose source timelock has passed."""
        refunded = 0
        for order in self.store.list(NON_TERMINAL_STATES):
            now = await self._adapter(order.from_chain).gateway.current_timestamp()
            if now < to_timestamp(order.expires_at):
                continue
            async with self._lock(order.order_id):
                current = self.store.get(order.order_id)
                if current is None or current.state.is_terminal:
                    continue
                if await self._refund_order(current):
                    refunded += 1
        return refunded

    async def _refund_order(self, order: SwapOrder) -> bool:
        if order.state != SwapState.EXPIRED:
            self._transition(order, SwapState.EXPIRED)

        refs = [order.dest_escrow_ref, order.source_escrow_ref]
        for ref in [r for r in refs if r is not None]:
            action = f"refund:{ref}"
            if self.ledger.has_action(order.order_id, action):
                continue
            gateway = self._adapter(ref.chain).gateway
            escrow = await gateway.get_escrow(ref.escrow_id)
            if escrow is None or not escrow.is_active:
                continue
            try:
                receipt = await self._with_retries(order, action, lambda: gateway.refund(ref.escrow_id))
            except RetriesExhausted as e:
                self._fail(order, e)
                return False
            except TimelockNotExpired as e:
                logger.info("refund_deferred", order_id=order.order_id, escrow=str(ref), seconds=e.seconds_remaining)
                return False
            except InvalidState:
                continue
            except RelayerError as e:
                order.last_error = str(e)
                self.store.save(order)
                logger.warning("refund_rejected", order_id=order.order_id, escrow=str(ref), error=str(e))
                return False
            self.ledger.record_action(order.order_id, action, receipt.tx_hash)

        self._transition(order, SwapState.REFUNDED)
        return True

    async def resume(self) -> int:
        """Finish withdrawals for orders whose secret was revealed before a restart."""
        resumed = 0
        for order in self.store.list([SwapState.SECRET_REVEALED]):
            async with self._lock(order.order_id):
                current = self.store.get(order.order_id)
                if current is None or current.state != SwapState.SECRET_REVEALED:
                    continue
                await self._complete(current)
                resumed += 1
        return resumed
