"""
In-memory chain for dry runs and tests.

MockChain is both a BlockSource and an EscrowGateway: escrow operations
mutate its state and append events to a new block, which a ChainWatcher
then observes like on a real chain.
"""

import hashlib
import itertools
from dataclasses import replace
from typing import Optional

from .errors import BlockNotFoundError, ContractError, NetworkError
from .gateway import EscrowGateway
from .models import (
    Chain,
    CreateEscrowParams,
    CrossChainMessage,
    Escrow,
    EscrowStatus,
    MessageType,
    TxReceipt,
    make_message_id,
)


class MockChain(EscrowGateway):
    """
    Mock chain for testing without a real node.

    Height and timestamp only move when blocks are mined or `advance_time`
    is called.
    """

    def __init__(
        self,
        chain: Chain,
        counter_chain: Optional[Chain] = None,
        start_height: int = 100,
        start_timestamp: int = 1_700_000_000,
        block_time: int = 12,
        **gateway_kwargs,
    ) -> None:
        super().__init__(**gateway_kwargs)
        self.chain = chain
        self.counter_chain = counter_chain or (Chain.NEAR if chain == Chain.ETH else Chain.ETH)
        self.height = start_height
        self.timestamp = start_timestamp
        self.block_time = block_time
        self.relayer_account = "relayer" if chain == Chain.NEAR else "0x" + "ee" * 20

        self._escrows: dict[str, Escrow] = {}
        self._blocks: dict[int, list[CrossChainMessage]] = {}
        self._created_at: list[tuple[int, str]] = []
        self._ids = itertools.count(1)

        # Failure injection
        self.missing_blocks: set[int] = set()
        self.broken_blocks: set[int] = set()
        self._failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, str]] = []

    # Test controls

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of `method` raise `error`."""
        self._failures.setdefault(method, []).extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        queue = self._failures.get(method)
        if queue:
            raise queue.pop(0)

    def advance_time(self, seconds: int) -> None:
        self.timestamp += seconds

    def mine(self, events: Optional[list[CrossChainMessage]] = None) -> int:
        """Append a block holding `events`. Returns its height."""
        self.height += 1
        self.timestamp += self.block_time
        block = []
        for index, event in enumerate(events or []):
            block.append(
                replace(
                    event,
                    message_id=make_message_id(self.chain, event.source_tx_hash, index),
                    observed_at_block=self.height,
                    observed_at=self.timestamp,
                )
            )
        self._blocks[self.height] = block
        return self.height

    def mine_empty(self, count: int = 1) -> int:
        for _ in range(count):
            self.mine()
        return self.height

    def _tx_hash(self, *parts: object) -> str:
        digest = hashlib.sha256(":".join(str(p) for p in parts).encode()).hexdigest()
        return "0x" + digest if self.chain == Chain.ETH else digest[:44]

    def _event(
        self,
        message_type: MessageType,
        escrow: Escrow,
        sender: str,
        secret: Optional[str] = None,
    ) -> CrossChainMessage:
        tx_hash = self._tx_hash(message_type.value, escrow.escrow_id, next(self._ids))
        return CrossChainMessage(
            message_id="",
            type=message_type,
            source_chain=self.chain,
            dest_chain=self.counter_chain,
            sender=sender,
            recipient=escrow.recipient,
            amount=escrow.amount,
            token=escrow.token,
            secret_hash=escrow.secret_hash,
            source_tx_hash=tx_hash,
            observed_at_block=0,
            escrow_id=escrow.escrow_id,
            secret=secret,
            timelock=escrow.timelock,
        )

    def lock(
        self,
        initiator: str,
        recipient: str,
        amount: int,
        secret_hash: str,
        timelock: int,
        token: str = "native",
        escrow_id: Optional[str] = None,
    ) -> Escrow:
        """A user locks funds: creates an escrow and mines its Deposit event."""
        escrow_id = escrow_id or self._new_escrow_id()
        escrow = Escrow(
            escrow_id=escrow_id,
            chain=self.chain,
            status=EscrowStatus.ACTIVE,
            token=token,
            amount=amount,
            timelock=timelock,
            secret_hash=secret_hash.lower(),
            initiator=initiator,
            recipient=recipient,
        )
        self._store_created(escrow)
        return escrow

    def reveal(self, escrow_id: str, secret: str, sender: Optional[str] = None) -> None:
        """A user withdraws directly on chain, revealing the secret."""
        escrow = self._escrows[escrow_id]
        escrow.status = EscrowStatus.WITHDRAWN
        self.mine([self._event(MessageType.WITHDRAWAL, escrow, sender or escrow.recipient, secret)])

    def set_remaining(self, escrow_id: str, remaining: int) -> None:
        self._escrows[escrow_id].remaining_amount = remaining

    def escrows(self) -> list[Escrow]:
        return list(self._escrows.values())

    def _new_escrow_id(self) -> str:
        n = next(self._ids)
        if self.chain == Chain.ETH:
            return "0x" + f"{n:040x}"
        return f"order_{n}"

    def _store_created(self, escrow: Escrow) -> None:
        self._escrows[escrow.escrow_id] = escrow
        height = self.mine([self._event(MessageType.DEPOSIT, escrow, escrow.initiator)])
        escrow.block_number = height
        self._created_at.append((height, escrow.escrow_id))

    # BlockSource

    async def current_height(self) -> int:
        self._maybe_fail("current_height")
        return self.height

    async def get_block_events(self, height: int) -> list[CrossChainMessage]:
        self._maybe_fail("get_block_events")
        if height in self.missing_blocks:
            raise BlockNotFoundError(self.chain.value, height)
        if height in self.broken_blocks:
            raise NetworkError(f"Block {height} unavailable", chain=self.chain.value, operation="get_block")
        return list(self._blocks.get(height, []))

    # EscrowGateway

    async def current_timestamp(self) -> int:
        return self.timestamp

    async def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        self._maybe_fail("get_escrow")
        escrow = self._escrows.get(escrow_id)
        return replace(escrow) if escrow else None

    async def _send_withdraw(self, escrow: Escrow, secret: str) -> TxReceipt:
        self.calls.append(("withdraw", escrow.escrow_id))
        self._maybe_fail("withdraw")
        stored = self._escrows[escrow.escrow_id]
        stored.status = EscrowStatus.WITHDRAWN
        event = self._event(MessageType.WITHDRAWAL, stored, self.relayer_account, secret)
        height = self.mine([event])
        return TxReceipt(tx_hash=event.source_tx_hash, block_number=height, escrow_id=escrow.escrow_id)

    async def _send_refund(self, escrow: Escrow) -> TxReceipt:
        self.calls.append(("refund", escrow.escrow_id))
        self._maybe_fail("refund")
        stored = self._escrows[escrow.escrow_id]
        stored.status = EscrowStatus.REFUNDED
        event = self._event(MessageType.REFUND, stored, stored.initiator)
        height = self.mine([event])
        return TxReceipt(tx_hash=event.source_tx_hash, block_number=height, escrow_id=escrow.escrow_id)

    async def _send_create(self, params: CreateEscrowParams) -> TxReceipt:
        self.calls.append(("create", params.order_id))
        self._maybe_fail("create")
        escrow = Escrow(
            escrow_id=self._new_escrow_id(),
            chain=self.chain,
            status=EscrowStatus.ACTIVE,
            token=params.token,
            amount=params.amount,
            timelock=params.dest_cancellation,
            secret_hash=params.secret_hash.lower(),
            initiator=self.relayer_account,
            recipient=params.recipient,
        )
        self._store_created(escrow)
        return TxReceipt(
            tx_hash=self._blocks[escrow.block_number][0].source_tx_hash,
            block_number=escrow.block_number,
            escrow_id=escrow.escrow_id,
        )

    async def _creation_records(self, from_height: int, to_height: int) -> list[tuple[int, str]]:
        return [(h, e) for h, e in self._created_at if from_height <= h <= to_height]


class RevertingCall(ContractError):
    """Convenience error for injecting reverts in tests."""

    def __init__(self, method: str = "call"):
        super().__init__(f"execution reverted: {method}", contract="mock", method=method)
