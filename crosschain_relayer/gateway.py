"""
Escrow gateway: guarded HTLC operations and bounded escrow search.

Chain adapters (evm.py, near.py, mock.py) implement the raw calls; the
guards in EscrowGateway run before any state-mutating call reaches a chain.
"""

from abc import ABC, abstractmethod
from typing import Optional, Protocol

import structlog

from .errors import (
    InvalidState,
    RelayerError,
    SecretMismatch,
    TimelockMismatch,
    TimelockNotExpired,
    ValidationError,
    ValueMismatch,
)
from .models import (
    Chain,
    CreateEscrowParams,
    CrossChainMessage,
    Escrow,
    EscrowRef,
    EscrowStatus,
    TxReceipt,
    addresses_equal,
    is_secret_hash,
    normalize_hash,
    secret_matches,
)

logger = structlog.get_logger()

DEFAULT_SEARCH_WINDOW = 10_000
DEFAULT_MAX_CANDIDATES = 100
DEFAULT_TIMELOCK_OFFSET = 1800


class BlockSource(Protocol):
    """Per-chain block reader used by ChainWatcher."""

    chain: Chain

    async def current_height(self) -> int:
        ...

    async def get_block_events(self, height: int) -> list[CrossChainMessage]:
        """Escrow events in one block. Raises BlockNotFoundError if pruned."""
        ...


class EscrowGateway(ABC):
    """
    Chain-agnostic escrow operations.

    Subclasses provide the raw chain calls (`_send_*`, `_creation_records`,
    `get_escrow`, `current_height`, `current_timestamp`).
    """

    chain: Chain

    def __init__(
        self,
        search_window: int = DEFAULT_SEARCH_WINDOW,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        timelock_offset: int = DEFAULT_TIMELOCK_OFFSET,
    ):
        self.search_window = search_window
        self.max_candidates = max_candidates
        self.timelock_offset = timelock_offset
        # Escrows of open orders; their withdraw / refund events must be observed
        self.tracked_escrows: set[str] = set()

    def track_escrow(self, escrow_id: str) -> None:
        self.tracked_escrows.add(escrow_id)

    def untrack_escrow(self, escrow_id: str) -> None:
        self.tracked_escrows.discard(escrow_id)

    # Raw chain access

    @abstractmethod
    async def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        """Live escrow details, or None if the escrow does not exist."""

    @abstractmethod
    async def current_height(self) -> int:
        ...

    @abstractmethod
    async def current_timestamp(self) -> int:
        ...

    @abstractmethod
    async def _send_withdraw(self, escrow: Escrow, secret: str) -> TxReceipt:
        ...

    @abstractmethod
    async def _send_refund(self, escrow: Escrow) -> TxReceipt:
        ...

    @abstractmethod
    async def _send_create(self, params: CreateEscrowParams) -> TxReceipt:
        """Broadcast the creation; the receipt carries the new escrow id."""

    @abstractmethod
    async def _creation_records(self, from_height: int, to_height: int) -> list[tuple[int, str]]:
        """(block_number, escrow_id) of escrow creations in the range."""

    # Guarded operations

    async def _require_escrow(self, escrow_id: str, action: str) -> Escrow:
        escrow = await self.get_escrow(escrow_id)
        if escrow is None:
            raise InvalidState(escrow_id, "not_found", action)
        if escrow.status != EscrowStatus.ACTIVE:
            raise InvalidState(escrow_id, escrow.status.value, action)
        return escrow

    async def withdraw(self, escrow_id: str, secret: str) -> TxReceipt:
        """Withdraw with the preimage. No timelock check applies."""
        escrow = await self._require_escrow(escrow_id, "withdraw")
        if not secret_matches(secret, escrow.secret_hash):
            raise SecretMismatch(escrow.secret_hash)

        receipt = await self._send_withdraw(escrow, secret)
        logger.info(
            "escrow_withdrawn",
            chain=self.chain.value,
            escrow=escrow_id,
            tx_hash=receipt.tx_hash,
        )
        return receipt

    async def refund(self, escrow_id: str) -> TxReceipt:
        """Refund after the timelock. Zero remaining amount is a no-op."""
        escrow = await self._require_escrow(escrow_id, "refund")
        now = await self.current_timestamp()
        if now < escrow.timelock:
            raise TimelockNotExpired(escrow_id, escrow.timelock - now)
        if escrow.refundable_amount == 0:
            logger.info("refund_noop", chain=self.chain.value, escrow=escrow_id)
            return TxReceipt(tx_hash="", noop=True, escrow_id=escrow_id)

        receipt = await self._send_refund(escrow)
        logger.info(
            "escrow_refunded",
            chain=self.chain.value,
            escrow=escrow_id,
            amount=escrow.refundable_amount,
            tx_hash=receipt.tx_hash,
        )
        return receipt

    def compute_dest_cancellation(self, observed_timestamp: int) -> int:
        """Destination cancellation time for an escrow created now."""
        return observed_timestamp + self.timelock_offset

    async def create_escrow(self, params: CreateEscrowParams) -> EscrowRef:
        """Create a counterpart escrow after checking timelock and value."""
        if not is_secret_hash(params.secret_hash):
            raise ValidationError("Malformed secret hash", field="secret_hash", value=params.secret_hash)
        if params.amount <= 0:
            raise ValidationError("Escrow amount must be positive", field="amount", value=params.amount)
        if params.dest_cancellation >= params.src_cancellation:
            raise TimelockMismatch(params.dest_cancellation, params.src_cancellation)
        expected = params.amount + params.safety_deposit
        if params.attached_value != expected:
            raise ValueMismatch(params.attached_value, expected)

        receipt = await self._send_create(params)
        if not receipt.escrow_id:
            raise ValidationError("Creation receipt carries no escrow id", field="escrow_id")
        logger.info(
            "escrow_created",
            chain=self.chain.value,
            order_id=params.order_id,
            escrow=receipt.escrow_id,
            amount=params.amount,
            tx_hash=receipt.tx_hash,
        )
        return EscrowRef(self.chain, receipt.escrow_id)

    # Search

    async def _candidates(self, search_window: Optional[int]) -> list[str]:
        window = search_window if search_window is not None else self.search_window
        current = await self.current_height()
        records = await self._creation_records(max(0, current - window), current)
        records.sort(key=lambda r: r[0], reverse=True)
        return [escrow_id for _, escrow_id in records[: self.max_candidates]]

    async def _scan(self, predicate, search_window: Optional[int]) -> Optional[Escrow]:
        for escrow_id in await self._candidates(search_window):
            try:
                escrow = await self.get_escrow(escrow_id)
            except RelayerError as e:
                logger.debug("search_candidate_skipped", escrow=escrow_id, error=str(e))
                continue
            if escrow is not None and escrow.is_active and predicate(escrow):
                return escrow
        return None

    async def find_by_secret_hash(
        self, secret_hash: str, search_window: Optional[int] = None
    ) -> Optional[Escrow]:
        """Newest active escrow locked with `secret_hash`."""
        target = normalize_hash(secret_hash)
        return await self._scan(
            lambda e: normalize_hash(e.secret_hash) == target, search_window
        )

    async def find_by_initiator_and_amount(
        self,
        initiator: str,
        amount: int,
        tolerance: int = 0,
        search_window: Optional[int] = None,
    ) -> Optional[Escrow]:
        """Newest active escrow from `initiator` whose amount is within tolerance."""
        return await self._scan(
            lambda e: addresses_equal(e.initiator, initiator) and abs(e.amount - amount) <= tolerance,
            search_window,
        )
