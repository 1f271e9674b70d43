"""
Shared data model: escrows, cross-chain messages and swap orders.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from web3 import Web3

EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
NEAR_ACCOUNT_RE = re.compile(r"^(([a-z\d]+[-_])*[a-z\d]+\.)*([a-z\d]+[-_])*[a-z\d]+$")
SECRET_HASH_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


class Chain(str, Enum):
    ETH = "ETH"
    NEAR = "NEAR"


class EscrowStatus(str, Enum):
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    REFUNDED = "refunded"


class MessageType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"


class SwapState(str, Enum):
    CREATED = "created"
    PRICED = "priced"
    DEST_ESCROW_PENDING = "dest_escrow_pending"
    DEST_ESCROW_LOCKED = "dest_escrow_locked"
    SECRET_REVEALED = "secret_revealed"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SwapState.WITHDRAWN, SwapState.REFUNDED, SwapState.FAILED)


@dataclass(frozen=True)
class EscrowRef:
    """Chain-scoped escrow identifier (EVM address or NEAR order id)."""

    chain: Chain
    escrow_id: str

    def __str__(self) -> str:
        return f"{self.chain.value}:{self.escrow_id}"

    @classmethod
    def parse(cls, value: str) -> "EscrowRef":
        chain, _, escrow_id = value.partition(":")
        return cls(chain=Chain(chain), escrow_id=escrow_id)


@dataclass
class Escrow:
    """One HTLC lock on one chain."""

    escrow_id: str
    chain: Chain
    status: EscrowStatus
    token: str
    amount: int  # smallest chain unit (wei, yoctoNEAR)
    timelock: int  # unix seconds, refund allowed from here on
    secret_hash: str  # 0x-prefixed 32-byte hex
    initiator: str
    recipient: str
    chain_id: int = 0
    block_number: int = 0
    remaining_amount: Optional[int] = None

    @property
    def ref(self) -> EscrowRef:
        return EscrowRef(self.chain, self.escrow_id)

    @property
    def is_active(self) -> bool:
        return self.status == EscrowStatus.ACTIVE

    @property
    def refundable_amount(self) -> int:
        if self.remaining_amount is None:
            return self.amount
        return self.remaining_amount


@dataclass
class CrossChainMessage:
    """Normalized lifecycle event observed on one chain."""

    message_id: str
    type: MessageType
    source_chain: Chain
    dest_chain: Chain
    sender: str
    recipient: str
    amount: int
    token: str
    secret_hash: str
    source_tx_hash: str
    observed_at_block: int
    escrow_id: str = ""
    secret: Optional[str] = None
    timelock: Optional[int] = None
    observed_at: Optional[int] = None  # block timestamp, unix seconds

    @property
    def escrow_ref(self) -> EscrowRef:
        return EscrowRef(self.source_chain, self.escrow_id)


# What a ChainWatcher emits is the relayer's internal message.
ChainEvent = CrossChainMessage


@dataclass
class SwapOrder:
    """Coordinator view of one atomic swap spanning two escrows."""

    order_id: str
    state: SwapState
    source_escrow_ref: EscrowRef
    secret_hash: str
    from_chain: Chain
    to_chain: Chain
    from_amount: int
    recipient: str
    created_at: datetime
    expires_at: datetime
    auction_start: int
    dest_escrow_ref: Optional[EscrowRef] = None
    secret: Optional[str] = None
    computed_to_amount: Optional[int] = None
    fee_amount: Optional[int] = None
    retry_count: int = 0
    last_error: Optional[str] = None

    def escrow_refs(self) -> list[EscrowRef]:
        refs = [self.source_escrow_ref]
        if self.dest_escrow_ref is not None:
            refs.append(self.dest_escrow_ref)
        return refs


@dataclass
class CreateEscrowParams:
    """Arguments for creating a counterpart escrow on the destination chain."""

    order_id: str
    secret_hash: str
    recipient: str
    token: str
    amount: int
    safety_deposit: int
    attached_value: int
    dest_cancellation: int
    src_cancellation: int
    maker: str = ""


@dataclass
class TxReceipt:
    """Outcome of a state-mutating escrow call."""

    tx_hash: str
    success: bool = True
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    escrow_id: Optional[str] = None
    noop: bool = False
    logs: list[str] = field(default_factory=list)


def hash_secret(secret: str) -> str:
    """keccak-256 of the UTF-8 secret, 0x-prefixed hex."""
    return "0x" + bytes(Web3.keccak(text=secret)).hex()


def normalize_hash(value: str) -> str:
    value = value.lower()
    return value if value.startswith("0x") else f"0x{value}"


def secret_matches(secret: str, secret_hash: str) -> bool:
    return hash_secret(secret) == normalize_hash(secret_hash)


def is_evm_address(value: str) -> bool:
    return bool(EVM_ADDRESS_RE.match(value or ""))


def is_near_account_id(value: str) -> bool:
    if not value or not 2 <= len(value) <= 64:
        return False
    return bool(NEAR_ACCOUNT_RE.match(value))


def is_secret_hash(value: str) -> bool:
    return bool(SECRET_HASH_RE.match(value or ""))


def addresses_equal(a: str, b: str) -> bool:
    """Compare two chain addresses; hex addresses compare case-insensitively."""
    if a.startswith("0x") and b.startswith("0x"):
        return a.lower() == b.lower()
    return a == b


def make_message_id(chain: Chain, tx_hash: str, index: int = 0) -> str:
    """Deterministic idempotency key for an observed event."""
    # NEAR hashes are base58 and case-sensitive
    if tx_hash.startswith("0x"):
        tx_hash = tx_hash.lower()
    return f"{chain.value}:{tx_hash}:{index}"
