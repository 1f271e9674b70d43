"""
NEAR escrow adapter.

- NearRPC: async JSON-RPC client (blocks, chunks, tx status, view calls,
  access keys, broadcast).
- NearSigner: borsh-serialized FunctionCall transactions signed with ed25519.
- NearEscrowGateway: escrow contract calls, plus the NEAR BlockSource that
  walks block -> chunks -> transactions -> receipt outcomes -> logs.
"""

import base64
import hashlib
import json
import re
import struct
from dataclasses import dataclass
from typing import Any, Optional

import base58
import httpx
import structlog
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from pydantic import BaseModel

from .errors import BlockNotFoundError, ConfigurationError, ContractError, NetworkError, ValidationError
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
    normalize_hash,
)

logger = structlog.get_logger()

NATIVE_TOKEN = "native"
DEFAULT_GAS = 30_000_000_000_000  # 30 TGas

EVENT_JSON_PREFIX = "EVENT_JSON:"
CREATED_LOG_RE = re.compile(
    r"Created swap order (\w+) for (\d+) yoctoNEAR to recipient (0x[a-fA-F0-9]{40})"
)

# OrderView.status strings
STATUS_MAP = {
    "active": EscrowStatus.ACTIVE,
    "pending": EscrowStatus.ACTIVE,
    "completed": EscrowStatus.WITHDRAWN,
    "withdrawn": EscrowStatus.WITHDRAWN,
    "filled": EscrowStatus.WITHDRAWN,
    "refunded": EscrowStatus.REFUNDED,
    "cancelled": EscrowStatus.REFUNDED,
    "expired": EscrowStatus.REFUNDED,
}

EVENT_TYPES = {
    "swap_order_created": MessageType.DEPOSIT,
    "swap_order_completed": MessageType.WITHDRAWAL,
    "swap_order_refunded": MessageType.REFUND,
}

# RPC error causes meaning the block / chunk is pruned or never existed
NOT_FOUND_CAUSES = {"UNKNOWN_BLOCK", "UNKNOWN_CHUNK", "GARBAGE_COLLECTED_BLOCK", "NOT_SYNCED_YET"}


def to_seconds(value: int) -> int:
    """NEAR timestamps are nanoseconds; contract timelocks may be either."""
    return value // 1_000_000_000 if value > 10**12 else value


class NearRPCConfig(BaseModel):
    """Configuration for NEAR RPC connection."""

    url: str = "https://rpc.testnet.near.org"
    timeout: float = 30.0


class NearRPCError(Exception):
    """Error from NEAR RPC call."""

    def __init__(self, name: str, cause: str, message: str):
        self.name = name
        self.cause = cause
        self.message = message
        super().__init__(f"RPC Error {name}/{cause}: {message}")

    @property
    def is_not_found(self) -> bool:
        return self.cause in NOT_FOUND_CAUSES


class NearRPC:
    """Async NEAR JSON-RPC client."""

    def __init__(self, config: NearRPCConfig):
        self.config = config
        self._request_id = 0

    async def _call(self, method: str, params: Any) -> Any:
        """Make RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            response = await client.post(self.config.url, json=payload)
            response.raise_for_status()
            result = response.json()

        if result.get("error"):
            error = result["error"]
            cause = error.get("cause") or {}
            raise NearRPCError(
                error.get("name", "UNKNOWN"),
                cause.get("name", ""),
                str(error.get("data") or error.get("message", "Unknown error")),
            )

        return result.get("result")

    async def status(self) -> dict[str, Any]:
        return await self._call("status", [])

    async def block(self, block_id: Optional[int] = None) -> dict[str, Any]:
        """Block by height, or the latest final block."""
        params = {"block_id": block_id} if block_id is not None else {"finality": "final"}
        return await self._call("block", params)

    async def chunk(self, chunk_hash: str) -> dict[str, Any]:
        return await self._call("chunk", {"chunk_id": chunk_hash})

    async def tx_status(self, tx_hash: str, sender_id: str) -> dict[str, Any]:
        return await self._call(
            "EXPERIMENTAL_tx_status",
            {"tx_hash": tx_hash, "sender_account_id": sender_id, "wait_until": "EXECUTED"},
        )

    async def call_function(self, account_id: str, method_name: str, args: dict[str, Any]) -> Any:
        """View call; returns the JSON-decoded result."""
        result = await self._call(
            "query",
            {
                "request_type": "call_function",
                "finality": "final",
                "account_id": account_id,
                "method_name": method_name,
                "args_base64": base64.b64encode(json.dumps(args).encode()).decode(),
            },
        )
        raw = bytes(result.get("result", []))
        return json.loads(raw.decode()) if raw else None

    async def view_access_key(self, account_id: str, public_key: str) -> dict[str, Any]:
        return await self._call(
            "query",
            {
                "request_type": "view_access_key",
                "finality": "final",
                "account_id": account_id,
                "public_key": public_key,
            },
        )

    async def broadcast_tx_commit(self, signed_tx: bytes) -> dict[str, Any]:
        return await self._call("broadcast_tx_commit", [base64.b64encode(signed_tx).decode()])


# Borsh encoding


def _u8(value: int) -> bytes:
    return struct.pack("<B", value)


def _u32(value: int) -> bytes:
    return struct.pack("<I", value)


def _u64(value: int) -> bytes:
    return struct.pack("<Q", value)


def _u128(value: int) -> bytes:
    return value.to_bytes(16, "little")


def _string(value: str) -> bytes:
    data = value.encode()
    return _u32(len(data)) + data


def _bytes(value: bytes) -> bytes:
    return _u32(len(value)) + value


@dataclass
class FunctionCall:
    method_name: str
    args: dict[str, Any]
    gas: int = DEFAULT_GAS
    deposit: int = 0

    def serialize(self) -> bytes:
        # Action::FunctionCall is enum variant 2
        return (
            _u8(2)
            + _string(self.method_name)
            + _bytes(json.dumps(self.args, separators=(",", ":")).encode())
            + _u64(self.gas)
            + _u128(self.deposit)
        )


def serialize_transaction(
    signer_id: str,
    public_key: bytes,
    nonce: int,
    receiver_id: str,
    block_hash: bytes,
    actions: list[FunctionCall],
) -> bytes:
    """Borsh-serialize a Transaction (ed25519 key type 0)."""
    if len(public_key) != 32 or len(block_hash) != 32:
        raise ValidationError("public key and block hash must be 32 bytes", field="transaction")
    out = _string(signer_id)
    out += _u8(0) + public_key
    out += _u64(nonce)
    out += _string(receiver_id)
    out += block_hash
    out += _u32(len(actions))
    for action in actions:
        out += action.serialize()
    return out


class NearSigner:
    """ed25519 signer for one NEAR account."""

    def __init__(self, account_id: str, private_key: str):
        if not private_key.startswith("ed25519:"):
            raise ValidationError("NEAR private key must be ed25519:<base58>", field="near_private_key")
        raw = base58.b58decode(private_key.split(":", 1)[1])
        if len(raw) not in (32, 64):
            raise ValidationError("NEAR private key has wrong length", field="near_private_key")
        self.account_id = account_id
        self._key = Ed25519PrivateKey.from_private_bytes(raw[:32])
        self.public_key_bytes = self._key.public_key().public_bytes_raw()

    @property
    def public_key(self) -> str:
        return "ed25519:" + base58.b58encode(self.public_key_bytes).decode()

    def sign_transaction(
        self, receiver_id: str, nonce: int, block_hash: str, actions: list[FunctionCall]
    ) -> tuple[str, bytes]:
        """Return (tx hash, borsh SignedTransaction)."""
        tx = serialize_transaction(
            self.account_id,
            self.public_key_bytes,
            nonce,
            receiver_id,
            base58.b58decode(block_hash),
            actions,
        )
        digest = hashlib.sha256(tx).digest()
        signature = self._key.sign(digest)
        return base58.b58encode(digest).decode(), tx + _u8(0) + signature


# Log parsing


@dataclass
class NearLogEvent:
    """Escrow event decoded from one contract log line."""

    type: MessageType
    order_id: str
    data: dict[str, Any]
    needs_enrichment: bool = False


def parse_log(log: str) -> Optional[NearLogEvent]:
    """Decode an EVENT_JSON or plain text creation log. Unknown logs give None."""
    if log.startswith(EVENT_JSON_PREFIX):
        try:
            payload = json.loads(log[len(EVENT_JSON_PREFIX):])
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        message_type = EVENT_TYPES.get(payload.get("event", ""))
        data = payload.get("data")
        if isinstance(data, list):
            data = data[0] if data else None
        if message_type is None or not isinstance(data, dict) or not data.get("order_id"):
            return None
        return NearLogEvent(type=message_type, order_id=str(data["order_id"]), data=data)

    match = CREATED_LOG_RE.search(log)
    if match:
        order_id, amount, recipient = match.groups()
        return NearLogEvent(
            type=MessageType.DEPOSIT,
            order_id=order_id,
            data={"amount": amount, "recipient": recipient},
            needs_enrichment=True,
        )
    return None


def parse_order_view(order_id: str, view: dict[str, Any]) -> Escrow:
    """Build an Escrow from the contract's get_order view."""
    status = STATUS_MAP.get(str(view.get("status", "")).lower())
    if status is None:
        raise ContractError(f"Unknown order status {view.get('status')}", contract=order_id, method="get_order")
    secret_hash = view.get("hashlock") or view.get("secret_hash") or ""
    remaining = view.get("remaining_amount")
    return Escrow(
        escrow_id=order_id,
        chain=Chain.NEAR,
        status=status,
        token=view.get("token") or NATIVE_TOKEN,
        amount=int(view.get("amount", 0)),
        timelock=to_seconds(int(view.get("timelock") or view.get("expires_at") or 0)),
        secret_hash=normalize_hash(secret_hash) if secret_hash else "",
        initiator=view.get("initiator") or view.get("maker") or "",
        recipient=view.get("recipient") or view.get("target_address") or "",
        remaining_amount=int(remaining) if remaining is not None else None,
    )


class NearEscrowGateway(EscrowGateway):
    """
    Gateway for the NEAR escrow contract. Also the NEAR BlockSource.
    """

    chain = Chain.NEAR

    def __init__(
        self,
        rpc: NearRPC,
        contract_id: str,
        signer: Optional[NearSigner] = None,
        **gateway_kwargs: Any,
    ):
        super().__init__(**gateway_kwargs)
        self.rpc = rpc
        self.contract_id = contract_id
        self.signer = signer
        # (block height, order id) of creations seen by the block source
        self._seen_orders: list[tuple[int, str]] = []

    async def _rpc(self, operation: str, call: Any) -> Any:
        try:
            return await call
        except NearRPCError as e:
            raise ContractError(str(e), contract=self.contract_id, method=operation) from e
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(str(e), chain=self.chain.value, operation=operation) from e

    async def _view(self, method: str, args: dict[str, Any]) -> Any:
        return await self._rpc(method, self.rpc.call_function(self.contract_id, method, args))

    # Reads

    async def current_height(self) -> int:
        block = await self._rpc("block", self.rpc.block())
        return block["header"]["height"]

    async def current_timestamp(self) -> int:
        block = await self._rpc("block", self.rpc.block())
        return to_seconds(int(block["header"]["timestamp"]))

    async def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        view = await self._view("get_order", {"order_id": escrow_id})
        if not view:
            return None
        return parse_order_view(escrow_id, view)

    async def orders_by_maker(self, maker: str, from_index: int = 0, limit: int = 100) -> list[Escrow]:
        views = await self._view("get_orders_by_maker", {"maker": maker, "from_index": from_index, "limit": limit})
        return [parse_order_view(str(v.get("id") or v.get("order_id")), v) for v in views or []]

    # Writes

    async def _function_call(self, method: str, args: dict[str, Any], deposit: int = 0) -> TxReceipt:
        if self.signer is None:
            raise ConfigurationError("No NEAR signer configured", keys=["near_private_key"])

        access_key = await self._rpc(
            "view_access_key", self.rpc.view_access_key(self.signer.account_id, self.signer.public_key)
        )
        tx_hash, signed = self.signer.sign_transaction(
            self.contract_id,
            access_key["nonce"] + 1,
            access_key["block_hash"],
            [FunctionCall(method, args, DEFAULT_GAS, deposit)],
        )
        result = await self._rpc(method, self.rpc.broadcast_tx_commit(signed))

        status = result.get("status", {})
        if "Failure" in status:
            raise ContractError(
                f"NEAR call {method} failed: {status['Failure']}",
                contract=self.contract_id,
                method=method,
            )

        logs = [
            log
            for outcome in result.get("receipts_outcome", [])
            for log in outcome.get("outcome", {}).get("logs", [])
        ]
        receipt = TxReceipt(tx_hash=tx_hash, logs=logs)
        success_value = status.get("SuccessValue")
        if success_value:
            receipt.escrow_id = str(json.loads(base64.b64decode(success_value)))
        return receipt

    async def _send_withdraw(self, escrow: Escrow, secret: str) -> TxReceipt:
        receipt = await self._function_call(
            "complete_swap_order", {"order_id": escrow.escrow_id, "secret": secret}
        )
        receipt.escrow_id = escrow.escrow_id
        return receipt

    async def _send_refund(self, escrow: Escrow) -> TxReceipt:
        receipt = await self._function_call("refund_swap_order", {"order_id": escrow.escrow_id})
        receipt.escrow_id = escrow.escrow_id
        return receipt

    async def _send_create(self, params: CreateEscrowParams) -> TxReceipt:
        now = await self.current_timestamp()
        receipt = await self._function_call(
            "create_swap_order",
            {
                "recipient": params.recipient,
                "hashlock": params.secret_hash.removeprefix("0x"),
                "timelock_duration": params.dest_cancellation - now,
            },
            deposit=params.attached_value,
        )
        if not receipt.escrow_id:
            for log in receipt.logs:
                event = parse_log(log)
                if event is not None and event.type == MessageType.DEPOSIT:
                    receipt.escrow_id = event.order_id
                    break
        return receipt

    # Search

    async def _creation_records(self, from_height: int, to_height: int) -> list[tuple[int, str]]:
        return [(h, order_id) for h, order_id in self._seen_orders if from_height <= h <= to_height]

    async def find_by_initiator_and_amount(
        self,
        initiator: str,
        amount: int,
        tolerance: int = 0,
        search_window: Optional[int] = None,
    ) -> Optional[Escrow]:
        """Query the contract's maker index, newest first, before the block scan."""
        orders = await self.orders_by_maker(initiator, 0, self.max_candidates)
        for escrow in reversed(orders):
            if escrow.is_active and abs(escrow.amount - amount) <= tolerance:
                return escrow
        return await super().find_by_initiator_and_amount(initiator, amount, tolerance, search_window)

    # BlockSource

    async def get_block_events(self, height: int) -> list[CrossChainMessage]:
        try:
            block = await self.rpc.block(height)
        except NearRPCError as e:
            if e.is_not_found:
                raise BlockNotFoundError(self.chain.value, height) from e
            raise NetworkError(str(e), chain=self.chain.value, operation="block") from e
        except httpx.HTTPError as e:
            raise NetworkError(str(e), chain=self.chain.value, operation="block") from e

        timestamp = to_seconds(int(block["header"]["timestamp"]))
        messages: list[CrossChainMessage] = []

        for chunk_info in block.get("chunks", []):
            chunk_hash = chunk_info.get("chunk_hash") or chunk_info.get("hash")
            try:
                chunk = await self.rpc.chunk(chunk_hash)
            except NearRPCError as e:
                if e.is_not_found:
                    logger.debug("chunk_not_found", chunk=chunk_hash, height=height)
                    continue
                raise NetworkError(str(e), chain=self.chain.value, operation="chunk") from e
            except httpx.HTTPError as e:
                raise NetworkError(str(e), chain=self.chain.value, operation="chunk") from e

            for tx in chunk.get("transactions", []):
                if tx.get("receiver_id") != self.contract_id:
                    continue
                messages.extend(await self._transaction_events(tx, height, timestamp))

        return messages

    async def _transaction_events(
        self, tx: dict[str, Any], height: int, timestamp: int
    ) -> list[CrossChainMessage]:
        try:
            status = await self.rpc.tx_status(tx["hash"], tx["signer_id"])
        except (NearRPCError, httpx.HTTPError) as e:
            raise NetworkError(str(e), chain=self.chain.value, operation="tx_status") from e

        messages = []
        index = 0
        for outcome in status.get("receipts_outcome", []):
            body = outcome.get("outcome", {})
            if body.get("executor_id", self.contract_id) != self.contract_id:
                continue
            if "Failure" in (body.get("status") or {}):
                continue
            for log in body.get("logs", []):
                event = parse_log(log)
                if event is None:
                    continue
                message = await self._to_message(event, tx, height, timestamp, index)
                index += 1
                if message is not None:
                    messages.append(message)
        return messages

    async def _to_message(
        self,
        event: NearLogEvent,
        tx: dict[str, Any],
        height: int,
        timestamp: int,
        index: int,
    ) -> Optional[CrossChainMessage]:
        data = dict(event.data)
        escrow: Optional[Escrow] = None
        if event.needs_enrichment or event.type != MessageType.DEPOSIT or not data.get("secret_hash"):
            try:
                escrow = await self.get_escrow(event.order_id)
            except (ContractError, NetworkError) as e:
                logger.warning("near_order_lookup_failed", order_id=event.order_id, error=str(e))
                if event.needs_enrichment:
                    return None

        if event.type == MessageType.DEPOSIT:
            self._seen_orders.append((height, event.order_id))
            del self._seen_orders[: -self.search_window]

        secret_hash = data.get("secret_hash") or data.get("hashlock") or (escrow.secret_hash if escrow else "")
        timelock = data.get("timelock")
        return CrossChainMessage(
            message_id=make_message_id(self.chain, tx["hash"], index),
            type=event.type,
            source_chain=self.chain,
            dest_chain=Chain.ETH,
            sender=data.get("initiator") or (escrow.initiator if escrow else tx["signer_id"]),
            recipient=data.get("recipient") or (escrow.recipient if escrow else ""),
            amount=int(data.get("amount") or (escrow.amount if escrow else 0)),
            token=escrow.token if escrow else NATIVE_TOKEN,
            secret_hash=normalize_hash(secret_hash) if secret_hash else "",
            source_tx_hash=tx["hash"],
            observed_at_block=height,
            escrow_id=event.order_id,
            secret=data.get("secret"),
            timelock=to_seconds(int(timelock)) if timelock else (escrow.timelock if escrow else None),
            observed_at=timestamp,
        )
