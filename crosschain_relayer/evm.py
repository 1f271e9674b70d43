"""
EVM escrow adapter: factory / escrow contracts over AsyncWeb3.
"""

from typing import Any, Awaitable, Optional, TypeVar

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import BadFunctionCallOutput, BlockNotFound, ContractLogicError

from .errors import BlockNotFoundError, ConfigurationError, ContractError, NetworkError, RelayerError
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

logger = structlog.get_logger()

T = TypeVar("T")

ZERO_ADDRESS = "0x" + "00" * 20
NATIVE_TOKEN = "native"

# getDetails().status
STATUS_CODES = {
    0: EscrowStatus.ACTIVE,
    1: EscrowStatus.WITHDRAWN,
    2: EscrowStatus.REFUNDED,
}

# Minimal ABIs for contracts we interact with
ESCROW_ABI = [
    {
        "inputs": [],
        "name": "getDetails",
        "outputs": [
            {
                "components": [
                    {"name": "status", "type": "uint8"},
                    {"name": "token", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "timelock", "type": "uint256"},
                    {"name": "secretHash", "type": "bytes32"},
                    {"name": "initiator", "type": "address"},
                    {"name": "recipient", "type": "address"},
                    {"name": "chainId", "type": "uint256"},
                ],
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "secret", "type": "string"}],
        "name": "withdraw",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "refund",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "secret", "type": "string"},
        ],
        "name": "Withdrawn",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "initiator", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "Refunded",
        "type": "event",
    },
]

IMMUTABLES_COMPONENTS = [
    {"name": "orderHash", "type": "bytes32"},
    {"name": "hashlock", "type": "bytes32"},
    {"name": "maker", "type": "address"},
    {"name": "taker", "type": "address"},
    {"name": "token", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "safetyDeposit", "type": "uint256"},
    {"name": "timelocks", "type": "uint256"},
]

FACTORY_ABI = [
    {
        "inputs": [
            {"components": IMMUTABLES_COMPONENTS, "name": "dstImmutables", "type": "tuple"},
            {"name": "srcCancellationTimestamp", "type": "uint256"},
        ],
        "name": "createDstEscrow",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "escrow", "type": "address"},
            {"indexed": True, "name": "initiator", "type": "address"},
            {"indexed": False, "name": "token", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "targetChain", "type": "string"},
            {"indexed": False, "name": "targetAddress", "type": "string"},
        ],
        "name": "EscrowCreated",
        "type": "event",
    },
]

ESCROW_CREATED_TOPIC = Web3.keccak(
    text="EscrowCreated(address,address,address,uint256,string,string)"
)
WITHDRAWN_TOPIC = Web3.keccak(text="Withdrawn(address,string)")
REFUNDED_TOPIC = Web3.keccak(text="Refunded(address,uint256)")


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else f"0x{text}"


def parse_details(escrow_id: str, details: Any, block_number: int = 0) -> Escrow:
    """Build an Escrow from a getDetails() tuple."""
    status, token, amount, timelock, secret_hash, initiator, recipient, chain_id = details
    if status not in STATUS_CODES:
        raise ContractError(f"Unknown escrow status {status}", contract=escrow_id, method="getDetails")
    return Escrow(
        escrow_id=escrow_id,
        chain=Chain.ETH,
        status=STATUS_CODES[status],
        token=NATIVE_TOKEN if token == ZERO_ADDRESS else token,
        amount=amount,
        timelock=timelock,
        secret_hash=_hex(secret_hash).lower(),
        initiator=initiator,
        recipient=recipient,
        chain_id=chain_id,
        block_number=block_number,
    )


class EvmEscrowGateway(EscrowGateway):
    """
    Async EVM client for the escrow factory and its escrows.

    Also serves as the EVM BlockSource for ChainWatcher.
    """

    chain = Chain.ETH

    def __init__(
        self,
        rpc_url: str,
        factory_address: str,
        private_key: str = "",
        chain_id: int = 11155111,
        watched_escrows: Optional[list[str]] = None,
        w3: Optional[AsyncWeb3] = None,
        **gateway_kwargs: Any,
    ):
        super().__init__(**gateway_kwargs)
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.chain_id = chain_id
        self.account = Account.from_key(private_key) if private_key else None
        self.factory_address = Web3.to_checksum_address(factory_address)
        self.factory = self.w3.eth.contract(address=self.factory_address, abi=FACTORY_ABI)
        # Configured addresses are always watched; order escrows come and go via track_escrow
        self.static_escrows = {Web3.to_checksum_address(a) for a in watched_escrows or []}

    @property
    def address(self) -> str:
        """Get account address."""
        if not self.account:
            raise ConfigurationError("No EVM private key configured", keys=["evm_private_key"])
        return self.account.address

    def _escrow(self, address: str) -> Any:
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=ESCROW_ABI)

    def track_escrow(self, escrow_id: str) -> None:
        super().track_escrow(Web3.to_checksum_address(escrow_id))

    def untrack_escrow(self, escrow_id: str) -> None:
        super().untrack_escrow(Web3.to_checksum_address(escrow_id))

    async def _rpc(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except ContractLogicError as e:
            raise ContractError(str(e), contract=self.factory_address, method=operation) from e
        except RelayerError:
            raise
        except Exception as e:
            raise NetworkError(str(e), chain=self.chain.value, operation=operation) from e

    # Reads

    async def current_height(self) -> int:
        return await self._rpc("eth_blockNumber", self.w3.eth.block_number)

    async def current_timestamp(self) -> int:
        block = await self._rpc("eth_getBlockByNumber", self.w3.eth.get_block("latest"))
        return block["timestamp"]

    async def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        contract = self._escrow(escrow_id)
        try:
            details = await self._rpc("getDetails", contract.functions.getDetails().call())
        except NetworkError as e:
            if isinstance(e.__cause__, BadFunctionCallOutput):
                return None
            raise
        return parse_details(Web3.to_checksum_address(escrow_id), details)

    # Writes

    async def _send(self, function: Any, gas_limit: int = 500_000, value: int = 0) -> TxReceipt:
        """Sign, broadcast and wait for a contract call."""
        if not self.account:
            raise ConfigurationError("No EVM private key configured", keys=["evm_private_key"])

        nonce = await self._rpc("eth_getTransactionCount", self.w3.eth.get_transaction_count(self.address))
        gas_price = await self._rpc("eth_gasPrice", self.w3.eth.gas_price)
        tx = await self._rpc(
            "build_transaction",
            function.build_transaction(
                {
                    "chainId": self.chain_id,
                    "from": self.address,
                    "nonce": nonce,
                    "value": value,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                }
            ),
        )

        signed = self.account.sign_transaction(tx)
        tx_hash = await self._rpc(
            "eth_sendRawTransaction", self.w3.eth.send_raw_transaction(signed.raw_transaction)
        )
        receipt = await self._rpc(
            "wait_for_transaction_receipt", self.w3.eth.wait_for_transaction_receipt(tx_hash)
        )
        if receipt["status"] != 1:
            raise ContractError(
                f"Transaction {_hex(tx_hash)} reverted",
                contract=receipt.get("to") or "",
                method=function.fn_name,
            )
        return TxReceipt(
            tx_hash=_hex(tx_hash),
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            logs=[_hex(log["topics"][0]) for log in receipt["logs"] if log["topics"]],
        )

    async def _send_withdraw(self, escrow: Escrow, secret: str) -> TxReceipt:
        receipt = await self._send(self._escrow(escrow.escrow_id).functions.withdraw(secret), gas_limit=200_000)
        receipt.escrow_id = escrow.escrow_id
        return receipt

    async def _send_refund(self, escrow: Escrow) -> TxReceipt:
        receipt = await self._send(self._escrow(escrow.escrow_id).functions.refund(), gas_limit=150_000)
        receipt.escrow_id = escrow.escrow_id
        return receipt

    async def _send_create(self, params: CreateEscrowParams) -> TxReceipt:
        immutables = (
            Web3.keccak(text=params.order_id),
            bytes.fromhex(params.secret_hash.removeprefix("0x")),
            Web3.to_checksum_address(params.recipient),
            self.address,
            ZERO_ADDRESS if params.token == NATIVE_TOKEN else Web3.to_checksum_address(params.token),
            params.amount,
            params.safety_deposit,
            params.dest_cancellation,
        )
        function = self.factory.functions.createDstEscrow(immutables, params.src_cancellation)
        receipt = await self._send(function, gas_limit=800_000, value=params.attached_value)

        raw = await self._rpc(
            "eth_getTransactionReceipt", self.w3.eth.get_transaction_receipt(receipt.tx_hash)
        )
        for event in self.factory.events.EscrowCreated().process_receipt(raw):
            receipt.escrow_id = Web3.to_checksum_address(event["args"]["escrow"])
            break
        return receipt

    # Search

    async def _creation_records(self, from_height: int, to_height: int) -> list[tuple[int, str]]:
        logs = await self._rpc(
            "eth_getLogs",
            self.w3.eth.get_logs(
                {
                    "fromBlock": from_height,
                    "toBlock": to_height,
                    "address": self.factory_address,
                    "topics": [ESCROW_CREATED_TOPIC],
                }
            ),
        )
        records = []
        for log in logs:
            event = self.factory.events.EscrowCreated().process_log(log)
            records.append((event["blockNumber"], event["args"]["escrow"]))
        return records

    # BlockSource

    async def get_block_events(self, height: int) -> list[CrossChainMessage]:
        """Decode escrow lifecycle events in one block."""
        try:
            block = await self.w3.eth.get_block(height)
        except BlockNotFound as e:
            raise BlockNotFoundError(self.chain.value, height) from e
        except Exception as e:
            raise NetworkError(str(e), chain=self.chain.value, operation="get_block") from e

        addresses = [self.factory_address, *sorted(self.static_escrows | self.tracked_escrows)]
        logs = await self._rpc(
            "eth_getLogs",
            self.w3.eth.get_logs({"fromBlock": height, "toBlock": height, "address": addresses}),
        )

        messages = []
        for log in logs:
            message = await self._decode_log(log, height, block["timestamp"])
            if message is not None:
                messages.append(message)
        return messages

    async def _decode_log(self, log: Any, height: int, timestamp: int) -> Optional[CrossChainMessage]:
        if not log["topics"]:
            return None
        topic = bytes(log["topics"][0])
        tx_hash = _hex(log["transactionHash"])
        message_id = make_message_id(self.chain, tx_hash, log["logIndex"])

        if topic == bytes(ESCROW_CREATED_TOPIC):
            event = self.factory.events.EscrowCreated().process_log(log)
            escrow_address = Web3.to_checksum_address(event["args"]["escrow"])
            escrow = await self.get_escrow(escrow_address)
            if escrow is None:
                logger.warning("escrow_details_unavailable", escrow=escrow_address)
                return None
            return CrossChainMessage(
                message_id=message_id,
                type=MessageType.DEPOSIT,
                source_chain=self.chain,
                dest_chain=Chain.NEAR,
                sender=event["args"]["initiator"],
                recipient=event["args"]["targetAddress"],
                amount=event["args"]["amount"],
                token=escrow.token,
                secret_hash=escrow.secret_hash,
                source_tx_hash=tx_hash,
                observed_at_block=height,
                escrow_id=escrow_address,
                timelock=escrow.timelock,
                observed_at=timestamp,
            )

        if topic not in (bytes(WITHDRAWN_TOPIC), bytes(REFUNDED_TOPIC)):
            return None

        escrow_address = Web3.to_checksum_address(log["address"])
        escrow = await self.get_escrow(escrow_address)
        if escrow is None:
            return None
        contract = self._escrow(escrow_address)

        if topic == bytes(WITHDRAWN_TOPIC):
            event = contract.events.Withdrawn().process_log(log)
            message_type, sender, secret = MessageType.WITHDRAWAL, event["args"]["recipient"], event["args"]["secret"]
        else:
            event = contract.events.Refunded().process_log(log)
            message_type, sender, secret = MessageType.REFUND, event["args"]["initiator"], None

        return CrossChainMessage(
            message_id=message_id,
            type=message_type,
            source_chain=self.chain,
            dest_chain=Chain.NEAR,
            sender=sender,
            recipient=escrow.recipient,
            amount=escrow.amount,
            token=escrow.token,
            secret_hash=escrow.secret_hash,
            source_tx_hash=tx_hash,
            observed_at_block=height,
            escrow_id=escrow_address,
            secret=secret,
            timelock=escrow.timelock,
            observed_at=timestamp,
        )
