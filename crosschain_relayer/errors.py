"""
Error taxonomy for the cross-chain relayer.

Retry policy by class:
- ValidationError and GuardError subclasses: never retried.
- ContractError: retried with a fixed delay up to the configured limit.
- NetworkError: retried at poll cadence (the next cycle is the retry).
"""

from typing import Any, Optional


class RelayerError(Exception):
    """Base exception for all relayer errors."""

    code = "RELAYER_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(RelayerError):
    """Missing or invalid configuration. Fatal at startup."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, keys: Optional[list[str]] = None):
        self.keys = keys or []
        super().__init__(message, {"keys": self.keys})


class StorageError(RelayerError):
    """Ledger or order store failure."""

    code = "STORAGE_ERROR"


class ValidationError(RelayerError):
    """Malformed or out-of-range input."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str = "", value: Any = None):
        self.field = field
        self.value = value
        super().__init__(message, {"field": field, "value": value})


class SecretMismatch(ValidationError):
    """Revealed secret does not hash to the escrow's hashlock."""

    code = "SECRET_MISMATCH"

    def __init__(self, secret_hash: str):
        super().__init__(
            f"Secret does not match hashlock {secret_hash}",
            field="secret",
        )


class FillTooSmall(ValidationError):
    """Priced output falls below the curve's minimum fill fraction."""

    code = "FILL_TOO_SMALL"

    def __init__(self, amount: int, minimum: int):
        self.amount = amount
        self.minimum = minimum
        super().__init__(
            f"Fill amount too small: {amount} < minimum {minimum}",
            field="amount",
            value=amount,
        )


class NetworkError(RelayerError):
    """RPC endpoint unreachable, timed out or returned a transport error."""

    code = "NETWORK_ERROR"

    def __init__(
        self,
        message: str,
        chain: str = "",
        operation: str = "",
        details: Optional[dict[str, Any]] = None,
    ):
        self.chain = chain
        self.operation = operation
        super().__init__(message, {"chain": chain, "operation": operation, **(details or {})})


class BlockNotFoundError(NetworkError):
    """Block is pruned or missing on the node. Treated as an empty block."""

    code = "BLOCK_NOT_FOUND"

    def __init__(self, chain: str, height: int):
        self.height = height
        super().__init__(f"Block {height} not found", chain=chain, operation="get_block")


class ContractError(RelayerError):
    """A contract call reverted or failed against the contract."""

    code = "CONTRACT_ERROR"

    def __init__(
        self,
        message: str,
        contract: str = "",
        method: str = "",
        details: Optional[dict[str, Any]] = None,
    ):
        self.contract = contract
        self.method = method
        super().__init__(message, {"contract": contract, "method": method, **(details or {})})


class GuardError(RelayerError):
    """An escrow action is not valid yet, or no longer valid."""

    code = "GUARD_ERROR"


class InvalidState(GuardError):
    code = "INVALID_STATE"

    def __init__(self, escrow_id: str, status: str, action: str):
        self.escrow_id = escrow_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} escrow {escrow_id} in status {status}",
            {"escrow_id": escrow_id, "status": status, "action": action},
        )


class TimelockNotExpired(GuardError):
    code = "TIMELOCK_NOT_EXPIRED"

    def __init__(self, escrow_id: str, seconds_remaining: int):
        self.escrow_id = escrow_id
        self.seconds_remaining = seconds_remaining
        super().__init__(
            f"Refund of {escrow_id} not available for another {seconds_remaining} seconds",
            {"escrow_id": escrow_id, "seconds_remaining": seconds_remaining},
        )


class TimelockMismatch(GuardError):
    code = "TIMELOCK_MISMATCH"

    def __init__(self, dest_cancellation: int, src_cancellation: int):
        self.dest_cancellation = dest_cancellation
        self.src_cancellation = src_cancellation
        super().__init__(
            f"Destination cancellation {dest_cancellation} is after "
            f"source cancellation {src_cancellation}",
            {"dest_cancellation": dest_cancellation, "src_cancellation": src_cancellation},
        )


class ValueMismatch(GuardError):
    code = "VALUE_MISMATCH"

    def __init__(self, attached: int, expected: int):
        self.attached = attached
        self.expected = expected
        super().__init__(
            f"Attached value {attached} != amount + safety deposit {expected}",
            {"attached": attached, "expected": expected},
        )


def is_retryable(error: BaseException) -> bool:
    """Whether an action failing with `error` may be retried."""
    return isinstance(error, (ContractError, NetworkError))
