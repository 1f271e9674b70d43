"""
Fill and refund accounting for partially executable orders.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

import structlog

from .errors import FillTooSmall, ValidationError

logger = structlog.get_logger()

DEFAULT_MIN_FILL_FRACTION = Decimal("0.1")
DEFAULT_MAX_FILLS = 10


@dataclass
class OrderFillState:
    """Snapshot of one order's fill progress."""

    order_id: str
    total_amount: int
    filled: int
    remaining: int
    fill_count: int
    is_fully_filled: bool
    is_cancelled: bool
    last_fill_at: Optional[datetime]
    child_orders: list[str]


@dataclass
class _FillRecord:
    total_amount: int
    min_fill_fraction: Decimal
    max_fills: int
    filled: int = 0
    allocated: int = 0  # moved into child orders by split()
    fill_count: int = 0
    refunded: int = 0
    cancelled: bool = False
    last_fill_at: Optional[datetime] = None
    children: list[str] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return self.total_amount - self.filled - self.allocated - self.refunded


class PartialFillLedger:
    """
    Tracks fills, splits and refunds per order.

    A fill must not exceed the remaining amount and must be at least
    `remaining * min_fill_fraction`, unless it drains the order completely.
    """

    def __init__(self) -> None:
        self._orders: dict[str, _FillRecord] = {}

    def _get(self, order_id: str) -> _FillRecord:
        record = self._orders.get(order_id)
        if record is None:
            raise ValidationError(f"Unknown order {order_id}", field="order_id", value=order_id)
        return record

    def open_order(
        self,
        order_id: str,
        total_amount: int,
        min_fill_fraction: Union[Decimal, float, str] = DEFAULT_MIN_FILL_FRACTION,
        max_fills: int = DEFAULT_MAX_FILLS,
    ) -> OrderFillState:
        if order_id in self._orders:
            raise ValidationError(f"Order {order_id} already open", field="order_id", value=order_id)
        if total_amount <= 0:
            raise ValidationError("Order amount must be positive", field="total_amount", value=total_amount)
        fraction = Decimal(str(min_fill_fraction))
        if not Decimal(0) <= fraction <= Decimal(1):
            raise ValidationError("min_fill_fraction must be within [0, 1]", field="min_fill_fraction", value=fraction)
        if max_fills < 1:
            raise ValidationError("max_fills must be at least 1", field="max_fills", value=max_fills)

        self._orders[order_id] = _FillRecord(
            total_amount=total_amount,
            min_fill_fraction=fraction,
            max_fills=max_fills,
        )
        return self.state(order_id)

    def _check_fill(self, order_id: str, record: _FillRecord, amount: int) -> None:
        if record.cancelled:
            raise ValidationError(f"Order {order_id} is cancelled", field="order_id", value=order_id)
        if amount <= 0:
            raise ValidationError("Fill amount must be positive", field="amount", value=amount)
        if amount > record.remaining:
            raise ValidationError(
                f"Fill {amount} exceeds remaining {record.remaining}",
                field="amount",
                value=amount,
            )
        if record.fill_count >= record.max_fills:
            raise ValidationError(
                f"Order {order_id} reached {record.max_fills} fills",
                field="fill_count",
                value=record.fill_count,
            )
        minimum = int(Decimal(record.remaining) * record.min_fill_fraction)
        if amount < minimum and amount != record.remaining:
            raise FillTooSmall(amount, minimum)

    def can_fill(self, order_id: str, amount: int) -> bool:
        record = self._orders.get(order_id)
        if record is None:
            return False
        try:
            self._check_fill(order_id, record, amount)
        except ValidationError:
            return False
        return True

    def record_fill(self, order_id: str, amount: int) -> OrderFillState:
        record = self._get(order_id)
        self._check_fill(order_id, record, amount)

        record.filled += amount
        record.fill_count += 1
        record.last_fill_at = datetime.utcnow()

        logger.info(
            "partial_fill_recorded",
            order_id=order_id,
            amount=amount,
            remaining=record.remaining,
            fill_count=record.fill_count,
        )
        return self.state(order_id)

    def split(self, order_id: str, amounts: list[int]) -> list[str]:
        """Move `amounts` of the remaining balance into child orders."""
        record = self._get(order_id)
        if record.cancelled:
            raise ValidationError(f"Order {order_id} is cancelled", field="order_id", value=order_id)
        if not amounts or any(a <= 0 for a in amounts):
            raise ValidationError("Split amounts must be positive", field="amounts", value=amounts)
        if sum(amounts) > record.remaining:
            raise ValidationError(
                f"Split total {sum(amounts)} exceeds remaining {record.remaining}",
                field="amounts",
                value=amounts,
            )

        children = []
        for amount in amounts:
            child_id = f"{order_id}-{len(record.children) + 1}"
            self.open_order(child_id, amount, record.min_fill_fraction, record.max_fills)
            record.children.append(child_id)
            record.allocated += amount
            children.append(child_id)

        logger.info("order_split", order_id=order_id, children=children)
        return children

    def refund_remaining(self, order_id: str) -> int:
        """Cancel the order and return the refundable amount (0 is a no-op)."""
        record = self._get(order_id)
        amount = record.remaining
        if amount == 0:
            return 0
        record.refunded += amount
        record.cancelled = True
        logger.info("partial_fill_refunded", order_id=order_id, amount=amount)
        return amount

    def state(self, order_id: str) -> OrderFillState:
        record = self._get(order_id)
        return OrderFillState(
            order_id=order_id,
            total_amount=record.total_amount,
            filled=record.filled,
            remaining=record.remaining,
            fill_count=record.fill_count,
            is_fully_filled=record.filled == record.total_amount,
            is_cancelled=record.cancelled,
            last_fill_at=record.last_fill_at,
            child_orders=list(record.children),
        )
