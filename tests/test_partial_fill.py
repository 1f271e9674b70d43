"""
Tests for partial fill accounting.
"""

import pytest

from crosschain_relayer.errors import FillTooSmall, ValidationError
from crosschain_relayer.partial_fill import PartialFillLedger


@pytest.fixture
def fills():
    ledger = PartialFillLedger()
    ledger.open_order("order-1", 1_000)
    return ledger


class TestFills:
    """Tests for recording fills."""

    def test_fill_reduces_remaining(self, fills):
        state = fills.record_fill("order-1", 400)
        assert state.filled == 400
        assert state.remaining == 600
        assert state.fill_count == 1
        assert state.last_fill_at is not None
        assert not state.is_fully_filled

    def test_fill_to_completion(self, fills):
        fills.record_fill("order-1", 600)
        state = fills.record_fill("order-1", 400)
        assert state.is_fully_filled
        assert state.remaining == 0

    def test_overfill_rejected(self, fills):
        with pytest.raises(ValidationError):
            fills.record_fill("order-1", 1_001)
        assert fills.state("order-1").filled == 0

    def test_fill_below_fraction_of_remaining(self, fills):
        with pytest.raises(FillTooSmall) as exc:
            fills.record_fill("order-1", 99)
        assert exc.value.minimum == 100

    def test_final_dust_fill_allowed(self, fills):
        fills.record_fill("order-1", 995)
        assert fills.record_fill("order-1", 5).is_fully_filled

    def test_max_fills(self):
        ledger = PartialFillLedger()
        ledger.open_order("o", 100, min_fill_fraction=0, max_fills=2)
        ledger.record_fill("o", 10)
        ledger.record_fill("o", 10)
        assert not ledger.can_fill("o", 10)
        with pytest.raises(ValidationError):
            ledger.record_fill("o", 10)

    def test_can_fill(self, fills):
        assert fills.can_fill("order-1", 500)
        assert not fills.can_fill("order-1", 0)
        assert not fills.can_fill("order-1", 5_000)
        assert not fills.can_fill("missing", 1)

    def test_unknown_order(self, fills):
        with pytest.raises(ValidationError):
            fills.record_fill("missing", 1)

    def test_open_twice_rejected(self, fills):
        with pytest.raises(ValidationError):
            fills.open_order("order-1", 5)

    def test_bad_fraction_rejected(self):
        with pytest.raises(ValidationError):
            PartialFillLedger().open_order("o", 10, min_fill_fraction="1.5")


class TestSplitAndRefund:
    """Tests for splitting and refunding the remainder."""

    def test_split_creates_children(self, fills):
        children = fills.split("order-1", [300, 200])

        assert children == ["order-1-1", "order-1-2"]
        assert fills.state("order-1").remaining == 500
        assert fills.state("order-1").child_orders == children
        assert fills.state("order-1-1").total_amount == 300

    def test_split_beyond_remaining_rejected(self, fills):
        fills.record_fill("order-1", 800)
        with pytest.raises(ValidationError):
            fills.split("order-1", [100, 150])

    def test_refund_remaining_cancels(self, fills):
        fills.record_fill("order-1", 700)

        assert fills.refund_remaining("order-1") == 300

        state = fills.state("order-1")
        assert state.is_cancelled
        assert state.remaining == 0
        assert not fills.can_fill("order-1", 1)

    def test_refund_with_nothing_left_is_noop(self, fills):
        fills.record_fill("order-1", 1_000)
        assert fills.refund_remaining("order-1") == 0
        assert not fills.state("order-1").is_cancelled
