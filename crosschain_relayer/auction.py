"""
Dutch-auction pricing for counterpart escrows.

Rate bumps are fixed-point with 1_000_000 = 100%. All amount math is
integer; decimal rebasing between chains multiplies or divides by an exact
power of ten.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, Field, model_validator

from .errors import FillTooSmall, ValidationError
from .models import Chain

logger = structlog.get_logger()

RATE_PRECISION = 1_000_000
GWEI = 10**9

CHAIN_DECIMALS = {
    Chain.ETH: 18,
    Chain.NEAR: 24,
}

# Gas units per operation
GAS_LIMITS = {
    "eth_transfer": 21_000,
    "token_approval": 45_000,
    "swap": 180_000,
    "deposit": 100_000,
    "withdraw": 100_000,
    "cross_chain_base": 50_000,
    "complex_operation": 30_000,
}
GAS_PER_CALLDATA_BYTE = 16


class AuctionPoint(BaseModel):
    """One curve point; `delay_seconds` is relative to the previous point."""

    delay_seconds: int = Field(gt=0)
    coefficient_bps: int = Field(ge=0, le=RATE_PRECISION)


class AuctionCurve(BaseModel):
    """Auction curve configuration."""

    duration: int = Field(default=180, gt=0)
    initial_rate_bump_bps: int = Field(default=50_000, ge=0, le=RATE_PRECISION)
    points: list[AuctionPoint] = Field(
        default_factory=lambda: [
            AuctionPoint(delay_seconds=30, coefficient_bps=40_000),
            AuctionPoint(delay_seconds=60, coefficient_bps=30_000),
            AuctionPoint(delay_seconds=90, coefficient_bps=20_000),
        ]
    )
    gas_bump_estimate_bps: int = Field(default=5_000, ge=0, le=100_000)
    gas_price_estimate_gwei: Decimal = Field(default=Decimal("20"), gt=0)
    min_fill_fraction: Decimal = Field(default=Decimal("0.1"), ge=0, le=1)
    max_rate_bump_bps: int = Field(default=500_000, ge=0, le=RATE_PRECISION)

    @model_validator(mode="after")
    def _check_curve(self) -> "AuctionCurve":
        if self.max_rate_bump_bps < self.initial_rate_bump_bps:
            raise ValueError("max_rate_bump_bps must be >= initial_rate_bump_bps")
        if not self.points:
            raise ValueError("auction curve needs at least one point")
        # delay_seconds > 0 keeps cumulative time strictly increasing
        elapsed = 0
        for index, point in enumerate(self.points):
            elapsed += point.delay_seconds
            if elapsed > self.duration:
                raise ValueError(f"point {index}: cumulative delay {elapsed} exceeds duration {self.duration}")
        if not 30 <= self.duration <= 300:
            logger.warning("auction_duration_unusual", duration=self.duration)
        return self


@dataclass
class AuctionQuote:
    """Priced counterpart amount at a given moment of the auction."""

    rate_bump_bps: int
    output_amount: int
    gas_cost_wei: int
    safety_deposit: int
    total_cost: int
    time_remaining: int
    is_expired: bool


def compute_rate(elapsed_seconds: int, curve: AuctionCurve) -> int:
    """
    Rate bump in bps after `elapsed_seconds` of the auction.

    Interpolates linearly along the cumulative point delays starting from
    the initial bump, adds the flat gas bump and clamps to the maximum.
    Once the auction duration has passed the maximum bump applies.
    """
    if elapsed_seconds >= curve.duration:
        return curve.max_rate_bump_bps

    rate = curve.initial_rate_bump_bps
    if elapsed_seconds > 0:
        prev_time = 0
        for point in curve.points:
            segment_end = prev_time + point.delay_seconds
            if elapsed_seconds >= segment_end:
                rate = point.coefficient_bps
                prev_time = segment_end
                continue
            progress = elapsed_seconds - prev_time
            rate = rate + (point.coefficient_bps - rate) * progress // point.delay_seconds
            break

    return min(rate + curve.gas_bump_estimate_bps, curve.max_rate_bump_bps)


def rebase_amount(amount: int, from_decimals: int, to_decimals: int) -> int:
    """Convert an integer amount between chain units (truncating)."""
    diff = to_decimals - from_decimals
    if diff > 0:
        return amount * 10**diff
    if diff < 0:
        return amount // 10 ** (-diff)
    return amount


def compute_output_amount(
    from_amount: int,
    rate_bump_bps: int,
    from_decimals: int,
    to_decimals: int,
    min_fill_fraction: Optional[Decimal] = None,
) -> int:
    """
    Counter-chain amount for `from_amount` at the given rate bump.

    Raises FillTooSmall when the bumped amount (in source units) is below
    `from_amount * min_fill_fraction`.
    """
    if from_amount <= 0:
        raise ValidationError("from_amount must be positive", field="from_amount", value=from_amount)
    if rate_bump_bps < 0:
        raise ValidationError("rate bump must not be negative", field="rate_bump_bps", value=rate_bump_bps)

    bumped = from_amount * (RATE_PRECISION + rate_bump_bps) // RATE_PRECISION

    if min_fill_fraction is not None:
        minimum = int(Decimal(from_amount) * Decimal(str(min_fill_fraction)))
        if bumped < minimum:
            raise FillTooSmall(bumped, minimum)

    return rebase_amount(bumped, from_decimals, to_decimals)


def compute_safety_deposit(amount: int, safety_deposit_bps: int) -> int:
    return amount * safety_deposit_bps // RATE_PRECISION


def estimate_gas_cost(
    from_chain: Chain,
    to_chain: Chain,
    calldata_size: int,
    curve: AuctionCurve,
) -> int:
    """Gas-cost fee in wei: operation table + calldata, bumped, times gas price."""
    gas = GAS_LIMITS["cross_chain_base"]
    if from_chain == Chain.NEAR and to_chain == Chain.ETH:
        gas += GAS_LIMITS["deposit"] + GAS_LIMITS["swap"] + GAS_LIMITS["withdraw"]
    elif from_chain == Chain.ETH and to_chain == Chain.NEAR:
        gas += GAS_LIMITS["token_approval"] + GAS_LIMITS["deposit"] + GAS_LIMITS["swap"]
    gas += calldata_size * GAS_PER_CALLDATA_BYTE
    gas += GAS_LIMITS["complex_operation"]

    bumped = Decimal(gas) * (RATE_PRECISION + curve.gas_bump_estimate_bps) / RATE_PRECISION
    gas_units = int(bumped.to_integral_value(rounding=ROUND_CEILING))
    gas_price_wei = int(curve.gas_price_estimate_gwei * GWEI)
    return gas_units * gas_price_wei


def quote(
    from_chain: Chain,
    to_chain: Chain,
    from_amount: int,
    auction_start: int,
    now: int,
    curve: AuctionCurve,
    calldata_size: int = 256,
    safety_deposit_bps: int = 50_000,
) -> AuctionQuote:
    """Full auction quote: rate, output, gas fee and safety deposit."""
    if from_chain == to_chain:
        raise ValidationError("source and destination chains must differ", field="to_chain")

    elapsed = now - auction_start
    rate = compute_rate(elapsed, curve)
    output = compute_output_amount(
        from_amount,
        rate,
        CHAIN_DECIMALS[from_chain],
        CHAIN_DECIMALS[to_chain],
        curve.min_fill_fraction,
    )
    gas_cost = estimate_gas_cost(from_chain, to_chain, calldata_size, curve)
    safety_deposit = compute_safety_deposit(output, safety_deposit_bps)

    logger.debug(
        "auction_quote",
        from_chain=from_chain.value,
        to_chain=to_chain.value,
        elapsed=elapsed,
        rate_bump_bps=rate,
        output_amount=output,
        gas_cost_wei=gas_cost,
    )

    return AuctionQuote(
        rate_bump_bps=rate,
        output_amount=output,
        gas_cost_wei=gas_cost,
        safety_deposit=safety_deposit,
        total_cost=output + safety_deposit,
        time_remaining=max(0, curve.duration - elapsed),
        is_expired=elapsed >= curve.duration,
    )
