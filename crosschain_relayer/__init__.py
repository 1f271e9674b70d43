"""
Cross-chain Relayer

Watches escrow contracts on an EVM chain and on NEAR, matches the two legs
of a hashlock/timelock atomic swap and drives it to withdrawal or refund.
The counterpart escrow is priced on a Dutch-auction curve.

Usage:
    # Price a swap on the configured curve
    crosschain-relayer quote --amount 1000000000000000000 --from-chain ETH --to-chain NEAR

    # Run the relayer
    crosschain-relayer run --config .env

    # Run one cycle against in-memory chains
    crosschain-relayer run --once --dry-run
"""

__version__ = "0.1.0"

from .auction import AuctionCurve, AuctionPoint, AuctionQuote, compute_output_amount, compute_rate, quote
from .config import RelayerConfig, Settings
from .coordinator import ChainAdapter, HtlcSubmission, OrderSubmission, SwapCoordinator
from .db import IdempotencyLedger, SwapOrderStore
from .gateway import EscrowGateway
from .partial_fill import OrderFillState, PartialFillLedger
from .relayer import CrossChainRelayer
from .watcher import ChainWatcher

__all__ = [
    "__version__",
    "AuctionCurve",
    "AuctionPoint",
    "AuctionQuote",
    "compute_output_amount",
    "compute_rate",
    "quote",
    "RelayerConfig",
    "Settings",
    "ChainAdapter",
    "HtlcSubmission",
    "OrderSubmission",
    "SwapCoordinator",
    "IdempotencyLedger",
    "SwapOrderStore",
    "EscrowGateway",
    "OrderFillState",
    "PartialFillLedger",
    "CrossChainRelayer",
    "ChainWatcher",
]
