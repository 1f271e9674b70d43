"""
Relayer service: wires watchers, gateways, ledger and coordinator together.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from .auction import CHAIN_DECIMALS
from .config import RelayerConfig
from .coordinator import ChainAdapter, SwapCoordinator
from .db import IdempotencyLedger, SwapOrderStore
from .errors import NetworkError
from .evm import EvmEscrowGateway
from .gateway import EscrowGateway
from .models import Chain
from .near import NearEscrowGateway, NearRPC, NearRPCConfig, NearSigner
from .scheduler import CancelHandle, run_periodically
from .watcher import ChainWatcher

logger = structlog.get_logger()

EVICTION_INTERVAL_SECONDS = 3600.0


@dataclass
class RelayerState:
    """Current relayer state."""

    is_running: bool = False
    started_at: Optional[datetime] = None
    last_poll_time: Optional[datetime] = None
    events_observed: int = 0
    orders_refunded: int = 0


class CrossChainRelayer:
    """
    Main relayer that:
    1. Watches both chains for escrow events
    2. Matches escrows into swap orders and prices the counterpart
    3. Drives withdrawals and expiry refunds
    """

    def __init__(
        self,
        config: RelayerConfig,
        evm_gateway: Optional[EscrowGateway] = None,
        near_gateway: Optional[EscrowGateway] = None,
        ledger: Optional[IdempotencyLedger] = None,
        store: Optional[SwapOrderStore] = None,
    ):
        self.config = config
        self.state = RelayerState()
        settings = config.settings

        gateway_kwargs = {
            "search_window": settings.search_window_blocks,
            "max_candidates": settings.search_max_candidates,
            "timelock_offset": settings.dest_timelock_offset_seconds,
        }

        self.evm = evm_gateway or EvmEscrowGateway(
            rpc_url=settings.evm_rpc_url,
            factory_address=settings.escrow_factory_address,
            private_key=settings.evm_private_key,
            chain_id=settings.evm_chain_id,
            watched_escrows=config.evm_escrow_addresses,
            **gateway_kwargs,
        )
        self.near = near_gateway or NearEscrowGateway(
            rpc=NearRPC(NearRPCConfig(url=settings.near_rpc_url)),
            contract_id=settings.near_escrow_contract_id,
            signer=(
                NearSigner(settings.near_account_id, settings.near_private_key)
                if settings.near_private_key
                else None
            ),
            **gateway_kwargs,
        )

        # Use database URL directly (supports SQLite and PostgreSQL)
        self.ledger = ledger or IdempotencyLedger(settings.database_url)
        self.store = store or SwapOrderStore(settings.database_url)

        self.coordinator = SwapCoordinator(
            adapters=[
                ChainAdapter(
                    chain=Chain.ETH,
                    gateway=self.evm,
                    decimals=CHAIN_DECIMALS[Chain.ETH],
                    relayer_account=self._evm_account(),
                    amount_tolerance=settings.evm_amount_tolerance,
                ),
                ChainAdapter(
                    chain=Chain.NEAR,
                    gateway=self.near,
                    decimals=CHAIN_DECIMALS[Chain.NEAR],
                    relayer_account=settings.near_account_id,
                    amount_tolerance=settings.near_amount_tolerance,
                ),
            ],
            ledger=self.ledger,
            store=self.store,
            curve=config.curve,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay_seconds,
            safety_deposit_bps=settings.safety_deposit_bps,
        )

        self.watchers = [
            ChainWatcher(
                self.evm,
                self.ledger,
                handler=self.coordinator.handle_message,
                batch_max=settings.batch_max,
                poll_interval=settings.evm_poll_interval_seconds,
            ),
            ChainWatcher(
                self.near,
                self.ledger,
                handler=self.coordinator.handle_message,
                batch_max=settings.batch_max,
                poll_interval=settings.near_poll_interval_seconds,
            ),
        ]
        self.coordinator.track_open_orders()

        self._handles: list[CancelHandle] = []
        self._stopped = asyncio.Event()

        logger.info(
            "relayer_initialized",
            evm_rpc=settings.evm_rpc_url,
            near_rpc=settings.near_rpc_url,
            near_contract=settings.near_escrow_contract_id,
            batch_max=settings.batch_max,
        )

    def _evm_account(self) -> str:
        account = getattr(self.evm, "account", None)
        if account is not None:
            return account.address
        return getattr(self.evm, "relayer_account", "")

    async def check_connectivity(self) -> dict[str, int]:
        """Fetch both chain heights. Raises NetworkError if a chain is unreachable."""
        heights = {}
        for watcher in self.watchers:
            try:
                heights[watcher.chain.value] = await watcher.source.current_height()
            except NetworkError:
                raise
            except Exception as e:
                raise NetworkError(
                    f"{watcher.chain.value} RPC unreachable: {e}",
                    chain=watcher.chain.value,
                    operation="current_height",
                ) from e
        return heights

    async def run_once(self) -> dict[str, Any]:
        """
        Run one cycle: poll each chain once, dispatch events, sweep expiries.
        """
        for watcher in self.watchers:
            try:
                events = await watcher.poll()
                self.state.events_observed += len(events)
            except Exception as e:
                logger.error("poll_cycle_error", chain=watcher.chain.value, error=str(e))
            await watcher.dispatch_pending()

        self.state.orders_refunded += await self.coordinator.sweep_expired()
        self.state.last_poll_time = datetime.now()
        return self.status()

    async def _sweep(self) -> None:
        self.state.orders_refunded += await self.coordinator.sweep_expired()

    async def _evict(self) -> None:
        retention = timedelta(days=self.config.settings.ledger_retention_days)
        self.ledger.evict_older_than(retention)

    async def start(self) -> None:
        """Start watchers and periodic tasks."""
        settings = self.config.settings
        heights = await self.check_connectivity()
        logger.info("relayer_starting", heights=heights)

        self.state.is_running = True
        self.state.started_at = datetime.now()
        self._stopped.clear()

        resumed = await self.coordinator.resume()
        if resumed:
            logger.info("orders_resumed", count=resumed)

        for watcher in self.watchers:
            await watcher.start()
        self._handles = [
            run_periodically(settings.sweep_interval_seconds, self._sweep, name="expiry_sweep"),
            run_periodically(EVICTION_INTERVAL_SECONDS, self._evict, name="ledger_eviction"),
        ]

    async def run(self) -> None:
        """Run the relayer until stop() is called."""
        await self.start()
        await self._stopped.wait()
        for watcher in self.watchers:
            await watcher.wait_stopped()
        for handle in self._handles:
            await handle.wait()

    def stop(self) -> None:
        """Stop the relayer."""
        self.state.is_running = False
        for watcher in self.watchers:
            watcher.stop()
        for handle in self._handles:
            handle.cancel()
        self._stopped.set()
        logger.info("relayer_stopping")

    def status(self) -> dict[str, Any]:
        orders = self.store.list()
        return {
            "running": self.state.is_running,
            "last_poll_time": self.state.last_poll_time.isoformat() if self.state.last_poll_time else None,
            "checkpoints": {w.chain.value: w.last_processed_height for w in self.watchers},
            "orders": dict(Counter(order.state.value for order in orders)),
            "events_observed": self.state.events_observed,
            "orders_refunded": self.state.orders_refunded,
        }

    def close(self) -> None:
        self.ledger.close()
        self.store.close()
