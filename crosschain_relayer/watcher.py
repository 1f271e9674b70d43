"""
Chain watcher: polls one chain for escrow events.

Each block's events are recorded in the idempotency ledger before the
chain checkpoint moves past that block, so a crash never skips events and a
replayed block never dispatches an event twice.
"""

from typing import Awaitable, Callable, Optional

import structlog

from .db import IdempotencyLedger
from .errors import BlockNotFoundError, NetworkError, RelayerError
from .gateway import BlockSource
from .models import CrossChainMessage
from .scheduler import CancelHandle, run_periodically

logger = structlog.get_logger()

EventHandler = Callable[[CrossChainMessage], Awaitable[None]]


class ChainWatcher:
    """
    Watches one chain for escrow creation, withdrawal and refund events.

    Usage:
        watcher = ChainWatcher(source, ledger, handler=coordinator.handle_message)
        await watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        source: BlockSource,
        ledger: IdempotencyLedger,
        handler: Optional[EventHandler] = None,
        batch_max: int = 10,
        poll_interval: float = 5.0,
    ):
        self.source = source
        self.chain = source.chain
        self.ledger = ledger
        self.handler = handler
        self.batch_max = batch_max
        self.poll_interval = poll_interval
        self._running = False
        self._backlog = False
        self._handle: Optional[CancelHandle] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_processed_height(self) -> Optional[int]:
        return self.ledger.get_checkpoint(self.chain)

    async def _ensure_checkpoint(self) -> Optional[int]:
        last = self.ledger.get_checkpoint(self.chain)
        if last is None:
            # Fresh start: begin at the chain head, no history replay
            height = await self.source.current_height()
            self.ledger.advance_checkpoint(self.chain, height)
            logger.info("checkpoint_initialized", chain=self.chain.value, height=height)
            return None
        return last

    async def start(self) -> None:
        """Load or initialize the checkpoint and start the poll loop."""
        if self._running:
            return
        await self._ensure_checkpoint()
        self._running = True
        self._handle = run_periodically(
            self.poll_interval, self._cycle, name=f"watcher_{self.chain.value.lower()}"
        )
        logger.info(
            "watcher_started",
            chain=self.chain.value,
            checkpoint=self.last_processed_height,
            poll_interval=self.poll_interval,
        )

    def stop(self) -> None:
        """Stop polling. An in-flight block finishes first."""
        self._running = False
        if self._handle is not None:
            self._handle.cancel()
        logger.info("watcher_stopping", chain=self.chain.value)

    async def wait_stopped(self) -> None:
        if self._handle is not None:
            await self._handle.wait()

    async def _fetch(self, height: int) -> list[CrossChainMessage]:
        try:
            return await self.source.get_block_events(height)
        except BlockNotFoundError:
            logger.warning("block_not_found", chain=self.chain.value, height=height)
            return []
        except RelayerError:
            raise
        except Exception as e:
            raise NetworkError(
                f"Failed to fetch block {height}: {e}",
                chain=self.chain.value,
                operation="get_block",
            ) from e

    async def poll(self) -> list[CrossChainMessage]:
        """
        Process the next batch of blocks.

        Returns the events recorded for the first time in this batch.
        """
        self._backlog = False
        last = await self._ensure_checkpoint()
        if last is None:
            return []

        current = await self.source.current_height()
        if current <= last:
            return []

        end = min(current, last + self.batch_max)
        new_events: list[CrossChainMessage] = []

        for height in range(last + 1, end + 1):
            if self._handle is not None and not self._running:
                break
            events = await self._fetch(height)
            for event in events:
                if self.ledger.record_message(event):
                    new_events.append(event)
            self.ledger.advance_checkpoint(self.chain, height)

        if end < current:
            self._backlog = True

        if new_events:
            logger.info(
                "events_observed",
                chain=self.chain.value,
                count=len(new_events),
                from_height=last + 1,
                to_height=end,
            )
        else:
            logger.debug("blocks_scanned", chain=self.chain.value, from_height=last + 1, to_height=end)

        return new_events

    async def dispatch_pending(self) -> int:
        """Hand recorded-but-unhandled events to the handler. Returns count handled."""
        if self.handler is None:
            return 0
        handled = 0
        for event in self.ledger.pending_messages(self.chain):
            if self._handle is not None and not self._running:
                break
            try:
                await self.handler(event)
            except Exception as e:
                logger.error(
                    "event_dispatch_failed",
                    chain=self.chain.value,
                    message_id=event.message_id,
                    error=str(e),
                )
                continue
            self.ledger.mark_handled(event.message_id)
            handled += 1
        return handled

    async def _cycle(self) -> bool:
        try:
            await self.poll()
        finally:
            await self.dispatch_pending()
        return self._backlog
