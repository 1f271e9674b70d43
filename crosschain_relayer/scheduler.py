"""
Periodic task scheduling on the asyncio loop.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()

PeriodicFn = Callable[[], Awaitable[Optional[bool]]]


class CancelHandle:
    """Handle returned by run_periodically; cancel() stops the loop."""

    def __init__(self, name: str):
        self.name = name
        self._running = True
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        """Stop after the in-flight cycle finishes."""
        self._running = False
        self._wakeup.set()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task


async def _loop(handle: CancelHandle, interval: float, fn: PeriodicFn) -> None:
    while handle.is_running:
        rerun = False
        try:
            rerun = bool(await fn())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("periodic_task_error", task=handle.name, error=str(e))

        if not handle.is_running:
            break
        if rerun:
            # Backlog: go again without sleeping
            await asyncio.sleep(0)
            continue
        try:
            await asyncio.wait_for(handle._wakeup.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


def run_periodically(interval: float, fn: PeriodicFn, name: str = "") -> CancelHandle:
    """
    Run `fn` every `interval` seconds until the handle is cancelled.

    Errors raised by `fn` are logged and the loop keeps going. If `fn`
    returns True the next run starts immediately.
    """
    handle = CancelHandle(name or getattr(fn, "__name__", "task"))
    handle._task = asyncio.create_task(_loop(handle, interval, fn))
    logger.debug("periodic_task_started", task=handle.name, interval=interval)
    return handle
