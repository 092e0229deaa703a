"""Periodic refresh - re-requests the machine list on a fixed interval.

Even without new push events, each tick lets time-based status transitions
(online -> unstable -> offline) advance and picks up any missed deltas.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 10.0


class RefreshScheduler:
    """Runs ``tick`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        tick: Callable[[], Any],
        interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
    ):
        self._tick = tick
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the refresh loop."""
        if self._running:
            logger.warning("Refresh scheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._refresh_loop())
        logger.info(f"Refresh scheduler started: every {self.interval}s")

    async def stop(self):
        """Stop the refresh loop and wait for it to exit."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Refresh scheduler stopped")

    async def __aenter__(self) -> "RefreshScheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _refresh_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                result = self._tick()
                if inspect.isawaitable(result):
                    await result
                self.tick_count += 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Refresh tick error: {e}", exc_info=True)
