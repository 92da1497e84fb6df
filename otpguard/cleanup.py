"""
Background Cleanup
==================
Periodic sweep of expired challenges, windows, fraud records and devices.

The task is owned explicitly by the host: nothing runs until `start()` is
awaited, and `stop()` cancels it.
"""

import asyncio
from typing import Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class CleanupTask:
    """
    Runs `orchestrator.sweep()` every `interval` seconds.
    
    Example:
        cleanup = CleanupTask(orchestrator, interval=300)
        await cleanup.start()
        ...
        await cleanup.stop()
    """
    
    def __init__(self, orchestrator, interval: Optional[float] = None):
        self.orchestrator = orchestrator
        self.interval = (
            interval if interval is not None
            else orchestrator.config.sweep_interval_seconds
        )
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0
    
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
    
    def sweep_once(self) -> Dict[str, int]:
        """Run a single sweep synchronously."""
        removed = self.orchestrator.sweep()
        self.runs += 1
        logger.info("cleanup_sweep_completed", **removed)
        return removed
    
    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep_once()
            except Exception:
                # A failed pass is retried on the next tick
                self.failures += 1
                logger.exception("cleanup_sweep_failed", failures=self.failures)
    
    async def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("cleanup_started", interval=self.interval)
    
    async def stop(self) -> None:
        """Cancel the sweep and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("cleanup_stopped", runs=self.runs, failures=self.failures)
