"""
Timeout manager for escalating overdue workflow steps.
Runs as a background task calling the engine's timeout scan periodically.
"""

import asyncio
from datetime import datetime
from typing import Optional
import structlog

from docflow.core.workflow_engine import WorkflowEngine

logger = structlog.get_logger()


class TimeoutManager:
    """
    Background service that drives WorkflowEngine.check_timeouts().
    """

    def __init__(self, engine: WorkflowEngine, check_interval: int = 60):
        self.engine = engine
        self.check_interval = check_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_checked_at: Optional[datetime] = None
        self.total_escalated = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the timeout checker"""
        if self._running:
            logger.warning("timeout_manager_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._check_timeouts_loop())
        logger.info("timeout_manager_started", check_interval=self.check_interval)

    async def stop(self):
        """Stop the timeout checker"""
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("timeout_manager_stopped")

    async def _check_timeouts_loop(self):
        """Background loop that checks for timeouts"""
        logger.info("timeout_checker_started")

        while self._running:
            try:
                # Check immediately on first iteration, then sleep
                await self.run_once()
                await asyncio.sleep(self.check_interval)

            except asyncio.CancelledError:
                logger.info("timeout_checker_cancelled")
                break
            except Exception as e:
                logger.error("timeout_checker_error", error=str(e), exc_info=True)
                # Continue running even if one check fails
                await asyncio.sleep(self.check_interval)

        logger.info("timeout_checker_stopped")

    async def run_once(self) -> int:
        """
        Run a single scan off the event loop.
        The engine serializes per-instance writes, so a worker thread is safe.
        """
        escalated = await asyncio.to_thread(self.engine.check_timeouts)
        self.last_checked_at = datetime.now()
        self.total_escalated += escalated

        if escalated:
            logger.info("timeout_scan_escalated", escalated=escalated, total=self.total_escalated)
        return escalated

    def get_stats(self) -> dict:
        return {
            "running": self._running,
            "check_interval_seconds": self.check_interval,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "total_escalated": self.total_escalated,
        }
