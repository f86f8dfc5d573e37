"""Grant expiry background worker.

asyncio background task started from the FastAPI lifespan when
GRANT_SWEEP_INTERVAL_SECONDS is positive. Deployments that rely on the
cron endpoint leave it disabled.
"""

import asyncio
import contextlib
import logging
from datetime import datetime

from app.services.grant_service import SweepResult, sweep_expired_grants
from app.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)


class GrantExpiryWorker:
    """Background worker that periodically sweeps expired grants.

    Lifecycle:
    - start() creates an asyncio task that runs the sweep loop.
    - stop() cancels the task and waits for graceful shutdown.
    - run_once() executes a single sweep (for testing).

    Args:
        ledger: Ledger service used to forfeit grants.
        interval_seconds: Seconds between sweeps.
    """

    def __init__(self, ledger: LedgerService, *, interval_seconds: int) -> None:
        if interval_seconds <= 0:
            msg = f"interval_seconds must be positive, got {interval_seconds}"
            raise ValueError(msg)
        self._ledger = ledger
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._last_run_at: datetime | None = None
        self._last_result: SweepResult | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the background task is currently active."""
        return self._running and self._task is not None and not self._task.done()

    @property
    def last_run_at(self) -> datetime | None:
        """Timestamp of the most recent completed sweep."""
        return self._last_run_at

    @property
    def last_result(self) -> SweepResult | None:
        """Totals from the most recent completed sweep."""
        return self._last_result

    def start(self) -> None:
        """Start the background sweep loop.

        Creates an asyncio task. No-op if already running.
        Must be called from an async context (running event loop).
        """
        if self.is_running:
            logger.warning("Grant expiry worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Grant expiry worker started (interval=%ds)", self._interval_seconds)

    async def stop(self) -> None:
        """Stop the background sweep loop.

        Cancels the task and waits for it to finish.
        """
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("Grant expiry worker stopped")

    async def run_once(self) -> SweepResult:
        """Execute a single sweep.

        Returns:
            SweepResult with totals from the sweep.
        """
        result = await sweep_expired_grants(self._ledger)
        self._last_run_at = self._ledger.now()
        self._last_result = result
        return result

    async def _run_loop(self) -> None:
        """Background loop: sweep → sleep → repeat."""
        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception:  # noqa: BLE001
                    logger.exception("Error in grant expiry sweep")
                await asyncio.sleep(self._interval_seconds)
        except asyncio.CancelledError:
            logger.debug("Grant expiry loop cancelled")
            raise
