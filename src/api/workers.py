import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from sync.orchestrator import BatchOrchestrator, BatchResult

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    last_sync_time: Optional[str] = None
    last_error: Optional[dict] = None
    last_result: Optional[dict] = None

    def as_dict(self) -> dict:
        return asdict(self)


class SyncScheduler:
    """
    Periodic trigger for sync cycles.

    A trigger that fires while a cycle is still running does nothing. On
    shutdown the in-flight cycle is told to stop after its current phase and
    is cancelled if it has not finished within ``shutdown_timeout_s``.
    """

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        poll_interval_s: float = 60,
        shutdown_timeout_s: float = 30,
        run_initial_sync: bool = True,
        initial_delay_s: float = 5,
    ):
        self.orchestrator = orchestrator
        self.poll_interval_s = poll_interval_s
        self.shutdown_timeout_s = shutdown_timeout_s
        self.run_initial_sync = run_initial_sync
        self.initial_delay_s = initial_delay_s
        self.stats = SyncStats()

        self._stop = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.orchestrator.is_running

    def stop_requested(self) -> bool:
        return self._stop.is_set()

    async def perform_sync(self) -> Optional[BatchResult]:
        if self.orchestrator.is_running:
            logger.warning("Sync already running, skipping this cycle")
            self.stats.skipped_runs += 1
            return None

        logger.info("Starting scheduled sync cycle")
        try:
            result = await self.orchestrator.run_cycle(should_stop=self.stop_requested)
        except Exception as e:
            logger.exception(f"Sync cycle failed: {e}")
            self.stats.total_runs += 1
            self.stats.failed_runs += 1
            self.stats.last_error = {
                "message": str(e),
                "time": datetime.now(timezone.utc).isoformat(),
            }
            return None

        if result is None:
            self.stats.skipped_runs += 1
            return None

        self.stats.total_runs += 1
        self.stats.last_result = result.as_dict()
        if result.success:
            self.stats.successful_runs += 1
            self.stats.last_sync_time = datetime.now(timezone.utc).isoformat()
            self.stats.last_error = None
            logger.info(f"Sync cycle completed in {result.duration_s:.2f}s")
        else:
            self.stats.failed_runs += 1
            self.stats.last_error = {
                "message": "could not list integrations",
                "time": datetime.now(timezone.utc).isoformat(),
            }
        return result

    def trigger(self) -> bool:
        """Start a cycle in the background. Returns False if one is still running."""
        if self._current is not None and not self._current.done():
            logger.warning("Sync already running, skipping this cycle")
            self.stats.skipped_runs += 1
            return False

        self._current = asyncio.create_task(self.perform_sync())
        return True

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless stopped first. True when stop was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_forever(self) -> None:
        logger.info(f"Sync scheduler started (interval {self.poll_interval_s}s)")

        if self.run_initial_sync:
            logger.info("Running initial sync")
            if await self._wait(self.initial_delay_s):
                return
            self.trigger()

        while True:
            if await self._wait(self.poll_interval_s):
                return
            self.trigger()

    def start(self) -> None:
        self._loop_task = asyncio.create_task(self.run_forever())

    async def stop(self, timeout: Optional[float] = None) -> None:
        timeout = self.shutdown_timeout_s if timeout is None else timeout
        self._stop.set()

        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        current = self._current
        if current is None or current.done():
            logger.info("Graceful shutdown completed")
            return

        logger.info("Waiting for current sync to complete...")
        try:
            await asyncio.wait_for(asyncio.shield(current), timeout=timeout)
            logger.info("Graceful shutdown completed")
        except asyncio.TimeoutError:
            logger.warning("Forcing shutdown after timeout")
            current.cancel()
            try:
                await current
            except asyncio.CancelledError:
                pass
