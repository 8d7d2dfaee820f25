from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from calsync.models import Integration, IntegrationStatus
from storage.base import IntegrationStore
from sync.engine import ReconciliationEngine, SyncReport
from sync.errors import AuthError, TerminalApiError, TransientApiError, categorize_error
from sync.metrics import NullSyncMetrics, SyncMetrics
from sync.token_manager import TokenManager

logger = logging.getLogger(__name__)

# Errors that mean the integration needs to be reconnected before it is synced again.
INTEGRATION_FATAL_ERRORS = (AuthError, TerminalApiError, TransientApiError)


@dataclass
class BatchResult:
    started_at: datetime
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    events_processed: int = 0
    duration_s: float = 0.0
    success: bool = True
    stopped_early: bool = False
    errors: Dict[str, int] = field(default_factory=Counter)
    reports: List[SyncReport] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "events_processed": self.events_processed,
            "duration_seconds": round(self.duration_s, 3),
            "success": self.success,
            "stopped_early": self.stopped_early,
            "errors": dict(self.errors),
        }


class BatchOrchestrator:
    """Runs one sync cycle over all eligible integrations, never two at once."""

    def __init__(
        self,
        integrations: IntegrationStore,
        token_manager: TokenManager,
        engine: ReconciliationEngine,
        metrics: Optional[SyncMetrics] = None,
        max_per_batch: int = 50,
        concurrency: int = 1,
        log: Optional[logging.Logger] = None,
    ):
        self.integrations = integrations
        self.token_manager = token_manager
        self.engine = engine
        self.metrics = metrics or NullSyncMetrics()
        self.max_per_batch = max_per_batch
        self.concurrency = max(1, concurrency)
        self.logger = log or logger
        self._cycle_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    async def run_cycle(
        self, should_stop: Optional[Callable[[], bool]] = None
    ) -> Optional[BatchResult]:
        """
        Run a full cycle.

        Returns None without doing anything when another cycle is still in
        flight.
        """
        if self._cycle_lock.locked():
            self.logger.warning("Sync already running, skipping this cycle")
            return None

        async with self._cycle_lock:
            return await self._run_cycle(should_stop or (lambda: False))

    async def _run_cycle(self, should_stop: Callable[[], bool]) -> BatchResult:
        started = time.monotonic()
        result = BatchResult(started_at=datetime.now(timezone.utc))
        self.metrics.cycle_started()

        try:
            eligible = await self.integrations.list_eligible(limit=self.max_per_batch)
        except Exception as e:
            self.logger.error(f"Fatal error in batch sync: {e}")
            self.metrics.error(categorize_error(e))
            result.success = False
            return self._finish(result, started)

        batch = eligible[: self.max_per_batch]
        if not batch:
            self.logger.info("No eligible calendar integrations found")
            return self._finish(result, started)

        self.logger.info(f"Starting batch sync of {len(batch)} integration(s)")

        if self.concurrency == 1:
            for integration in batch:
                if should_stop():
                    result.stopped_early = True
                    break
                await self._sync_one(integration, result, should_stop)
        else:
            semaphore = asyncio.Semaphore(self.concurrency)

            async def guarded(integration: Integration) -> None:
                async with semaphore:
                    if should_stop():
                        result.stopped_early = True
                        return
                    await self._sync_one(integration, result, should_stop)

            await asyncio.gather(*(guarded(i) for i in batch))

        return self._finish(result, started)

    def _finish(self, result: BatchResult, started: float) -> BatchResult:
        result.duration_s = time.monotonic() - started
        self.metrics.cycle_finished(
            result.duration_s, result.success, result.processed, result.succeeded, result.failed
        )
        self.logger.info(
            f"Batch complete: {result.processed} processed, {result.succeeded} succeeded, "
            f"{result.failed} failed in {result.duration_s:.2f}s"
        )
        return result

    async def _sync_one(
        self,
        integration: Integration,
        result: BatchResult,
        should_stop: Callable[[], bool],
    ) -> None:
        result.processed += 1
        self.metrics.integration_started(integration.id)
        started = time.monotonic()
        self.logger.info(
            f"Syncing integration {integration.id} (tenant {integration.tenant_id})"
        )

        try:
            access_token = await self.token_manager.ensure_valid(integration)
            report = await self.engine.run(integration, access_token, should_stop)
        except Exception as e:
            duration = time.monotonic() - started
            category = categorize_error(e)
            result.failed += 1
            result.errors[category] += 1
            self.metrics.integration_failed(integration.id, duration, category)
            self.logger.error(
                f"Sync failed for integration {integration.id} "
                f"(tenant {integration.tenant_id}): {e}"
            )
            if isinstance(e, INTEGRATION_FATAL_ERRORS):
                await self._mark_error(integration, e)
            return

        duration = time.monotonic() - started
        result.succeeded += 1
        result.events_processed += report.events_processed
        result.reports.append(report)
        if report.stopped_early:
            result.stopped_early = True
        self.metrics.integration_succeeded(integration.id, duration, report.events_processed)
        self.logger.info(
            f"Integration {integration.id} synced: {report.events_processed} event(s), "
            f"{report.pushed} pushed in {duration:.2f}s"
        )

    async def _mark_error(self, integration: Integration, error: Exception) -> None:
        try:
            await self.integrations.mark_error(integration.id, str(error))
        except Exception as e:
            self.logger.error(f"Could not mark integration {integration.id} as errored: {e}")
            return
        integration.status = IntegrationStatus.ERROR
        self.logger.warning(f"Marked integration {integration.id} as error: {error}")
