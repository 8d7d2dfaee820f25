import logging
import os
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI

from api import state
from api.metrics import PrometheusSyncMetrics
from api.routers import ops
from api.workers import SyncScheduler
from calsync.config import SyncSettings
from integration.base import TokenEndpoint
from integration.google_calendar import GoogleCalendarGateway
from integration.oauth import GoogleTokenEndpoint
from storage import db
from storage.appointment_store import PostgresAppointmentStore
from storage.base import AppointmentStore, IntegrationStore
from storage.crypto import TokenCipher
from storage.integration_store import PostgresIntegrationStore
from sync.engine import ReconciliationEngine, SweepSchedule
from sync.metrics import SyncMetrics
from sync.orchestrator import BatchOrchestrator
from sync.rate_limiter import RateLimiter
from sync.retry import RetryExecutor
from sync.token_manager import TokenManager

# Logging configuration
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title="calendar-sync")
app.include_router(ops.router)


def build_scheduler(
    settings: SyncSettings,
    integrations: IntegrationStore,
    appointments: AppointmentStore,
    token_endpoint: TokenEndpoint,
    metrics: Optional[SyncMetrics] = None,
) -> SyncScheduler:
    """Wire the sync object graph. All integrations share one rate limiter."""
    metrics = metrics or PrometheusSyncMetrics()

    rate_limiter = RateLimiter(
        capacity=settings.rate_limit_per_minute,
        window_s=settings.rate_limit_window_s,
        floor_s=settings.rate_limit_floor_s,
        enabled=settings.rate_limit_enabled,
        metrics=metrics,
    )
    retry = RetryExecutor(
        max_attempts=settings.retry_attempts,
        base_delay_s=settings.retry_base_delay_s,
    )
    token_manager = TokenManager(
        endpoint=token_endpoint,
        store=integrations,
        retry=retry,
        skew=timedelta(seconds=settings.token_refresh_skew_s),
    )
    engine = ReconciliationEngine(
        gateway=GoogleCalendarGateway(),
        appointments=appointments,
        integrations=integrations,
        rate_limiter=rate_limiter,
        retry=retry,
        metrics=metrics,
        sweep_schedule=SweepSchedule(every=settings.orphan_sweep_interval),
        sweep_batch_limit=settings.orphan_sweep_batch_limit,
        full_sync_past=timedelta(days=settings.full_sync_past_days),
        full_sync_future=timedelta(days=settings.full_sync_future_days),
    )
    orchestrator = BatchOrchestrator(
        integrations=integrations,
        token_manager=token_manager,
        engine=engine,
        metrics=metrics,
        max_per_batch=settings.max_integrations_per_batch,
        concurrency=settings.concurrency,
    )

    state.rate_limiter = rate_limiter
    return SyncScheduler(
        orchestrator,
        poll_interval_s=settings.poll_interval_s,
        shutdown_timeout_s=settings.shutdown_timeout_s,
        run_initial_sync=settings.run_initial_sync,
        initial_delay_s=settings.initial_sync_delay_s,
    )


@app.on_event("startup")
async def startup() -> None:
    settings = SyncSettings.from_env()
    state.settings = settings

    logger.info("Starting calendar sync service")
    logger.info(f"Polling interval: {settings.poll_interval_s}s")

    # A database that cannot be reached here is fatal: the app refuses to start
    await db.init_db_pool()
    if os.getenv("INIT_DB_SCHEMA", "false").lower() in {"1", "true", "yes"}:
        await db.init_schema()

    integrations = PostgresIntegrationStore(TokenCipher(os.getenv("TOKEN_ENCRYPTION_KEY")))
    await integrations.check_connection()

    state.token_endpoint = GoogleTokenEndpoint()
    state.scheduler = build_scheduler(
        settings,
        integrations,
        PostgresAppointmentStore(),
        state.token_endpoint,
    )
    state.scheduler.start()
    logger.info("Calendar sync service is running")


@app.on_event("shutdown")
async def shutdown() -> None:
    logger.info("Shutdown requested")
    if state.scheduler is not None:
        await state.scheduler.stop()
        state.scheduler = None
    if state.token_endpoint is not None:
        await state.token_endpoint.aclose()
        state.token_endpoint = None
    await db.close_db_pool()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3003")))
